"""
Translation decision configuration: YAML file + pydantic validation + env overrides.

All heuristic constants (thresholds, backoff, quota delay, weights) live here so a
deployment can tune them without touching the engine.
"""
import logging
import os
from pathlib import Path
from typing import Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from .errors import ConfigError

DEFAULT_CONFIG_PATH = "config/translation_decision.yaml"
ENV_PREFIX = "TRANSLATION_DECISION_"


class ScoringConfig(BaseModel):
    failure_weight: float = 0.6
    quality_weight: float = 0.4
    neutral_failure_rate: float = 0.5
    neutral_quality_penalty: float = 0.5
    benefit_base: float = 0.5
    high_priority_bonus: float = 0.3
    important_type_bonus: float = 0.2
    max_active_jobs: int = 20
    important_types: List[str] = Field(default_factory=lambda: ["PRODUCT", "COLLECTION", "PAGE"])
    retry_base_probability: Dict[str, float] = Field(
        default_factory=lambda: {"temporary": 0.8, "quota": 0.5, "invalid": 0.1, "unknown": 0.3}
    )
    retry_decay: float = 0.7


class SkipConfig(BaseModel):
    defer_risk_threshold: float = 0.7
    skip_benefit_threshold: float = 0.3


class BatchConfig(BaseModel):
    base_size: int = 10
    low_load_size: int = 20
    high_load_size: int = 5
    low_load_threshold: float = 0.3
    high_load_threshold: float = 0.7
    heavy_content_avg_size: int = 5000
    heavy_content_factor: float = 0.6
    heavy_content_floor: int = 3


class RetryConfig(BaseModel):
    max_attempts: int = 3
    temporary_max_attempt: int = 3
    quota_max_attempt: int = 2
    backoff_base_ms: int = 1000
    quota_delay_ms: int = 60000


class SchedulerConfig(BaseModel):
    type_weights: Dict[str, float] = Field(
        default_factory=lambda: {"PRODUCT": 10, "COLLECTION": 8, "PAGE": 6, "ARTICLE": 5, "THEME": 4}
    )
    default_type_weight: float = 3
    priority_id_bonus: float = 20
    avg_task_latency_ms: float = 2000
    batch_overhead_ms: float = 500
    concurrency: int = 3
    history_cache_size: int = 256


class AnalyzerConfig(BaseModel):
    slow_task_ms: float = 10000
    high_retry_share: float = 0.2
    min_success_rate: float = 0.8
    slow_avg_latency_ms: float = 5000
    medium_risk_tasks: int = 100
    high_risk_tasks: int = 500


class DecisionConfig(BaseModel):
    scoring: ScoringConfig = Field(default_factory=ScoringConfig)
    skip: SkipConfig = Field(default_factory=SkipConfig)
    batch: BatchConfig = Field(default_factory=BatchConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    analyzer: AnalyzerConfig = Field(default_factory=AnalyzerConfig)
    log_level: str = "INFO"


_CONFIG_CACHE: Optional[DecisionConfig] = None


def _apply_env_overrides(raw: dict) -> dict:
    max_attempts = os.environ.get(f"{ENV_PREFIX}MAX_ATTEMPTS")
    if max_attempts:
        raw.setdefault("retry", {})["max_attempts"] = int(max_attempts)
    log_level = os.environ.get(f"{ENV_PREFIX}LOG_LEVEL")
    if log_level:
        raw["log_level"] = log_level
    return raw


def load_config(config_path: Optional[str] = None) -> DecisionConfig:
    """
    加载配置

    Without an explicit path the repo default file is used when present and the
    result is cached; otherwise built-in defaults apply.
    """
    global _CONFIG_CACHE
    if _CONFIG_CACHE is not None and config_path is None:
        return _CONFIG_CACHE

    path = Path(config_path or DEFAULT_CONFIG_PATH)
    raw: dict = {}
    if path.exists():
        try:
            with path.open("r", encoding="utf-8") as f:
                raw = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"cannot parse {path}: {e}") from e
    elif config_path is not None:
        raise ConfigError(f"config file not found: {path}")

    try:
        config = DecisionConfig(**_apply_env_overrides(raw))
    except ValidationError as e:
        raise ConfigError(f"invalid config {path}: {e}") from e

    if config_path is None:
        _CONFIG_CACHE = config
    return config


def reset_config_cache():
    global _CONFIG_CACHE
    _CONFIG_CACHE = None


def setup_logging(level: Optional[str] = None):
    logging.basicConfig(
        level=(level or load_config().log_level).upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
