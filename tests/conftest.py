import pytest

from translation_decision.config import DecisionConfig, reset_config_cache

from fakes import FakeSleep


@pytest.fixture
def config() -> DecisionConfig:
    return DecisionConfig()


@pytest.fixture
def fake_sleep() -> FakeSleep:
    return FakeSleep()


@pytest.fixture(autouse=True)
def _clear_config_cache():
    reset_config_cache()
    yield
    reset_config_cache()
