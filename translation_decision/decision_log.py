"""
DecisionLog: 思考链 (thinking chain)
Append-only record of reasoning steps and decisions for one run or sub-session.
Entries are never edited; corrections are appended as revisions.
"""
from collections import Counter
from dataclasses import asdict
from datetime import datetime
from typing import Any, Dict, List, Optional

from .models import Decision, DecisionKind, ThoughtEntry

# 推理文本中的证据标记 -> 置信度增减
CONFIDENCE_BASE = 0.5
CONFIDENCE_MARKERS = [
    (("data", "statistic", "数据", "统计"), 0.2),
    (("pattern", "trend", "模式", "规律"), 0.15),
    (("history", "historical", "experience", "历史", "经验"), 0.1),
    (("risk", "danger", "风险", "危险"), -0.1),
]
MIN_CONFIDENCE = 0.1
MAX_CONFIDENCE = 1.0


def calculate_confidence(reasoning: str) -> float:
    """Keyword-weighted confidence, clamped to [0.1, 1.0]."""
    text = (reasoning or "").lower()
    confidence = CONFIDENCE_BASE
    for markers, delta in CONFIDENCE_MARKERS:
        if any(marker in text for marker in markers):
            confidence += delta
    return max(MIN_CONFIDENCE, min(MAX_CONFIDENCE, confidence))


class DecisionLog:
    """
    Session-scoped audit trail.

    One instance per run (or per logical sub-decision); never share an instance
    between concurrent runs.
    """

    def __init__(self, context: Optional[Dict[str, Any]] = None):
        self.context = dict(context or {})
        self.thoughts: List[ThoughtEntry] = []
        self.decisions: List[Decision] = []
        self.branches: Dict[int, List[int]] = {}
        self.current_step = 0

    def add_thought(self, thought: str, metadata: Optional[Dict[str, Any]] = None) -> ThoughtEntry:
        metadata = dict(metadata or {})
        branch_from = metadata.get("branch_from")
        entry = ThoughtEntry(
            step=self.current_step,
            thought=thought,
            metadata=metadata,
            timestamp=datetime.now(),
            branch_from=branch_from,
            is_revision=bool(metadata.get("is_revision", False)),
            revises=metadata.get("revises"),
        )
        self.current_step += 1
        self.thoughts.append(entry)

        if branch_from is not None:
            self.branches.setdefault(branch_from, []).append(entry.step)

        return entry

    def revise(self, step: int, thought: str, metadata: Optional[Dict[str, Any]] = None) -> ThoughtEntry:
        """Append a correction of an earlier step."""
        if step < 0 or step >= self.current_step:
            raise ValueError(f"cannot revise unknown step {step}")
        metadata = dict(metadata or {})
        metadata.update({"is_revision": True, "revises": step})
        return self.add_thought(thought, metadata)

    def record_decision(
        self,
        outcome: str,
        reasoning: str,
        subject_id: Optional[str] = None,
        kind: DecisionKind = DecisionKind.NOTE,
        confidence: Optional[float] = None,
    ) -> Decision:
        decision = Decision(
            subject_id=subject_id,
            kind=kind,
            outcome=outcome,
            reasoning=reasoning,
            confidence=calculate_confidence(reasoning) if confidence is None else confidence,
            timestamp=datetime.now(),
            step=self.current_step,
        )
        self.decisions.append(decision)
        self.add_thought(f"decision: {outcome}", {"type": "decision", "kind": kind.value, "reasoning": reasoning})
        return decision

    def entries_since(self, step: int) -> List[ThoughtEntry]:
        return [t for t in self.thoughts if t.step >= step]

    def summary(self) -> Dict[str, Any]:
        return {
            "total_steps": self.current_step,
            "thought_count": len(self.thoughts),
            "decision_count": len(self.decisions),
            "branch_count": len(self.branches),
            "decisions_by_kind": dict(Counter(d.kind.value for d in self.decisions)),
            "decisions_by_outcome": dict(Counter(d.outcome for d in self.decisions)),
            "context": self.context,
            "latest_thought": asdict(self.thoughts[-1]) if self.thoughts else None,
            "latest_decision": asdict(self.decisions[-1]) if self.decisions else None,
        }

    def export(self) -> Dict[str, Any]:
        return {
            "context": self.context,
            "thoughts": [asdict(t) for t in self.thoughts],
            "decisions": [asdict(d) for d in self.decisions],
            "branches": sorted(self.branches.items()),
            "summary": self.summary(),
        }
