"""Decision policy: confidence, impact and urgency to a remediation action.

Every function here is pure. The escalation flag is computed independently
of the action type, so AUTO_FIX may still notify a human.
"""

from __future__ import annotations

import logging
import math
import re
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from .classifier import Classification
from .config import PolicyConfig, get_config
from .impact import ImpactAssessment
from .signatures import Category, Urgency

if TYPE_CHECKING:
    from .store import FixAttempt

logger = logging.getLogger(__name__)

DEFAULT_RESOLUTION_WINDOW = "5-15 minutes"
_WINDOW_PATTERN = re.compile(r"(\d+)-(\d+)")


class ActionType(str, Enum):
    AUTO_FIX = "AUTO_FIX"
    SUPERVISED_FIX = "SUPERVISED_FIX"
    HUMAN_ANALYSIS = "HUMAN_ANALYSIS"
    ESCALATE = "ESCALATE"


@dataclass(frozen=True)
class RemediationAction:
    """Automation instruction for one classification + impact pair."""

    type: ActionType
    priority: str
    automation_level: str
    human_oversight: str

    @property
    def automatable(self) -> bool:
        return self.type in (ActionType.AUTO_FIX, ActionType.SUPERVISED_FIX)

    @classmethod
    def escalate(cls) -> RemediationAction:
        return cls(ActionType.ESCALATE, "CRITICAL", "NONE", "IMMEDIATE_INTERVENTION")

    def to_dict(self) -> dict[str, str]:
        return {
            "type": self.type.value,
            "priority": self.priority,
            "automation_level": self.automation_level,
            "human_oversight": self.human_oversight,
        }


@dataclass(frozen=True)
class RiskFactor:
    type: str
    severity: str
    description: str


@dataclass(frozen=True)
class Decision:
    """Full policy verdict for one error report."""

    classification: Classification
    impact: ImpactAssessment
    confidence: float
    action: RemediationAction
    escalate: bool
    estimated_resolution_time: str
    complexity: str = "MEDIUM"
    risk_factors: tuple[RiskFactor, ...] = ()
    decided_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "classification": self.classification.to_dict(),
            "impact": self.impact.to_dict(),
            "confidence": self.confidence,
            "action": self.action.to_dict(),
            "escalate": self.escalate,
            "estimated_resolution_time": self.estimated_resolution_time,
            "complexity": self.complexity,
            "risk_factors": [
                {"type": r.type, "severity": r.severity, "description": r.description}
                for r in self.risk_factors
            ],
            "decided_at": self.decided_at.isoformat(),
        }


def determine_action(
    confidence: float,
    urgency: Urgency,
    impact: ImpactAssessment | None = None,
    policy: PolicyConfig | None = None,
) -> RemediationAction:
    """Map confidence and urgency to a remediation action."""
    policy = policy or PolicyConfig()

    if confidence >= policy.auto_fix_threshold and urgency == Urgency.HIGH:
        return RemediationAction(ActionType.AUTO_FIX, "IMMEDIATE", "FULL", "NOTIFICATION_ONLY")

    if confidence >= policy.supervised_fix_threshold:
        priority = "IMMEDIATE" if urgency == Urgency.HIGH else "HIGH"
        return RemediationAction(ActionType.SUPERVISED_FIX, priority, "SEMI", "APPROVAL_REQUIRED")

    if confidence >= policy.human_analysis_threshold:
        return RemediationAction(ActionType.HUMAN_ANALYSIS, "HIGH", "DIAGNOSTIC_ONLY", "FULL_CONTROL")

    return RemediationAction.escalate()


def should_escalate(
    confidence: float,
    impact: ImpactAssessment,
    category: Category,
) -> bool:
    """Whether a human must be notified, regardless of the action type."""
    return any((
        confidence < 0.5,
        impact.business_critical and confidence < 0.8,
        category == Category.UNKNOWN,
        impact.data_integrity and confidence < 0.9,
    ))


def estimate_resolution_time(window: str | None, confidence: float) -> str:
    """Scale a nominal "a-b minutes" window by diagnostic confidence."""
    base = window or DEFAULT_RESOLUTION_WINDOW

    if confidence > 0.9:
        low_factor, high_factor = 0.7, 0.7
    elif confidence < 0.6:
        low_factor, high_factor = 1.5, 2.0
    else:
        return base

    def scale(match: re.Match[str]) -> str:
        low, high = int(match.group(1)), int(match.group(2))
        return f"{math.ceil(low * low_factor)}-{math.ceil(high * high_factor)}"

    return _WINDOW_PATTERN.sub(scale, base, count=1)


def assess_complexity(
    confidence: float,
    impact: ImpactAssessment,
    category: Category,
) -> str:
    complexity = "MEDIUM"
    if category == Category.UNKNOWN or impact.data_integrity:
        complexity = "HIGH"
    if confidence > 0.9:
        complexity = "LOW"
    return complexity


def identify_risk_factors(confidence: float, impact: ImpactAssessment) -> tuple[RiskFactor, ...]:
    risks = []
    if impact.data_integrity:
        risks.append(RiskFactor("DATA_LOSS", "HIGH", "Potential data integrity compromise"))
    if confidence < 0.7:
        risks.append(RiskFactor("UNCERTAIN_DIAGNOSIS", "MEDIUM", "Low confidence in error analysis"))
    if impact.business_critical:
        risks.append(RiskFactor("BUSINESS_IMPACT", "HIGH", "Critical business functionality affected"))
    return tuple(risks)


class DecisionPolicy:
    """Composes the pure policy functions into a :class:`Decision`."""

    def __init__(self, config: PolicyConfig | None = None):
        self._config = config

    @property
    def config(self) -> PolicyConfig:
        if self._config is None:
            self._config = get_config().policy
        return self._config

    def decide(self, classification: Classification, impact: ImpactAssessment) -> Decision:
        confidence = classification.confidence
        return Decision(
            classification=classification,
            impact=impact,
            confidence=confidence,
            action=determine_action(confidence, classification.urgency, impact, self.config),
            escalate=should_escalate(confidence, impact, classification.category),
            estimated_resolution_time=estimate_resolution_time(
                classification.typical_resolution_time, confidence
            ),
            complexity=assess_complexity(confidence, impact, classification.category),
            risk_factors=identify_risk_factors(confidence, impact),
        )


@dataclass(frozen=True)
class LearningRecord:
    """What one remediation outcome taught us about the prediction."""

    recorded_at: datetime
    signature: str | None
    predicted_confidence: float
    success: bool
    accuracy_score: float
    lessons: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "recorded_at": self.recorded_at.isoformat(),
            "signature": self.signature,
            "predicted_confidence": self.predicted_confidence,
            "success": self.success,
            "accuracy_score": self.accuracy_score,
            "lessons": list(self.lessons),
        }


class AccuracyFeedback:
    """Closes the loop from remediation outcome back to the policy."""

    def __init__(self, config: PolicyConfig | None = None):
        self._config = config
        self._records: deque[LearningRecord] | None = None

    @property
    def config(self) -> PolicyConfig:
        if self._config is None:
            self._config = get_config().policy
        return self._config

    @property
    def records(self) -> deque[LearningRecord]:
        if self._records is None:
            self._records = deque(maxlen=self.config.learning_capacity)
        return self._records

    def calculate_accuracy(self, decision: Decision, attempt: FixAttempt) -> float:
        # TODO: compare estimated_resolution_time with the measured time to
        # healthy once FixAttempt records a verification timestamp.
        return self.config.placeholder_accuracy

    def extract_lessons(self, decision: Decision, attempt: FixAttempt) -> tuple[str, ...]:
        lessons = []
        if attempt.success and decision.confidence < 0.8:
            lessons.append("Confidence threshold may be too conservative")
        if not attempt.success and decision.confidence > 0.8:
            lessons.append("Pattern matching needs refinement for this error type")
        return tuple(lessons)

    def record(self, decision: Decision, attempt: FixAttempt) -> LearningRecord:
        record = LearningRecord(
            recorded_at=datetime.now(UTC),
            signature=decision.classification.matched_signature,
            predicted_confidence=decision.confidence,
            success=attempt.success,
            accuracy_score=self.calculate_accuracy(decision, attempt),
            lessons=self.extract_lessons(decision, attempt),
        )
        self.records.append(record)
        if record.lessons:
            logger.info("Learning from %s: %s", record.signature, "; ".join(record.lessons))
        return record
