"""Impact assessment, independent of classification.

Stateless predicates over the report text and request path.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from .classifier import ErrorReport

USER_FACING_INDICATORS = (
    "server error", "500", "503", "service unavailable",
    "connection refused", "timeout", "cannot connect",
)

CRITICAL_PATHS = (
    "/auth", "/login", "/payment", "/checkout",
    "/api/users", "/api/matches", "/api/messages",
)

DATA_THREATS = (
    "mongodb error", "database", "transaction failed",
    "data corruption", "connection pool",
)

AVAILABILITY_INDICATORS = (
    "cannot start", "failed to bind", "service down",
    "health check failed", "boot timeout",
)

WEIGHTS = {
    "business_critical": 0.4,
    "user_facing": 0.3,
    "data_integrity": 0.2,
    "service_availability": 0.1,
}


class Severity(str, Enum):
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


def severity_for(score: float) -> Severity:
    if score >= 0.8:
        return Severity.CRITICAL
    if score >= 0.6:
        return Severity.HIGH
    if score >= 0.3:
        return Severity.MEDIUM
    return Severity.LOW


@dataclass(frozen=True)
class ImpactAssessment:
    """Business, user and data impact of one error."""

    user_facing: bool = False
    business_critical: bool = False
    data_integrity: bool = False
    service_availability: bool = False
    overall_score: float = 0.0
    severity: Severity = Severity.LOW

    @classmethod
    def from_flags(
        cls,
        user_facing: bool = False,
        business_critical: bool = False,
        data_integrity: bool = False,
        service_availability: bool = False,
    ) -> ImpactAssessment:
        flags = {
            "user_facing": user_facing,
            "business_critical": business_critical,
            "data_integrity": data_integrity,
            "service_availability": service_availability,
        }
        score = round(min(1.0, sum(WEIGHTS[k] for k, v in flags.items() if v)), 4)
        return cls(**flags, overall_score=score, severity=severity_for(score))

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_facing": self.user_facing,
            "business_critical": self.business_critical,
            "data_integrity": self.data_integrity,
            "service_availability": self.service_availability,
            "overall_score": self.overall_score,
            "severity": self.severity.value,
        }


def _contains_any(text: str, needles: tuple[str, ...]) -> bool:
    return any(needle in text for needle in needles)


class ImpactAssessor:
    """Scores the impact of an error report."""

    def assess(self, report: ErrorReport) -> ImpactAssessment:
        message = report.raw_message.lower()
        path = report.context.path or ""
        return ImpactAssessment.from_flags(
            user_facing=_contains_any(message, USER_FACING_INDICATORS),
            business_critical=_contains_any(path, CRITICAL_PATHS),
            data_integrity=_contains_any(message, DATA_THREATS),
            service_availability=_contains_any(message, AVAILABILITY_INDICATORS),
        )
