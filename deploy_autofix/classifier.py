"""Error classifier for deploy-autofix.

Matches an :class:`ErrorReport` against the signature library, falls back to
heuristic deep analysis for weak matches, and always returns exactly one
:class:`Classification`. Classification never raises: internal failures
degrade to an UNKNOWN verdict with zero confidence.
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from typing import Any

from .config import ClassifierTuning, get_config
from .signatures import Category, Signature, SignatureLibrary, Urgency, get_signature_library

logger = logging.getLogger(__name__)

UNCLASSIFIED = "unclassified"
RECURRING = "recurring_issue"


def _parse_dt(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        # Epoch milliseconds, as sent by JavaScript clients
        parsed = datetime.fromtimestamp(value / 1000, tz=UTC)
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


@dataclass(frozen=True)
class ReportContext:
    """Where and when an error was observed."""

    platform: str = "railway"
    timestamp: datetime | None = None
    stage: str = "production"
    path: str | None = None


@dataclass(frozen=True)
class ErrorReport:
    """An observed error, as submitted by a monitor or a client."""

    raw_message: str
    context: ReportContext = field(default_factory=ReportContext)
    stack_trace: tuple[str, ...] | None = None

    @property
    def frame_count(self) -> int:
        return len(self.stack_trace) if self.stack_trace else 0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ErrorReport:
        """Build a report from a loosely shaped submission.

        Accepts ``error`` or ``message`` for the text and either a nested
        ``context`` mapping or top-level context keys.
        """
        message = data.get("raw_message") or data.get("error") or data.get("message") or ""
        ctx = data.get("context") or {}
        stack = data.get("stack_trace")
        if isinstance(stack, str):
            stack = [line for line in stack.splitlines() if line.strip()]
        return cls(
            raw_message=str(message),
            context=ReportContext(
                platform=ctx.get("platform") or data.get("platform") or "railway",
                timestamp=_parse_dt(ctx.get("timestamp") or data.get("timestamp")),
                stage=ctx.get("stage") or data.get("stage") or "production",
                path=ctx.get("path") or data.get("path") or data.get("endpoint"),
            ),
            stack_trace=tuple(stack) if stack else None,
        )


@dataclass(frozen=True)
class Classification:
    """The classifier's verdict for one error report."""

    category: Category
    subcategory: str
    confidence: float
    urgency: Urgency
    matched_signature: str | None = None
    typical_resolution_time: str = "5-15 minutes"
    analysis_method: str = "pattern"
    contextual_factors: dict[str, Any] = field(default_factory=dict, compare=False)

    @classmethod
    def unknown(cls) -> Classification:
        return cls(
            category=Category.UNKNOWN,
            subcategory=UNCLASSIFIED,
            confidence=0.0,
            urgency=Urgency.LOW,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "category": self.category.value,
            "subcategory": self.subcategory,
            "confidence": self.confidence,
            "urgency": self.urgency.value,
            "matched_signature": self.matched_signature,
            "typical_resolution_time": self.typical_resolution_time,
            "analysis_method": self.analysis_method,
            "contextual_factors": self.contextual_factors,
        }


class OccurrenceTracker:
    """Bounded record of recent root-cause occurrences used for recurrence."""

    def __init__(self, window_seconds: int = 3600, capacity: int = 1000):
        self._window = timedelta(seconds=window_seconds)
        self._events: deque[tuple[str, datetime]] = deque(maxlen=capacity)

    def record(self, key: str, at: datetime) -> None:
        self._events.append((key, at))

    def count(self, key: str, now: datetime) -> int:
        cutoff = now - self._window
        return sum(1 for k, at in self._events if k == key and at >= cutoff)


class ErrorClassifier:
    """Signature matcher with a heuristic deep-analysis fallback."""

    def __init__(
        self,
        library: SignatureLibrary | None = None,
        tuning: ClassifierTuning | None = None,
        tracker: OccurrenceTracker | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self._library = library
        self._tuning = tuning
        self._clock = clock or (lambda: datetime.now(UTC))
        self._tracker = tracker
        self._platforms: set[str] | None = None

    @property
    def library(self) -> SignatureLibrary:
        if self._library is None:
            self._library = get_signature_library()
        return self._library

    @property
    def tuning(self) -> ClassifierTuning:
        if self._tuning is None:
            self._tuning = get_config().tuning
        return self._tuning

    @property
    def tracker(self) -> OccurrenceTracker:
        if self._tracker is None:
            self._tracker = OccurrenceTracker(self.tuning.recurrence_window_seconds)
        return self._tracker

    @property
    def known_platforms(self) -> set[str]:
        if self._platforms is None:
            self._platforms = {p.lower() for p in self.tuning.known_platforms}
        return self._platforms

    def note_platform(self, platform: str) -> None:
        """Mark a platform as having recognized remediation history."""
        self.known_platforms.add(platform.lower())

    def classify(self, report: ErrorReport) -> Classification:
        """Classify *report*. Never raises."""
        try:
            return self._classify(report)
        except Exception:
            logger.warning("Classification failed, degrading to UNKNOWN", exc_info=True)
            return Classification.unknown()

    def best_match(self, message: str) -> tuple[Signature | None, float]:
        """Highest scoring signature; ties keep the earlier declaration."""
        best: Signature | None = None
        best_confidence = 0.0
        for signature in self.library:
            score = signature.match_score(message)
            if score == 0:
                continue
            candidate = score * signature.base_confidence
            if candidate > best_confidence:
                best, best_confidence = signature, candidate
        return best, best_confidence

    def _classify(self, report: ErrorReport) -> Classification:
        signature, confidence = self.best_match(report.raw_message)
        now = self._clock()

        if signature is None:
            logger.info("No signature matched: %.80s", report.raw_message)
            return Classification.unknown()

        classification = Classification(
            category=signature.category,
            subcategory=signature.root_cause,
            confidence=confidence,
            urgency=signature.urgency,
            matched_signature=signature.name,
            typical_resolution_time=signature.typical_resolution_time,
        )

        tuning = self.tuning
        if confidence < tuning.match_threshold:
            classification = self._deep_analysis(report, classification, now)

        self.tracker.record(signature.name, report.context.timestamp or now)

        adjusted = classification.confidence + tuning.pattern_match_bonus
        if report.frame_count > tuning.deep_stack_frames:
            adjusted -= tuning.deep_stack_penalty
        if (report.context.platform or "").lower() in self.known_platforms:
            adjusted += tuning.platform_history_bonus

        return replace(classification, confidence=round(clamp(adjusted), 4))

    def _deep_analysis(
        self,
        report: ErrorReport,
        initial: Classification,
        now: datetime,
    ) -> Classification:
        tuning = self.tuning
        factors = {
            "timing": self._analyze_timing(report, now),
            "frequency": self._analyze_frequency(initial, now),
            "environment": {
                "platform": report.context.platform,
                "deployment_stage": report.context.stage,
            },
        }

        enhanced = replace(
            initial,
            confidence=min(initial.confidence + tuning.deep_analysis_bonus, tuning.deep_analysis_cap),
            analysis_method="deep_heuristic",
            contextual_factors=factors,
        )

        if factors["timing"]["is_deployment_related"]:
            enhanced = replace(
                enhanced,
                category=Category.DEPLOYMENT,
                confidence=max(enhanced.confidence, tuning.deployment_confidence_floor),
            )

        if factors["frequency"]["is_recurring"]:
            enhanced = replace(enhanced, urgency=Urgency.HIGH, subcategory=RECURRING)

        logger.debug(
            "Deep analysis: %s -> %s (%.2f)",
            initial.subcategory, enhanced.category.value, enhanced.confidence,
        )
        return enhanced

    def _analyze_timing(self, report: ErrorReport, now: datetime) -> dict[str, Any]:
        error_time = report.context.timestamp or now
        elapsed = (now - error_time).total_seconds()
        return {
            "is_recent": elapsed < self.tuning.recent_window_seconds,
            "is_deployment_related": elapsed < self.tuning.deployment_window_seconds,
            "hour_of_day": error_time.hour,
            "is_business_hours": 9 <= error_time.hour <= 17,
            "day_of_week": error_time.weekday(),
        }

    def _analyze_frequency(self, initial: Classification, now: datetime) -> dict[str, Any]:
        key = initial.matched_signature or initial.subcategory
        seen = self.tracker.count(key, now)
        return {
            "is_recurring": seen + 1 >= self.tuning.recurrence_threshold,
            "similar_errors_count": seen,
        }
