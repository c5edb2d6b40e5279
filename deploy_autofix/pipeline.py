"""Remediation pipeline.

Runs one error report through explicit stages:

    classify -> assess -> decide -> [analyze -> remediate]

The first three stages are pure. The bracketed stages touch the repository
and only run when the decision is automatable and a repository is given.
Every stage runs under :class:`StageScheduler`, which applies a timeout and
a retry budget; a stage that exhausts its budget raises an alert instead of
being dropped.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from typing import Any

from .alerts import HUMAN_REVIEW, AlertSink
from .analyzer import RepositoryAnalysis, RepositoryAnalyzer
from .classifier import Classification, ErrorClassifier, ErrorReport
from .decision import AccuracyFeedback, ActionType, Decision, DecisionPolicy, RemediationAction
from .errors import StageFailure, UnknownFixKindError
from .executor import LEASE_UNAVAILABLE, FixRationale, RemediationExecutor
from .impact import ImpactAssessment, ImpactAssessor
from .signatures import FixKind, SignatureLibrary, get_signature_library
from .store import AlertSeverity, FixAttempt

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StagePolicy:
    timeout_seconds: float
    retry_budget: int = 0
    # The pipeline stops waiting on timeout but the work runs to completion.
    shield: bool = False


DEFAULT_STAGE_POLICIES: dict[str, StagePolicy] = {
    "classify": StagePolicy(timeout_seconds=5),
    "assess": StagePolicy(timeout_seconds=5),
    "decide": StagePolicy(timeout_seconds=5),
    "analyze": StagePolicy(timeout_seconds=60, retry_budget=1),
    "remediate": StagePolicy(timeout_seconds=600, shield=True),
}

# Never retried: a second run cannot succeed where the first failed closed.
NON_RETRYABLE = (UnknownFixKindError,)


class StageScheduler:
    """Runs stages with per-stage timeouts and retry budgets.

    A stage callable may return a value or an awaitable. Only awaitables are
    bounded by the timeout; pure stages run inline.

    A shielded stage that times out keeps running in the background. If it
    later fails, *on_orphan_failure* is called with the stage name and the
    error.
    """

    def __init__(
        self,
        policies: dict[str, StagePolicy] | None = None,
        on_orphan_failure: Callable[[str, BaseException], Any] | None = None,
    ):
        self._policies = {**DEFAULT_STAGE_POLICIES, **(policies or {})}
        self._attempt_counts: dict[str, int] = defaultdict(int)
        self._orphans: set[asyncio.Future[Any]] = set()
        self.on_orphan_failure = on_orphan_failure

    def policy(self, stage: str) -> StagePolicy:
        return self._policies.get(stage, StagePolicy(timeout_seconds=30))

    def get_attempt_count(self, stage: str) -> int:
        return self._attempt_counts[stage]

    async def run(self, stage: str, call: Callable[[], Any]) -> Any:
        """Run *call* as *stage*.

        Raises:
            StageFailure: Timeout or error after the retry budget is spent.
            UnknownFixKindError: Propagated unchanged, never retried.
        """
        policy = self.policy(stage)
        last_error: BaseException | None = None

        for attempt in range(policy.retry_budget + 1):
            self._attempt_counts[stage] += 1
            inner: asyncio.Future[Any] | None = None
            try:
                result = call()
                if inspect.isawaitable(result):
                    if policy.shield:
                        inner = asyncio.ensure_future(result)
                        result = asyncio.shield(inner)
                    result = await asyncio.wait_for(result, policy.timeout_seconds)
                return result
            except NON_RETRYABLE:
                raise
            except asyncio.TimeoutError as e:
                logger.warning("Stage %s timed out after %.0fs", stage, policy.timeout_seconds)
                if inner is not None and not inner.done():
                    self._adopt(stage, inner)
                last_error = e
            except Exception as e:
                logger.warning("Stage %s failed (attempt %d): %s", stage, attempt + 1, e)
                last_error = e

        assert last_error is not None
        raise StageFailure(stage, last_error)

    def _adopt(self, stage: str, task: asyncio.Future[Any]) -> None:
        """Keep a timed-out shielded stage alive and report how it ends."""
        self._orphans.add(task)

        def finished(done: asyncio.Future[Any]) -> None:
            self._orphans.discard(done)
            if done.cancelled():
                return
            error = done.exception()
            if error is None:
                logger.info("Stage %s completed after its timeout", stage)
                return
            logger.error("Stage %s failed after its timeout: %s", stage, error)
            if self.on_orphan_failure is not None:
                outcome = self.on_orphan_failure(stage, error)
                if inspect.isawaitable(outcome):
                    report = asyncio.ensure_future(outcome)
                    self._orphans.add(report)
                    report.add_done_callback(self._orphans.discard)

        task.add_done_callback(finished)

    async def drain(self) -> None:
        """Wait for stages still running after a timeout."""
        while self._orphans:
            await asyncio.gather(*list(self._orphans), return_exceptions=True)


@dataclass
class PipelineResult:
    """Everything one pipeline run produced."""

    report: ErrorReport
    classification: Classification | None = None
    impact: ImpactAssessment | None = None
    decision: Decision | None = None
    analysis: RepositoryAnalysis | None = None
    attempt: FixAttempt | None = None
    errors: list[str] = field(default_factory=list)

    @property
    def remediated(self) -> bool:
        return self.attempt is not None and self.attempt.success

    @property
    def escalated(self) -> bool:
        return self.decision is not None and (
            self.decision.escalate or self.decision.action.type == ActionType.ESCALATE
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "classification": self.classification.to_dict() if self.classification else None,
            "impact": self.impact.to_dict() if self.impact else None,
            "decision": self.decision.to_dict() if self.decision else None,
            "analysis": self.analysis.to_dict() if self.analysis else None,
            "attempt": self.attempt.to_dict() if self.attempt else None,
            "escalated": self.escalated,
            "errors": self.errors,
        }


def risk_note(decision: Decision) -> str:
    if not decision.risk_factors:
        return "Low: no risk factors identified"
    return "; ".join(f"{r.severity}: {r.description}" for r in decision.risk_factors)


class RemediationPipeline:
    """Wires classifier, policy, analyzer, executor and alert sink together."""

    def __init__(
        self,
        classifier: ErrorClassifier | None = None,
        assessor: ImpactAssessor | None = None,
        policy: DecisionPolicy | None = None,
        analyzer: RepositoryAnalyzer | None = None,
        executor: RemediationExecutor | None = None,
        sink: AlertSink | None = None,
        feedback: AccuracyFeedback | None = None,
        scheduler: StageScheduler | None = None,
        library: SignatureLibrary | None = None,
    ):
        self.classifier = classifier or ErrorClassifier(library=library)
        self.assessor = assessor or ImpactAssessor()
        self.policy = policy or DecisionPolicy()
        self.analyzer = analyzer or RepositoryAnalyzer()
        self.executor = executor or RemediationExecutor()
        self.sink = sink or AlertSink()
        self.feedback = feedback or AccuracyFeedback()
        self.scheduler = scheduler or StageScheduler()
        if self.scheduler.on_orphan_failure is None:
            self.scheduler.on_orphan_failure = self.sink.on_pipeline_failure
        self._library = library

    @property
    def library(self) -> SignatureLibrary:
        if self._library is None:
            self._library = get_signature_library()
        return self._library

    def signature_fixes(self, classification: Classification) -> tuple[FixKind, ...]:
        if not classification.matched_signature:
            return ()
        signature = self.library.get(classification.matched_signature)
        return signature.fixes if signature else ()

    async def diagnose(self, report: ErrorReport) -> PipelineResult:
        """Run the pure stages only."""
        result = PipelineResult(report=report)
        try:
            result.classification = await self.scheduler.run(
                "classify", lambda: self.classifier.classify(report)
            )
            result.impact = await self.scheduler.run(
                "assess", lambda: self.assessor.assess(report)
            )
            result.decision = await self.scheduler.run(
                "decide", lambda: self.policy.decide(result.classification, result.impact)
            )
        except StageFailure as e:
            result.errors.append(str(e))
            await self.sink.on_pipeline_failure(e.stage, e.cause)
        return result

    async def run(self, report: ErrorReport, repository: str | None = None) -> PipelineResult:
        result = await self.diagnose(report)
        if await self.triage(result, repository):
            assert repository is not None
            await self.remediate(result, repository)
        return result

    async def triage(self, result: PipelineResult, repository: str | None) -> bool:
        """Raise escalation alerts and report whether remediation should run."""
        decision = result.decision
        if decision is None:
            return False

        logger.info(
            "Decision for %s: %s (confidence %.2f, escalate=%s)",
            decision.classification.subcategory, decision.action.type.value,
            decision.confidence, decision.escalate,
        )

        if decision.action.type == ActionType.ESCALATE:
            await self._escalate(result, "Confidence too low for automated handling")
            return False
        if decision.escalate:
            await self.sink.create_alert(
                HUMAN_REVIEW,
                AlertSeverity.WARNING,
                f"Human review requested for {decision.classification.subcategory}",
                decision.to_dict(),
            )

        return decision.action.automatable and bool(repository)

    async def remediate(self, result: PipelineResult, repository: str) -> None:
        decision = result.decision
        assert decision is not None

        try:
            result.analysis = await self.scheduler.run(
                "analyze", lambda: self.analyzer.analyze(repository)
            )
            fixes = (*result.analysis.recommended_fix_ids, *self.signature_fixes(decision.classification))
            if not fixes:
                logger.info("No applicable fixes for %s", repository)
                return

            rationale = FixRationale(
                confidence=decision.confidence,
                summary=(
                    f"{decision.classification.category.value}/"
                    f"{decision.classification.subcategory}: {result.report.raw_message[:200]}"
                ),
                risk_note=risk_note(decision),
                action=decision.action.type.value,
            )
            result.attempt = await self.scheduler.run(
                "remediate",
                lambda: self.executor.execute(
                    repository,
                    fixes,
                    rationale,
                    platform=result.report.context.platform,
                    # Supervised fixes wait for a human to merge.
                    auto_merge=None if decision.action.type == ActionType.AUTO_FIX else False,
                ),
            )
        except UnknownFixKindError as e:
            await self._escalate(result, f"Fix strategy outside the catalog: {e.name}")
            return
        except StageFailure as e:
            result.errors.append(str(e))
            await self.sink.on_pipeline_failure(e.stage, e.cause)
            return

        attempt = result.attempt
        if attempt.error == LEASE_UNAVAILABLE:
            # Another run holds the repository; nothing was attempted.
            logger.info("Remediation of %s deferred: repository lease is held", repository)
            return
        self.feedback.record(decision, attempt)
        await self.sink.on_fix_attempted(attempt)
        if attempt.success:
            self.classifier.note_platform(result.report.context.platform)
            await self.sink.on_repository_fixed(
                repository,
                {"pull_request_url": attempt.pull_request_url, "fixes": [k.value for k in attempt.fix_ids]},
            )

    async def _escalate(self, result: PipelineResult, reason: str) -> None:
        if result.decision is not None:
            result.decision = replace(
                result.decision, action=RemediationAction.escalate(), escalate=True
            )
        await self.sink.on_escalation(
            reason,
            {
                "message": result.report.raw_message[:500],
                "decision": result.decision.to_dict() if result.decision else None,
            },
        )
