"""Deployment monitor.

Tracks a small state machine per deployment target and reacts to two kinds
of trigger, both explicit: signed platform webhooks and on-demand probes.
There is no background polling.

    HEALTHY -> DIAGNOSING -> REMEDIATING -> VERIFYING -> HEALTHY | UNHEALTHY
                          \\-> ESCALATED (until acknowledged)
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .alerts import DEPLOYMENT_SUCCEEDED, AlertSink
from .classifier import ErrorReport, ReportContext
from .config import PlatformConfig, get_config
from .decision import ActionType
from .errors import (
    DeploymentUnreachable,
    InvalidTransition,
    PlatformAPIError,
    SignatureVerificationFailure,
)
from .platform_client import ProbeOutcome, ProbeResult, RailwayClient
from .pipeline import PipelineResult, RemediationPipeline
from .store import AlertSeverity

logger = logging.getLogger(__name__)

DEFAULT_TARGET = "default"
MAX_LOG_CHARS = 4000

HEALTH_CHECK_WARNING = "HEALTH_CHECK_WARNING"
RESOURCE_CONSTRAINT = "RESOURCE_CONSTRAINT"


class TargetState(str, Enum):
    HEALTHY = "HEALTHY"
    DIAGNOSING = "DIAGNOSING"
    REMEDIATING = "REMEDIATING"
    VERIFYING = "VERIFYING"
    UNHEALTHY = "UNHEALTHY"
    ESCALATED = "ESCALATED"


TRANSITIONS: dict[TargetState, frozenset[TargetState]] = {
    TargetState.HEALTHY: frozenset({TargetState.DIAGNOSING}),
    TargetState.DIAGNOSING: frozenset({
        TargetState.REMEDIATING, TargetState.ESCALATED,
        TargetState.HEALTHY, TargetState.UNHEALTHY,
    }),
    TargetState.REMEDIATING: frozenset({
        TargetState.VERIFYING, TargetState.UNHEALTHY, TargetState.ESCALATED,
    }),
    TargetState.VERIFYING: frozenset({
        TargetState.HEALTHY, TargetState.UNHEALTHY, TargetState.ESCALATED,
    }),
    TargetState.UNHEALTHY: frozenset({
        TargetState.DIAGNOSING, TargetState.HEALTHY, TargetState.ESCALATED,
    }),
    # Only acknowledge() leaves ESCALATED.
    TargetState.ESCALATED: frozenset(),
}

IN_FLIGHT = frozenset({TargetState.DIAGNOSING, TargetState.REMEDIATING, TargetState.VERIFYING})


def sign_payload(raw: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), raw, hashlib.sha256).hexdigest()


def verify_signature(raw: bytes, signature: str | None, secret: str | None) -> None:
    """Check a hex HMAC-SHA256 signature over the raw request body.

    Raises:
        SignatureVerificationFailure: Secret or signature missing, or mismatch.
    """
    if not secret or not signature:
        raise SignatureVerificationFailure("Missing webhook secret or signature")
    expected = sign_payload(raw, secret).encode("ascii")
    # Header values may carry arbitrary latin-1 text; compare as bytes.
    supplied = signature.strip().lower().encode("utf-8", "surrogateescape")
    if not hmac.compare_digest(expected, supplied):
        raise SignatureVerificationFailure("Webhook signature mismatch")


class DeploymentMonitor:
    """Reacts to deployment events and probes, driving remediation."""

    def __init__(
        self,
        pipeline: RemediationPipeline | None = None,
        platform: RailwayClient | None = None,
        sink: AlertSink | None = None,
        config: PlatformConfig | None = None,
        repository: str | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.pipeline = pipeline or RemediationPipeline(sink=sink)
        self.platform = platform or RailwayClient(config=config)
        self.sink = sink or self.pipeline.sink
        self._config = config
        self._repository = repository
        self._sleep = sleep
        self._states: dict[str, TargetState] = {}

    @property
    def config(self) -> PlatformConfig:
        if self._config is None:
            self._config = get_config().platform
        return self._config

    @property
    def repository(self) -> str | None:
        return self._repository or get_config().github.target_repo

    # ------------------------------------------------------------------ #
    # STATE
    # ------------------------------------------------------------------ #

    def state(self, target: str = DEFAULT_TARGET) -> TargetState:
        return self._states.get(target, TargetState.HEALTHY)

    def states(self) -> dict[str, str]:
        return {target: state.value for target, state in self._states.items()}

    def _transition(self, target: str, new: TargetState) -> None:
        current = self.state(target)
        if new not in TRANSITIONS[current]:
            raise InvalidTransition(f"{target}: {current.value} -> {new.value}")
        self._states[target] = new
        logger.info("Target %s: %s -> %s", target, current.value, new.value)

    def acknowledge(self, target: str = DEFAULT_TARGET) -> TargetState:
        """Clear an escalation after human action."""
        if self.state(target) != TargetState.ESCALATED:
            raise InvalidTransition(f"{target} is not escalated")
        self._states[target] = TargetState.HEALTHY
        logger.info("Target %s acknowledged, back to HEALTHY", target)
        return TargetState.HEALTHY

    async def escalate(self, target: str, reason: str, data: dict[str, Any] | None = None) -> None:
        self._transition(target, TargetState.ESCALATED)
        await self.sink.on_escalation(reason, {"target": target, **(data or {})})

    def _begin_diagnosis(self, target: str) -> bool:
        """Enter DIAGNOSING unless the target is busy or escalated."""
        state = self.state(target)
        if state in IN_FLIGHT:
            logger.info("Target %s already %s; not starting another run", target, state.value)
            return False
        if state == TargetState.ESCALATED:
            logger.info("Target %s escalated; waiting for acknowledgement", target)
            return False
        self._transition(target, TargetState.DIAGNOSING)
        return True

    async def _guarded(self, target: str, call: Callable[[], Awaitable[Any]]) -> Any:
        """Run an in-flight step; an unexpected failure escalates the target.

        The failure is reported as a CRITICAL alert instead of propagating,
        so the target never stays stuck in an in-flight state.
        """
        try:
            return await call()
        except Exception as e:
            logger.exception("Monitor run for %s failed", target)
            if self.state(target) in IN_FLIGHT:
                self._transition(target, TargetState.ESCALATED)
            await self.sink.on_pipeline_failure("monitor", e)
            return None

    def _mark_healthy(self, target: str) -> None:
        state = self.state(target)
        if state == TargetState.HEALTHY:
            return
        if state == TargetState.ESCALATED:
            logger.info("Target %s healthy but escalated; acknowledgement still required", target)
            return
        if state in IN_FLIGHT:
            # The running remediation owns the state until it finishes.
            logger.info("Target %s reported healthy while %s", target, state.value)
            return
        self._transition(target, TargetState.HEALTHY)

    # ------------------------------------------------------------------ #
    # WEBHOOKS
    # ------------------------------------------------------------------ #

    def parse_webhook(self, raw: bytes, signature: str | None) -> dict[str, Any]:
        """Verify and decode a platform webhook.

        Raises:
            SignatureVerificationFailure: Bad or missing signature.
            ValueError: Body is not a JSON object.
        """
        verify_signature(raw, signature, self.config.webhook_secret)
        event = json.loads(raw)
        if not isinstance(event, dict):
            raise ValueError("Webhook body must be a JSON object")
        return event

    async def handle_event(self, event: dict[str, Any]) -> PipelineResult | ProbeResult | None:
        event_type = event.get("type")
        data = event.get("data") or {}
        target = data.get("serviceId") or self.config.service_id or DEFAULT_TARGET
        logger.info("Platform event %s for %s", event_type, target)

        if event_type in ("deployment.failed", "deployment.crashed"):
            return await self.handle_deployment_failure(target, data, crashed=event_type.endswith("crashed"))
        if event_type == "deployment.succeeded":
            self._mark_healthy(target)
            await self.sink.create_alert(
                DEPLOYMENT_SUCCEEDED, AlertSeverity.SUCCESS,
                f"Deployment succeeded for {target}", {"deployment_id": data.get("id")},
            )
            return None
        if event_type == "service.updated":
            return await self.probe(target)

        logger.debug("Ignoring platform event %s", event_type)
        return None

    async def handle_deployment_failure(
        self,
        target: str,
        data: dict[str, Any],
        crashed: bool = False,
    ) -> PipelineResult | None:
        error = data.get("error") or ("Deployment crashed" if crashed else "Unknown deployment error")
        await self.sink.on_deployment_error(error, {"target": target, **data})
        if not self._begin_diagnosis(target):
            return None
        return await self._guarded(target, lambda: self._diagnose_failure(target, data, error))

    async def _diagnose_failure(
        self,
        target: str,
        data: dict[str, Any],
        error: str,
    ) -> PipelineResult:
        message = error
        deployment_id = data.get("id")
        if deployment_id:
            try:
                logs = await self.platform.fetch_build_logs(deployment_id)
                tail = (logs.build_logs + "\n" + logs.deploy_logs).strip()[-MAX_LOG_CHARS:]
                if tail:
                    message = f"{error}\n{tail}"
            except PlatformAPIError as e:
                logger.warning("Build logs unavailable for %s: %s", deployment_id, e)

        report = ErrorReport(
            raw_message=message,
            context=ReportContext(platform="railway", timestamp=datetime.now(UTC)),
        )
        return await self._remediate(target, report)

    # ------------------------------------------------------------------ #
    # PROBES
    # ------------------------------------------------------------------ #

    async def probe(self, target: str = DEFAULT_TARGET) -> ProbeResult:
        """Probe the health endpoint once and react to the outcome."""
        result = await self.platform.probe_health()
        logger.info("Probe of %s: %s", target, result.outcome.value)

        if result.outcome == ProbeOutcome.HEALTHY:
            self._mark_healthy(target)
        elif result.outcome == ProbeOutcome.CONNECTION_REFUSED:
            if self._begin_diagnosis(target):
                await self._guarded(target, lambda: self.emergency_restart(target))
        elif result.outcome == ProbeOutcome.SERVER_ERROR:
            if self._begin_diagnosis(target):
                await self._guarded(target, lambda: self._handle_server_error(target, result))
        elif result.outcome == ProbeOutcome.CLIENT_ERROR:
            await self.sink.create_alert(
                HEALTH_CHECK_WARNING, AlertSeverity.WARNING,
                f"Health check returned {result.status_code}", {"target": target, **result.to_dict()},
            )
        elif result.outcome == ProbeOutcome.TIMEOUT:
            await self.sink.create_alert(
                RESOURCE_CONSTRAINT, AlertSeverity.WARNING,
                "Health check timed out: possible resource constraint",
                {"target": target, **result.to_dict()},
            )
        return result

    async def _handle_server_error(self, target: str, probe: ProbeResult) -> PipelineResult:
        datastore_ok = await self.platform.check_datastore()
        message = f"Health check failed: {probe.status_code} service unavailable"
        if not datastore_ok:
            message += f"; ECONNREFUSED database {self.config.database_host} unreachable"
        report = ErrorReport(
            raw_message=message,
            context=ReportContext(platform="railway", timestamp=datetime.now(UTC), path="/health"),
        )
        return await self._remediate(target, report)

    async def _verify(self) -> ProbeResult:
        """Re-probe once.

        Raises:
            DeploymentUnreachable: The service still refuses connections.
        """
        result = await self.platform.probe_health()
        if result.outcome == ProbeOutcome.CONNECTION_REFUSED:
            raise DeploymentUnreachable(result.detail or "connection refused")
        return result

    async def emergency_restart(self, target: str) -> bool:
        """Redeploy, wait, re-probe once; escalate if still unhealthy."""
        self._transition(target, TargetState.REMEDIATING)
        try:
            await self.platform.redeploy()
        except PlatformAPIError as e:
            await self.escalate(target, f"Emergency restart failed: {e}")
            return False

        await self._sleep(self.config.restart_delay_seconds)
        self._transition(target, TargetState.VERIFYING)
        try:
            result = await self._verify()
        except DeploymentUnreachable as e:
            await self.escalate(target, f"Service still down after emergency restart: {e}")
            return False
        if not result.healthy:
            await self.escalate(
                target, "Service unhealthy after emergency restart", result.to_dict()
            )
            return False

        self._transition(target, TargetState.HEALTHY)
        return True

    # ------------------------------------------------------------------ #
    # REMEDIATION
    # ------------------------------------------------------------------ #

    async def _remediate(self, target: str, report: ErrorReport) -> PipelineResult:
        result = await self.pipeline.diagnose(report)
        remediate = await self.pipeline.triage(result, self.repository)

        if result.decision is not None and result.decision.action.type == ActionType.ESCALATE:
            self._transition(target, TargetState.ESCALATED)
            return result
        if not remediate:
            self._transition(target, TargetState.UNHEALTHY)
            return result

        self._transition(target, TargetState.REMEDIATING)
        assert self.repository is not None
        await self.pipeline.remediate(result, self.repository)

        if result.decision is not None and result.decision.action.type == ActionType.ESCALATE:
            self._transition(target, TargetState.ESCALATED)
            return result

        attempt = result.attempt
        if attempt is None or not attempt.auto_merged:
            # Nothing deployed yet: either the run failed or the PR awaits review.
            self._transition(target, TargetState.UNHEALTHY)
            return result

        self._transition(target, TargetState.VERIFYING)
        try:
            await self.platform.redeploy()
            await self._sleep(self.config.restart_delay_seconds)
            probe = await self._verify()
        except (PlatformAPIError, DeploymentUnreachable) as e:
            logger.warning("Post-fix verification of %s failed: %s", target, e)
            self._transition(target, TargetState.UNHEALTHY)
            return result

        self._transition(
            target, TargetState.HEALTHY if probe.healthy else TargetState.UNHEALTHY
        )
        return result
