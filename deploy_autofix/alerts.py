"""Alert sink and rolling metrics.

Every component reports outcomes here. Low-severity alerts resolve
themselves once the retention window has elapsed; ERROR and CRITICAL alerts
stay active until resolved explicitly. Expiry is applied lazily whenever
alerts are read, so no timer tasks are kept.
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from .config import AlertConfig, get_config
from .store import Alert, AlertSeverity, FixAttempt, HistoryStore, create_store

logger = logging.getLogger(__name__)

FIX_SUCCESS = "FIX_SUCCESS"
FIX_FAILED = "FIX_FAILED"
DEPLOYMENT_ERROR = "DEPLOYMENT_ERROR"
DEPLOYMENT_SUCCEEDED = "DEPLOYMENT_SUCCEEDED"
REPOSITORY_FIXED = "REPOSITORY_FIXED"
LOW_SUCCESS_RATE = "LOW_SUCCESS_RATE"
HEALTH_CHECK_FAILED = "HEALTH_CHECK_FAILED"
PIPELINE_FAILURE = "PIPELINE_FAILURE"
ESCALATION = "ESCALATION"
HUMAN_REVIEW = "HUMAN_REVIEW"

COMPONENTS = ("classifier", "decision_policy", "executor", "monitor", "store")

_LOG_LEVELS = {
    AlertSeverity.INFO: logging.INFO,
    AlertSeverity.SUCCESS: logging.INFO,
    AlertSeverity.WARNING: logging.WARNING,
    AlertSeverity.ERROR: logging.ERROR,
    AlertSeverity.CRITICAL: logging.CRITICAL,
}


class AlertSink:
    """Records alerts and derives metrics from alerts and fix history."""

    def __init__(
        self,
        store: HistoryStore | None = None,
        config: AlertConfig | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self._store = store
        self._config = config
        self._clock = clock or (lambda: datetime.now(UTC))
        self._component_errors: dict[str, str] = {}

    @property
    def store(self) -> HistoryStore:
        if self._store is None:
            self._store = create_store()
        return self._store

    @property
    def config(self) -> AlertConfig:
        if self._config is None:
            self._config = get_config().alerts
        return self._config

    async def create_alert(
        self,
        type: str,
        severity: AlertSeverity,
        message: str,
        data: dict[str, Any] | None = None,
    ) -> Alert:
        alert = Alert(
            type=type,
            severity=severity,
            message=message,
            data=data or {},
            created_at=self._clock(),
        )
        await self.store.add_alert(alert)
        logger.log(_LOG_LEVELS[severity], "Alert %s [%s]: %s", type, severity.value, message)
        return alert

    async def resolve_alert(self, alert_id: str) -> Alert | None:
        """Resolve an alert. Resolving an already-resolved alert is a no-op.

        Returns:
            The alert, or None when no alert has that id.
        """
        alert = await self.store.get_alert(alert_id)
        if alert is None:
            return None
        if alert.resolve(self._clock()):
            await self.store.save_alert(alert)
            logger.info("Alert %s resolved", alert_id)
        return alert

    async def _expire(self) -> list[Alert]:
        """Load all alerts, auto-resolving expired low-severity ones."""
        alerts = await self.store.list_alerts()
        retention = timedelta(seconds=self.config.retention_seconds)
        now = self._clock()
        for alert in alerts:
            if alert.active and not alert.severity.requires_resolution:
                expires_at = alert.created_at + retention
                if now >= expires_at and alert.resolve(expires_at):
                    await self.store.save_alert(alert)
        return alerts

    async def active_alerts(self) -> list[Alert]:
        return [a for a in await self._expire() if a.active]

    async def get_alerts(self) -> dict[str, Any]:
        alerts = await self._expire()
        return {
            "active": [a.to_dict() for a in alerts if a.active],
            "recent": [a.to_dict() for a in alerts[-20:]],
            "total": len(alerts),
            "by_type": dict(Counter(a.type for a in alerts)),
        }

    async def metrics(self) -> dict[str, Any]:
        fixes = await self.store.list_fixes()
        alerts = await self._expire()
        hour_ago = self._clock() - timedelta(hours=1)
        fix_counts = Counter(kind.value for attempt in fixes for kind in attempt.fix_ids)
        return {
            "total_fixes": len(fixes),
            "successful_fixes": sum(1 for f in fixes if f.success),
            "success_rate": success_rate(fixes),
            "errors_last_hour": sum(
                1 for a in alerts
                if a.severity.requires_resolution and a.created_at > hour_ago
            ),
            "active_alerts": sum(1 for a in alerts if a.active),
            "last_fix_at": fixes[-1].applied_at.isoformat() if fixes else None,
            "most_common_fixes": [
                {"fix": name, "count": count} for name, count in fix_counts.most_common(5)
            ],
            "component_health": self.component_health(),
        }

    def report_component_error(self, component: str, error: str) -> None:
        self._component_errors[component] = error

    def clear_component_error(self, component: str) -> None:
        self._component_errors.pop(component, None)

    def component_health(self) -> dict[str, str]:
        return {
            name: "degraded" if name in self._component_errors else "healthy"
            for name in (*COMPONENTS, *sorted(set(self._component_errors) - set(COMPONENTS)))
        }

    async def system_health_check(self) -> Alert | None:
        """Raise a warning when the fix success rate falls below the floor."""
        try:
            fixes = await self.store.list_fixes()
        except Exception as e:
            return await self.create_alert(
                HEALTH_CHECK_FAILED,
                AlertSeverity.ERROR,
                f"System health check failed: {e}",
                {"error": str(e)},
            )
        rate = success_rate(fixes)
        if fixes and rate < self.config.low_success_rate:
            successful = sum(1 for f in fixes if f.success)
            return await self.create_alert(
                LOW_SUCCESS_RATE,
                AlertSeverity.WARNING,
                f"Fix success rate below {self.config.low_success_rate:.0%}: "
                f"{successful}/{len(fixes)}",
                {"success_rate": rate, "total_fixes": len(fixes)},
            )
        return None

    async def on_fix_attempted(self, attempt: FixAttempt) -> Alert:
        fixes = ", ".join(k.value for k in attempt.fix_ids) or "none"
        if attempt.success:
            alert = await self.create_alert(
                FIX_SUCCESS, AlertSeverity.INFO, f"Fix applied to {attempt.repository}: {fixes}",
                attempt.to_dict(),
            )
        else:
            alert = await self.create_alert(
                FIX_FAILED, AlertSeverity.WARNING, f"Fix attempt failed: {attempt.error}",
                attempt.to_dict(),
            )
        await self.system_health_check()
        return alert

    async def on_deployment_error(self, error: str, data: dict[str, Any] | None = None) -> Alert:
        return await self.create_alert(
            DEPLOYMENT_ERROR, AlertSeverity.ERROR, f"Deployment failed: {error}", data
        )

    async def on_repository_fixed(self, repository: str, data: dict[str, Any] | None = None) -> Alert:
        return await self.create_alert(
            REPOSITORY_FIXED, AlertSeverity.SUCCESS, f"Repository auto-fixed: {repository}",
            {"repository": repository, **(data or {})},
        )

    async def on_pipeline_failure(self, stage: str, error: BaseException | str) -> Alert:
        self.report_component_error(stage, str(error))
        return await self.create_alert(
            PIPELINE_FAILURE, AlertSeverity.CRITICAL, f"Pipeline stage {stage} failed: {error}",
            {"stage": stage, "error": str(error)},
        )

    async def on_escalation(self, reason: str, data: dict[str, Any] | None = None) -> Alert:
        return await self.create_alert(ESCALATION, AlertSeverity.CRITICAL, reason, data)


def success_rate(fixes: list[FixAttempt]) -> float:
    """Fraction of successful attempts; 1.0 when there is no history."""
    if not fixes:
        return 1.0
    return round(sum(1 for f in fixes if f.success) / len(fixes), 4)
