"""HTTP API for deploy-autofix.

Platform webhooks are authenticated by HMAC signature. Every other write
endpoint requires an ``X-API-Key`` from AUTOFIX_API_KEYS. Read endpoints are
open. Slow work (webhook handling, repository remediation) runs as a
background task after the request has been acknowledged.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any

from fastapi import BackgroundTasks, Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from . import __version__
from .classifier import ErrorReport
from .config import get_config
from .errors import InvalidTransition, SignatureVerificationFailure
from .monitor import DEFAULT_TARGET
from .services import Services, get_services

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Railway-Signature"

# =============================================================================
# Pydantic request models
# =============================================================================


class ErrorSubmission(BaseModel):
    error: str | None = None
    message: str | None = None
    raw_message: str | None = None
    stack_trace: str | list[str] | None = None
    context: dict[str, Any] | None = None
    platform: str | None = None
    timestamp: str | float | None = None
    endpoint: str | None = None
    repository: str | None = None

    def to_report(self) -> ErrorReport:
        return ErrorReport.from_dict(self.model_dump(exclude_none=True))


class ProbeRequest(BaseModel):
    target: str = DEFAULT_TARGET


# =============================================================================
# Auth helpers
# =============================================================================


async def verify_api_key(x_api_key: str | None = Header(None)) -> str:
    """Verify the API key for write operations."""
    config = get_config()
    if not x_api_key or x_api_key not in config.api.api_keys:
        raise HTTPException(status_code=401, detail="Invalid API key")
    return x_api_key


# =============================================================================
# Application factory
# =============================================================================


def create_app(services: Services | None = None) -> FastAPI:
    """Create the deploy-autofix HTTP API application."""

    def svc() -> Services:
        return services or get_services()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        await svc().close()

    app = FastAPI(
        title="deploy-autofix",
        description="Deployment failure classification and automated remediation",
        version=__version__,
        lifespan=lifespan,
    )

    async def run_reported(stage: str, call: Callable[[], Awaitable[Any]]) -> None:
        """Background work: failures become CRITICAL alerts, never silent."""
        try:
            await call()
        except Exception as e:
            logger.exception("Background %s failed", stage)
            await svc().sink.on_pipeline_failure(stage, e)

    # --------------------------------------------------------------------- #
    # ERRORS
    # --------------------------------------------------------------------- #

    @app.post("/errors")
    async def submit_error(
        submission: ErrorSubmission,
        background_tasks: BackgroundTasks,
        _key: str = Depends(verify_api_key),
    ) -> dict[str, Any]:
        """Classify an error report and dispatch remediation when warranted."""
        try:
            report = submission.to_report()
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e)) from None
        if not report.raw_message:
            raise HTTPException(status_code=422, detail="error message is required")

        pipeline = svc().pipeline
        result = await pipeline.diagnose(report)
        repository = submission.repository or get_config().github.target_repo

        remediation = "not_required"
        if await pipeline.triage(result, repository):
            assert repository is not None
            background_tasks.add_task(
                run_reported, "remediate", lambda: pipeline.remediate(result, repository)
            )
            remediation = "dispatched"

        return {**result.to_dict(), "remediation": remediation, "repository": repository}

    # --------------------------------------------------------------------- #
    # WEBHOOKS
    # --------------------------------------------------------------------- #

    @app.post("/webhooks/railway", status_code=202)
    async def railway_webhook(request: Request, background_tasks: BackgroundTasks) -> Any:
        raw = await request.body()
        monitor = svc().monitor
        try:
            event = monitor.parse_webhook(raw, request.headers.get(SIGNATURE_HEADER))
        except SignatureVerificationFailure as e:
            logger.warning("Rejected platform webhook: %s", e)
            return JSONResponse(status_code=401, content={"detail": "Unauthorized"})
        except ValueError:
            raise HTTPException(status_code=400, detail="Malformed webhook body") from None

        background_tasks.add_task(run_reported, "monitor", lambda: monitor.handle_event(event))
        return {"accepted": True, "type": event.get("type")}

    # --------------------------------------------------------------------- #
    # PROBES & TARGETS
    # --------------------------------------------------------------------- #

    @app.post("/probe", status_code=202)
    async def probe(
        background_tasks: BackgroundTasks,
        request: ProbeRequest | None = None,
        _key: str = Depends(verify_api_key),
    ) -> dict[str, Any]:
        """Dispatch one health probe; the outcome shows up in /health and /alerts."""
        target = request.target if request else DEFAULT_TARGET
        monitor = svc().monitor
        background_tasks.add_task(run_reported, "monitor", lambda: monitor.probe(target))
        return {"target": target, "state": monitor.state(target).value, "dispatched": True}

    @app.post("/targets/{target}/acknowledge")
    async def acknowledge(target: str, _key: str = Depends(verify_api_key)) -> dict[str, Any]:
        try:
            state = svc().monitor.acknowledge(target)
        except InvalidTransition as e:
            raise HTTPException(status_code=409, detail=str(e)) from None
        return {"target": target, "state": state.value}

    # --------------------------------------------------------------------- #
    # ALERTS & HISTORY
    # --------------------------------------------------------------------- #

    @app.get("/alerts")
    async def alerts() -> dict[str, Any]:
        return await svc().sink.get_alerts()

    @app.post("/alerts/{alert_id}/resolve")
    async def resolve_alert(alert_id: str, _key: str = Depends(verify_api_key)) -> dict[str, Any]:
        alert = await svc().sink.resolve_alert(alert_id)
        if alert is None:
            raise HTTPException(status_code=404, detail="Alert not found")
        return alert.to_dict()

    @app.get("/fix-history")
    async def fix_history(limit: int = 50) -> list[dict[str, Any]]:
        fixes = await svc().store.list_fixes(limit)
        return [attempt.to_dict() for attempt in fixes]

    @app.get("/metrics")
    async def metrics() -> dict[str, Any]:
        data = await svc().sink.metrics()
        data["targets"] = svc().monitor.states()
        return data

    # --------------------------------------------------------------------- #
    # HEALTH
    # --------------------------------------------------------------------- #

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {"status": "ok", "version": __version__, "targets": svc().monitor.states()}

    return app


# =============================================================================
# MAIN
# =============================================================================


def main() -> None:
    """Entry point for the HTTP API server."""
    import uvicorn

    config = get_config()
    host = config.api.host
    port = config.api.port

    # Allow CLI overrides
    for arg in sys.argv[1:]:
        if arg.startswith("--host="):
            host = arg.split("=", 1)[1]
        elif arg.startswith("--port="):
            port = int(arg.split("=", 1)[1])

    uvicorn.run(
        "deploy_autofix.api:create_app",
        factory=True,
        host=host,
        port=port,
        access_log=config.api.access_log,
    )


if __name__ == "__main__":
    main()
