"""Deployment platform client (Railway).

GraphQL calls for deployment logs, status and redeploys, plus the two
reachability checks the monitor runs on demand: an HTTP health probe and a
raw TCP connect to the data store.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any

import httpx

from .config import PlatformConfig, get_config
from .errors import PlatformAPIError

logger = logging.getLogger(__name__)

DEPLOYMENT_QUERY = """
query deployment($id: String!) {
  deployment(id: $id) {
    id
    status
    buildLogs
    deployLogs
  }
}
"""

REDEPLOY_MUTATION = """
mutation serviceInstanceRedeploy($serviceId: String!) {
  serviceInstanceRedeploy(serviceId: $serviceId)
}
"""


class ProbeOutcome(str, Enum):
    HEALTHY = "HEALTHY"
    CLIENT_ERROR = "CLIENT_ERROR"
    SERVER_ERROR = "SERVER_ERROR"
    CONNECTION_REFUSED = "CONNECTION_REFUSED"
    TIMEOUT = "TIMEOUT"
    NOT_CONFIGURED = "NOT_CONFIGURED"


@dataclass(frozen=True)
class ProbeResult:
    """Outcome of one health probe."""

    outcome: ProbeOutcome
    status_code: int | None = None
    elapsed_ms: float | None = None
    detail: str | None = None

    @property
    def healthy(self) -> bool:
        return self.outcome == ProbeOutcome.HEALTHY

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "status_code": self.status_code,
            "elapsed_ms": self.elapsed_ms,
            "detail": self.detail,
        }


@dataclass(frozen=True)
class DeploymentLogs:
    deployment_id: str
    status: str | None
    build_logs: str
    deploy_logs: str


def classify_status(status_code: int) -> ProbeOutcome:
    if status_code >= 500:
        return ProbeOutcome.SERVER_ERROR
    if status_code >= 400:
        return ProbeOutcome.CLIENT_ERROR
    return ProbeOutcome.HEALTHY


class RailwayClient:
    """Async client for the Railway GraphQL API and service health checks."""

    def __init__(
        self,
        config: PlatformConfig | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self._config = config
        self._client = client

    @property
    def config(self) -> PlatformConfig:
        if self._config is None:
            self._config = get_config().platform
        return self._config

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=30.0)
        return self._client

    async def _graphql(self, query: str, variables: dict[str, Any]) -> dict[str, Any]:
        try:
            response = await self.client.post(
                self.config.api_url,
                json={"query": query, "variables": variables},
                headers={
                    "Authorization": f"Bearer {self.config.token}",
                    "Content-Type": "application/json",
                },
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise PlatformAPIError(f"Railway API request failed: {e}") from e

        try:
            payload = response.json()
        except ValueError as e:
            raise PlatformAPIError(f"Railway API returned a non-JSON body: {e}") from e
        if not isinstance(payload, dict):
            raise PlatformAPIError("Railway API returned an unexpected payload")
        if payload.get("errors"):
            messages = "; ".join(err.get("message", "?") for err in payload["errors"])
            raise PlatformAPIError(f"Railway API error: {messages}")
        return payload.get("data") or {}

    async def fetch_build_logs(self, deployment_id: str) -> DeploymentLogs:
        data = await self._graphql(DEPLOYMENT_QUERY, {"id": deployment_id})
        deployment = data.get("deployment") or {}
        return DeploymentLogs(
            deployment_id=deployment_id,
            status=deployment.get("status"),
            build_logs=deployment.get("buildLogs") or "",
            deploy_logs=deployment.get("deployLogs") or "",
        )

    async def deployment_status(self, deployment_id: str) -> str | None:
        return (await self.fetch_build_logs(deployment_id)).status

    async def redeploy(self, service_id: str | None = None) -> None:
        """Ask the platform to redeploy the service.

        Raises:
            PlatformAPIError: No service id is configured, or the API failed.
        """
        service_id = service_id or self.config.service_id
        if not service_id:
            raise PlatformAPIError("RAILWAY_SERVICE_ID is not configured")
        await self._graphql(REDEPLOY_MUTATION, {"serviceId": service_id})
        logger.info("Redeploy triggered for service %s", service_id)

    async def probe_health(self, url: str | None = None, timeout: float | None = None) -> ProbeResult:
        """GET the health endpoint once and classify the outcome. Never raises."""
        url = url or self.config.health_url
        if not url:
            return ProbeResult(ProbeOutcome.NOT_CONFIGURED, detail="RAILWAY_HEALTH_URL is not set")

        timeout = timeout or self.config.health_timeout_seconds
        start = time.perf_counter()
        try:
            response = await self.client.get(url, timeout=timeout)
        except httpx.ConnectError as e:
            return ProbeResult(ProbeOutcome.CONNECTION_REFUSED, detail=str(e))
        except httpx.TimeoutException as e:
            return ProbeResult(ProbeOutcome.TIMEOUT, detail=str(e) or "timed out")
        except httpx.TransportError as e:
            # Resets and protocol errors mean the process is not serving.
            return ProbeResult(ProbeOutcome.CONNECTION_REFUSED, detail=str(e))

        elapsed = round((time.perf_counter() - start) * 1000, 1)
        return ProbeResult(
            classify_status(response.status_code),
            status_code=response.status_code,
            elapsed_ms=elapsed,
        )

    async def check_datastore(
        self,
        host: str | None = None,
        port: int | None = None,
        timeout: float = 5.0,
    ) -> bool:
        """Whether a TCP connection to the data store can be opened."""
        host = host or self.config.database_host
        port = port or self.config.database_port
        if not host:
            logger.info("DATABASE_HOST not set; skipping data store check")
            return True
        try:
            _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout)
        except (OSError, asyncio.TimeoutError) as e:
            logger.warning("Data store %s:%s unreachable: %s", host, port, e)
            return False
        writer.close()
        await writer.wait_closed()
        return True

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
