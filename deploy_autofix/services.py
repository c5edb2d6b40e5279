"""Component wiring shared by the HTTP API and the CLI."""

from __future__ import annotations

from dataclasses import dataclass

from .alerts import AlertSink
from .analyzer import RepositoryAnalyzer
from .db import close_db
from .executor import RemediationExecutor
from .github_client import GitHubClient
from .leases import create_lease_service
from .monitor import DeploymentMonitor
from .pipeline import RemediationPipeline
from .platform_client import RailwayClient
from .store import HistoryStore, create_store


@dataclass
class Services:
    store: HistoryStore
    sink: AlertSink
    github: GitHubClient
    platform: RailwayClient
    analyzer: RepositoryAnalyzer
    executor: RemediationExecutor
    pipeline: RemediationPipeline
    monitor: DeploymentMonitor

    async def close(self) -> None:
        await self.pipeline.scheduler.drain()
        await self.github.close()
        await self.platform.close()
        await close_db()


def build_services(
    github: GitHubClient | None = None,
    platform: RailwayClient | None = None,
    store: HistoryStore | None = None,
) -> Services:
    """Build the component graph from the global configuration."""
    store = store or create_store()
    github = github or GitHubClient()
    platform = platform or RailwayClient()
    sink = AlertSink(store)
    analyzer = RepositoryAnalyzer(github)
    executor = RemediationExecutor(github, store, create_lease_service())
    pipeline = RemediationPipeline(analyzer=analyzer, executor=executor, sink=sink)
    monitor = DeploymentMonitor(pipeline=pipeline, platform=platform, sink=sink)
    return Services(
        store=store,
        sink=sink,
        github=github,
        platform=platform,
        analyzer=analyzer,
        executor=executor,
        pipeline=pipeline,
        monitor=monitor,
    )


# Global services instance (lazy-loaded)
_services: Services | None = None


def get_services() -> Services:
    """Get the global services instance."""
    global _services
    if _services is None:
        _services = build_services()
    return _services


def reset_services() -> None:
    """Reset the global services (for testing)."""
    global _services
    _services = None
