"""Pytest fixtures for deploy-autofix tests."""

from __future__ import annotations

import base64
import hashlib
import json
import re
from datetime import UTC, datetime, timedelta
from urllib.parse import unquote

import pytest
import respx
from httpx import Request, Response

from deploy_autofix.config import GitHubConfig, SupabaseConfig, reset_config
from deploy_autofix.db import PostgrestClient, reset_db
from deploy_autofix.github_client import GitHubClient
from deploy_autofix.platform_client import DeploymentLogs, ProbeOutcome, ProbeResult
from deploy_autofix.services import reset_services
from deploy_autofix.signatures import get_signature_library
from deploy_autofix.templates import render_package_json, render_railway_json, render_server

GITHUB_API = "https://api.github.com"
SUPABASE_URL = "https://test.supabase.co"
WEBHOOK_SECRET = "whsec-test"
API_KEY = "test-key"

# =============================================================================
# Environment Setup
# =============================================================================


@pytest.fixture(autouse=True)
def setup_env(monkeypatch):
    """Set up test environment variables."""
    for name in ("TARGET_REPO", "SUPABASE_URL", "SUPABASE_SERVICE_KEY", "AUTO_MERGE_FIXES"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("GITHUB_TOKEN", "gh-test-token")
    monkeypatch.setenv("RAILWAY_TOKEN", "railway-test-token")
    monkeypatch.setenv("RAILWAY_SERVICE_ID", "svc-1")
    monkeypatch.setenv("RAILWAY_HEALTH_URL", "https://shop.up.railway.app/health")
    monkeypatch.setenv("RAILWAY_WEBHOOK_SECRET", WEBHOOK_SECRET)
    monkeypatch.setenv("AUTOFIX_API_KEYS", API_KEY)
    monkeypatch.setenv("MERGE_GRACE_SECONDS", "0")
    monkeypatch.setenv("RESTART_DELAY_SECONDS", "0")
    monkeypatch.setenv("STORE_BACKEND", "memory")
    monkeypatch.setenv("LEASE_BACKEND", "memory")

    # Reset global state after each test
    yield
    reset_config()
    reset_services()
    reset_db()


@pytest.fixture
def library():
    return get_signature_library()


class Clock:
    """Settable clock for time-dependent tests."""

    def __init__(self, now: datetime | None = None):
        self.now = now or datetime(2024, 6, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return Clock()


class SleepRecorder:
    def __init__(self):
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def sleep():
    return SleepRecorder()


# =============================================================================
# Mock HTTP
# =============================================================================


@pytest.fixture
def mock_http():
    """Mock all httpx traffic."""
    with respx.mock(assert_all_called=False) as respx_mock:
        yield respx_mock


@pytest.fixture
def db_client():
    return PostgrestClient(SupabaseConfig(url=SUPABASE_URL, service_key="test-service-key"))


@pytest.fixture
def github():
    return GitHubClient(GitHubConfig(token="gh-test-token"))


def _sha(content: str) -> str:
    return hashlib.sha1(content.encode("utf-8")).hexdigest()


class FakeRepo:
    """In-memory repository served through respx routes on the GitHub API."""

    def __init__(self, mock: respx.MockRouter, repo: str, files: dict[str, str]):
        self.repo = repo
        self.branches: dict[str, dict[str, str]] = {"main": dict(files)}
        self.pulls: list[dict] = []
        self.merges: list[int] = []
        self.writes: list[tuple[str, str]] = []
        self.conflicts: dict[str, int] = {}
        self.fail_writes: set[str] = set()
        self.merge_status = 200

        base = f"/repos/{re.escape(repo)}"
        mock.get(path__regex=rf"^{base}$").mock(
            return_value=Response(200, json={"default_branch": "main"})
        )
        self.ref_route = mock.get(path__regex=rf"^{base}/git/ref/heads/.+$").mock(
            return_value=Response(200, json={"object": {"sha": "base-sha"}})
        )
        self.branch_route = mock.post(path__regex=rf"^{base}/git/refs$").mock(
            side_effect=self._create_branch
        )
        self.list_route = mock.get(path__regex=rf"^{base}/contents$").mock(
            side_effect=self._list_root
        )
        mock.get(path__regex=rf"^{base}/contents/.+$").mock(side_effect=self._get_file)
        mock.put(path__regex=rf"^{base}/contents/.+$").mock(side_effect=self._put_file)
        self.pull_route = mock.post(path__regex=rf"^{base}/pulls$").mock(
            side_effect=self._create_pull
        )
        self.merge_route = mock.put(path__regex=rf"^{base}/pulls/\d+/merge$").mock(
            side_effect=self._merge
        )

    def _path(self, request: Request) -> str:
        return unquote(request.url.path.split("/contents/", 1)[1])

    def _create_branch(self, request: Request) -> Response:
        body = json.loads(request.content)
        name = body["ref"].removeprefix("refs/heads/")
        self.branches[name] = dict(self.branches["main"])
        return Response(201, json={"ref": body["ref"], "object": {"sha": body["sha"]}})

    def _list_root(self, request: Request) -> Response:
        files = self.branches[request.url.params.get("ref", "main")]
        names = sorted({path.split("/", 1)[0] for path in files})
        return Response(200, json=[{"name": name, "type": "file"} for name in names])

    def _get_file(self, request: Request) -> Response:
        files = self.branches[request.url.params.get("ref", "main")]
        path = self._path(request)
        if path not in files:
            return Response(404, json={"message": "Not Found"})
        content = files[path]
        return Response(200, json={
            "path": path,
            "sha": _sha(content),
            "content": base64.b64encode(content.encode("utf-8")).decode("ascii"),
        })

    def _put_file(self, request: Request) -> Response:
        body = json.loads(request.content)
        path = self._path(request)
        files = self.branches[body["branch"]]
        if path in self.fail_writes:
            return Response(500, json={"message": "Server Error"})
        if self.conflicts.get(path, 0) > 0:
            self.conflicts[path] -= 1
            return Response(409, json={"message": "sha does not match"})
        if path in files and body.get("sha") != _sha(files[path]):
            return Response(409, json={"message": "sha does not match"})
        if path not in files and body.get("sha"):
            return Response(422, json={"message": "sha wasn't supplied"})
        content = base64.b64decode(body["content"]).decode("utf-8")
        files[path] = content
        self.writes.append((body["branch"], path))
        return Response(201, json={"content": {"path": path, "sha": _sha(content)}})

    def _create_pull(self, request: Request) -> Response:
        body = json.loads(request.content)
        number = len(self.pulls) + 1
        self.pulls.append({**body, "number": number})
        return Response(201, json={
            "number": number,
            "html_url": f"https://github.com/{self.repo}/pull/{number}",
        })

    def _merge(self, request: Request) -> Response:
        number = int(request.url.path.rsplit("/", 2)[-2])
        if self.merge_status != 200:
            return Response(self.merge_status, json={"message": "Pull Request is not mergeable"})
        self.merges.append(number)
        return Response(200, json={"sha": "merge-sha", "merged": True})


def healthy_files() -> dict[str, str]:
    """A repository that already matches the deployment baseline."""
    return {
        "server.js": render_server(None),
        "package.json": render_package_json(None),
        "railway.json": render_railway_json(None),
        "README.md": "# shop\n",
    }


@pytest.fixture
def baseline():
    return healthy_files()


@pytest.fixture
def fake_repo(mock_http):
    """Factory for in-memory repositories behind the mocked GitHub API."""

    def make(files: dict[str, str] | None = None, repo: str = "acme/shop") -> FakeRepo:
        return FakeRepo(mock_http, repo, files if files is not None else healthy_files())

    return make


# =============================================================================
# Platform fake
# =============================================================================


class FakePlatform:
    """Scripted stand-in for RailwayClient."""

    def __init__(
        self,
        probes: list[ProbeOutcome] | None = None,
        datastore_ok: bool = True,
        logs: str = "",
    ):
        self.probes = list(probes or [])
        self.datastore_ok = datastore_ok
        self.logs = logs
        self.redeploys = 0
        self.probe_calls = 0
        self.datastore_checks = 0
        self.redeploy_error: Exception | None = None

    async def probe_health(self, url=None, timeout=None) -> ProbeResult:
        self.probe_calls += 1
        outcome = self.probes.pop(0) if self.probes else ProbeOutcome.HEALTHY
        status = {
            ProbeOutcome.HEALTHY: 200,
            ProbeOutcome.SERVER_ERROR: 503,
            ProbeOutcome.CLIENT_ERROR: 404,
        }.get(outcome)
        return ProbeResult(outcome, status_code=status)

    async def check_datastore(self, host=None, port=None, timeout=5.0) -> bool:
        self.datastore_checks += 1
        return self.datastore_ok

    async def redeploy(self, service_id=None) -> None:
        if self.redeploy_error is not None:
            raise self.redeploy_error
        self.redeploys += 1

    async def fetch_build_logs(self, deployment_id: str) -> DeploymentLogs:
        return DeploymentLogs(deployment_id, "FAILED", self.logs, "")

    async def close(self) -> None:
        return None


@pytest.fixture
def fake_platform():
    """Factory for scripted platform clients."""
    return FakePlatform
