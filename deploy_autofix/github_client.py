"""Async GitHub REST client for repository remediation.

Covers the calls the analyzer and executor need: refs, file contents
(base64), pull requests, squash merges and deployment listings. HTTP and
transport failures surface as :class:`RepositoryAccessError`; conditional
write conflicts as :class:`ContentConflictError`; unmergeable pull requests
as :class:`MergeConflictError`.
"""

from __future__ import annotations

import base64
import logging
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote

import httpx

from .config import GitHubConfig, get_config
from .errors import ContentConflictError, MergeConflictError, RepositoryAccessError

logger = logging.getLogger(__name__)

CONFLICT_STATUSES = frozenset({409, 422})


@dataclass(frozen=True)
class FileContent:
    """A file read from a repository at a given ref."""

    path: str
    sha: str
    content: str


@dataclass(frozen=True)
class PullRequest:
    number: int
    url: str
    head: str
    base: str


class GitHubClient:
    """Thin async wrapper over the GitHub REST API."""

    def __init__(
        self,
        config: GitHubConfig | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self._config = config
        self._client = client

    @property
    def config(self) -> GitHubConfig:
        if self._config is None:
            self._config = get_config().github
        return self._config

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=30.0)
        return self._client

    def _headers(self) -> dict[str, str]:
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if self.config.token:
            headers["Authorization"] = f"Bearer {self.config.token}"
        return headers

    def _url(self, repo: str, path: str = "") -> str:
        return f"{self.config.api_url}/repos/{repo}{path}"

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self.client.request(method, url, headers=self._headers(), **kwargs)
        except httpx.TransportError as e:
            raise RepositoryAccessError(f"{method} {url} failed: {e}") from e
        if response.is_error:
            raise RepositoryAccessError(
                f"{method} {url} returned {response.status_code}",
                status_code=response.status_code,
            )
        return response

    async def get_default_branch(self, repo: str) -> str:
        response = await self._request("GET", self._url(repo))
        return response.json().get("default_branch") or self.config.default_branch

    async def get_branch_sha(self, repo: str, branch: str) -> str:
        response = await self._request("GET", self._url(repo, f"/git/ref/heads/{branch}"))
        return response.json()["object"]["sha"]

    async def create_branch(self, repo: str, branch: str, sha: str) -> None:
        await self._request(
            "POST",
            self._url(repo, "/git/refs"),
            json={"ref": f"refs/heads/{branch}", "sha": sha},
        )
        logger.info("Created branch %s on %s at %s", branch, repo, sha[:7])

    async def list_root(self, repo: str, ref: str | None = None) -> list[str]:
        """Names of the entries at the top level of the repository."""
        params = {"ref": ref} if ref else None
        response = await self._request("GET", self._url(repo, "/contents"), params=params)
        return [entry["name"] for entry in response.json()]

    async def get_file(self, repo: str, path: str, ref: str | None = None) -> FileContent | None:
        """Read a file, or None when it does not exist."""
        params = {"ref": ref} if ref else None
        try:
            response = await self._request(
                "GET", self._url(repo, f"/contents/{quote(path)}"), params=params
            )
        except RepositoryAccessError as e:
            if e.status_code == 404:
                return None
            raise
        data = response.json()
        content = base64.b64decode(data.get("content", "")).decode("utf-8")
        return FileContent(path=path, sha=data["sha"], content=content)

    async def put_file(
        self,
        repo: str,
        path: str,
        content: str,
        message: str,
        branch: str,
        sha: str | None = None,
    ) -> str:
        """Create or update a file, conditional on *sha* when given.

        Returns:
            The new blob sha.

        Raises:
            ContentConflictError: The file changed since *sha* was read.
        """
        body: dict[str, Any] = {
            "message": message,
            "content": base64.b64encode(content.encode("utf-8")).decode("ascii"),
            "branch": branch,
        }
        if sha:
            body["sha"] = sha
        try:
            response = await self._request(
                "PUT", self._url(repo, f"/contents/{quote(path)}"), json=body
            )
        except RepositoryAccessError as e:
            if e.status_code in CONFLICT_STATUSES:
                raise ContentConflictError(
                    f"Conflicting write to {path}", status_code=e.status_code
                ) from e
            raise
        return response.json()["content"]["sha"]

    async def create_pull_request(
        self,
        repo: str,
        title: str,
        body: str,
        head: str,
        base: str,
    ) -> PullRequest:
        response = await self._request(
            "POST",
            self._url(repo, "/pulls"),
            json={"title": title, "body": body, "head": head, "base": base},
        )
        data = response.json()
        return PullRequest(number=data["number"], url=data["html_url"], head=head, base=base)

    async def merge_pull_request(
        self,
        repo: str,
        number: int,
        commit_title: str,
        method: str = "squash",
    ) -> str:
        """Merge a pull request once.

        Raises:
            MergeConflictError: GitHub refused the merge (not mergeable,
                checks failing, or head moved).
        """
        try:
            response = await self._request(
                "PUT",
                self._url(repo, f"/pulls/{number}/merge"),
                json={"commit_title": commit_title, "merge_method": method},
            )
        except RepositoryAccessError as e:
            if e.status_code in (405, 409, 422):
                raise MergeConflictError(f"PR #{number} could not be merged ({e.status_code})") from e
            raise
        return response.json().get("sha", "")

    async def list_deployments(self, repo: str, environment: str | None = None) -> list[dict[str, Any]]:
        params = {"environment": environment} if environment else None
        response = await self._request("GET", self._url(repo, "/deployments"), params=params)
        return response.json()  # type: ignore[no-any-return]

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
