"""Remediation executor.

Applies catalog fixes to a repository through a pull request:

1. Acquire the repository lease.
2. Cut a branch from the base branch tip.
3. Write each template file with a conditional write keyed on the blob
   sha; on conflict re-read and retry once, then skip that file only.
4. Open a pull request describing what was attempted and why.
5. Optionally wait a grace period and attempt one squash merge.
6. Append the attempt to the fix history.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any, TypeVar
from uuid import uuid4

from .config import RemediationConfig, get_config
from .errors import (
    ContentConflictError,
    LeaseUnavailable,
    MergeConflictError,
    RepositoryAccessError,
)
from .github_client import GitHubClient
from .leases import LeaseService, create_lease_service, hold_lease, lease_key
from .signatures import FixKind, catalog_order
from .store import FixAttempt, HistoryStore, create_store
from .templates import FixTemplate, Renderer, get_template

logger = logging.getLogger(__name__)

T = TypeVar("T")

PR_TITLE = "Auto-fix deployment issues"
LEASE_UNAVAILABLE = "lease_unavailable"


@dataclass(frozen=True)
class FixRationale:
    """Why a remediation was attempted, for the pull request body."""

    confidence: float | None = None
    summary: str = "Repository baseline scan"
    risk_note: str = "Low: standard configuration files generated from fixed templates"
    action: str | None = None


@dataclass
class FileOutcome:
    path: str
    written: bool
    reason: str | None = None


@dataclass
class FixOutcome:
    kind: FixKind
    files: list[FileOutcome] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return all(f.written for f in self.files)

    @property
    def any_written(self) -> bool:
        return any(f.written for f in self.files)


def render_pr_body(
    outcomes: list[FixOutcome],
    rationale: FixRationale,
    auto_merge: bool,
) -> str:
    """Pull request body. Always explains what was attempted, even on partial failure."""
    applied = [o for o in outcomes if o.complete]
    incomplete = [o for o in outcomes if not o.complete]

    lines = [
        "## Automated deployment fix",
        "",
        "### Applied fixes",
    ]
    if applied:
        lines += [f"- **{o.kind.value}**: {get_template(o.kind).description}" for o in applied]
    else:
        lines.append("_None fully applied._")

    if incomplete:
        lines += ["", "### Not fully applied"]
        for outcome in incomplete:
            skipped = [f for f in outcome.files if not f.written]
            details = ", ".join(f"`{f.path}` ({f.reason})" for f in skipped)
            lines.append(f"- {outcome.kind.value}: skipped {details}")

    confidence = (
        f"{rationale.confidence:.2f}" if rationale.confidence is not None else "n/a"
    )
    lines += [
        "",
        "### Rationale",
        f"- Trigger: {rationale.summary}",
        f"- Confidence: {confidence}",
    ]
    if rationale.action:
        lines.append(f"- Policy action: {rationale.action}")
    lines += [
        "",
        "### Risk",
        f"- {rationale.risk_note}",
        "",
        f"Auto-merge: {'enabled' if auto_merge else 'disabled'}",
    ]
    return "\n".join(lines) + "\n"


class RemediationExecutor:
    """Applies fixes to a repository and records every attempt."""

    def __init__(
        self,
        github: GitHubClient | None = None,
        store: HistoryStore | None = None,
        leases: LeaseService | None = None,
        config: RemediationConfig | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._github = github
        self._store = store
        self._leases = leases
        self._config = config
        self._sleep = sleep

    @property
    def github(self) -> GitHubClient:
        if self._github is None:
            self._github = GitHubClient()
        return self._github

    @property
    def store(self) -> HistoryStore:
        if self._store is None:
            self._store = create_store()
        return self._store

    @property
    def leases(self) -> LeaseService:
        if self._leases is None:
            self._leases = create_lease_service()
        return self._leases

    @property
    def config(self) -> RemediationConfig:
        if self._config is None:
            self._config = get_config().remediation
        return self._config

    def _branch_name(self) -> str:
        stamp = datetime.now(UTC).strftime("%Y%m%d-%H%M%S")
        return f"{self.config.branch_prefix}/{stamp}-{uuid4().hex[:6]}"

    async def _read(self, call: Callable[[], Awaitable[T]]) -> T:
        try:
            return await call()
        except RepositoryAccessError as e:
            logger.info("Read failed (%s), retrying once", e)
            return await call()

    async def execute(
        self,
        repo: str,
        fixes: Iterable[FixKind | str],
        rationale: FixRationale | None = None,
        base_branch: str | None = None,
        platform: str | None = None,
        auto_merge: bool | None = None,
    ) -> FixAttempt:
        """Apply *fixes* to *repo* through a pull request.

        *auto_merge* overrides the configured merge behaviour for this run.

        When another run holds the repository lease, returns an attempt with
        ``error == "lease_unavailable"`` without touching the repository or
        the history.

        Raises:
            UnknownFixKindError: A fix name is outside the catalog. Raised
                before any repository call.
        """
        kinds = catalog_order([FixKind.parse(f) for f in fixes])
        rationale = rationale or FixRationale()
        holder = f"executor-{uuid4().hex[:8]}"

        try:
            async with hold_lease(
                self.leases, lease_key(repo), holder, self.config.lease_ttl_seconds
            ):
                attempt = await self._run(
                    repo, kinds, rationale, base_branch, platform, auto_merge
                )
        except LeaseUnavailable as e:
            logger.warning("Skipping remediation of %s: %s", repo, e)
            return FixAttempt(
                fix_ids=kinds, repository=repo, branch_name=None,
                error=LEASE_UNAVAILABLE, confidence=rationale.confidence, platform=platform,
            )

        await self.store.append_fix(attempt)
        logger.info(
            "Fix attempt on %s: success=%s files=%d skipped=%d pr=%s",
            repo, attempt.success, len(attempt.files_touched),
            len(attempt.skipped_files), attempt.pull_request_url,
        )
        return attempt

    async def _run(
        self,
        repo: str,
        kinds: tuple[FixKind, ...],
        rationale: FixRationale,
        base_branch: str | None,
        platform: str | None,
        auto_merge: bool | None,
    ) -> FixAttempt:
        base = base_branch or get_config().github.default_branch
        branch = self._branch_name()
        failed = FixAttempt(
            fix_ids=kinds, repository=repo, branch_name=None,
            confidence=rationale.confidence, platform=platform,
        )

        if not kinds:
            return replace(failed, error="no fixes requested")

        try:
            sha = await self._read(lambda: self.github.get_branch_sha(repo, base))
            await self.github.create_branch(repo, branch, sha)
        except RepositoryAccessError as e:
            logger.error("Could not create branch on %s: %s", repo, e)
            return replace(failed, error=f"branch creation failed: {e}")

        outcomes = [await self._apply_fix(repo, branch, get_template(kind)) for kind in kinds]
        touched = _unique(f.path for o in outcomes for f in o.files if f.written)
        skipped = _unique(f.path for o in outcomes for f in o.files if not f.written)

        attempt = FixAttempt(
            fix_ids=kinds,
            repository=repo,
            branch_name=branch,
            files_touched=touched,
            skipped_files=skipped,
            confidence=rationale.confidence,
            platform=platform,
        )
        if not any(o.any_written for o in outcomes):
            return replace(attempt, error="no fixes could be applied")

        if auto_merge is None:
            auto_merge = self.config.auto_merge
        try:
            pr = await self.github.create_pull_request(
                repo,
                title=f"{PR_TITLE} ({len([o for o in outcomes if o.complete])} fixes)",
                body=render_pr_body(outcomes, rationale, auto_merge),
                head=branch,
                base=base,
            )
        except RepositoryAccessError as e:
            logger.error("Could not open pull request on %s: %s", repo, e)
            return replace(attempt, error=f"pull request failed: {e}")

        attempt = replace(
            attempt, pull_request_number=pr.number, pull_request_url=pr.url, success=True
        )
        if auto_merge:
            attempt = await self._auto_merge(repo, pr.number, attempt)
        return attempt

    async def _apply_fix(self, repo: str, branch: str, template: FixTemplate) -> FixOutcome:
        outcome = FixOutcome(kind=template.kind)
        for path, renderer in template.renderers:
            outcome.files.append(await self._write_file(repo, branch, path, renderer, template))
        return outcome

    async def _write_file(
        self,
        repo: str,
        branch: str,
        path: str,
        renderer: Renderer,
        template: FixTemplate,
    ) -> FileOutcome:
        for attempt in range(2):
            try:
                current = await self._read(lambda: self.github.get_file(repo, path, branch))
            except RepositoryAccessError as e:
                return FileOutcome(path, written=False, reason=f"read failed: {e}")

            content = renderer(current.content if current else None)
            try:
                await self.github.put_file(
                    repo,
                    path,
                    content,
                    message=f"Auto-fix: {template.description} ({path})",
                    branch=branch,
                    sha=current.sha if current else None,
                )
                return FileOutcome(path, written=True)
            except ContentConflictError:
                logger.info("Conflict writing %s (attempt %d)", path, attempt + 1)
                continue
            except RepositoryAccessError as e:
                return FileOutcome(path, written=False, reason=f"write failed: {e}")
        return FileOutcome(path, written=False, reason="conflict after retry")

    async def _auto_merge(self, repo: str, number: int, attempt: FixAttempt) -> FixAttempt:
        # Give required checks time to register before the single merge attempt.
        await self._sleep(self.config.merge_grace_seconds)
        try:
            await self.github.merge_pull_request(
                repo, number, commit_title=f"{PR_TITLE} (#{number})"
            )
        except (MergeConflictError, RepositoryAccessError) as e:
            logger.warning("Auto-merge of %s#%d failed: %s", repo, number, e)
            return replace(attempt, merge_error=str(e))
        return replace(attempt, auto_merged=True)


def _unique(items: Iterable[str]) -> tuple[str, ...]:
    return tuple(dict.fromkeys(items))
