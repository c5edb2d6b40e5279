"""Repository analyzer.

Inspects a repository's top-level tree and manifest against a fixed baseline
and recommends fix kinds in catalog order. Every scan reads the repository
afresh; nothing is cached between scans.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from .errors import RepositoryAccessError
from .github_client import GitHubClient
from .signatures import FixKind, catalog_order
from .templates import ENTRY_POINT, MANIFEST, NODE_ENGINE, PLATFORM_CONFIG, REQUIRED_DEPENDENCIES

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Top-level files every deployable service must carry, and the fix for each.
BASELINE_FILES = (
    (ENTRY_POINT, FixKind.MISSING_SERVER_FILE),
    (MANIFEST, FixKind.PACKAGE_JSON_FIX),
    (PLATFORM_CONFIG, FixKind.RAILWAY_CONFIG),
)


@dataclass(frozen=True)
class RepositoryAnalysis:
    repository: str
    missing_files: frozenset[str] = field(default_factory=frozenset)
    structural_issues: tuple[str, ...] = ()
    recommended_fix_ids: tuple[FixKind, ...] = ()

    @property
    def healthy(self) -> bool:
        return not self.recommended_fix_ids

    def to_dict(self) -> dict[str, Any]:
        return {
            "repository": self.repository,
            "missing_files": sorted(self.missing_files),
            "structural_issues": list(self.structural_issues),
            "recommended_fix_ids": [k.value for k in self.recommended_fix_ids],
        }


def manifest_issues(manifest: dict[str, Any]) -> list[str]:
    """Structural problems in a parsed package manifest."""
    issues = []
    if manifest.get("main") != ENTRY_POINT:
        issues.append("Missing or incorrect main entry point")
    if not (manifest.get("scripts") or {}).get("start"):
        issues.append("Missing start script")
    if not (manifest.get("engines") or {}).get("node"):
        issues.append(f"Missing Node.js engine specification ({NODE_ENGINE})")
    dependencies = manifest.get("dependencies") or {}
    missing = [name for name in REQUIRED_DEPENDENCIES if name not in dependencies]
    if missing:
        issues.append(f"Missing dependencies: {', '.join(missing)}")
    return issues


class RepositoryAnalyzer:
    """Compares a repository against the deployment baseline."""

    def __init__(self, github: GitHubClient | None = None):
        self._github = github

    @property
    def github(self) -> GitHubClient:
        if self._github is None:
            self._github = GitHubClient()
        return self._github

    async def _read(self, call: Callable[[], Awaitable[T]]) -> T:
        """Run a read, retrying once on repository access failure."""
        try:
            return await call()
        except RepositoryAccessError as e:
            logger.info("Repository read failed (%s), retrying once", e)
            return await call()

    async def analyze(self, repo: str, ref: str | None = None) -> RepositoryAnalysis:
        root = set(await self._read(lambda: self.github.list_root(repo, ref)))

        missing: set[str] = set()
        issues: list[str] = []
        fixes: list[FixKind] = []

        for filename, fix in BASELINE_FILES:
            if filename not in root:
                missing.add(filename)
                fixes.append(fix)

        if MANIFEST in root:
            manifest_file = await self._read(lambda: self.github.get_file(repo, MANIFEST, ref))
            if manifest_file is not None:
                try:
                    manifest = json.loads(manifest_file.content)
                    found = manifest_issues(manifest if isinstance(manifest, dict) else {})
                except json.JSONDecodeError:
                    found = ["package.json is not valid JSON"]
                if found:
                    issues.extend(found)
                    fixes.append(FixKind.PACKAGE_JSON_FIX)

        analysis = RepositoryAnalysis(
            repository=repo,
            missing_files=frozenset(missing),
            structural_issues=tuple(issues),
            recommended_fix_ids=catalog_order(fixes),
        )
        logger.info(
            "Analyzed %s: missing=%s fixes=%s",
            repo, sorted(missing), [k.value for k in analysis.recommended_fix_ids],
        )
        return analysis
