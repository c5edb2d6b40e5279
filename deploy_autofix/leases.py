"""Repository leases for remediation runs.

A lease is a time-bounded exclusive claim on a repository, acquired before a
fix branch is created so at most one remediation is active per repository.
Expired leases are taken over silently.

Two backends:
- InMemoryLeaseService: single process (default)
- DatabaseLeaseService: ``acquire_repository_lease`` / ``release_repository_lease``
  RPCs (supabase/migrations), shared by every instance on the same database
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol, runtime_checkable

from .config import get_config
from .db import DatabaseClient, get_db
from .errors import LeaseUnavailable

logger = logging.getLogger(__name__)


def lease_key(repository: str) -> str:
    return f"repo:{repository}"


@dataclass
class Lease:
    """An active claim on a resource."""

    resource: str
    holder: str
    acquired_at: datetime
    expires_at: datetime

    def expired(self, now: datetime | None = None) -> bool:
        return (now or datetime.now(UTC)) >= self.expires_at


@dataclass
class LeaseResult:
    """Result of a lease acquisition or release."""

    success: bool
    action: str | None = None  # 'acquired', 'refreshed', 'released' or None
    resource: str | None = None
    expires_at: datetime | None = None
    reason: str | None = None
    held_by: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LeaseResult:
        expires_at = None
        if data.get("expires_at"):
            expires_at = datetime.fromisoformat(
                str(data["expires_at"]).replace("Z", "+00:00")
            )
        return cls(
            success=data["success"],
            action=data.get("action"),
            resource=data.get("resource"),
            expires_at=expires_at,
            reason=data.get("reason"),
            held_by=data.get("held_by"),
        )


@runtime_checkable
class LeaseService(Protocol):
    async def acquire(self, resource: str, holder: str, ttl_seconds: int | None = None) -> LeaseResult: ...

    async def release(self, resource: str, holder: str) -> LeaseResult: ...


class InMemoryLeaseService:
    """Process-local leases. Acquisition does not await, so it is atomic on the loop."""

    def __init__(self, default_ttl_seconds: int | None = None):
        self._default_ttl = default_ttl_seconds
        self._leases: dict[str, Lease] = {}

    def _ttl(self, ttl_seconds: int | None) -> int:
        if ttl_seconds:
            return ttl_seconds
        if self._default_ttl is None:
            self._default_ttl = get_config().remediation.lease_ttl_seconds
        return self._default_ttl

    async def acquire(self, resource: str, holder: str, ttl_seconds: int | None = None) -> LeaseResult:
        now = datetime.now(UTC)
        current = self._leases.get(resource)
        if current is not None and not current.expired(now) and current.holder != holder:
            return LeaseResult(
                success=False,
                resource=resource,
                reason="held_by_other",
                held_by=current.holder,
                expires_at=current.expires_at,
            )

        action = "refreshed" if current is not None and current.holder == holder else "acquired"
        lease = Lease(
            resource=resource,
            holder=holder,
            acquired_at=now,
            expires_at=now + timedelta(seconds=self._ttl(ttl_seconds)),
        )
        self._leases[resource] = lease
        return LeaseResult(success=True, action=action, resource=resource, expires_at=lease.expires_at)

    async def release(self, resource: str, holder: str) -> LeaseResult:
        current = self._leases.get(resource)
        if current is None or current.holder != holder:
            return LeaseResult(success=False, resource=resource, reason="not_held")
        del self._leases[resource]
        return LeaseResult(success=True, action="released", resource=resource)

    def active(self) -> list[Lease]:
        now = datetime.now(UTC)
        return [lease for lease in self._leases.values() if not lease.expired(now)]


class DatabaseLeaseService:
    """Leases stored through the repository_leases RPCs."""

    def __init__(self, db: DatabaseClient | None = None):
        self._db = db

    @property
    def db(self) -> DatabaseClient:
        if self._db is None:
            self._db = get_db()
        return self._db

    async def acquire(self, resource: str, holder: str, ttl_seconds: int | None = None) -> LeaseResult:
        ttl = ttl_seconds or get_config().remediation.lease_ttl_seconds
        result = await self.db.rpc(
            "acquire_repository_lease",
            {"p_resource": resource, "p_holder": holder, "p_ttl_seconds": ttl},
        )
        return LeaseResult.from_dict(result)

    async def release(self, resource: str, holder: str) -> LeaseResult:
        result = await self.db.rpc(
            "release_repository_lease",
            {"p_resource": resource, "p_holder": holder},
        )
        return LeaseResult.from_dict(result)


@asynccontextmanager
async def hold_lease(
    service: LeaseService,
    resource: str,
    holder: str,
    ttl_seconds: int | None = None,
) -> AsyncIterator[LeaseResult]:
    """Hold a lease for the duration of the block.

    Raises:
        LeaseUnavailable: If another holder owns an unexpired lease.
    """
    result = await service.acquire(resource, holder, ttl_seconds)
    if not result.success:
        raise LeaseUnavailable(resource, result.held_by)
    try:
        yield result
    finally:
        try:
            await service.release(resource, holder)
        except Exception:
            # The TTL bounds how long a lost release can block the next run.
            logger.warning("Lease release failed for %s", resource, exc_info=True)


def create_lease_service() -> LeaseService:
    """Factory: returns the lease backend selected by LEASE_BACKEND."""
    backend = get_config().remediation.lease_backend
    if backend == "memory":
        return InMemoryLeaseService()
    elif backend == "supabase":
        return DatabaseLeaseService()
    else:
        raise ValueError(f"Unknown lease backend: {backend}")
