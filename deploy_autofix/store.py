"""Stores for the fix history and alert set.

Fix history is append-only: attempts are never updated or deleted, since
they are both the audit trail and the input to accuracy learning. Alerts are
appended and later resolved; resolving twice is a no-op.

Two backends implement :class:`HistoryStore`:
- RingBufferStore: bounded in-process deques (default)
- DatabaseStore: ``fix_history`` and ``alerts`` tables over PostgREST
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Protocol, runtime_checkable
from uuid import uuid4

from .config import get_config
from .db import DatabaseClient, get_db
from .signatures import FixKind

logger = logging.getLogger(__name__)


def _parse_dt(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


@dataclass(frozen=True)
class FixAttempt:
    """One remediation run against one repository."""

    fix_ids: tuple[FixKind, ...]
    repository: str
    branch_name: str | None
    files_touched: tuple[str, ...] = ()
    skipped_files: tuple[str, ...] = ()
    pull_request_number: int | None = None
    pull_request_url: str | None = None
    applied_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    success: bool = False
    auto_merged: bool = False
    merge_error: str | None = None
    error: str | None = None
    confidence: float | None = None
    platform: str | None = None
    id: str = field(default_factory=lambda: uuid4().hex)

    @property
    def partial(self) -> bool:
        return bool(self.files_touched) and bool(self.skipped_files)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "fix_ids": [k.value for k in self.fix_ids],
            "repository": self.repository,
            "branch_name": self.branch_name,
            "files_touched": list(self.files_touched),
            "skipped_files": list(self.skipped_files),
            "pull_request_number": self.pull_request_number,
            "pull_request_url": self.pull_request_url,
            "applied_at": self.applied_at.isoformat(),
            "success": self.success,
            "auto_merged": self.auto_merged,
            "merge_error": self.merge_error,
            "error": self.error,
            "confidence": self.confidence,
            "platform": self.platform,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FixAttempt:
        return cls(
            id=str(data.get("id") or uuid4().hex),
            fix_ids=tuple(FixKind.parse(k) for k in data.get("fix_ids") or []),
            repository=data["repository"],
            branch_name=data.get("branch_name"),
            files_touched=tuple(data.get("files_touched") or []),
            skipped_files=tuple(data.get("skipped_files") or []),
            pull_request_number=data.get("pull_request_number"),
            pull_request_url=data.get("pull_request_url"),
            applied_at=_parse_dt(data.get("applied_at")) or datetime.now(UTC),
            success=bool(data.get("success")),
            auto_merged=bool(data.get("auto_merged")),
            merge_error=data.get("merge_error"),
            error=data.get("error"),
            confidence=data.get("confidence"),
            platform=data.get("platform"),
        )


class AlertSeverity(str, Enum):
    INFO = "INFO"
    SUCCESS = "SUCCESS"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"

    @property
    def requires_resolution(self) -> bool:
        return self in (AlertSeverity.ERROR, AlertSeverity.CRITICAL)


class AlertStatus(str, Enum):
    ACTIVE = "ACTIVE"
    RESOLVED = "RESOLVED"


@dataclass
class Alert:
    """An event surfaced to operators."""

    type: str
    severity: AlertSeverity
    message: str
    data: dict[str, Any] = field(default_factory=dict)
    status: AlertStatus = AlertStatus.ACTIVE
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    resolved_at: datetime | None = None
    id: str = field(default_factory=lambda: uuid4().hex)

    @property
    def active(self) -> bool:
        return self.status == AlertStatus.ACTIVE

    def resolve(self, at: datetime | None = None) -> bool:
        """Mark resolved. Returns False when it already was."""
        if not self.active:
            return False
        self.status = AlertStatus.RESOLVED
        self.resolved_at = at or datetime.now(UTC)
        return True

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "severity": self.severity.value,
            "message": self.message,
            "data": self.data,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Alert:
        return cls(
            id=str(data["id"]),
            type=data["type"],
            severity=AlertSeverity(data["severity"]),
            message=data.get("message", ""),
            data=data.get("data") or {},
            status=AlertStatus(data.get("status", AlertStatus.ACTIVE.value)),
            created_at=_parse_dt(data.get("created_at")) or datetime.now(UTC),
            resolved_at=_parse_dt(data.get("resolved_at")),
        )


@runtime_checkable
class HistoryStore(Protocol):
    """Storage for fix attempts and alerts."""

    async def append_fix(self, attempt: FixAttempt) -> None: ...

    async def list_fixes(self, limit: int | None = None) -> list[FixAttempt]: ...

    async def add_alert(self, alert: Alert) -> None: ...

    async def get_alert(self, alert_id: str) -> Alert | None: ...

    async def save_alert(self, alert: Alert) -> None: ...

    async def list_alerts(self) -> list[Alert]: ...


class RingBufferStore:
    """Bounded in-process store.

    Fix attempts fall off oldest first. At capacity, alerts are evicted
    resolved first, then the oldest active alert that does not require
    resolution. Active ERROR and CRITICAL alerts are never evicted.
    """

    def __init__(self, capacity: int = 1000):
        self._capacity = capacity
        self._fixes: deque[FixAttempt] = deque(maxlen=capacity)
        self._alerts: list[Alert] = []

    async def append_fix(self, attempt: FixAttempt) -> None:
        self._fixes.append(attempt)

    async def list_fixes(self, limit: int | None = None) -> list[FixAttempt]:
        fixes = list(self._fixes)
        return fixes[-limit:] if limit else fixes

    async def add_alert(self, alert: Alert) -> None:
        self._alerts.append(alert)
        while len(self._alerts) > self._capacity:
            if not self._evict_alert():
                logger.warning(
                    "Alert buffer over capacity (%d): only unresolved alerts remain",
                    len(self._alerts),
                )
                break

    def _evict_alert(self) -> bool:
        for evictable in (
            lambda a: not a.active,
            lambda a: not a.severity.requires_resolution,
        ):
            for i, alert in enumerate(self._alerts):
                if evictable(alert):
                    del self._alerts[i]
                    return True
        return False

    async def get_alert(self, alert_id: str) -> Alert | None:
        return next((a for a in self._alerts if a.id == alert_id), None)

    async def save_alert(self, alert: Alert) -> None:
        # Alerts are held by reference; resolution already mutated the entry.
        return None

    async def list_alerts(self) -> list[Alert]:
        return list(self._alerts)


class DatabaseStore:
    """PostgREST-backed store for multi-instance deployments."""

    FIX_TABLE = "fix_history"
    ALERT_TABLE = "alerts"

    def __init__(self, db: DatabaseClient | None = None):
        self._db = db

    @property
    def db(self) -> DatabaseClient:
        if self._db is None:
            self._db = get_db()
        return self._db

    async def append_fix(self, attempt: FixAttempt) -> None:
        await self.db.insert(self.FIX_TABLE, attempt.to_dict())

    async def list_fixes(self, limit: int | None = None) -> list[FixAttempt]:
        rows = await self.db.select(self.FIX_TABLE, order="applied_at.desc", limit=limit)
        return [FixAttempt.from_dict(row) for row in reversed(rows)]

    async def add_alert(self, alert: Alert) -> None:
        await self.db.insert(self.ALERT_TABLE, alert.to_dict())

    async def get_alert(self, alert_id: str) -> Alert | None:
        rows = await self.db.select(self.ALERT_TABLE, filters={"id": alert_id})
        return Alert.from_dict(rows[0]) if rows else None

    async def save_alert(self, alert: Alert) -> None:
        await self.db.update(
            self.ALERT_TABLE,
            match={"id": alert.id},
            changes={
                "status": alert.status.value,
                "resolved_at": alert.resolved_at.isoformat() if alert.resolved_at else None,
            },
        )

    async def list_alerts(self) -> list[Alert]:
        rows = await self.db.select(self.ALERT_TABLE, order="created_at.asc")
        return [Alert.from_dict(row) for row in rows]


def create_store() -> HistoryStore:
    """Factory: returns the store selected by STORE_BACKEND."""
    config = get_config()
    backend = config.store.backend

    if backend == "memory":
        return RingBufferStore(config.store.capacity)
    elif backend == "supabase":
        return DatabaseStore()
    else:
        raise ValueError(f"Unknown store backend: {backend}")
