"""
Activity sink — append-only audit trail of state-changing operations.

The services call emit_activity() only after their transaction has committed.
Whatever the sink does (disk full, permissions, a remote collector timing
out), the primary operation has already succeeded and is reported as such;
sink failures are logged and dropped.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Literal, Optional, Protocol, runtime_checkable

from pydantic import BaseModel, Field

from shelfwise.db.base import utcnow
from shelfwise.engine.logging import FileLogger, log_activity_entry

logger = logging.getLogger("shelfwise.activity.sink")

ActivityAction = Literal[
    "create",
    "update",
    "rename",
    "move",
    "delete",
    "clone",
    "grant",
    "update_permission",
    "revoke",
]


class ActivityRecord(BaseModel):
    principal_id: str
    resource_id: str
    resource_type: str = Field(description="Folder | Item | Permission")
    action: ActivityAction
    details: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)


@runtime_checkable
class ActivitySink(Protocol):
    def record(self, activity: ActivityRecord) -> None:
        ...


@runtime_checkable
class ActivityHistory(Protocol):
    def history(self, resource_type: str, resource_id: str, limit: int = 50) -> List[ActivityRecord]:
        ...


class NullActivitySink:
    """Discards everything (activity.enabled = false)."""

    def record(self, activity: ActivityRecord) -> None:
        return None

    def history(self, resource_type: str, resource_id: str, limit: int = 50) -> List[ActivityRecord]:
        return []


class MemoryActivitySink:
    """Keeps records in a list — used by tests and the CLI dry runs."""

    def __init__(self) -> None:
        self.records: List[ActivityRecord] = []

    def record(self, activity: ActivityRecord) -> None:
        self.records.append(activity)

    def actions(self) -> List[str]:
        return [r.action for r in self.records]

    def history(self, resource_type: str, resource_id: str, limit: int = 50) -> List[ActivityRecord]:
        matching = [
            r for r in self.records
            if r.resource_type == resource_type and r.resource_id == resource_id
        ]
        return list(reversed(matching))[:limit]


class FileActivitySink:
    """Writes each record as a JSON line via FileLogger (category "activity")."""

    def __init__(self, file_logger: FileLogger, history_days: int = 30):
        self._file_logger = file_logger
        self._history_days = history_days

    @classmethod
    def from_directory(cls, directory: str, history_days: int = 30) -> "FileActivitySink":
        return cls(FileLogger(log_dir=directory), history_days=history_days)

    def record(self, activity: ActivityRecord) -> None:
        self._file_logger.write(
            log_activity_entry(
                action=activity.action,
                resource_type=activity.resource_type,
                resource_id=activity.resource_id,
                principal_id=activity.principal_id,
                details=activity.details,
                timestamp=activity.timestamp,
            )
        )

    def history(self, resource_type: str, resource_id: str, limit: int = 50) -> List[ActivityRecord]:
        """Records for one resource from the last history_days daily files, newest first."""
        entries = self._file_logger.query(
            resource_type.lower(),
            "activity",
            start_date=date.today() - timedelta(days=self._history_days),
            filters={"resource_id": resource_id},
        )
        records = [
            ActivityRecord(
                principal_id=e["principal_id"],
                resource_id=e["resource_id"],
                resource_type=e.get("resource_type", resource_type),
                action=e["event"],
                details=e.get("details", {}),
                timestamp=e["timestamp"],
            )
            for e in entries
        ]
        return list(reversed(records))[:limit]


def emit_activity(
    sink: Optional[ActivitySink],
    principal_id: str,
    resource_id: str,
    resource_type: str,
    action: str,
    details: Optional[Dict[str, Any]] = None,
) -> bool:
    """
    Best-effort write to the sink.

    Returns:
        True if the sink accepted the record, False if it was dropped.
    """
    if sink is None:
        return False
    try:
        sink.record(
            ActivityRecord(
                principal_id=principal_id,
                resource_id=resource_id,
                resource_type=resource_type,
                action=action,
                details=details or {},
            )
        )
        return True
    except Exception as exc:
        logger.warning(
            f"Activity sink failed for {action} on {resource_type}:{resource_id}; dropped ({exc})"
        )
        return False


def activity_sink_from_config(config) -> ActivitySink:
    """FileActivitySink under activity.directory, or NullActivitySink when disabled."""
    if not config.activity.enabled:
        return NullActivitySink()
    return FileActivitySink.from_directory(config.activity.directory, config.activity.history_days)
