"""
Shelfwise Logging — Console logging setup + structured JSONL file logs.

Implements:
- configure_logging(): level and console handler for the "shelfwise" logger tree
- FileLogger: per-resource-type, per-category JSONL files (daily files)
- Log entry builders for activity and security events

File layout: {log_dir}/{resource_type}/{category}/{YYYY-MM-DD}.jsonl
"""

from __future__ import annotations

import json
import logging
import threading
from collections import defaultdict
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger("shelfwise.engine.logging")

# Resource types and their permitted categories
RESOURCE_TYPE_CATEGORIES = {
    "folder": ["activity", "security"],
    "item": ["activity", "security"],
    "permission": ["activity", "security"],
    "system": ["activity", "security"],
}

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str = "INFO") -> logging.Logger:
    """Attach a console handler to the "shelfwise" logger (idempotent)."""
    root = logging.getLogger("shelfwise")
    root.setLevel(level.upper())
    if not any(getattr(h, "_shelfwise", False) for h in root.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._shelfwise = True  # type: ignore[attr-defined]
        root.addHandler(handler)
    return root


class LogEntry:
    """A structured log entry destined for a specific file."""

    __slots__ = ("resource_type", "category", "data")

    def __init__(self, resource_type: str, category: str, data: Dict[str, Any]):
        self.resource_type = resource_type
        self.category = category
        self.data = data

    def to_json(self) -> str:
        return json.dumps(self.data, default=str, separators=(",", ":"))


class FileLogger:
    """
    Writes structured JSON log entries to per-resource-type, per-category files.
    Files rotate daily: {log_dir}/{resource_type}/{category}/{YYYY-MM-DD}.jsonl

    Thread-safe — uses a lock per file path.
    """

    def __init__(self, log_dir: str = ".shelfwise/logs"):
        self._log_dir = Path(log_dir)
        self._file_locks: Dict[str, threading.Lock] = defaultdict(threading.Lock)
        self._ensure_directories()

    def _ensure_directories(self) -> None:
        for resource_type, categories in RESOURCE_TYPE_CATEGORIES.items():
            for cat in categories:
                (self._log_dir / resource_type / cat).mkdir(parents=True, exist_ok=True)

    def write(self, entry: LogEntry) -> None:
        """Write a single log entry to the appropriate file."""
        self.write_batch([entry])

    def write_batch(self, entries: List[LogEntry]) -> None:
        """Write a batch of log entries, grouping by file path."""
        grouped: Dict[str, List[LogEntry]] = defaultdict(list)
        for entry in entries:
            grouped[str(self._resolve_path(entry.resource_type, entry.category))].append(entry)

        for file_path, batch in grouped.items():
            with self._file_locks[file_path]:
                with open(file_path, "a", encoding="utf-8") as f:
                    for entry in batch:
                        f.write(entry.to_json())
                        f.write("\n")

    def _resolve_path(self, resource_type: str, category: str) -> Path:
        if resource_type not in RESOURCE_TYPE_CATEGORIES:
            resource_type = "system"
        today = date.today().isoformat()
        return self._log_dir / resource_type / category / f"{today}.jsonl"

    @property
    def log_dir(self) -> Path:
        return self._log_dir

    def query(
        self,
        resource_type: str,
        category: str,
        *,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        filters: Optional[Dict[str, Any]] = None,
        limit: int = 500,
    ) -> List[Dict[str, Any]]:
        """
        Query log entries for a resource_type/category.

        Args:
            start_date: Earliest date to include (defaults to 7 days ago).
            end_date: Latest date to include (defaults to today).
            filters: Only entries whose top-level keys equal ALL of these.
            limit: Max number of entries to return.

        Returns:
            Parsed entries, oldest first within the window.
        """
        if end_date is None:
            end_date = date.today()
        if start_date is None:
            start_date = end_date - timedelta(days=7)

        base = self._log_dir / resource_type / category
        if not base.exists():
            return []

        results: List[Dict[str, Any]] = []
        current = start_date
        while current <= end_date and len(results) < limit:
            file_path = base / f"{current.isoformat()}.jsonl"
            if file_path.exists():
                results.extend(self._read_jsonl(file_path, filters, limit - len(results)))
            current += timedelta(days=1)
        return results

    @staticmethod
    def _read_jsonl(
        path: Path,
        filters: Optional[Dict[str, Any]],
        remaining: int,
    ) -> List[Dict[str, Any]]:
        entries: List[Dict[str, Any]] = []
        try:
            with open(path, "r", encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        data = json.loads(line)
                    except json.JSONDecodeError:
                        continue
                    if filters and not all(data.get(k) == v for k, v in filters.items()):
                        continue
                    entries.append(data)
                    if len(entries) >= remaining:
                        break
        except OSError as exc:
            logger.warning("Could not read log file %s: %s", path, exc)
        return entries


# ---------------------------------------------------------------------------
# Log Entry Builders
# ---------------------------------------------------------------------------

def _base_entry(
    event: str,
    level: str,
    resource_id: Optional[str],
    principal_id: Optional[str] = None,
    **extra: Any,
) -> Dict[str, Any]:
    entry: Dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "level": level,
        "event": event,
        "resource_id": resource_id,
    }
    if principal_id is not None:
        entry["principal_id"] = principal_id
    entry.update(extra)
    return entry


def log_activity_entry(
    action: str,
    resource_type: str,
    resource_id: str,
    principal_id: str,
    details: Optional[Dict[str, Any]] = None,
    timestamp: Optional[datetime] = None,
) -> LogEntry:
    """Build an activity (audit trail) entry for a state-changing operation."""
    data = _base_entry(
        event=action,
        level="INFO",
        resource_id=resource_id,
        principal_id=principal_id,
        resource_type=resource_type,
    )
    if timestamp is not None:
        data["timestamp"] = timestamp.isoformat()
    if details:
        data["details"] = details
    return LogEntry(resource_type.lower(), "activity", data)


def log_security_event(
    event: str,
    resource_type: str,
    resource_id: str,
    principal_id: str,
    required_level: str,
    reason: str,
    level: str = "WARNING",
) -> LogEntry:
    """Build a security event entry (access denied)."""
    data = _base_entry(
        event=event,
        level=level,
        resource_id=resource_id,
        principal_id=principal_id,
        resource_type=resource_type,
        required_level=required_level,
        reason=reason,
    )
    return LogEntry(resource_type.lower(), "security", data)
