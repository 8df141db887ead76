"""
Shelfwise Error Hierarchy — Typed outcomes for folder, item and grant operations.

Every error carries the resource and principal it concerns so that callers
(the web layer, the CLI) can map it to a response without string matching.
Serializable to JSON for the security and activity logs.

Hierarchy:
    ShelfwiseError
    ├── NotFoundError           — Resource, parent or grantee absent
    ├── ConflictError           — Name collision, non-empty delete, concurrent change
    ├── InvalidOperationError   — Structurally meaningless request (self-parenting)
    ├── CycleDetectedError      — Move would make a folder its own ancestor
    ├── ForbiddenError          — Access control denied the operation
    ├── ValidationError         — Input failed field validation
    ├── InfrastructureError     — Store unavailable / failed (wraps the DB error)
    └── ConfigError             — Invalid shelfwise.yaml
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


class ShelfwiseError(Exception):
    """
    Base error for all Shelfwise failures.
    Structured for logging — all context serializable to JSON.
    """

    kind = "error"

    def __init__(self, message: str, **context: Any):
        self.message = message
        self.resource_id: Optional[str] = context.get("resource_id")
        self.resource_type: Optional[str] = context.get("resource_type")
        self.principal_id: Optional[str] = context.get("principal_id")
        self.error_type: str = self.__class__.__name__
        self.context: Dict[str, Any] = context
        self.timestamp: str = datetime.now(timezone.utc).isoformat()
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize error to a JSON-compatible dict."""
        return {
            "error_type": self.error_type,
            "kind": self.kind,
            "message": self.message,
            "resource_id": self.resource_id,
            "resource_type": self.resource_type,
            "principal_id": self.principal_id,
            "timestamp": self.timestamp,
            "context": {
                k: str(v) for k, v in self.context.items()
                if k not in ("resource_id", "resource_type", "principal_id")
            },
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)

    def __repr__(self) -> str:
        parts = [f"{self.error_type}: {self.message}"]
        if self.resource_id:
            parts.append(f"resource_id={self.resource_id}")
        if self.principal_id:
            parts.append(f"principal_id={self.principal_id}")
        return " | ".join(parts)


class NotFoundError(ShelfwiseError):
    """Resource, parent folder or grantee does not exist (or is not the tenant's)."""

    kind = "not_found"


class ConflictError(ShelfwiseError):
    """
    The request collides with current state.

    retryable=True marks a concurrent structural change detected by the
    version stamp — the caller may simply retry the operation.
    """

    kind = "conflict"

    def __init__(self, message: str, **context: Any):
        self.retryable: bool = bool(context.get("retryable", False))
        super().__init__(message, **context)

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["retryable"] = self.retryable
        return d


class InvalidOperationError(ShelfwiseError):
    """Structurally invalid request, e.g. making a folder its own parent."""

    kind = "invalid_operation"


class CycleDetectedError(ShelfwiseError):
    """A move would place a folder beneath one of its own descendants."""

    kind = "cycle_detected"


class ForbiddenError(ShelfwiseError):
    """
    Access denied by the resolver.
    Includes the level that was required and the reason for the denial.
    """

    kind = "forbidden"

    def __init__(self, message: str, **context: Any):
        self.required_level: Optional[str] = context.get("required_level")
        self.reason: Optional[str] = context.get("reason")
        super().__init__(message, **context)

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["required_level"] = self.required_level
        d["reason"] = self.reason
        return d


class ValidationError(ShelfwiseError):
    """Input validation failed. Includes field-level error details."""

    kind = "validation"

    def __init__(self, message: str, **context: Any):
        self.validation_errors: List[Dict[str, Any]] = context.get("validation_errors") or []
        super().__init__(message, **context)

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["validation_errors"] = self.validation_errors
        return d


class InfrastructureError(ShelfwiseError):
    """The store failed. The original exception is chained as __cause__."""

    kind = "infrastructure"

    def __init__(self, message: str, **context: Any):
        self.operation: Optional[str] = context.get("operation")
        super().__init__(message, **context)


class ConfigError(ShelfwiseError):
    """Configuration error — invalid shelfwise.yaml."""

    kind = "config"
