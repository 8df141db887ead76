"""
Shelfwise Access Control — the single resolver behind every folder/item gate.

Decision procedure for (principal, resource, required level):
    1. principal owns the resource          → Allow (any level)
    2. no active grant for the principal    → Deny
    3. grant level >= required level        → Allow, else Deny

Access levels are totally ordered: view < edit < admin.
A grant whose expires_at has passed is ignored (lazy expiry) — it never has
to be deleted for the decision to be correct.

Deny is an ordinary AccessDecision. Only require() turns it into a
ForbiddenError, for callers that gate a mutation. Store failures raised
during the grant lookup are not caught here; they surface through the
caller's session_scope as InfrastructureError.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Union

from sqlalchemy import or_, select
from sqlalchemy.orm import Session, sessionmaker

from shelfwise.db.base import utcnow
from shelfwise.db.models import Folder, Item, Permission
from shelfwise.db.session import session_scope
from shelfwise.engine.errors import ForbiddenError, NotFoundError, ValidationError
from shelfwise.engine.logging import FileLogger, log_security_event

logger = logging.getLogger("shelfwise.security.access")

Resource = Union[Folder, Item]


class AccessLevel(str, Enum):
    VIEW = "view"
    EDIT = "edit"
    ADMIN = "admin"

    @property
    def rank(self) -> int:
        return _LEVEL_RANK[self]

    def satisfies(self, required: "AccessLevel") -> bool:
        """True if holding this level is enough for `required`."""
        return self.rank >= required.rank

    @classmethod
    def parse(cls, value: Union[str, "AccessLevel"]) -> "AccessLevel":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValidationError(
                f"Invalid access level '{value}'",
                validation_errors=[{"field": "access_level", "error": "must be view, edit or admin"}],
            ) from None


_LEVEL_RANK = {AccessLevel.VIEW: 1, AccessLevel.EDIT: 2, AccessLevel.ADMIN: 3}


class ResourceType(str, Enum):
    FOLDER = "Folder"
    ITEM = "Item"

    @property
    def model(self):
        return Folder if self is ResourceType.FOLDER else Item

    @classmethod
    def parse(cls, value: Union[str, "ResourceType"]) -> "ResourceType":
        if isinstance(value, cls):
            return value
        normalized = str(value).strip().lower()
        for member in cls:
            if member.value.lower() == normalized:
                return member
        raise ValidationError(
            f"Invalid resource type '{value}'",
            validation_errors=[{"field": "resource_type", "error": "must be Folder or Item"}],
        )

    @classmethod
    def of(cls, resource: Resource) -> "ResourceType":
        return cls.FOLDER if isinstance(resource, Folder) else cls.ITEM


# Level each operation requires on its target resource
OPERATION_LEVELS: Dict[str, AccessLevel] = {
    "read": AccessLevel.VIEW,
    "update": AccessLevel.EDIT,
    "rename": AccessLevel.EDIT,
    "move": AccessLevel.EDIT,
    "file_into": AccessLevel.EDIT,
    "clone": AccessLevel.EDIT,
    "delete": AccessLevel.ADMIN,
    "manage_grants": AccessLevel.ADMIN,
}


@dataclass(frozen=True)
class AccessDecision:
    allowed: bool
    reason: str  # "owner" | "grant" | "no_grant" | "insufficient_level"
    granted_level: Optional[AccessLevel] = None

    def __bool__(self) -> bool:
        return self.allowed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "reason": self.reason,
            "granted_level": self.granted_level.value if self.granted_level else None,
        }


class AccessResolver:
    """
    Pure decision function over current store state.

    Methods taking a `session` run inside the caller's unit of work so that the
    decision and the mutation it gates read the same snapshot. check() opens
    its own read-only scope for callers that only want an answer.
    """

    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        security_log: Optional[FileLogger] = None,
    ):
        self._session_factory = session_factory
        self._security_log = security_log

    @classmethod
    def from_config(cls, session_factory: Optional[sessionmaker], config) -> "AccessResolver":
        """Resolver whose denials are written under logging.directory."""
        return cls(session_factory, security_log=FileLogger(log_dir=config.logging.directory))

    # -------------------------------------------------------------------
    # Lookups
    # -------------------------------------------------------------------

    @staticmethod
    def active_grant(
        session: Session,
        resource_id: str,
        resource_type: ResourceType,
        principal_id: str,
        now: Optional[datetime] = None,
    ) -> Optional[Permission]:
        """The principal's non-expired grant on the resource, if any."""
        now = now or utcnow()
        stmt = select(Permission).where(
            Permission.resource_id == resource_id,
            Permission.resource_type == resource_type.value,
            Permission.grantee_id == principal_id,
            or_(Permission.expires_at.is_(None), Permission.expires_at > now),
        )
        return session.execute(stmt).scalar_one_or_none()

    @staticmethod
    def load_resource(session: Session, resource_id: str, resource_type: ResourceType) -> Resource:
        resource = session.get(resource_type.model, resource_id)
        if resource is None:
            raise NotFoundError(
                f"{resource_type.value} not found",
                resource_id=resource_id,
                resource_type=resource_type.value,
            )
        return resource

    # -------------------------------------------------------------------
    # Decisions
    # -------------------------------------------------------------------

    def resolve(
        self,
        session: Session,
        principal_id: str,
        resource: Resource,
        required: Union[str, AccessLevel],
        now: Optional[datetime] = None,
    ) -> AccessDecision:
        required = AccessLevel.parse(required)

        if resource.owner_id == principal_id:
            return AccessDecision(True, "owner", AccessLevel.ADMIN)

        grant = self.active_grant(session, resource.id, ResourceType.of(resource), principal_id, now)
        if grant is None:
            return AccessDecision(False, "no_grant")

        level = AccessLevel.parse(grant.access_level)
        if level.satisfies(required):
            return AccessDecision(True, "grant", level)
        return AccessDecision(False, "insufficient_level", level)

    def effective_level(
        self,
        session: Session,
        principal_id: str,
        resource: Resource,
        now: Optional[datetime] = None,
    ) -> Optional[AccessLevel]:
        """Highest level the principal holds on the resource (None = no access)."""
        if resource.owner_id == principal_id:
            return AccessLevel.ADMIN
        grant = self.active_grant(session, resource.id, ResourceType.of(resource), principal_id, now)
        return AccessLevel.parse(grant.access_level) if grant else None

    def require(
        self,
        session: Session,
        principal_id: str,
        resource: Resource,
        required: Union[str, AccessLevel],
        operation: Optional[str] = None,
    ) -> AccessDecision:
        """resolve(), raising ForbiddenError on Deny."""
        required = AccessLevel.parse(required)
        decision = self.resolve(session, principal_id, resource, required)
        if decision:
            return decision

        resource_type = ResourceType.of(resource).value
        logger.info(
            f"Access denied: principal={principal_id} {resource_type}={resource.id} "
            f"required={required.value} reason={decision.reason} op={operation}"
        )
        if self._security_log is not None:
            try:
                self._security_log.write(
                    log_security_event(
                        event="access_denied",
                        resource_type=resource_type,
                        resource_id=resource.id,
                        principal_id=principal_id,
                        required_level=required.value,
                        reason=decision.reason,
                    )
                )
            except OSError as exc:
                logger.warning(f"Could not write security log: {exc}")
        raise ForbiddenError(
            f"Insufficient permissions to {operation or 'access'} this {resource_type.lower()}",
            resource_id=resource.id,
            resource_type=resource_type,
            principal_id=principal_id,
            required_level=required.value,
            reason=decision.reason,
        )

    def check(
        self,
        principal_id: str,
        resource_id: str,
        resource_type: Union[str, ResourceType],
        required: Union[str, AccessLevel] = AccessLevel.VIEW,
    ) -> AccessDecision:
        """
        Standalone permission check.

        Raises:
            NotFoundError: the resource does not exist.
        """
        resource_type = ResourceType.parse(resource_type)
        required = AccessLevel.parse(required)
        with session_scope(self._session_factory, operation="check_access") as session:
            resource = self.load_resource(session, resource_id, resource_type)
            return self.resolve(session, principal_id, resource, required)
