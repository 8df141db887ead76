"""
Grant management — explicit, possibly time-limited, access grants.

Managing grants on a resource requires admin on that resource: the owner
always qualifies, and so does anyone holding an admin grant (delegation).

grant() is an upsert on (resource, grantee): granting again replaces the
level, the expiry and the recorded granter. Expired rows are harmless — the
resolver ignores them — and sweep_expired() exists only to reclaim storage.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Optional, Union

from sqlalchemy import delete, or_, select
from sqlalchemy.orm import sessionmaker

from shelfwise.activity.sink import ActivitySink, activity_sink_from_config, emit_activity
from shelfwise.db.base import as_utc, utcnow
from shelfwise.db.models import Permission, User
from shelfwise.db.session import session_scope
from shelfwise.engine.config import ShelfwiseConfig, get_config
from shelfwise.engine.errors import NotFoundError, ValidationError
from shelfwise.security.access import (
    OPERATION_LEVELS,
    AccessLevel,
    AccessResolver,
    ResourceType,
)

logger = logging.getLogger("shelfwise.security.grants")

_UNSET = object()


class GrantService:
    """Grant / update / revoke / list explicit permissions."""

    def __init__(
        self,
        session_factory: sessionmaker,
        resolver: Optional[AccessResolver] = None,
        activity_sink: Optional[ActivitySink] = None,
        config: Optional[ShelfwiseConfig] = None,
    ):
        self._session_factory = session_factory
        self._config = config or get_config()
        self._resolver = resolver or AccessResolver.from_config(session_factory, self._config)
        self._activity = activity_sink if activity_sink is not None else activity_sink_from_config(self._config)

    def _validate_expiry(self, expires_at: Optional[datetime]) -> Optional[datetime]:
        expires_at = as_utc(expires_at)
        if (
            expires_at is not None
            and not self._config.security.allow_past_expiry
            and expires_at <= utcnow()
        ):
            raise ValidationError(
                "Expiry must be in the future",
                validation_errors=[{"field": "expires_at", "error": "must be in the future"}],
            )
        return expires_at

    # -------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------

    def grant(
        self,
        granter_id: str,
        resource_id: str,
        resource_type: Union[str, ResourceType],
        grantee_id: str,
        access_level: Union[str, AccessLevel] = AccessLevel.VIEW,
        expires_at: Optional[datetime] = None,
    ) -> Permission:
        """
        Create or replace the grant for (resource, grantee).

        Raises:
            NotFoundError: resource or grantee absent.
            ForbiddenError: granter lacks admin on the resource.
            ValidationError: bad level / type / expiry.
        """
        resource_type = ResourceType.parse(resource_type)
        level = AccessLevel.parse(access_level)
        expires_at = self._validate_expiry(expires_at)

        with session_scope(self._session_factory, operation="grant") as session:
            resource = self._resolver.load_resource(session, resource_id, resource_type)
            self._resolver.require(
                session, granter_id, resource, OPERATION_LEVELS["manage_grants"],
                operation="manage permissions for",
            )
            if session.get(User, grantee_id) is None:
                raise NotFoundError("Grantee not found", principal_id=grantee_id)

            permission = session.execute(
                select(Permission).where(
                    Permission.resource_id == resource_id,
                    Permission.resource_type == resource_type.value,
                    Permission.grantee_id == grantee_id,
                )
            ).scalar_one_or_none()
            # An expired row is reused, but the grant counts as new
            created = permission is None or permission.is_expired()
            if permission is None:
                permission = Permission(
                    resource_id=resource_id,
                    resource_type=resource_type.value,
                    grantee_id=grantee_id,
                )
                session.add(permission)
            permission.access_level = level.value
            permission.granted_by = granter_id
            permission.expires_at = expires_at
            session.flush()

        logger.info(
            f"{'Granted' if created else 'Updated'} {level.value} on "
            f"{resource_type.value}:{resource_id} to {grantee_id} by {granter_id}"
        )
        emit_activity(
            self._activity, granter_id, resource_id, resource_type.value, "grant",
            {
                "grantee_id": grantee_id,
                "access_level": level.value,
                "expires_at": expires_at.isoformat() if expires_at else None,
                "replaced": not created,
            },
        )
        return permission

    def update_grant(
        self,
        actor_id: str,
        grant_id: str,
        access_level: Optional[Union[str, AccessLevel]] = None,
        expires_at=_UNSET,
    ) -> Permission:
        """Change level and/or expiry of an existing grant (expires_at=None clears it)."""
        level = AccessLevel.parse(access_level) if access_level is not None else None
        if expires_at is not _UNSET:
            expires_at = self._validate_expiry(expires_at)

        with session_scope(self._session_factory, operation="update_grant") as session:
            permission = session.get(Permission, grant_id)
            if permission is None:
                raise NotFoundError("Permission not found", grant_id=grant_id)
            resource_type = ResourceType.parse(permission.resource_type)
            resource = self._resolver.load_resource(session, permission.resource_id, resource_type)
            self._resolver.require(
                session, actor_id, resource, OPERATION_LEVELS["manage_grants"],
                operation="manage permissions for",
            )
            if level is not None:
                permission.access_level = level.value
            if expires_at is not _UNSET:
                permission.expires_at = expires_at
            session.flush()

        emit_activity(
            self._activity, actor_id, permission.resource_id, permission.resource_type,
            "update_permission",
            {
                "grant_id": grant_id,
                "grantee_id": permission.grantee_id,
                "access_level": permission.access_level,
            },
        )
        return permission

    def revoke(
        self,
        granter_id: str,
        resource_id: str,
        resource_type: Union[str, ResourceType],
        grantee_id: str,
    ) -> None:
        """
        Delete the grant for (resource, grantee).

        Raises:
            NotFoundError: resource absent, or no grant exists for the grantee.
            ForbiddenError: granter lacks admin on the resource.
        """
        resource_type = ResourceType.parse(resource_type)

        with session_scope(self._session_factory, operation="revoke") as session:
            resource = self._resolver.load_resource(session, resource_id, resource_type)
            self._resolver.require(
                session, granter_id, resource, OPERATION_LEVELS["manage_grants"],
                operation="manage permissions for",
            )
            permission = session.execute(
                select(Permission).where(
                    Permission.resource_id == resource_id,
                    Permission.resource_type == resource_type.value,
                    Permission.grantee_id == grantee_id,
                )
            ).scalar_one_or_none()
            if permission is None:
                raise NotFoundError(
                    "Permission not found",
                    resource_id=resource_id,
                    resource_type=resource_type.value,
                    principal_id=grantee_id,
                )
            revoked_level = permission.access_level
            session.delete(permission)

        logger.info(f"Revoked {revoked_level} on {resource_type.value}:{resource_id} from {grantee_id}")
        emit_activity(
            self._activity, granter_id, resource_id, resource_type.value, "revoke",
            {"grantee_id": grantee_id, "access_level": revoked_level},
        )

    def sweep_expired(self, now: Optional[datetime] = None) -> int:
        """Delete grants whose expiry has passed. Returns the number removed."""
        now = as_utc(now) or utcnow()
        with session_scope(self._session_factory, operation="sweep_expired_grants") as session:
            result = session.execute(
                delete(Permission).where(
                    Permission.expires_at.is_not(None),
                    Permission.expires_at <= now,
                )
            )
            removed = result.rowcount or 0
        if removed:
            logger.info(f"Swept {removed} expired grant(s)")
        return removed

    # -------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------

    def list_resource_grants(
        self,
        actor_id: str,
        resource_id: str,
        resource_type: Union[str, ResourceType],
    ) -> List[Permission]:
        """Active grants on a resource. Requires admin on it."""
        resource_type = ResourceType.parse(resource_type)
        now = utcnow()
        with session_scope(self._session_factory, operation="list_resource_grants") as session:
            resource = self._resolver.load_resource(session, resource_id, resource_type)
            self._resolver.require(
                session, actor_id, resource, OPERATION_LEVELS["manage_grants"],
                operation="view permissions of",
            )
            return list(
                session.execute(
                    select(Permission)
                    .where(
                        Permission.resource_id == resource_id,
                        Permission.resource_type == resource_type.value,
                        or_(Permission.expires_at.is_(None), Permission.expires_at > now),
                    )
                    .order_by(Permission.created_at)
                ).scalars()
            )

    def list_principal_grants(self, principal_id: str) -> List[Permission]:
        """Active grants held by the principal ("shared with me")."""
        now = utcnow()
        with session_scope(self._session_factory, operation="list_principal_grants") as session:
            return list(
                session.execute(
                    select(Permission)
                    .where(
                        Permission.grantee_id == principal_id,
                        or_(Permission.expires_at.is_(None), Permission.expires_at > now),
                    )
                    .order_by(Permission.created_at)
                ).scalars()
            )
