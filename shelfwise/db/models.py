"""
Shelfwise Models — SQLAlchemy models for the resource store.

Tables:
1. users        — Principals (tenants and grantees)
2. folders      — Folder tree with materialized path + level
3. items        — Inventory items, optionally filed into a folder
4. permissions  — Explicit, possibly expiring, access grants

Folders and items carry a version stamp (mapper version_id_col): every UPDATE
is conditioned on the version that was read, so a concurrent structural
change surfaces as StaleDataError instead of being silently overwritten.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)

from shelfwise.db.base import AuditMixin, Base, as_utc, new_id, utcnow
from shelfwise.hierarchy.paths import ROOT_LEVEL, decode_path, encode_path


# ---------------------------------------------------------------------------
# 1. Users
# ---------------------------------------------------------------------------

class User(Base, AuditMixin):
    __tablename__ = "users"

    id = Column(String(32), primary_key=True, default=new_id)
    email = Column(String(255), unique=True, nullable=False, index=True)
    name = Column(String(200), nullable=False, default="")

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "email": self.email, "name": self.name}

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email='{self.email}')>"


# ---------------------------------------------------------------------------
# 2. Folders
# ---------------------------------------------------------------------------

class Folder(Base, AuditMixin):
    __tablename__ = "folders"

    id = Column(String(32), primary_key=True, default=new_id)
    owner_id = Column(String(32), ForeignKey("users.id"), nullable=False)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    parent_id = Column(String(32), ForeignKey("folders.id"), nullable=True)
    materialized_path = Column(Text, nullable=False, default="")
    level = Column(Integer, nullable=False, default=ROOT_LEVEL)
    tags = Column(JSON, nullable=False, default=list)
    color = Column(String(20), nullable=True)
    custom_fields = Column(JSON, nullable=False, default=dict)
    version = Column(Integer, nullable=False)

    __table_args__ = (
        UniqueConstraint("owner_id", "parent_id", "name", name="uq_folder_sibling_name"),
        # NULL parent_ids never collide in the constraint above
        Index(
            "uq_folder_root_name",
            "owner_id",
            "name",
            unique=True,
            postgresql_where=text("parent_id IS NULL"),
            sqlite_where=text("parent_id IS NULL"),
        ),
        CheckConstraint("level >= 1", name="ck_folders_level"),
        Index("idx_folders_owner_parent", "owner_id", "parent_id"),
        Index("idx_folders_path", "materialized_path"),
    )
    __mapper_args__ = {"version_id_col": version}

    @property
    def path(self) -> List[str]:
        """Ancestor ids, root first."""
        return decode_path(self.materialized_path)

    def place(self, path: List[str], level: int) -> None:
        self.materialized_path = encode_path(path)
        self.level = level

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "name": self.name,
            "description": self.description,
            "parent_id": self.parent_id,
            "path": self.path,
            "level": self.level,
            "tags": list(self.tags or []),
            "color": self.color,
            "custom_fields": dict(self.custom_fields or {}),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self) -> str:
        return f"<Folder(id={self.id}, name='{self.name}', level={self.level})>"


# ---------------------------------------------------------------------------
# 3. Items
# ---------------------------------------------------------------------------

class Item(Base, AuditMixin):
    __tablename__ = "items"

    id = Column(String(32), primary_key=True, default=new_id)
    owner_id = Column(String(32), ForeignKey("users.id"), nullable=False)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    quantity = Column(Integer, nullable=False, default=0)
    unit = Column(String(30), nullable=False, default="unit")
    min_level = Column(Integer, nullable=False, default=0)
    price = Column(Numeric(12, 2, asdecimal=False), nullable=False, default=0)
    tags = Column(JSON, nullable=False, default=list)
    folder_id = Column(String(32), ForeignKey("folders.id"), nullable=True, index=True)
    version = Column(Integer, nullable=False)

    __table_args__ = (
        CheckConstraint("quantity >= 0", name="ck_items_quantity"),
        CheckConstraint("min_level >= 0", name="ck_items_min_level"),
        CheckConstraint("price >= 0", name="ck_items_price"),
        Index("idx_items_owner", "owner_id"),
    )
    __mapper_args__ = {"version_id_col": version}

    @property
    def is_low_stock(self) -> bool:
        return self.quantity <= self.min_level

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "name": self.name,
            "description": self.description,
            "quantity": self.quantity,
            "unit": self.unit,
            "min_level": self.min_level,
            "price": self.price,
            "tags": list(self.tags or []),
            "folder_id": self.folder_id,
            "low_stock": self.is_low_stock,
        }

    def __repr__(self) -> str:
        return f"<Item(id={self.id}, name='{self.name}', folder_id={self.folder_id})>"


# ---------------------------------------------------------------------------
# 4. Permissions (grants)
# ---------------------------------------------------------------------------

class Permission(Base, AuditMixin):
    __tablename__ = "permissions"

    id = Column(String(32), primary_key=True, default=new_id)
    resource_id = Column(String(32), nullable=False)
    resource_type = Column(String(10), nullable=False)
    grantee_id = Column(String(32), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    access_level = Column(String(10), nullable=False, default="view")
    granted_by = Column(String(32), ForeignKey("users.id"), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("resource_id", "resource_type", "grantee_id", name="uq_permission_resource_grantee"),
        CheckConstraint("resource_type IN ('Folder', 'Item')", name="ck_permissions_resource_type"),
        CheckConstraint("access_level IN ('view', 'edit', 'admin')", name="ck_permissions_access_level"),
        Index("idx_permissions_resource", "resource_id", "resource_type"),
        Index("idx_permissions_grantee", "grantee_id"),
        Index("idx_permissions_expires_at", "expires_at"),
    )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return as_utc(self.expires_at) <= (now or utcnow())

    def to_dict(self) -> Dict[str, Any]:
        expires = as_utc(self.expires_at)
        return {
            "id": self.id,
            "resource_id": self.resource_id,
            "resource_type": self.resource_type,
            "grantee_id": self.grantee_id,
            "access_level": self.access_level,
            "granted_by": self.granted_by,
            "expires_at": expires.isoformat() if expires else None,
        }

    def __repr__(self) -> str:
        return (
            f"<Permission(resource={self.resource_type}:{self.resource_id}, "
            f"grantee={self.grantee_id}, level='{self.access_level}')>"
        )
