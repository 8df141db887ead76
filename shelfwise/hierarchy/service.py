"""
Folder Hierarchy Engine — structural operations on each tenant's folder tree.

Invariants maintained for every folder f with parent p:
    f.path  == p.path + [p.id]        (root: [])
    f.level == p.level + 1            (root: 1)
    f.id not in f.path                (acyclic)
    name unique among (owner, parent) siblings, case-sensitive

Every operation is one unit of work (session_scope): the resolver gate, the
reads, and all writes commit together or not at all. A move rewrites the
folder and its whole subtree in memory from a single "path contains id" query
and flushes the batch in that same transaction.

Concurrency: folders carry a version stamp. A move updates every row it
touches under a version check, and operations that add something beneath a
folder (create, clone, filing an item) bump that folder's version. Two
structural changes that overlap therefore cannot both commit; the loser gets
a retryable ConflictError, which move_folder() retries on its own a
configurable number of times.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session, sessionmaker

from shelfwise.activity.sink import (
    ActivityHistory,
    ActivityRecord,
    ActivitySink,
    activity_sink_from_config,
    emit_activity,
)
from shelfwise.db.base import utcnow
from shelfwise.db.models import Folder, Item, Permission
from shelfwise.db.session import session_scope
from shelfwise.engine.config import ShelfwiseConfig, get_config
from shelfwise.engine.errors import (
    ConflictError,
    CycleDetectedError,
    InvalidOperationError,
    NotFoundError,
    ValidationError,
)
from shelfwise.hierarchy.paths import (
    ROOT_LEVEL,
    TreeAudit,
    audit_tree,
    child_position,
    descendant_pattern,
    expected_positions,
    rebase_level,
    rebase_path,
    would_create_cycle,
)
from shelfwise.security.access import OPERATION_LEVELS, AccessResolver, ResourceType

logger = logging.getLogger("shelfwise.hierarchy.service")

# Legacy spellings of "no parent" accepted from callers
ROOT_SENTINELS = ("", "null", "none", "all", "root")

CLONE_SUFFIX = " (Copy)"

_UNSET = object()


def normalize_parent_id(value: Optional[str]) -> Optional[str]:
    """Collapse every spelling of "no parent" to None."""
    if value is None:
        return None
    value = str(value).strip()
    if value.lower() in ROOT_SENTINELS:
        return None
    return value


def normalize_tags(tags: Optional[Iterable[str]]) -> List[str]:
    seen: List[str] = []
    for tag in tags or []:
        tag = str(tag).strip()
        if tag and tag not in seen:
            seen.append(tag)
    return seen


@dataclass
class MoveResult:
    folder: Folder
    descendants_updated: int
    previous_parent_id: Optional[str]
    changed: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "folder": self.folder.to_dict(),
            "descendants_updated": self.descendants_updated,
            "previous_parent_id": self.previous_parent_id,
            "changed": self.changed,
        }


class FolderService:
    """
    Create / rename / update / move / delete / clone folders, plus the
    path-derived ancestor and descendant queries and tree maintenance.
    """

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

    # -------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------

    def _validate_name(self, name: Optional[str]) -> str:
        name = (name or "").strip()
        max_length = self._config.hierarchy.name_max_length
        if not name:
            raise ValidationError(
                "Folder name is required",
                validation_errors=[{"field": "name", "error": "required"}],
            )
        if len(name) > max_length:
            raise ValidationError(
                f"Name cannot be more than {max_length} characters",
                validation_errors=[{"field": "name", "error": f"max {max_length} characters"}],
            )
        return name

    def _default_clone_name(self, source_name: str) -> str:
        keep = self._config.hierarchy.name_max_length - len(CLONE_SUFFIX)
        return source_name[:keep].rstrip() + CLONE_SUFFIX

    @staticmethod
    def _get_folder(session: Session, folder_id: str) -> Folder:
        folder = session.get(Folder, folder_id)
        if folder is None:
            raise NotFoundError("Folder not found", resource_id=folder_id, resource_type="Folder")
        return folder

    @staticmethod
    def _get_parent(session: Session, parent_id: str, owner_id: str) -> Folder:
        """A parent must exist and belong to the same tenant; anything else reads as absent."""
        parent = session.get(Folder, parent_id)
        if parent is None or parent.owner_id != owner_id:
            raise NotFoundError("Parent folder not found", resource_id=parent_id, resource_type="Folder")
        return parent

    @staticmethod
    def _ensure_unique_name(
        session: Session,
        owner_id: str,
        parent_id: Optional[str],
        name: str,
        exclude_id: Optional[str] = None,
    ) -> None:
        stmt = select(Folder.id).where(
            Folder.owner_id == owner_id,
            Folder.name == name,
            Folder.parent_id.is_(None) if parent_id is None else Folder.parent_id == parent_id,
        )
        if exclude_id is not None:
            stmt = stmt.where(Folder.id != exclude_id)
        if session.execute(stmt.limit(1)).first() is not None:
            raise ConflictError(
                "A folder with this name already exists in the selected parent folder",
                name=name,
                parent_id=parent_id,
            )

    @staticmethod
    def _touch(folder: Folder) -> None:
        # Forces an UPDATE, which moves the version stamp
        folder.updated_at = utcnow()

    @staticmethod
    def _load_subtree(session: Session, folder_id: str) -> List[Folder]:
        """Every folder whose path runs through folder_id, shallowest first."""
        stmt = (
            select(Folder)
            .where(Folder.materialized_path.like(descendant_pattern(folder_id)))
            .order_by(Folder.level, Folder.name)
        )
        return list(session.execute(stmt).scalars())

    @staticmethod
    def _rebase_subtree(
        descendants: List[Folder],
        folder_id: str,
        new_folder_path: List[str],
        old_folder_level: int,
        new_folder_level: int,
    ) -> int:
        for descendant in descendants:
            descendant.place(
                rebase_path(descendant.path, folder_id, new_folder_path),
                rebase_level(descendant.level, old_folder_level, new_folder_level),
            )
        return len(descendants)

    # -------------------------------------------------------------------
    # Create / read / update
    # -------------------------------------------------------------------

    def create_folder(
        self,
        tenant_id: str,
        name: str,
        parent_id: Optional[str] = None,
        description: Optional[str] = None,
        tags: Optional[Iterable[str]] = None,
        color: Optional[str] = None,
        custom_fields: Optional[Dict[str, Any]] = None,
    ) -> Folder:
        """
        Create a folder for tenant_id, under parent_id or at the root.

        Raises:
            NotFoundError: parent absent or owned by another tenant.
            ConflictError: a sibling already has this name.
            ValidationError: empty or overlong name.
        """
        name = self._validate_name(name)
        parent_id = normalize_parent_id(parent_id)

        with session_scope(self._session_factory, operation="create_folder") as session:
            if parent_id is not None:
                parent = self._get_parent(session, parent_id, tenant_id)
                path, level = child_position(parent.id, parent.path, parent.level)
                self._touch(parent)
            else:
                path, level = [], ROOT_LEVEL

            self._ensure_unique_name(session, tenant_id, parent_id, name)

            folder = Folder(
                owner_id=tenant_id,
                name=name,
                description=description,
                parent_id=parent_id,
                tags=normalize_tags(tags),
                color=color or self._config.hierarchy.default_color,
                custom_fields=dict(custom_fields or {}),
            )
            folder.place(path, level)
            session.add(folder)
            session.flush()

        logger.info(f"Created folder {folder.id} '{name}' (tenant={tenant_id}, parent={parent_id})")
        emit_activity(self._activity, tenant_id, folder.id, "Folder", "create",
                      {"name": name, "parent_id": parent_id})
        return folder

    def get_folder(self, principal_id: str, folder_id: str) -> Folder:
        with session_scope(self._session_factory, operation="get_folder") as session:
            folder = self._get_folder(session, folder_id)
            self._resolver.require(session, principal_id, folder, OPERATION_LEVELS["read"], operation="view")
            return folder

    def rename_folder(self, principal_id: str, folder_id: str, new_name: str) -> Folder:
        """
        Raises:
            NotFoundError, ForbiddenError, ValidationError,
            ConflictError: a sibling already has new_name.
        """
        new_name = self._validate_name(new_name)

        with session_scope(self._session_factory, operation="rename_folder") as session:
            folder = self._get_folder(session, folder_id)
            self._resolver.require(session, principal_id, folder, OPERATION_LEVELS["rename"], operation="rename")
            old_name = folder.name
            if new_name == old_name:
                return folder
            self._ensure_unique_name(session, folder.owner_id, folder.parent_id, new_name, exclude_id=folder.id)
            folder.name = new_name
            session.flush()

        emit_activity(self._activity, principal_id, folder_id, "Folder", "rename",
                      {"from": old_name, "to": new_name})
        return folder

    def update_folder(
        self,
        principal_id: str,
        folder_id: str,
        description=_UNSET,
        tags=_UNSET,
        color=_UNSET,
        custom_fields=_UNSET,
    ) -> Folder:
        """Edit non-structural attributes. Only the arguments passed are changed."""
        with session_scope(self._session_factory, operation="update_folder") as session:
            folder = self._get_folder(session, folder_id)
            self._resolver.require(session, principal_id, folder, OPERATION_LEVELS["update"], operation="update")

            changes: Dict[str, Any] = {}
            if description is not _UNSET and description != folder.description:
                changes["description"] = {"from": folder.description, "to": description}
                folder.description = description
            if tags is not _UNSET:
                new_tags = normalize_tags(tags)
                if new_tags != list(folder.tags or []):
                    changes["tags"] = {"from": list(folder.tags or []), "to": new_tags}
                    folder.tags = new_tags
            if color is not _UNSET and color != folder.color:
                changes["color"] = {"from": folder.color, "to": color}
                folder.color = color
            if custom_fields is not _UNSET:
                new_fields = dict(custom_fields or {})
                if new_fields != dict(folder.custom_fields or {}):
                    changes["custom_fields"] = {"from": dict(folder.custom_fields or {}), "to": new_fields}
                    folder.custom_fields = new_fields
            session.flush()

        if changes:
            emit_activity(self._activity, principal_id, folder_id, "Folder", "update", {"changes": changes})
        return folder

    # -------------------------------------------------------------------
    # Move
    # -------------------------------------------------------------------

    def move_folder(self, principal_id: str, folder_id: str, new_parent_id: Optional[str]) -> MoveResult:
        """
        Re-parent a folder (None = make it a root) and cascade path/level to
        its whole subtree in one transaction.

        Raises:
            NotFoundError: folder or target absent / target in another tenant.
            ForbiddenError: no edit on the folder or on the target.
            InvalidOperationError: target is the folder itself.
            CycleDetectedError: target lies inside the folder's subtree.
            ConflictError: sibling name clash at the target, or a concurrent
                structural change that persisted through every retry
                (retryable=True).
        """
        new_parent_id = normalize_parent_id(new_parent_id)
        attempts = self._config.hierarchy.move_conflict_retries + 1

        for attempt in range(1, attempts + 1):
            try:
                result = self._move_once(principal_id, folder_id, new_parent_id)
                break
            except ConflictError as exc:
                if not exc.retryable or attempt == attempts:
                    raise
                logger.info(f"Move of {folder_id} hit a concurrent change, retrying ({attempt}/{attempts - 1})")

        if result.changed:
            logger.info(
                f"Moved folder {folder_id}: {result.previous_parent_id} -> {new_parent_id} "
                f"({result.descendants_updated} descendants updated)"
            )
            emit_activity(
                self._activity, principal_id, folder_id, "Folder", "move",
                {
                    "name": result.folder.name,
                    "from": result.previous_parent_id,
                    "to": new_parent_id,
                    "descendants_updated": result.descendants_updated,
                },
            )
        return result

    def _move_once(self, principal_id: str, folder_id: str, new_parent_id: Optional[str]) -> MoveResult:
        with session_scope(self._session_factory, operation="move_folder") as session:
            folder = self._get_folder(session, folder_id)
            self._resolver.require(session, principal_id, folder, OPERATION_LEVELS["move"], operation="move")

            if new_parent_id == folder.id:
                raise InvalidOperationError(
                    "Cannot move folder into itself",
                    resource_id=folder_id,
                    resource_type="Folder",
                )

            previous_parent_id = folder.parent_id
            parent: Optional[Folder] = None
            if new_parent_id is not None:
                parent = self._get_parent(session, new_parent_id, folder.owner_id)
                self._resolver.require(
                    session, principal_id, parent, OPERATION_LEVELS["file_into"],
                    operation="move folders into",
                )
                if would_create_cycle(folder.id, parent.id, parent.path):
                    raise CycleDetectedError(
                        "Cannot move folder into its own descendant",
                        resource_id=folder_id,
                        resource_type="Folder",
                        target_id=new_parent_id,
                    )
                new_path, new_level = child_position(parent.id, parent.path, parent.level)
            else:
                new_path, new_level = [], ROOT_LEVEL

            if new_parent_id == previous_parent_id:
                return MoveResult(folder, 0, previous_parent_id, changed=False)

            self._ensure_unique_name(session, folder.owner_id, new_parent_id, folder.name, exclude_id=folder.id)

            descendants = self._load_subtree(session, folder.id)
            old_level = folder.level
            folder.parent_id = new_parent_id
            folder.place(new_path, new_level)
            updated = self._rebase_subtree(descendants, folder.id, new_path, old_level, new_level)
            if parent is not None:
                self._touch(parent)
            session.flush()
            return MoveResult(folder, updated, previous_parent_id)

    # -------------------------------------------------------------------
    # Delete / clone
    # -------------------------------------------------------------------

    def delete_folder(self, principal_id: str, folder_id: str) -> None:
        """
        Delete a childless, itemless folder (and the grants that pointed at it).

        Raises:
            NotFoundError, ForbiddenError,
            ConflictError: the folder still has subfolders or items.
        """
        with session_scope(self._session_factory, operation="delete_folder") as session:
            folder = self._get_folder(session, folder_id)
            self._resolver.require(session, principal_id, folder, OPERATION_LEVELS["delete"], operation="delete")

            child_count = session.execute(
                select(func.count()).select_from(Folder).where(Folder.parent_id == folder_id)
            ).scalar_one()
            if child_count:
                raise ConflictError(
                    "Cannot delete folder with subfolders. Please move or delete subfolders first.",
                    resource_id=folder_id,
                    resource_type="Folder",
                    child_count=child_count,
                )
            item_count = session.execute(
                select(func.count()).select_from(Item).where(Item.folder_id == folder_id)
            ).scalar_one()
            if item_count:
                raise ConflictError(
                    "Cannot delete folder with items. Please move or delete items first.",
                    resource_id=folder_id,
                    resource_type="Folder",
                    item_count=item_count,
                )

            name = folder.name
            session.execute(
                delete(Permission).where(
                    Permission.resource_id == folder_id,
                    Permission.resource_type == ResourceType.FOLDER.value,
                )
            )
            session.delete(folder)

        logger.info(f"Deleted folder {folder_id} '{name}'")
        emit_activity(self._activity, principal_id, folder_id, "Folder", "delete", {"name": name})

    def clone_folder(
        self,
        principal_id: str,
        folder_id: str,
        name: Optional[str] = None,
        include_items: bool = True,
    ) -> Folder:
        """
        Copy a folder (not its subfolders) next to the original, owned by the
        same tenant. Items filed directly in the source are copied when
        include_items is set.
        """
        with session_scope(self._session_factory, operation="clone_folder") as session:
            source = self._get_folder(session, folder_id)
            self._resolver.require(session, principal_id, source, OPERATION_LEVELS["clone"], operation="clone")
            clone_name = self._validate_name(name or self._default_clone_name(source.name))

            if source.parent_id is not None:
                parent = self._get_folder(session, source.parent_id)
                self._resolver.require(
                    session, principal_id, parent, OPERATION_LEVELS["file_into"],
                    operation="add folders to",
                )
                self._touch(parent)
            self._ensure_unique_name(session, source.owner_id, source.parent_id, clone_name)

            clone = Folder(
                owner_id=source.owner_id,
                name=clone_name,
                description=source.description,
                parent_id=source.parent_id,
                tags=list(source.tags or []),
                color=source.color,
                custom_fields=dict(source.custom_fields or {}),
            )
            clone.place(source.path, source.level)
            session.add(clone)
            session.flush()

            copied = 0
            if include_items:
                items = list(session.execute(select(Item).where(Item.folder_id == source.id)).scalars())
                for item in items:
                    session.add(
                        Item(
                            owner_id=item.owner_id,
                            name=item.name,
                            description=item.description,
                            quantity=item.quantity,
                            unit=item.unit,
                            min_level=item.min_level,
                            price=item.price,
                            tags=list(item.tags or []),
                            folder_id=clone.id,
                        )
                    )
                    copied += 1
                session.flush()

        emit_activity(
            self._activity, principal_id, clone.id, "Folder", "clone",
            {"source_id": folder_id, "source_name": source.name, "include_items": include_items,
             "items_copied": copied},
        )
        return clone

    # -------------------------------------------------------------------
    # Path-derived queries
    # -------------------------------------------------------------------

    def _visible(self, session: Session, principal_id: str, folders: List[Folder]) -> List[Folder]:
        """Only the folders the principal may view; a tenant sees all of their own."""
        return [
            f for f in folders
            if self._resolver.resolve(session, principal_id, f, OPERATION_LEVELS["read"])
        ]

    def ancestors(self, principal_id: str, folder_id: str) -> List[Folder]:
        """Ancestor folders the principal can view, root first."""
        with session_scope(self._session_factory, operation="ancestors") as session:
            folder = self._get_folder(session, folder_id)
            self._resolver.require(session, principal_id, folder, OPERATION_LEVELS["read"], operation="view")
            path = folder.path
            if not path:
                return []
            rows = session.execute(select(Folder).where(Folder.id.in_(path))).scalars()
            by_id = {f.id: f for f in rows}
            return self._visible(session, principal_id, [by_id[fid] for fid in path if fid in by_id])

    def descendants(self, principal_id: str, folder_id: str) -> List[Folder]:
        """Folders below folder_id that the principal can view, shallowest first."""
        with session_scope(self._session_factory, operation="descendants") as session:
            folder = self._get_folder(session, folder_id)
            self._resolver.require(session, principal_id, folder, OPERATION_LEVELS["read"], operation="view")
            return self._visible(session, principal_id, self._load_subtree(session, folder.id))

    def folder_activity(self, principal_id: str, folder_id: str, limit: int = 50) -> List[ActivityRecord]:
        """Recorded activity on a folder, newest first. Empty when the sink keeps no history."""
        with session_scope(self._session_factory, operation="folder_activity") as session:
            folder = self._get_folder(session, folder_id)
            self._resolver.require(session, principal_id, folder, OPERATION_LEVELS["read"], operation="view")
        if not isinstance(self._activity, ActivityHistory):
            return []
        return self._activity.history(ResourceType.FOLDER.value, folder_id, limit=limit)

    def hierarchy(self, tenant_id: str) -> List[Dict[str, Any]]:
        """
        The tenant's folders as a nested tree, siblings sorted by name.
        Each node: folder fields + item_count + children.
        """
        with session_scope(self._session_factory, operation="hierarchy") as session:
            folders = list(
                session.execute(
                    select(Folder).where(Folder.owner_id == tenant_id).order_by(Folder.name)
                ).scalars()
            )
            counts = dict(
                session.execute(
                    select(Item.folder_id, func.count())
                    .where(Item.owner_id == tenant_id, Item.folder_id.is_not(None))
                    .group_by(Item.folder_id)
                ).all()
            )

        children: Dict[Optional[str], List[Folder]] = defaultdict(list)
        for folder in folders:
            children[folder.parent_id].append(folder)

        def build(parent_id: Optional[str]) -> List[Dict[str, Any]]:
            nodes = []
            for folder in children.get(parent_id, []):
                node = folder.to_dict()
                node["item_count"] = counts.get(folder.id, 0)
                node["children"] = build(folder.id)
                nodes.append(node)
            return nodes

        return build(None)

    # -------------------------------------------------------------------
    # Tree maintenance
    # -------------------------------------------------------------------

    def _tenant_folders(self, session: Session, tenant_id: str) -> List[Folder]:
        return list(session.execute(select(Folder).where(Folder.owner_id == tenant_id)).scalars())

    def verify_tree(self, tenant_id: str) -> TreeAudit:
        """Report drifted path/level values, cycles and broken parent links."""
        with session_scope(self._session_factory, operation="verify_tree") as session:
            return audit_tree(self._tenant_folders(session, tenant_id))

    def repair_tree(self, tenant_id: str) -> int:
        """
        Rewrite path/level from parent links. Folders whose parent is
        missing or belongs to another tenant become roots.

        Returns:
            Number of folders rewritten.

        Raises:
            CycleDetectedError: parent links form a loop (needs a manual move).
        """
        with session_scope(self._session_factory, operation="repair_tree") as session:
            folders = self._tenant_folders(session, tenant_id)
            audit = audit_tree(folders)
            if audit.cycles:
                raise CycleDetectedError(
                    "Folder parent links form a cycle; move one of the folders to break it",
                    cycles=audit.cycles,
                )

            by_id = {f.id: f for f in folders}
            repaired = set()
            for folder in folders:
                if folder.parent_id is not None and folder.parent_id not in by_id:
                    logger.warning(f"Folder {folder.id} has a parent outside tenant {tenant_id}; detaching to root")
                    folder.parent_id = None
                    repaired.add(folder.id)

            for fid, (path, level) in expected_positions(folders).items():
                folder = by_id[fid]
                if folder.path != path or folder.level != level:
                    folder.place(path, level)
                    repaired.add(fid)
            session.flush()

        if repaired:
            logger.warning(f"Repaired {len(repaired)} folder(s) for tenant {tenant_id}")
        return len(repaired)
