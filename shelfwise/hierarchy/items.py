"""
Item placement — items are filed into at most one folder of their owner's tree.

Filing an item bumps the target folder's version, so it cannot interleave
with a concurrent delete of that folder (delete_folder refuses folders that
still hold items).
"""

from __future__ import annotations

import logging
from typing import Iterable, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.orm import sessionmaker

from shelfwise.activity.sink import ActivitySink, activity_sink_from_config, emit_activity
from shelfwise.db.models import Folder, Item, Permission
from shelfwise.db.session import session_scope
from shelfwise.engine.config import ShelfwiseConfig, get_config
from shelfwise.engine.errors import NotFoundError, ValidationError
from shelfwise.hierarchy.service import FolderService, normalize_parent_id, normalize_tags
from shelfwise.security.access import OPERATION_LEVELS, AccessResolver, ResourceType

logger = logging.getLogger("shelfwise.hierarchy.items")


class ItemService:
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

    def _validate(self, name: Optional[str], quantity: int, min_level: int, price: float) -> str:
        errors = []
        name = (name or "").strip()
        max_length = self._config.hierarchy.name_max_length
        if not name:
            errors.append({"field": "name", "error": "required"})
        elif len(name) > max_length:
            errors.append({"field": "name", "error": f"max {max_length} characters"})
        if quantity < 0:
            errors.append({"field": "quantity", "error": "cannot be negative"})
        if min_level < 0:
            errors.append({"field": "min_level", "error": "cannot be negative"})
        if price < 0:
            errors.append({"field": "price", "error": "cannot be negative"})
        if errors:
            raise ValidationError("Invalid item", validation_errors=errors)
        return name

    @staticmethod
    def _get_item(session, item_id: str) -> Item:
        item = session.get(Item, item_id)
        if item is None:
            raise NotFoundError("Item not found", resource_id=item_id, resource_type="Item")
        return item

    def create_item(
        self,
        tenant_id: str,
        name: str,
        folder_id: Optional[str] = None,
        quantity: int = 0,
        min_level: int = 0,
        price: float = 0,
        unit: str = "unit",
        description: Optional[str] = None,
        tags: Optional[Iterable[str]] = None,
    ) -> Item:
        name = self._validate(name, quantity, min_level, price)
        folder_id = normalize_parent_id(folder_id)

        with session_scope(self._session_factory, operation="create_item") as session:
            if folder_id is not None:
                folder = session.get(Folder, folder_id)
                if folder is None or folder.owner_id != tenant_id:
                    raise NotFoundError("Folder not found", resource_id=folder_id, resource_type="Folder")
                FolderService._touch(folder)
            item = Item(
                owner_id=tenant_id,
                name=name,
                description=description,
                quantity=quantity,
                min_level=min_level,
                price=price,
                unit=unit,
                tags=normalize_tags(tags),
                folder_id=folder_id,
            )
            session.add(item)
            session.flush()

        emit_activity(self._activity, tenant_id, item.id, "Item", "create",
                      {"name": name, "folder_id": folder_id})
        return item

    def get_item(self, principal_id: str, item_id: str) -> Item:
        with session_scope(self._session_factory, operation="get_item") as session:
            item = self._get_item(session, item_id)
            self._resolver.require(session, principal_id, item, OPERATION_LEVELS["read"], operation="view")
            return item

    def list_folder_items(self, principal_id: str, folder_id: str, low_stock_only: bool = False) -> List[Item]:
        """Items filed directly in a folder, sorted by name."""
        with session_scope(self._session_factory, operation="list_folder_items") as session:
            folder = session.get(Folder, folder_id)
            if folder is None:
                raise NotFoundError("Folder not found", resource_id=folder_id, resource_type="Folder")
            self._resolver.require(session, principal_id, folder, OPERATION_LEVELS["read"], operation="view")
            filed = session.execute(
                select(Item).where(Item.folder_id == folder_id).order_by(Item.name)
            ).scalars()
            return [item for item in filed if item.is_low_stock or not low_stock_only]

    def move_item(self, principal_id: str, item_id: str, folder_id: Optional[str]) -> Item:
        """
        File an item into folder_id, or unfile it with None.

        Raises:
            NotFoundError: item absent, or folder absent / in another tenant.
            ForbiddenError: no edit on the item or on the target folder.
        """
        folder_id = normalize_parent_id(folder_id)

        with session_scope(self._session_factory, operation="move_item") as session:
            item = self._get_item(session, item_id)
            self._resolver.require(session, principal_id, item, OPERATION_LEVELS["move"], operation="move")
            previous = item.folder_id
            if folder_id is not None:
                folder = session.get(Folder, folder_id)
                if folder is None or folder.owner_id != item.owner_id:
                    raise NotFoundError("Folder not found", resource_id=folder_id, resource_type="Folder")
                self._resolver.require(
                    session, principal_id, folder, OPERATION_LEVELS["file_into"],
                    operation="file items into",
                )
                FolderService._touch(folder)
            if previous == folder_id:
                return item
            item.folder_id = folder_id
            session.flush()

        emit_activity(self._activity, principal_id, item_id, "Item", "move",
                      {"name": item.name, "from": previous, "to": folder_id})
        return item

    def delete_item(self, principal_id: str, item_id: str) -> None:
        with session_scope(self._session_factory, operation="delete_item") as session:
            item = self._get_item(session, item_id)
            self._resolver.require(session, principal_id, item, OPERATION_LEVELS["delete"], operation="delete")
            name = item.name
            session.execute(
                delete(Permission).where(
                    Permission.resource_id == item_id,
                    Permission.resource_type == ResourceType.ITEM.value,
                )
            )
            session.delete(item)

        logger.info(f"Deleted item {item_id} '{name}'")
        emit_activity(self._activity, principal_id, item_id, "Item", "delete", {"name": name})
