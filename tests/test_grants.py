"""Tests for shelfwise.security.grants — grant, update, revoke, sweep, listing."""

from datetime import timedelta

import pytest

from shelfwise.db.base import as_utc, utcnow
from shelfwise.db.models import Permission
from shelfwise.db.session import session_scope
from shelfwise.engine.config import ShelfwiseConfig
from shelfwise.engine.errors import ForbiddenError, NotFoundError, ValidationError
from shelfwise.security.grants import GrantService


@pytest.fixture
def folder(folders, users):
    return folders.create_folder(users.alice, "Garage")


class TestGrant:

    def test_owner_grants_and_grantee_gains_access(self, grants, resolver, folder, users):
        permission = grants.grant(users.alice, folder.id, "Folder", users.bob, "edit")
        assert permission.access_level == "edit"
        assert permission.granted_by == users.alice
        assert resolver.check(users.bob, folder.id, "Folder", "edit").allowed

    def test_upsert_replaces_level(self, grants, session_factory, folder, users):
        first = grants.grant(users.alice, folder.id, "Folder", users.bob, "view")
        second = grants.grant(users.alice, folder.id, "folder", users.bob, "admin")
        assert first.id == second.id
        with session_scope(session_factory) as session:
            rows = session.query(Permission).filter_by(resource_id=folder.id).all()
            assert len(rows) == 1
            assert rows[0].access_level == "admin"

    def test_non_admin_cannot_grant(self, grants, folder, users):
        grants.grant(users.alice, folder.id, "Folder", users.bob, "edit")
        with pytest.raises(ForbiddenError):
            grants.grant(users.bob, folder.id, "Folder", users.carol, "view")

    def test_admin_grantee_can_delegate(self, grants, resolver, folder, users):
        grants.grant(users.alice, folder.id, "Folder", users.bob, "admin")
        grants.grant(users.bob, folder.id, "Folder", users.carol, "view")
        assert resolver.check(users.carol, folder.id, "Folder", "view").allowed

    def test_missing_resource(self, grants, users):
        with pytest.raises(NotFoundError):
            grants.grant(users.alice, "nope", "Folder", users.bob, "view")

    def test_missing_grantee(self, grants, folder, users):
        with pytest.raises(NotFoundError, match="Grantee"):
            grants.grant(users.alice, folder.id, "Folder", "ghost", "view")

    def test_invalid_level(self, grants, folder, users):
        with pytest.raises(ValidationError):
            grants.grant(users.alice, folder.id, "Folder", users.bob, "owner")

    def test_past_expiry_rejected(self, grants, folder, users):
        with pytest.raises(ValidationError, match="future"):
            grants.grant(users.alice, folder.id, "Folder", users.bob, "view",
                         expires_at=utcnow() - timedelta(hours=1))

    def test_past_expiry_allowed_by_config(self, session_factory, resolver, folder, users):
        service = GrantService(
            session_factory, resolver=resolver,
            config=ShelfwiseConfig(security={"allow_past_expiry": True}),
        )
        service.grant(users.alice, folder.id, "Folder", users.bob, "view",
                      expires_at=utcnow() - timedelta(hours=1))
        assert not resolver.check(users.bob, folder.id, "Folder", "view").allowed

    def test_grant_on_item(self, grants, items, resolver, users):
        item = items.create_item(users.alice, "Drill", quantity=1)
        grants.grant(users.alice, item.id, "Item", users.bob, "view")
        assert resolver.check(users.bob, item.id, "Item", "view").allowed

    def test_activity_recorded(self, grants, sink, folder, users):
        grants.grant(users.alice, folder.id, "Folder", users.bob, "edit")
        record = sink.records[-1]
        assert record.action == "grant"
        assert record.details["grantee_id"] == users.bob
        assert record.details["replaced"] is False

    def test_regrant_over_expired_row_counts_as_new(self, grants, session_factory, sink, folder, users):
        with session_scope(session_factory) as session:
            session.add(Permission(
                resource_id=folder.id, resource_type="Folder", grantee_id=users.bob,
                granted_by=users.alice, access_level="admin",
                expires_at=utcnow() - timedelta(days=1),
            ))
        grants.grant(users.alice, folder.id, "Folder", users.bob, "view")
        assert sink.records[-1].details["replaced"] is False
        with session_scope(session_factory) as session:
            rows = session.query(Permission).filter_by(resource_id=folder.id).all()
            assert len(rows) == 1
            assert rows[0].access_level == "view"
            assert rows[0].is_expired() is False

    def test_is_expired(self):
        assert Permission(expires_at=None).is_expired() is False
        assert Permission(expires_at=utcnow() - timedelta(seconds=1)).is_expired() is True
        assert Permission(expires_at=utcnow() + timedelta(hours=1)).is_expired() is False


class TestUpdateGrant:

    def test_change_level_and_expiry(self, grants, folder, users):
        permission = grants.grant(users.alice, folder.id, "Folder", users.bob, "view")
        expiry = utcnow() + timedelta(days=2)
        updated = grants.update_grant(users.alice, permission.id, access_level="edit", expires_at=expiry)
        assert updated.access_level == "edit"
        assert as_utc(updated.expires_at) == expiry

    def test_clear_expiry(self, grants, folder, users):
        permission = grants.grant(users.alice, folder.id, "Folder", users.bob, "view",
                                  expires_at=utcnow() + timedelta(days=1))
        updated = grants.update_grant(users.alice, permission.id, expires_at=None)
        assert updated.expires_at is None
        assert updated.access_level == "view"

    def test_unknown_grant(self, grants, users):
        with pytest.raises(NotFoundError):
            grants.update_grant(users.alice, "missing", access_level="edit")

    def test_requires_admin(self, grants, folder, users):
        permission = grants.grant(users.alice, folder.id, "Folder", users.bob, "edit")
        with pytest.raises(ForbiddenError):
            grants.update_grant(users.bob, permission.id, access_level="admin")


class TestRevoke:

    def test_revoke_removes_access(self, grants, resolver, sink, folder, users):
        grants.grant(users.alice, folder.id, "Folder", users.bob, "edit")
        grants.revoke(users.alice, folder.id, "Folder", users.bob)
        assert not resolver.check(users.bob, folder.id, "Folder", "view").allowed
        assert sink.actions()[-1] == "revoke"

    def test_revoke_missing_grant(self, grants, folder, users):
        with pytest.raises(NotFoundError, match="Permission"):
            grants.revoke(users.alice, folder.id, "Folder", users.bob)

    def test_revoke_requires_admin(self, grants, folder, users):
        grants.grant(users.alice, folder.id, "Folder", users.bob, "edit")
        with pytest.raises(ForbiddenError):
            grants.revoke(users.bob, folder.id, "Folder", users.bob)

    def test_revoke_expired_grant_succeeds(self, grants, session_factory, folder, users):
        with session_scope(session_factory) as session:
            session.add(Permission(
                resource_id=folder.id, resource_type="Folder", grantee_id=users.bob,
                granted_by=users.alice, access_level="view",
                expires_at=utcnow() - timedelta(days=1),
            ))
        grants.revoke(users.alice, folder.id, "Folder", users.bob)
        with session_scope(session_factory) as session:
            assert session.query(Permission).count() == 0


class TestSweepAndList:

    def _add_expired(self, session_factory, folder, users):
        with session_scope(session_factory) as session:
            session.add(Permission(
                resource_id=folder.id, resource_type="Folder", grantee_id=users.carol,
                granted_by=users.alice, access_level="view",
                expires_at=utcnow() - timedelta(seconds=5),
            ))

    def test_sweep_expired(self, grants, session_factory, folder, users):
        grants.grant(users.alice, folder.id, "Folder", users.bob, "view")
        self._add_expired(session_factory, folder, users)
        assert grants.sweep_expired() == 1
        assert grants.sweep_expired() == 0
        with session_scope(session_factory) as session:
            assert [p.grantee_id for p in session.query(Permission)] == [users.bob]

    def test_list_resource_grants_active_only(self, grants, session_factory, folder, users):
        grants.grant(users.alice, folder.id, "Folder", users.bob, "view")
        self._add_expired(session_factory, folder, users)
        listed = grants.list_resource_grants(users.alice, folder.id, "Folder")
        assert [p.grantee_id for p in listed] == [users.bob]

    def test_list_resource_grants_requires_admin(self, grants, folder, users):
        grants.grant(users.alice, folder.id, "Folder", users.bob, "edit")
        with pytest.raises(ForbiddenError):
            grants.list_resource_grants(users.bob, folder.id, "Folder")

    def test_list_principal_grants(self, grants, folders, folder, users):
        other = folders.create_folder(users.alice, "Attic")
        grants.grant(users.alice, folder.id, "Folder", users.bob, "view")
        grants.grant(users.alice, other.id, "Folder", users.bob, "edit")
        assert {p.resource_id for p in grants.list_principal_grants(users.bob)} == {folder.id, other.id}
        assert grants.list_principal_grants(users.carol) == []
