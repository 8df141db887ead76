"""Tests for shelfwise.activity.sink — records, sinks and best-effort emission."""

import pytest
from pydantic import ValidationError as PydanticValidationError

from shelfwise.activity.sink import (
    ActivityHistory,
    ActivityRecord,
    ActivitySink,
    FileActivitySink,
    MemoryActivitySink,
    NullActivitySink,
    activity_sink_from_config,
    emit_activity,
)
from shelfwise.engine.config import ShelfwiseConfig
from shelfwise.engine.errors import ForbiddenError
from shelfwise.engine.logging import FileLogger
from shelfwise.hierarchy.service import FolderService


class ExplodingSink:
    def record(self, activity):
        raise OSError("disk full")


class TestActivityRecord:

    def test_defaults(self):
        record = ActivityRecord(principal_id="u1", resource_id="f1", resource_type="Folder", action="create")
        assert record.details == {}
        assert record.timestamp.tzinfo is not None

    def test_unknown_action_rejected(self):
        with pytest.raises(PydanticValidationError):
            ActivityRecord(principal_id="u1", resource_id="f1", resource_type="Folder", action="explode")


class TestSinks:

    def test_protocol(self):
        for sink in (NullActivitySink(), MemoryActivitySink(), ExplodingSink()):
            assert isinstance(sink, ActivitySink)

    def test_memory_sink(self):
        sink = MemoryActivitySink()
        assert emit_activity(sink, "u1", "f1", "Folder", "move", {"to": None}) is True
        assert sink.actions() == ["move"]

    def test_no_sink(self):
        assert emit_activity(None, "u1", "f1", "Folder", "move") is False

    def test_failure_is_swallowed(self, caplog):
        assert emit_activity(ExplodingSink(), "u1", "f1", "Folder", "delete") is False
        assert "dropped" in caplog.text

    def test_history_protocol(self):
        assert isinstance(MemoryActivitySink(), ActivityHistory)
        assert not isinstance(ExplodingSink(), ActivityHistory)

    def test_memory_history_filters_by_resource(self):
        sink = MemoryActivitySink()
        emit_activity(sink, "u1", "f1", "Folder", "create")
        emit_activity(sink, "u1", "f2", "Folder", "create")
        emit_activity(sink, "u1", "f1", "Folder", "rename")
        assert [r.action for r in sink.history("Folder", "f1")] == ["rename", "create"]

    def test_file_sink(self, tmp_path):
        sink = FileActivitySink.from_directory(str(tmp_path))
        emit_activity(sink, "u1", "f1", "Folder", "rename", {"from": "a", "to": "b"})
        entries = sink._file_logger.query("folder", "activity")
        assert len(entries) == 1
        assert entries[0]["event"] == "rename"
        assert entries[0]["details"] == {"from": "a", "to": "b"}


class TestOperationsSurviveSinkFailure:

    def test_create_succeeds_when_sink_fails(self, session_factory, resolver, config, users):
        service = FolderService(session_factory, resolver=resolver, activity_sink=ExplodingSink(), config=config)
        folder = service.create_folder(users.alice, "Still here")
        assert service.get_folder(users.alice, folder.id).name == "Still here"

    def test_operation_sequence(self, folders, grants, items, sink, users):
        a = folders.create_folder(users.alice, "A")
        b = folders.create_folder(users.alice, "B")
        folders.move_folder(users.alice, b.id, a.id)
        folders.rename_folder(users.alice, b.id, "Bee")
        grants.grant(users.alice, a.id, "Folder", users.bob, "view")
        grants.revoke(users.alice, a.id, "Folder", users.bob)
        folders.delete_folder(users.alice, b.id)
        assert sink.actions() == ["create", "create", "move", "rename", "grant", "revoke", "delete"]
        assert all(r.principal_id == users.alice for r in sink.records)


class TestConfigDefaults:

    def test_disabled_activity_uses_null_sink(self):
        sink = activity_sink_from_config(ShelfwiseConfig(activity={"enabled": False}))
        assert isinstance(sink, NullActivitySink)

    def test_service_defaults_write_activity_files(self, session_factory, tmp_path, users):
        cfg = ShelfwiseConfig(
            activity={"directory": str(tmp_path / "activity")},
            logging={"directory": str(tmp_path / "logs")},
        )
        service = FolderService(session_factory, config=cfg)
        folder = service.create_folder(users.alice, "Logged")
        with pytest.raises(ForbiddenError):
            service.get_folder(users.bob, folder.id)

        sink = FileActivitySink.from_directory(str(tmp_path / "activity"))
        created = sink._file_logger.query("folder", "activity", filters={"event": "create"})
        assert [e["resource_id"] for e in created] == [folder.id]
        denials = FileLogger(log_dir=str(tmp_path / "logs")).query("folder", "security")
        assert [e["principal_id"] for e in denials] == [users.bob]

    def test_folder_activity_reads_back_file_sink(self, session_factory, tmp_path, users):
        cfg = ShelfwiseConfig(
            activity={"directory": str(tmp_path / "activity")},
            logging={"directory": str(tmp_path / "logs")},
        )
        service = FolderService(session_factory, config=cfg)
        folder = service.create_folder(users.alice, "Logged")
        service.rename_folder(users.alice, folder.id, "Renamed")
        service.create_folder(users.alice, "Unrelated")

        history = service.folder_activity(users.alice, folder.id)
        assert [r.action for r in history] == ["rename", "create"]
        assert history[0].details == {"from": "Logged", "to": "Renamed"}
        assert history[0].principal_id == users.alice

    def test_folder_activity_empty_without_history(self, session_factory, tmp_path, users):
        cfg = ShelfwiseConfig(activity={"enabled": False}, logging={"directory": str(tmp_path / "logs")})
        service = FolderService(session_factory, config=cfg)
        folder = service.create_folder(users.alice, "Quiet")
        assert service.folder_activity(users.alice, folder.id) == []
