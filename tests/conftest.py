"""
Shelfwise Test Suite — Shared fixtures and configuration.

Run:  pytest tests/ -v

Every test that touches the store gets its own SQLite file database under
tmp_path, so tests never share state or need a running Postgres.
"""

from __future__ import annotations

from types import SimpleNamespace

import pytest

from shelfwise.activity.sink import MemoryActivitySink
from shelfwise.db.models import User
from shelfwise.db.session import init_db, session_scope
from shelfwise.engine.config import ShelfwiseConfig
from shelfwise.engine.logging import FileLogger
from shelfwise.hierarchy.items import ItemService
from shelfwise.hierarchy.service import FolderService
from shelfwise.security.access import AccessResolver
from shelfwise.security.grants import GrantService


# ---------------------------------------------------------------------------
# Environment setup — no stray shelfwise.yaml or env overrides
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _isolate_config(monkeypatch, tmp_path):
    """Reset global singletons between tests."""
    import shelfwise.db.session as session_mod
    import shelfwise.engine.config as cfg_mod

    monkeypatch.delenv("SHELFWISE_CONFIG", raising=False)
    monkeypatch.delenv("SHELFWISE_DATABASE_URL", raising=False)
    monkeypatch.chdir(tmp_path)
    cfg_mod._config = None
    yield
    cfg_mod._config = None
    session_mod._session_factory = None


@pytest.fixture
def config():
    return ShelfwiseConfig()


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite:///{tmp_path / 'shelfwise.db'}"


@pytest.fixture
def session_factory(db_url):
    factory = init_db(db_url, create_tables=True)
    yield factory
    factory.kw["bind"].dispose()


@pytest.fixture
def users(session_factory):
    """Three principals: alice and bob are tenants, carol is only ever a grantee."""
    with session_scope(session_factory) as session:
        alice = User(email="alice@example.com", name="Alice")
        bob = User(email="bob@example.com", name="Bob")
        carol = User(email="carol@example.com", name="Carol")
        session.add_all([alice, bob, carol])
        session.flush()
        return SimpleNamespace(alice=alice.id, bob=bob.id, carol=carol.id)


@pytest.fixture
def sink():
    return MemoryActivitySink()


@pytest.fixture
def security_log(tmp_path):
    return FileLogger(log_dir=str(tmp_path / "logs"))


@pytest.fixture
def resolver(session_factory, security_log):
    return AccessResolver(session_factory, security_log=security_log)


@pytest.fixture
def folders(session_factory, resolver, sink, config):
    return FolderService(session_factory, resolver=resolver, activity_sink=sink, config=config)


@pytest.fixture
def items(session_factory, resolver, sink, config):
    return ItemService(session_factory, resolver=resolver, activity_sink=sink, config=config)


@pytest.fixture
def grants(session_factory, resolver, sink, config):
    return GrantService(session_factory, resolver=resolver, activity_sink=sink, config=config)
