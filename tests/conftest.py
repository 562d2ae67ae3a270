"""Pytest configuration and fixtures."""

import os

# Must be set before lineage.config is imported anywhere
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("SINGLE_ROOT", "true")

import pytest
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from lineage.core import mutations
from lineage.core.notifications import LoggingDispatcher, set_dispatcher
from lineage.core.search import chain_cache
from lineage.database import Base, get_db, make_engine
from lineage.models import (  # noqa: F401  (registers tables)
    actor_role,
    audit_entry,
    block,
    branch_moderator,
    node,
    operation_group,
    union,
)

engine = make_engine("sqlite://", poolclass=StaticPool)
TestingSessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db():
    """Fresh in-memory schema per test."""
    Base.metadata.create_all(bind=engine)
    chain_cache.clear()
    session = TestingSessionLocal()
    yield session
    session.close()
    Base.metadata.drop_all(bind=engine)
    chain_cache.clear()
    set_dispatcher(LoggingDispatcher())


@pytest.fixture
def add(db):
    """Insert helper: add("Name", parent_id) -> node id."""

    def _add(name, parent_id=None, actor_id=None, **fields):
        node = mutations.insert(db, actor_id, parent_id, {"display_name": name, **fields})
        return node.id

    return _add


@pytest.fixture
def family(db, add):
    """
    R
    ├── C1
    │   └── G1
    ├── C2
    └── C3
    """
    ids = {}
    ids["R"] = add("Root")
    ids["C1"] = add("Child One", ids["R"])
    ids["C2"] = add("Child Two", ids["R"])
    ids["C3"] = add("Child Three", ids["R"])
    ids["G1"] = add("Grandchild", ids["C1"])
    return ids


@pytest.fixture
def client(db):
    """
    TestClient sharing the in-memory database. The single StaticPool
    connection is shared, so tests must db.close() before calling it.
    """
    from fastapi.testclient import TestClient

    from lineage.main import app

    def override_get_db():
        session = TestingSessionLocal()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def auth_header():
    from lineage.auth import create_actor_token

    def _header(actor_id):
        return {"Authorization": f"Bearer {create_actor_token(actor_id)}"}

    return _header
