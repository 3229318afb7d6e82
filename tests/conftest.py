import os

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from newsletter.db.base import Base
from newsletter.db import models  # noqa: F401


def _make_session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


@pytest.fixture()
def engine():
    """In-memory SQLite engine with all tables created."""
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return _make_session_factory(engine)


@pytest.fixture()
def file_engine(tmp_path):
    """File-backed SQLite engine for tests that run real threads.

    Every transaction starts with ``BEGIN IMMEDIATE`` so concurrent writers
    serialize on the database lock instead of failing on upgrade.
    """
    engine = create_engine(
        f"sqlite+pysqlite:///{tmp_path / 'newsletter.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def file_session_factory(file_engine):
    return _make_session_factory(file_engine)


@pytest.fixture
def client(monkeypatch: pytest.MonkeyPatch, session_factory) -> TestClient:
    """TestClient whose sessions and executor use the in-memory database."""
    monkeypatch.setenv("DATABASE_URL", "sqlite+pysqlite:///:memory:")

    from newsletter.core.settings import get_settings

    get_settings.cache_clear()

    from newsletter.api.deps import get_db, get_idempotent_executor
    from newsletter.idempotency.executor import IdempotentExecutor
    from newsletter.main import app

    def _override_db():
        with session_factory() as db:
            try:
                yield db
                db.commit()
            except Exception:
                db.rollback()
                raise

    app.dependency_overrides[get_db] = _override_db
    app.dependency_overrides[get_idempotent_executor] = lambda: IdempotentExecutor(
        session_factory, wait_timeout_s=0
    )
    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
    get_settings.cache_clear()
    os.environ.pop("DATABASE_URL", None)
