"""Pytest fixtures shared across unit and integration tests."""

from __future__ import annotations

import os
from typing import Any, Iterator

import pytest
from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from backend.db.base import Base
from backend.db.session import build_engine, build_session_factory
import backend.db.models  # noqa: F401
from rbm.config import RbmConfig
from rbm.store import SqlAlchemyRbmStore
from tests.utils.fakes import FixedClock


@pytest.fixture
def session_factory() -> Iterator[sessionmaker[Session]]:
    """In-memory SQLite schema built from the ORM metadata."""
    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    try:
        yield build_session_factory(engine)
    finally:
        engine.dispose()


@pytest.fixture
def store(session_factory: sessionmaker[Session]) -> SqlAlchemyRbmStore:
    return SqlAlchemyRbmStore(session_factory)


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def config() -> RbmConfig:
    """Default thresholds with a short collaborator budget."""
    return RbmConfig(collaborator_timeout_seconds=1.0, monitor_campaign_timeout_seconds=2.0)


@pytest.fixture(scope="session")
def pg_engine() -> Any:
    """Session-scoped PostgreSQL engine for integration tests."""
    host = os.getenv("TEST_DB_HOST")
    port = os.getenv("TEST_DB_PORT")
    dbname = os.getenv("TEST_DB_NAME")
    user = os.getenv("TEST_DB_USER")
    password = os.getenv("TEST_DB_PASSWORD")

    if not all([host, port, dbname, user, password]):
        pytest.skip("Integration DB env vars are missing; set TEST_DB_* to run PostgreSQL tests")

    engine: Engine = build_engine(f"postgresql+psycopg://{user}:{password}@{host}:{port}/{dbname}")
    try:
        yield engine
    finally:
        engine.dispose()
