"""Engine and session-factory construction for the RBM store."""

from __future__ import annotations

import logging
import os
from typing import Any

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker

logger = logging.getLogger(__name__)


def database_url_from_env() -> str:
    """Resolve a SQLAlchemy URL from DATABASE_URL or the DB_* connection variables."""
    url = os.getenv("DATABASE_URL", "").strip()
    if url:
        return url

    host = os.getenv("DB_HOST")
    port = os.getenv("DB_PORT")
    dbname = os.getenv("DB_NAME")
    user = os.getenv("DB_USER")
    password = os.getenv("DB_PASSWORD")
    missing = [
        key
        for key, value in (("DB_HOST", host), ("DB_PORT", port), ("DB_NAME", dbname), ("DB_USER", user), ("DB_PASSWORD", password))
        if not value
    ]
    if missing:
        raise RuntimeError(f"Missing database configuration: {', '.join(missing)}")
    return f"postgresql+psycopg://{user}:{password}@{host}:{port}/{dbname}"


def build_engine(url: str, **kwargs: Any) -> Engine:
    """Create an engine; PostgreSQL URLs are routed through the psycopg 3 driver."""
    if url.startswith("postgresql://"):
        url = "postgresql+psycopg://" + url[len("postgresql://") :]
    logger.debug("Creating engine for dialect %s", url.split(":", 1)[0])
    return create_engine(url, future=True, **kwargs)


def build_session_factory(engine: Engine) -> sessionmaker[Session]:
    """Session factory whose sessions keep loaded state readable after commit."""
    return sessionmaker(bind=engine, expire_on_commit=False)
