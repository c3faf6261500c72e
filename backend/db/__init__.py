"""Database package for RBM ORM models, sessions and migrations."""

from __future__ import annotations

import logging

from backend.db.base import Base
from backend.db import models
from backend.db.session import build_engine, build_session_factory, database_url_from_env

logger = logging.getLogger(__name__)

__all__ = ["Base", "build_engine", "build_session_factory", "database_url_from_env", "models"]
