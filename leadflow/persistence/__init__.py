"""Persistence layer for enrollments and their run audit trail."""

from __future__ import annotations

import os
from typing import Optional

from ..config import LeadflowConfig, load_config
from .inmemory import InMemoryEnrollmentStore
from .models import Enrollment, Run, Transition
from .repository import EnrollmentStore
from .sqlite import SQLiteEnrollmentStore

_store_instance: EnrollmentStore | None = None


def get_store(
    database_url: Optional[str] = None, config: Optional[LeadflowConfig] = None
) -> EnrollmentStore:
    """Factory function to obtain an enrollment store.

    The backend is selected based on ``database_url`` which can be provided
    explicitly, via environment variable ``LEADFLOW_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory store is returned.
    """

    global _store_instance
    if _store_instance is not None and database_url is None and config is None:
        return _store_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("LEADFLOW_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.database_url
    )

    if not database_url:
        _store_instance = InMemoryEnrollmentStore()
        return _store_instance

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        _store_instance = SQLiteEnrollmentStore(path)
    elif database_url.startswith("postgres://") or database_url.startswith(
        "postgresql://"
    ):
        from .postgres import PostgresEnrollmentStore

        _store_instance = PostgresEnrollmentStore(database_url)
    else:
        raise ValueError(f"Unsupported database backend: {database_url}")

    return _store_instance


__all__ = [
    "Enrollment",
    "EnrollmentStore",
    "InMemoryEnrollmentStore",
    "Run",
    "SQLiteEnrollmentStore",
    "Transition",
    "get_store",
]
