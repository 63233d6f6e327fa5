"""Persistence layer for nurture workflows and enrollments."""

from __future__ import annotations

from typing import Optional

from ..config import NurtureConfig, load_config
from .inmemory import InMemoryEnrollmentRepository
from .repository import EnrollmentRepository
from .sqlite import SQLiteEnrollmentRepository

try:  # pragma: no cover - optional dependency
    from .postgres import PostgresEnrollmentRepository
except ImportError:  # pragma: no cover - optional dependency
    PostgresEnrollmentRepository = None  # type: ignore


def get_repository(
    database_url: Optional[str] = None, config: Optional[NurtureConfig] = None
) -> EnrollmentRepository:
    """Factory function to obtain an enrollment repository.

    The backend is selected from ``database_url``, falling back to the loaded
    configuration (which already honours ``NURTURE_DATABASE_URL`` and
    ``DATABASE_URL``). When no database is configured an in-memory repository
    is returned. Every call builds a new repository.
    """

    if database_url is None:
        config = config or load_config()
        database_url = config.database_url

    if not database_url:
        return InMemoryEnrollmentRepository()

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        return SQLiteEnrollmentRepository(path)
    if database_url.startswith("postgres://") or database_url.startswith("postgresql://"):
        if PostgresEnrollmentRepository is None:
            raise RuntimeError("Postgres support not available")
        return PostgresEnrollmentRepository(database_url)
    raise ValueError(f"Unsupported database backend: {database_url}")


__all__ = [
    "EnrollmentRepository",
    "InMemoryEnrollmentRepository",
    "SQLiteEnrollmentRepository",
    "PostgresEnrollmentRepository",
    "get_repository",
]
