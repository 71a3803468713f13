"""Database connection management for Haven services.

Provides connection pooling, health checks, and repository base classes
for the PostgreSQL alert store and audit log.
"""

from .connection import (
    DatabaseConfig,
    ConnectionManager,
)
from .repository import (
    BaseRepository,
    RepositoryError,
    NotFoundError,
    DuplicateError,
    ConflictError,
)

__all__ = [
    "DatabaseConfig",
    "ConnectionManager",
    "BaseRepository",
    "RepositoryError",
    "NotFoundError",
    "DuplicateError",
    "ConflictError",
]
