"""Base repository pattern for database operations.

Provides common row operations and transaction handling for
PostgreSQL-backed stores.
"""
import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Dict, Generic, Iterator, List, Optional, TypeVar

import psycopg2
import psycopg2.errors

from .connection import ConnectionManager

logger = logging.getLogger(__name__)

T = TypeVar('T')


class RepositoryError(Exception):
    """Base exception for repository errors."""
    pass


class NotFoundError(RepositoryError):
    """Entity not found in database."""
    pass


class DuplicateError(RepositoryError):
    """Duplicate entity already exists."""
    pass


class ConflictError(RepositoryError):
    """Compare-and-set write lost against a concurrent writer.
    
    Carries the entity as currently persisted so the caller can re-plan.
    """
    
    def __init__(self, message: str, current: Any = None):
        super().__init__(message)
        self.current = current


class BaseRepository(ABC, Generic[T]):
    """Abstract base repository with common operations.
    
    Subclasses implement entity-specific logic while inheriting:
    - Connection management
    - Transaction handling
    - Logging patterns
    """
    
    columns: List[str] = []
    
    def __init__(
        self,
        connection_manager: ConnectionManager,
        table_name: str,
    ):
        self.connection_manager = connection_manager
        self.table_name = table_name
        
        logger.info(
            "REPOSITORY_INITIALIZED",
            extra={"table_name": table_name}
        )
    
    @abstractmethod
    def _row_to_entity(self, row: tuple) -> T:
        """Convert database row (in ``columns`` order) to entity."""
        pass
    
    @abstractmethod
    def _entity_to_params(self, entity: T) -> Dict[str, Any]:
        """Convert entity to a column -> value mapping."""
        pass
    
    @contextmanager
    def transaction(self) -> Iterator[Any]:
        """Run statements in one transaction and yield its cursor.
        
        Commits on success, rolls back on any exception.
        """
        with self.connection_manager.get_connection() as conn:
            try:
                with conn.cursor() as cur:
                    yield cur
                conn.commit()
            except BaseException:
                conn.rollback()
                raise
    
    def _select_sql(self) -> str:
        return f"SELECT {', '.join(self.columns)} FROM {self.table_name}"
    
    def fetch_by_id(self, cur, entity_id: str, for_update: bool = False) -> Optional[T]:
        """Load one entity inside an open transaction.
        
        Args:
            cur: Cursor from :meth:`transaction`
            entity_id: Entity identifier
            for_update: Take a row lock until the transaction ends
        """
        query = f"{self._select_sql()} WHERE id = %s"
        if for_update:
            query += " FOR UPDATE"
        cur.execute(query, (entity_id,))
        row = cur.fetchone()
        return self._row_to_entity(row) if row is not None else None
    
    def find_by_id(self, entity_id: str) -> Optional[T]:
        """Find entity by ID.
        
        Returns:
            Entity if found, None otherwise
        """
        with self.transaction() as cur:
            return self.fetch_by_id(cur, entity_id)
    
    def insert(self, entity: T) -> T:
        """Insert a new entity.
        
        Raises:
            DuplicateError: If an entity with the same id exists
        """
        params = self._entity_to_params(entity)
        columns = list(params.keys())
        placeholders = ", ".join(["%s"] * len(columns))
        query = (
            f"INSERT INTO {self.table_name} ({', '.join(columns)}) "
            f"VALUES ({placeholders})"
        )
        
        try:
            with self.transaction() as cur:
                cur.execute(query, list(params.values()))
        except psycopg2.errors.UniqueViolation as e:
            raise DuplicateError(f"{self.table_name} {params.get('id')} already exists") from e
        
        return entity
    
    def delete(self, entity_id: str) -> bool:
        """Delete entity by ID.
        
        Returns:
            True if deleted, False if not found
        """
        with self.transaction() as cur:
            cur.execute(
                f"DELETE FROM {self.table_name} WHERE id = %s",
                (entity_id,)
            )
            return cur.rowcount > 0
