"""PostgreSQL connections for the alert store and audit log.

Two kinds of connection are handed out:
- pooled connections for request-scoped reads and compare-and-set writes
- one dedicated autocommit connection per change-feed listener, which
  must stay out of the pool because it blocks on LISTEN
"""
import json
import logging
import os
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterator, Optional

import boto3
import psycopg2
from psycopg2 import extensions, pool

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DatabaseConfig:
    """Where the alert database lives and how big the pool is.

    Credentials come from AWS Secrets Manager when ``DB_SECRET_ARN`` is
    set, otherwise from ``DB_*`` environment variables.
    """
    host: str
    port: int = 5432
    database: str = "haven"
    username: str = ""
    password: str = ""
    min_connections: int = 2
    max_connections: int = 10
    connect_timeout: int = 10
    ssl_mode: str = "require"

    @classmethod
    def from_env(cls) -> "DatabaseConfig":
        """Read DB_HOST, DB_PORT, DB_NAME, DB_USER, DB_PASSWORD,
        DB_MIN_CONN, DB_MAX_CONN and DB_SSL_MODE."""
        return cls(
            host=os.getenv("DB_HOST", "localhost"),
            port=int(os.getenv("DB_PORT", "5432")),
            database=os.getenv("DB_NAME", "haven"),
            username=os.getenv("DB_USER", ""),
            password=os.getenv("DB_PASSWORD", ""),
            min_connections=int(os.getenv("DB_MIN_CONN", "2")),
            max_connections=int(os.getenv("DB_MAX_CONN", "10")),
            ssl_mode=os.getenv("DB_SSL_MODE", "require"),
        )

    @classmethod
    def from_secrets_manager(cls, secret_arn: str, region: str = "us-east-1") -> "DatabaseConfig":
        """Credentials from a Secrets Manager secret; pool sizing from env.

        Raises:
            botocore.exceptions.ClientError: If the secret cannot be read
        """
        try:
            client = boto3.client("secretsmanager", region_name=region)
            secret = json.loads(client.get_secret_value(SecretId=secret_arn)["SecretString"])
        except Exception as e:
            logger.error(
                "DB_SECRET_LOAD_FAILED",
                extra={"error": str(e), "secret_arn": secret_arn}
            )
            raise

        env = cls.from_env()
        return cls(
            host=secret.get("host", env.host),
            port=int(secret.get("port", env.port)),
            database=secret.get("dbname", env.database),
            username=secret.get("username", ""),
            password=secret.get("password", ""),
            min_connections=env.min_connections,
            max_connections=env.max_connections,
            ssl_mode=env.ssl_mode,
        )

    @classmethod
    def load(cls) -> "DatabaseConfig":
        """Secrets Manager if ``DB_SECRET_ARN`` is set, else environment."""
        secret_arn = os.getenv("DB_SECRET_ARN")
        if secret_arn:
            return cls.from_secrets_manager(secret_arn, os.getenv("AWS_REGION", "us-east-1"))
        return cls.from_env()

    def connect_kwargs(self) -> Dict[str, Any]:
        return {
            "host": self.host,
            "port": self.port,
            "database": self.database,
            "user": self.username,
            "password": self.password,
            "connect_timeout": self.connect_timeout,
            "sslmode": self.ssl_mode,
        }


class ConnectionManager:
    """Threaded psycopg2 pool shared by store worker threads."""

    def __init__(self, config: DatabaseConfig):
        self.config = config
        self._pool: Optional[pool.ThreadedConnectionPool] = None

        logger.info(
            "CONNECTION_MANAGER_CREATED",
            extra={
                "host": config.host,
                "database": config.database,
                "max_connections": config.max_connections,
            }
        )

    @property
    def initialized(self) -> bool:
        return self._pool is not None

    def initialize(self) -> None:
        """Open the pool; safe to call more than once."""
        if self._pool is not None:
            return
        try:
            self._pool = pool.ThreadedConnectionPool(
                minconn=self.config.min_connections,
                maxconn=self.config.max_connections,
                **self.config.connect_kwargs(),
            )
        except psycopg2.Error as e:
            logger.error("CONNECTION_POOL_INIT_FAILED", extra={"error": str(e)})
            raise

        logger.info(
            "CONNECTION_POOL_INITIALIZED",
            extra={"host": self.config.host, "database": self.config.database}
        )

    @contextmanager
    def get_connection(self) -> Iterator[Any]:
        """Borrow a pooled connection; it goes back even on error."""
        if self._pool is None:
            self.initialize()
        conn = self._pool.getconn()
        try:
            yield conn
        finally:
            self._pool.putconn(conn)

    def listen_connection(self, channel: str) -> Any:
        """Open an unpooled autocommit connection subscribed to ``channel``.

        The caller owns it and must close it.
        """
        conn = psycopg2.connect(**self.config.connect_kwargs())
        try:
            conn.set_isolation_level(extensions.ISOLATION_LEVEL_AUTOCOMMIT)
            with conn.cursor() as cur:
                cur.execute(f"LISTEN {channel}")
        except psycopg2.Error:
            conn.close()
            raise
        logger.info("DB_LISTEN_STARTED", extra={"channel": channel})
        return conn

    def health_check(self) -> Dict[str, Any]:
        """Readiness probe result; never raises."""
        if self._pool is None:
            return {"status": "not_initialized", "healthy": False}

        try:
            with self.get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute("SELECT 1")
                    cur.fetchone()
        except psycopg2.Error as e:
            logger.error("DATABASE_HEALTH_CHECK_FAILED", extra={"error": str(e)})
            return {"status": "error", "healthy": False, "error": str(e)}

        return {"status": "connected", "healthy": True, "database": self.config.database}

    def close(self) -> None:
        if self._pool is not None:
            self._pool.closeall()
            self._pool = None
            logger.info("CONNECTION_POOL_CLOSED")
