# src/formrunner/core/checkpoint/database.py
"""Database connection management for the checkpoint store."""

from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Self

from sqlalchemy import Connection, create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.engine.url import make_url
from sqlalchemy.pool import StaticPool

from formrunner.core.checkpoint.schema import metadata


class CheckpointDB:
    """Checkpoint database connection manager."""

    def __init__(self, connection_string: str, *, create_tables: bool = True) -> None:
        """Initialize database connection.

        Args:
            connection_string: SQLAlchemy connection string
                e.g., "sqlite:///./data/formrunner.db"
            create_tables: Whether to create missing tables.
        """
        self.connection_string = connection_string
        self._engine: Engine | None = None
        self._ensure_sqlite_directory(connection_string)
        self._setup_engine()
        if create_tables:
            self._create_tables()

    @staticmethod
    def _ensure_sqlite_directory(connection_string: str) -> None:
        """Create the parent directory of a file-backed SQLite database."""
        url = make_url(connection_string)
        if not url.drivername.startswith("sqlite"):
            return
        database = url.database
        if database and database != ":memory:" and not database.startswith("file:"):
            Path(database).expanduser().parent.mkdir(parents=True, exist_ok=True)

    def _setup_engine(self) -> None:
        self._engine = create_engine(self.connection_string, echo=False)
        if self.connection_string.startswith("sqlite"):
            CheckpointDB._configure_sqlite(self._engine)

    @staticmethod
    def _configure_sqlite(engine: Engine) -> None:
        """Configure SQLite engine for reliability.

        Registers a connection event hook that sets:
        - PRAGMA journal_mode=WAL (readers don't block the writer loop)
        - PRAGMA foreign_keys=ON (referential integrity)
        - PRAGMA busy_timeout=5000 (contention tolerance)
        """

        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_connection: object, connection_record: object) -> None:
            cursor = dbapi_connection.cursor()  # type: ignore[attr-defined]
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.execute("PRAGMA busy_timeout=5000")
            cursor.close()

    def _create_tables(self) -> None:
        """Create all tables if they don't exist."""
        metadata.create_all(self.engine)

    @property
    def engine(self) -> Engine:
        """Get the SQLAlchemy engine."""
        if self._engine is None:
            raise RuntimeError("Database not initialized")
        return self._engine

    def close(self) -> None:
        """Close database connection."""
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None

    def __enter__(self) -> Self:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        self.close()

    @classmethod
    def in_memory(cls) -> Self:
        """Create an in-memory SQLite database for testing.

        A single shared connection (StaticPool) keeps the database alive
        and visible to worker threads.
        """
        engine = create_engine(
            "sqlite:///:memory:",
            echo=False,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        cls._configure_sqlite(engine)
        metadata.create_all(engine)
        instance = cls.__new__(cls)
        instance.connection_string = "sqlite:///:memory:"
        instance._engine = engine
        return instance

    @classmethod
    def from_url(cls, url: str, *, create_tables: bool = True) -> Self:
        """Create database from connection URL."""
        return cls(url, create_tables=create_tables)

    @contextmanager
    def connection(self) -> Iterator[Connection]:
        """Get a database connection with automatic transaction handling.

        Commits on successful block exit and rolls back on exception.
        """
        with self.engine.begin() as conn:
            yield conn
