import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

import psycopg

from storage.repositories import PostgresTransaction


logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).with_name("schema.sql")


class Database:
    """
    explicit postgres handle. one per process, injected where needed.
    connections are opened per unit of work; connect() only proves the
    server is reachable so startup fails fast instead of on first request.
    """

    def __init__(self, dsn: str, connect_timeout: int = 5):
        self.dsn = dsn
        self.connect_timeout = connect_timeout
        self.connected = False

    def connect(self) -> None:
        with psycopg.connect(self.dsn, connect_timeout=self.connect_timeout) as conn:
            conn.execute("SELECT 1")
        self.connected = True
        logger.info("database reachable")

    def disconnect(self) -> None:
        self.connected = False
        logger.info("database handle closed")

    @contextmanager
    def connection(self) -> Iterator[psycopg.Connection]:
        """
        context manager that hands out a fresh connection.
        autocommit is disabled so we can manage transactions explicitly.
        """
        if not self.connected:
            raise RuntimeError("database handle is not connected")
        with psycopg.connect(self.dsn, connect_timeout=self.connect_timeout) as conn:
            conn.autocommit = False
            yield conn

    def apply_schema(self) -> None:
        with self.connection() as conn:
            conn.execute(SCHEMA_PATH.read_text())
            conn.commit()


class PostgresStore:
    def __init__(self, database: Database):
        self.database = database

    def connect(self) -> None:
        self.database.connect()

    def disconnect(self) -> None:
        self.database.disconnect()

    @contextmanager
    def transaction(self, snapshot: bool = False) -> Iterator[PostgresTransaction]:
        """
        one transaction per unit of work: commit on success, rollback on
        any exception. snapshot=True runs it at REPEATABLE READ so a batch
        reader sees one consistent view.
        """
        with self.database.connection() as conn:
            if snapshot:
                conn.isolation_level = psycopg.IsolationLevel.REPEATABLE_READ
            try:
                yield PostgresTransaction(conn)
                conn.commit()
            except BaseException:
                conn.rollback()
                raise
