from __future__ import annotations

from collections.abc import Generator

from fastapi import Request
from sqlalchemy import Engine, create_engine
from sqlalchemy.engine.url import make_url
from sqlalchemy.orm import Session, sessionmaker

from receipt_ledger.core.config import settings


class Database:
    """Connection pool plus session factory.

    Constructed by the process entry point (API lifespan, worker init, tests) and
    handed to whatever needs sessions. Nothing connects until `open()` is called.
    """

    def __init__(self, url: str) -> None:
        self.url = url
        self._engine: Engine | None = None
        self._sessionmaker: sessionmaker[Session] | None = None

    @property
    def is_open(self) -> bool:
        return self._engine is not None

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            raise RuntimeError("Database is not open")
        return self._engine

    def open(self) -> Database:
        if self._engine is not None:
            return self
        connect_args: dict = {}
        if make_url(self.url).drivername.startswith("sqlite"):
            connect_args = {"check_same_thread": False}
        self._engine = create_engine(self.url, pool_pre_ping=True, connect_args=connect_args)
        self._sessionmaker = sessionmaker(bind=self._engine, autoflush=False, autocommit=False)
        return self

    def close(self) -> None:
        if self._engine is None:
            return
        self._engine.dispose()
        self._engine = None
        self._sessionmaker = None

    def session(self) -> Session:
        if self._sessionmaker is None:
            raise RuntimeError("Database is not open")
        return self._sessionmaker()


def create_database(url: str | None = None) -> Database:
    return Database(url or settings.database_url)


def db_session(request: Request) -> Generator[Session, None, None]:
    database: Database = request.app.state.database
    session = database.session()
    try:
        yield session
    finally:
        session.close()
