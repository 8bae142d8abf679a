"""Relational store engine, connection pool and scoped sessions."""
from contextlib import contextmanager
from typing import Iterator, Optional

from loguru import logger
from sqlalchemy import create_engine, text
from sqlalchemy.exc import (
    DBAPIError,
    DisconnectionError,
    OperationalError,
    SQLAlchemyError,
    TimeoutError as PoolTimeoutError,
)
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from config.settings import Settings, settings as default_settings
from core.errors import StoreConnectionError, StoreTimeoutError
from .models import Base

STORE_NAME = "postgres"


class Database:
    """
    Owns the SQLAlchemy engine for the relational store.

    ``open()`` at startup, ``session()`` per unit of work (commit on success,
    rollback on error, always closed), ``dispose()`` at shutdown.
    """

    def __init__(self, url: Optional[str] = None, config: Optional[Settings] = None):
        self.logger = logger.bind(name=self.__class__.__name__)
        self.settings = config or default_settings
        self.url = url or self.settings.database_url
        self._engine = None
        self._session_factory = None

    @property
    def engine(self):
        if self._engine is None:
            raise StoreConnectionError(STORE_NAME, "engine not initialized, call open() first")
        return self._engine

    def open(self) -> "Database":
        if self._engine is not None:
            return self

        kwargs = {"pool_pre_ping": True}
        if self.url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if self.url in ("sqlite://", "sqlite:///:memory:"):
                kwargs["poolclass"] = StaticPool
        else:
            timeout = self.settings.database_timeout
            kwargs.update(
                pool_size=self.settings.database_pool_size,
                max_overflow=self.settings.database_max_overflow,
                pool_timeout=timeout,
                connect_args={
                    "connect_timeout": int(timeout),
                    "options": f"-c statement_timeout={int(timeout * 1000)}",
                },
            )

        self._engine = create_engine(self.url, **kwargs)
        self._session_factory = sessionmaker(bind=self._engine, expire_on_commit=False)
        self.logger.info(f"Relational engine created ({self._engine.url.render_as_string(hide_password=True)})")
        return self

    def create_all(self):
        """Create the mirror and sync-log tables if they do not exist."""
        Base.metadata.create_all(self.engine)
        self.logger.info("Relational tables ensured")

    def dispose(self):
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None
            self._session_factory = None
            self.logger.info("Relational engine disposed")

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Scoped session: commits on success, rolls back on error, always closes."""
        if self._session_factory is None:
            raise StoreConnectionError(STORE_NAME, "engine not initialized, call open() first")
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise self._translate(e) from e
        except BaseException:
            session.rollback()
            raise
        finally:
            session.close()

    def ping(self):
        """Round-trip a trivial statement; raises on failure."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError as e:
            raise self._translate(e) from e

    @staticmethod
    def _translate(error: SQLAlchemyError) -> Exception:
        message = str(error).splitlines()[0] if str(error) else error.__class__.__name__
        if isinstance(error, PoolTimeoutError) or "statement timeout" in message:
            return StoreTimeoutError(STORE_NAME, message)
        if isinstance(error, (OperationalError, DisconnectionError)):
            return StoreConnectionError(STORE_NAME, message)
        if isinstance(error, DBAPIError) and error.connection_invalidated:
            return StoreConnectionError(STORE_NAME, message)
        return error
