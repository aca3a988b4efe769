"""Record-store engine, session factory, and dependency injection."""

from typing import Generator, Optional

from fastapi import Request
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from meshdeck.core.config import settings
from meshdeck.db.base import Base


class Database:
    """Owns the engine and session factory for one process.

    Opened in the application lifespan and disposed at shutdown; handed to
    request handlers through ``get_db`` instead of a module-level engine.
    """

    def __init__(self, url: Optional[str] = None, echo: Optional[bool] = None):
        self.url = url or settings.DATABASE_URL
        self.engine: Engine = self._create_engine(
            self.url, settings.DATABASE_ECHO if echo is None else echo,
        )
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    @staticmethod
    def _create_engine(url: str, echo: bool) -> Engine:
        if url.startswith("sqlite"):
            kwargs = {"connect_args": {"check_same_thread": False}}
            if ":memory:" in url or url in ("sqlite://", "sqlite+pysqlite://"):
                kwargs["poolclass"] = StaticPool
            return create_engine(url, echo=echo, **kwargs)
        return create_engine(
            url,
            pool_size=20,
            max_overflow=80,
            pool_timeout=30,
            pool_recycle=1800,
            pool_pre_ping=True,
            echo=echo,
        )

    def create_all(self) -> None:
        """Create any missing tables."""
        import meshdeck.models  # noqa: F401  (registers mappers)

        Base.metadata.create_all(self.engine)

    def session(self) -> Session:
        return self.SessionLocal()

    def dispose(self) -> None:
        self.engine.dispose()


def get_db(request: Request) -> Generator[Session, None, None]:
    """FastAPI dependency that provides a session per request."""
    db = request.app.state.db.session()
    try:
        yield db
    finally:
        db.close()
