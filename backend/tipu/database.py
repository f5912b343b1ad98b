# backend/tipu/database.py
from datetime import datetime
import logging
from typing import Any, Generator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeMeta, Session, declarative_base, sessionmaker

from .core.config import Settings, get_settings

logger = logging.getLogger(__name__)

Base: DeclarativeMeta = declarative_base()

_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker] = None


def build_engine(settings: Settings) -> Engine:
    """Create an engine for ``settings.database_url`` with pool logging hooks."""
    if settings.database_url.startswith("sqlite"):
        engine = create_engine(
            settings.database_url,
            echo=settings.database_echo,
            connect_args={"check_same_thread": False},
        )
    else:
        engine = create_engine(
            settings.database_url,
            echo=settings.database_echo,
            pool_size=10,
            max_overflow=10,
            pool_timeout=30,
            pool_recycle=3600,
            pool_pre_ping=True,
            connect_args={"connect_timeout": 10, "application_name": "tipu_backend"},
        )

    @event.listens_for(engine, "connect")
    def receive_connect(dbapi_connection: Any, connection_record: Any) -> None:
        connection_record.info["connect_time"] = datetime.now()
        logger.debug("Database connection established")

    return engine


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)


def get_session_factory() -> sessionmaker:
    """Return the process-wide session factory, building it on first use."""
    global _engine, _session_factory
    if _session_factory is None:
        _engine = build_engine(get_settings())
        _session_factory = build_session_factory(_engine)
    return _session_factory


def SessionLocal() -> Session:
    return get_session_factory()()


def get_db() -> Generator[Session, None, None]:
    """
    FastAPI dependency yielding a database session.

    The session is always closed; services own commit/rollback.
    """
    db = SessionLocal()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
