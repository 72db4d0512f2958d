import logging
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError, OperationalError, TimeoutError as PoolTimeoutError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from app.core.config import settings
from app.core.exceptions import TransientError

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


def _connect_args(database_url: str, timeout_ms: int) -> dict:
    # Bound every statement so a hung store surfaces as a transient error
    if database_url.startswith("sqlite"):
        return {"check_same_thread": False, "timeout": timeout_ms / 1000}
    if database_url.startswith("postgresql"):
        return {"options": f"-c statement_timeout={timeout_ms}"}
    return {}


def build_engine(database_url: str, timeout_ms: int = settings.DB_STATEMENT_TIMEOUT_MS, **kwargs) -> Engine:
    return create_engine(
        database_url,
        echo=settings.DB_ECHO,
        pool_pre_ping=not database_url.startswith("sqlite"),
        connect_args=_connect_args(database_url, timeout_ms),
        **kwargs
    )


engine = build_engine(settings.DATABASE_URL)
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind: Engine = engine) -> None:
    """Create all tables. Migrations own production schemas."""
    from app.models import audit_log, commission_rate, conversion, payout  # noqa: F401

    Base.metadata.create_all(bind=bind)


@contextmanager
def store_errors(db: Session, operation: str):
    """Roll back and re-raise store failures as TransientError."""
    try:
        yield
    except (OperationalError, PoolTimeoutError) as exc:
        db.rollback()
        logger.warning("Store unavailable during %s: %s", operation, exc)
        raise TransientError(
            f"Storage unavailable during {operation}",
            details={"operation": operation}
        ) from exc
    except DBAPIError as exc:
        db.rollback()
        if exc.connection_invalidated:
            logger.warning("Connection lost during %s: %s", operation, exc)
            raise TransientError(
                f"Storage connection lost during {operation}",
                details={"operation": operation}
            ) from exc
        raise
