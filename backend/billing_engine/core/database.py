import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from billing_engine.core.config import settings
from billing_engine.core.errors import (
    BillingError,
    ConcurrentModificationError,
    StorageError,
    ValidationError,
)

logger = logging.getLogger(__name__)

Base: Any = declarative_base()


def build_engine(dsn: str, **kwargs: Any) -> Engine:
    """Create an engine; SQLite connections get foreign keys switched on."""
    is_sqlite = dsn.startswith("sqlite")
    connect_args = kwargs.pop("connect_args", {})
    if is_sqlite:
        connect_args.setdefault("check_same_thread", False)
    new_engine = create_engine(dsn, connect_args=connect_args, **kwargs)

    if is_sqlite:

        @event.listens_for(new_engine, "connect")
        def _enable_foreign_keys(dbapi_connection: Any, connection_record: Any) -> None:
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return new_engine


def build_session_factory(bind: Engine) -> sessionmaker[Session]:
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=bind)


engine = build_engine(settings.APP_DATABASE_DSN)
SessionLocal = build_session_factory(engine)


def dialect_insert(db: Session, model: Any) -> Any:
    """Dialect-specific INSERT supporting ``on_conflict_do_nothing``."""
    bind = db.get_bind()
    if bind.dialect.name == "postgresql":
        return pg_insert(model)
    return sqlite_insert(model)


def init_db(bind: Engine | None = None) -> None:
    """Initialize database tables."""
    import billing_engine.models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)


UNIQUE_VIOLATION_SQLSTATE = "23505"


def is_unique_violation(exc: IntegrityError) -> bool:
    """Tell a uniqueness race apart from other constraint failures."""
    orig = exc.orig
    code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if code is not None:
        return code == UNIQUE_VIOLATION_SQLSTATE
    return "unique constraint" in str(orig).lower()


@contextmanager
def session_scope(session_factory: Callable[[], Session]) -> Iterator[Session]:
    """Run one transaction: commit on success, roll back and translate on failure.

    Raises:
        ConcurrentModificationError: On a stale version or a uniqueness race.
        ValidationError: On any other constraint violation.
        StorageError: On any other SQLAlchemy failure.
    """
    db = session_factory()
    try:
        yield db
        db.commit()
    except BillingError:
        db.rollback()
        raise
    except StaleDataError as exc:
        db.rollback()
        raise ConcurrentModificationError(
            "Record was modified by another writer; re-read and retry"
        ) from exc
    except IntegrityError as exc:
        db.rollback()
        if is_unique_violation(exc):
            raise ConcurrentModificationError(
                "Write conflicted with a concurrent change", reason=str(exc.orig)
            ) from exc
        raise ValidationError("Write violates a data constraint", reason=str(exc.orig)) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        logger.warning("Storage failure: %s", exc)
        raise StorageError("Storage unavailable") from exc
    finally:
        db.close()
