import logging
from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from .errors import ConflictFailed, StoreUnavailable
from .models import Base

logger = logging.getLogger(__name__)

_MEMORY_URIS = ("sqlite://", "sqlite:///:memory:")


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def make_engine(uri, timeout=10.0, echo=False):
    """
    Build the SQLAlchemy engine. Every driver gets a bounded wait so that a
    locked row or an exhausted pool turns into an error instead of a hang.
    """
    kwargs = {"future": True, "echo": echo}
    if uri.startswith("sqlite"):
        kwargs["connect_args"] = {"timeout": timeout, "check_same_thread": False}
        if uri in _MEMORY_URIS:
            # all sessions must share the single in-memory database
            kwargs["poolclass"] = StaticPool
    else:
        kwargs["pool_pre_ping"] = True
        kwargs["pool_timeout"] = timeout

    engine = create_engine(uri, **kwargs)
    if engine.dialect.name == "sqlite":
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
    return engine


def init_db(engine):
    Base.metadata.create_all(engine)


def make_session_factory(engine):
    # expire_on_commit=False keeps returned rows readable after the session closes
    return sessionmaker(
        bind=engine, autoflush=False, autocommit=False, expire_on_commit=False
    )


@contextmanager
def session_scope(session_factory):
    """
    One unit of work: commit on success, roll back everything on any error.

    Driver-level failures are translated here so callers only ever see
    CirculationError subclasses or StoreUnavailable.
    """
    session = session_factory()
    try:
        yield session
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        logger.warning("Write rejected by store constraint: %s", exc.orig)
        raise ConflictFailed(
            "The record was changed by another request. Reload and try again."
        ) from exc
    except OperationalError as exc:
        session.rollback()
        logger.warning("Store operation failed: %s", exc.orig)
        raise StoreUnavailable() from exc
    except DBAPIError as exc:
        session.rollback()
        if exc.connection_invalidated:
            logger.warning("Store connection lost: %s", exc.orig)
            raise StoreUnavailable() from exc
        raise
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
