from functools import lru_cache
from typing import Any, Dict, Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from payment_reconciler.config import Settings, get_settings

Base = declarative_base()


def engine_options(settings: Settings) -> Dict[str, Any]:
    """Keyword arguments for create_engine, bounding every connect, query and pool wait."""
    timeout = settings.database_timeout
    backend = make_url(settings.database_url).get_backend_name()

    if backend == "sqlite":
        # busy timeout bounds how long a writer waits on a locked database
        return {
            "connect_args": {"check_same_thread": False, "timeout": timeout},
            "pool_pre_ping": True,
        }

    connect_args: Dict[str, Any] = {}
    if backend == "postgresql":
        connect_args = {
            "connect_timeout": max(1, int(timeout)),
            "options": f"-c statement_timeout={int(timeout * 1000)}",
        }
    elif backend == "mysql":
        connect_args = {
            "connect_timeout": max(1, int(timeout)),
            "read_timeout": max(1, int(timeout)),
            "write_timeout": max(1, int(timeout)),
        }
    return {
        "connect_args": connect_args,
        "pool_timeout": timeout,
        "pool_pre_ping": True,
    }


def create_db_engine(settings: Settings) -> Engine:
    return create_engine(settings.database_url, **engine_options(settings))


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@lru_cache
def get_engine() -> Engine:
    return create_db_engine(get_settings())


@lru_cache
def get_session_factory() -> sessionmaker:
    return create_session_factory(get_engine())


def init_db(engine: Engine) -> None:
    # Import registers the mapped tables on Base.metadata
    from payment_reconciler import models  # noqa: F401

    Base.metadata.create_all(bind=engine)


def get_db() -> Iterator[Session]:
    db = get_session_factory()()
    try:
        yield db
    finally:
        db.close()
