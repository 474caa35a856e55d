from __future__ import annotations

from typing import Callable

from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

SessionFactory = Callable[[], Session]


def build_engine(database_url: str) -> Engine:
    is_sqlite = database_url.startswith("sqlite")
    kwargs: dict = {"echo": False}
    if is_sqlite:
        # Provisioning runs on worker threads; sqlite writers queue on the file lock.
        kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
        if ":memory:" in database_url or database_url == "sqlite://":
            kwargs["poolclass"] = StaticPool
    else:
        kwargs["pool_pre_ping"] = True
    return create_engine(database_url, **kwargs)


def init_db(engine: Engine) -> None:
    # Ensure models are imported before creating tables.
    import stratus.models  # noqa: F401

    SQLModel.metadata.create_all(engine)


def session_factory_for(bound_engine: Engine) -> SessionFactory:
    def _factory() -> Session:
        return Session(bound_engine, expire_on_commit=False)

    return _factory
