"""Database setup.

Engines and session factories are built by the composition root
(`sr_council.app.containers.build_container`) from settings, there are no
module-level engines.

Usage: ``with session_factory.begin() as session:`` to auto-commit and rollback on
exit.
"""

from __future__ import annotations

import typing as t

from sqlalchemy import event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from sqlmodel import create_engine
from sqlmodel.orm.session import Session as SQLModelSession

from sr_council.core.models import SQLModelBase

if t.TYPE_CHECKING:
    from sqlalchemy.engine import Engine


def _enable_sqlite_foreign_keys(dbapi_connection: t.Any, _: t.Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def make_engine(url: str, *, echo: bool = False) -> Engine:
    """Create an engine for ``url``.

    In-memory SQLite URLs share one connection (`StaticPool`) so that all sessions
    see the same database.
    """
    kwargs: dict[str, t.Any] = {}
    is_sqlite = url.startswith("sqlite")
    if is_sqlite:
        kwargs["connect_args"] = {"check_same_thread": False}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
    engine = create_engine(url, echo=echo, **kwargs)
    if is_sqlite:
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
    return engine


def make_session_factory(engine: Engine) -> sessionmaker[SQLModelSession]:
    """`sessionmaker` for sync SQLModel sessions bound to ``engine``."""
    return sessionmaker(bind=engine, class_=SQLModelSession, expire_on_commit=False)


def create_tables(engine: Engine) -> None:
    SQLModelBase.metadata.create_all(engine)
