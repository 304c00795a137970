from __future__ import annotations

import os
from collections.abc import Generator, Iterable
from contextlib import contextmanager
from typing import Any

from flask import Flask, current_app, g
from sqlalchemy import create_engine, event, inspect
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

ENGINE_KEY = "sqlalchemy_engine"
SESSIONMAKER_KEY = "sqlalchemy_sessionmaker"


def _engine_options(db_url: str) -> dict[str, Any]:
    opts: dict[str, Any] = {"future": True, "pool_pre_ping": True}
    if db_url.startswith("postgres"):
        # small pool per gunicorn worker; recycle before managed Postgres drops idle links
        opts.update(pool_size=5, max_overflow=10, pool_timeout=30, pool_recycle=1800)
    return opts


def _enable_sqlite_foreign_keys(engine: Engine) -> None:
    # member/visitor deletes rely on ON DELETE CASCADE
    @event.listens_for(engine, "connect")
    def _fk_pragma(dbapi_connection, _record):  # type: ignore[no-redef]
        cur = dbapi_connection.cursor()
        cur.execute("PRAGMA foreign_keys=ON")
        cur.close()


def init_db(app: Flask) -> Engine:
    db_url = app.config["DATABASE_URL"]
    engine = create_engine(db_url, **_engine_options(db_url))
    if engine.dialect.name == "sqlite":
        _enable_sqlite_foreign_keys(engine)

    app.extensions[ENGINE_KEY] = engine
    app.extensions[SESSIONMAKER_KEY] = sessionmaker(
        bind=engine,
        class_=Session,
        autoflush=False,
        expire_on_commit=False,
    )

    if hasattr(os, "register_at_fork"):
        # gunicorn forks after create_app(); children must not share pooled connections
        def _dispose_in_child() -> None:
            engine.dispose(close=False)
            app.logger.info("Disposed DB engine pool after fork (pid=%s)", os.getpid())

        os.register_at_fork(after_in_child=_dispose_in_child)

    app.teardown_appcontext(teardown_db_session)
    return engine


def missing_tables(app: Flask, expected: Iterable[str]) -> list[str]:
    insp = inspect(app.extensions[ENGINE_KEY])
    return [t for t in expected if not insp.has_table(t)]


def db_session() -> Session:
    """Session bound to the current request; closed on app-context teardown."""
    s: Session | None = getattr(g, "db_session", None)
    if s is None:
        s = current_app.extensions[SESSIONMAKER_KEY]()
        g.db_session = s
    return s


def teardown_db_session(_exc: BaseException | None) -> None:
    s: Session | None = g.pop("db_session", None)
    if s is not None:
        s.close()


@contextmanager
def session_scope(app: Flask) -> Generator[Session, None, None]:
    """
    Session for work outside a request (cron jobs, scripts, tests).
    Commits when the block exits cleanly, rolls back on error.
    """
    s: Session = app.extensions[SESSIONMAKER_KEY]()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()


@contextmanager
def standalone_session(db_url: str) -> Generator[Session, None, None]:
    """Like session_scope() but without an app, for release-phase scripts; disposes its engine."""
    engine = create_engine(db_url, **_engine_options(db_url))
    if engine.dialect.name == "sqlite":
        _enable_sqlite_foreign_keys(engine)
    s = Session(bind=engine, autoflush=False, expire_on_commit=False)
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()
        engine.dispose()
