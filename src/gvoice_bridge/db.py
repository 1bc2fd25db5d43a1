"""Async database engine and session management utilities.

SQLite is the default backend. The background sweep and the HTTP handlers can
both write, so connections run in WAL mode with a generous busy timeout, and
writers retry briefly on lock contention before giving up.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager, suppress
from functools import wraps
from pathlib import Path
from typing import Any, TypeVar

from sqlalchemy.exc import OperationalError, TimeoutError as SATimeoutError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

from .config import DatabaseSettings, Settings, clear_settings_cache, get_settings

T = TypeVar("T")
_logger = logging.getLogger(__name__)

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None
_schema_ready = False
_schema_lock: asyncio.Lock | None = None


def _is_lock_error(error_msg: str) -> bool:
    lower_msg = error_msg.lower()
    return any(
        phrase in lower_msg
        for phrase in [
            "database is locked",
            "database is busy",
            "locked",
        ]
    )


def retry_on_db_lock(
    max_retries: int = 5,
    base_delay: float = 0.05,
    max_delay: float = 2.0,
) -> Callable[..., Any]:
    """Decorator to retry async functions on SQLite lock errors with exponential backoff + jitter.

    Delay for attempt ``n`` is ``base_delay * 2**n`` capped at ``max_delay``, with
    +/-25% jitter. Non-lock errors, and lock errors after ``max_retries``, are
    re-raised unchanged.
    """

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            func_name = getattr(func, "__name__", "<callable>")
            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except (OperationalError, SATimeoutError) as e:
                    error_msg = str(e)
                    if not _is_lock_error(error_msg) or attempt >= max_retries:
                        raise
                    delay = min(base_delay * (2**attempt), max_delay)
                    jitter = delay * 0.25 * (2 * random.random() - 1)
                    total_delay = max(0.01, delay + jitter)
                    _logger.warning(
                        "db.locked",
                        extra={
                            "function": func_name,
                            "attempt": attempt + 1,
                            "max_retries": max_retries,
                            "delay_seconds": round(total_delay, 3),
                            "error": error_msg[:200],
                        },
                    )
                    await asyncio.sleep(total_delay)
            raise RuntimeError("Unexpected retry loop exit")

        return wrapper

    return decorator


def _build_engine(settings: DatabaseSettings) -> AsyncEngine:
    from sqlalchemy import event
    from sqlalchemy.engine import make_url

    connect_args: dict[str, Any] = {}
    is_sqlite = "sqlite" in settings.url.lower()

    if is_sqlite:
        # SQLite returns "unable to open database file" when the directory is missing.
        try:
            parsed = make_url(settings.url)
            if parsed.database and parsed.database != ":memory:":
                Path(parsed.database).expanduser().resolve().parent.mkdir(parents=True, exist_ok=True)
        except Exception:
            pass
        connect_args = {"timeout": 30.0, "check_same_thread": False}

    engine = create_async_engine(
        settings.url,
        echo=settings.echo,
        pool_pre_ping=True,
        pool_recycle=1800,
        connect_args=connect_args,
    )

    if is_sqlite:

        @event.listens_for(engine.sync_engine, "connect")
        def set_sqlite_pragma(dbapi_conn: Any, connection_record: Any) -> None:
            cursor = dbapi_conn.cursor()
            try:
                cursor.execute("PRAGMA journal_mode=WAL")
                cursor.execute("PRAGMA synchronous=NORMAL")
                cursor.execute("PRAGMA busy_timeout=30000")
            finally:
                cursor.close()

    return engine


def init_engine(settings: Settings | None = None) -> None:
    """Initialise global engine and session factory once."""
    global _engine, _session_factory
    if _engine is not None and _session_factory is not None:
        return
    resolved_settings = settings or get_settings()
    engine = _build_engine(resolved_settings.database)
    _engine = engine
    _session_factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


def get_engine() -> AsyncEngine:
    if _engine is None:
        init_engine()
    assert _engine is not None
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    if _session_factory is None:
        init_engine()
    assert _session_factory is not None
    return _session_factory


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    """Provide an async database session with guaranteed cleanup.

    The close is shielded so a cancelled caller still returns its connection
    to the pool.
    """
    factory = get_session_factory()
    session = factory()
    try:
        yield session
    finally:
        close_task = asyncio.create_task(session.close())
        try:
            await asyncio.shield(close_task)
        except BaseException:
            with suppress(BaseException):
                await close_task
            raise


@retry_on_db_lock(max_retries=5, base_delay=0.1, max_delay=4.0)
async def ensure_schema(settings: Settings | None = None) -> None:
    """Create tables from the SQLModel metadata if they do not exist yet."""
    global _schema_ready, _schema_lock
    if _schema_ready:
        return
    if _schema_lock is None:
        _schema_lock = asyncio.Lock()
    async with _schema_lock:
        if _schema_ready:
            return
        init_engine(settings)
        # Register table metadata before create_all
        from . import models  # noqa: F401

        engine = get_engine()
        async with engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)
        _schema_ready = True


def reset_database_state() -> None:
    """Test helper to reset global engine/session state."""
    global _engine, _session_factory, _schema_ready, _schema_lock
    if _engine is not None:
        engine = _engine
        try:
            try:
                running = asyncio.get_running_loop()
            except RuntimeError:
                running = None

            if running is not None and running.is_running():
                # Can't block; fall back to sync pool disposal (best effort).
                engine.sync_engine.dispose()
            else:
                asyncio.run(engine.dispose())
        except Exception:
            with suppress(Exception):
                engine.sync_engine.dispose()
    _engine = None
    _session_factory = None
    _schema_ready = False
    _schema_lock = None
    # Tests frequently mutate env vars; keep settings cache in sync with DB resets.
    clear_settings_cache()
