"""Async SQLModel database setup."""

from __future__ import annotations

import logging
import re
from collections.abc import AsyncGenerator
from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.migration import MigrationContext
from alembic.script import ScriptDirectory
from sqlalchemy import inspect, text
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from helpdispatch.db_models import (  # noqa: F401
    HelpRequest,
    Match,
    Rating,
    User,
)

logger = logging.getLogger("helpdispatch.database")

_engine = None
_session_factory = None

_MIGRATIONS_DIR = Path(__file__).resolve().parent.parent / "migrations"
BASELINE_REVISION = "001"


def to_async_url(db_url: str) -> str:
    """Map a configured database URL (or bare SQLite path) to an async driver URL."""
    replacements = [
        ("postgresql+asyncpg://", "postgresql+asyncpg://"),
        ("postgresql://", "postgresql+asyncpg://"),
        ("postgres://", "postgresql+asyncpg://"),
        ("sqlite+aiosqlite://", "sqlite+aiosqlite://"),
        ("sqlite://", "sqlite+aiosqlite://"),
    ]
    for prefix, replacement in replacements:
        if db_url.startswith(prefix):
            return replacement + db_url[len(prefix) :]
    return f"sqlite+aiosqlite:///{db_url}"


def mask_url(db_url: str) -> str:
    return re.sub(r"://[^:/]+:[^@]+@", "://***:***@", db_url)


async def init_db(url: str = "sqlite+aiosqlite:///helpdispatch.db") -> None:
    global _engine, _session_factory
    connect_args = {}
    if "sqlite" in url:
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = 30
        db_path = url.split(":///", 1)[-1] if ":///" in url else ""
        if db_path and db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    _engine = create_async_engine(url, echo=False, connect_args=connect_args, pool_pre_ping=True)
    _session_factory = sessionmaker(_engine, class_=AsyncSession, expire_on_commit=False)  # type: ignore[call-overload]

    async with _engine.begin() as conn:
        if "sqlite" in url:
            await conn.execute(text("PRAGMA journal_mode=WAL"))
            await conn.execute(text("PRAGMA foreign_keys=ON"))
        await conn.run_sync(_upgrade_to_head)


def _upgrade_to_head(sync_conn) -> None:
    """Bring the schema to the newest revision on an already-open connection.

    A database holding our tables but no ``alembic_version`` was built with
    ``create_all``; it is stamped at the baseline so 001 is not replayed.
    """
    cfg = Config()
    cfg.set_main_option("script_location", str(_MIGRATIONS_DIR))
    cfg.attributes["connection"] = sync_conn  # env.py reuses it

    tables = set(inspect(sync_conn).get_table_names())
    current = MigrationContext.configure(sync_conn).get_current_revision()
    head = ScriptDirectory.from_config(cfg).get_current_head()

    if "users" in tables and "alembic_version" not in tables:
        logger.info("Untracked schema found, stamping baseline %s", BASELINE_REVISION)
        command.stamp(cfg, BASELINE_REVISION)
    elif current == head:
        logger.debug("Schema already at %s", head)
        return
    logger.info("Migrating schema %s -> %s", current or "(none)", head)
    command.upgrade(cfg, "head")


async def close_db() -> None:
    global _engine, _session_factory
    if _engine:
        await _engine.dispose()
    _engine = None
    _session_factory = None


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    assert _session_factory is not None, "Database not initialised, call init_db() first"
    async with _session_factory() as session:
        yield session


def get_session_factory() -> sessionmaker:
    assert _session_factory is not None
    return _session_factory
