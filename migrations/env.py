"""Alembic environment configuration for helpdispatch.

Supports both async (aiosqlite / asyncpg) and sync execution contexts.
Uses batch mode for SQLite compatibility (ALTER TABLE limitations).
"""

from __future__ import annotations

import logging
from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool
from sqlmodel import SQLModel

from helpdispatch.db_models import *  # noqa: F401, F403

logger = logging.getLogger("alembic.env")

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = SQLModel.metadata


def _sync_url_from_settings() -> str:
    """Derive a synchronous driver URL from app settings (CLI usage)."""
    from helpdispatch.config import settings
    from helpdispatch.database import to_async_url

    url = to_async_url(settings.database_url)
    return url.replace("sqlite+aiosqlite", "sqlite").replace("postgresql+asyncpg", "postgresql")


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode (generates SQL script)."""
    url = config.get_main_option("sqlalchemy.url") or _sync_url_from_settings()
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        render_as_batch=True,
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations in 'online' mode.

    If a connection was passed via config.attributes (from database.py
    at app startup), use that. Otherwise create a new engine from config
    (for CLI usage via `alembic upgrade head`).
    """
    connectable = config.attributes.get("connection")

    if connectable is not None:
        context.configure(
            connection=connectable,
            target_metadata=target_metadata,
            render_as_batch=True,
        )
        with context.begin_transaction():
            context.run_migrations()
    else:
        if not config.get_main_option("sqlalchemy.url"):
            config.set_main_option("sqlalchemy.url", _sync_url_from_settings())

        connectable = engine_from_config(
            config.get_section(config.config_ini_section, {}),
            prefix="sqlalchemy.",
            poolclass=pool.NullPool,
        )

        with connectable.connect() as connection:
            context.configure(
                connection=connection,
                target_metadata=target_metadata,
                render_as_batch=True,
            )
            with context.begin_transaction():
                context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
