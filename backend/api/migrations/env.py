from __future__ import annotations

import os
from logging.config import fileConfig

from alembic import context

from curator.config import load_env_once
from curator.db import make_engine
from curator.tables import metadata

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# Revisions are hand-written SQL; metadata only feeds --autogenerate diffs.
target_metadata = metadata


def database_url() -> str:
    """`alembic -x db_url=...` wins over DATABASE_URL / DB_URL from the bot .env."""
    override = context.get_x_argument(as_dictionary=True).get("db_url")
    if override:
        return override
    load_env_once()
    url = os.getenv("DATABASE_URL") or os.getenv("DB_URL")
    if not url:
        raise RuntimeError("No database for migrations: pass -x db_url=... or set DATABASE_URL")
    return url


def _configure(**kwargs) -> None:
    context.configure(target_metadata=target_metadata, compare_type=True, **kwargs)


def run_offline() -> None:
    _configure(url=database_url(), literal_binds=True, dialect_opts={"paramstyle": "named"})
    with context.begin_transaction():
        context.run_migrations()


def run_online() -> None:
    # Same engine setup as the bots (pre-ping on Postgres).
    engine = make_engine(database_url())
    try:
        with engine.connect() as connection:
            _configure(connection=connection)
            with context.begin_transaction():
                context.run_migrations()
    finally:
        engine.dispose()


if context.is_offline_mode():
    run_offline()
else:
    run_online()
