from __future__ import annotations

import os
import sys
from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool

# project root importable when alembic runs from the repo
sys.path.append(os.getcwd())

config = context.config

if config.config_file_name:
    fileConfig(config.config_file_name)

config.set_main_option("script_location", "alembic")

# database URL comes from the application settings (CONVOFLOW_DATABASE_URL / .env)
from convoflow.config import settings  # noqa: E402

config.set_main_option("sqlalchemy.url", settings.database_url)

# registers every table on SQLModel.metadata for autogenerate
import convoflow.models  # noqa: E402,F401
from sqlmodel import SQLModel  # noqa: E402

target_metadata = SQLModel.metadata


def run_migrations_offline() -> None:
    url = config.get_main_option("sqlalchemy.url")
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        compare_type=True,
        render_as_batch=True,  # SQLite ALTER support
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    connectable = engine_from_config(
        config.get_section(config.config_ini_section) or {},
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
        future=True,
    )
    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,
            render_as_batch=True,
        )
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
