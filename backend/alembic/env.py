"""Alembic environment for the jobs/workers schema (SQLite dev, PostgreSQL prod).

    # From the backend/ directory:
    alembic upgrade head          # create or update the tables
    alembic upgrade head --sql    # print the DDL instead of applying it

The target URL is ``settings.sync_db_url()``: ``FLEET_DB_URL`` with the async
driver suffix removed, since Alembic runs migrations synchronously.
"""

from __future__ import annotations

import os
import sys
from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool

# Allow `alembic` to be run from any cwd without installing the package
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from jobfleet.config import settings     # noqa: E402
from jobfleet.db.models import Base      # noqa: E402

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

config.set_main_option("sqlalchemy.url", settings.sync_db_url())

_COMMON_OPTIONS = {
    "target_metadata": Base.metadata,
    "compare_type": True,
    # SQLite cannot ALTER tables natively; batch mode rewrites them
    "render_as_batch": settings.is_sqlite,
}


def run_migrations_offline() -> None:
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        **_COMMON_OPTIONS,
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    with connectable.connect() as connection:
        context.configure(connection=connection, **_COMMON_OPTIONS)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
