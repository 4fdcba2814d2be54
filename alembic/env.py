"""
Alembic migration environment for payguard.

DATABASE_URL takes precedence (any SQLAlchemy URL). Otherwise the SQLite
file at PAYGUARD_DB_PATH is used, defaulting to /tmp/payguard.db.
"""

import os
from logging.config import fileConfig

from alembic import context
from sqlalchemy import create_engine, pool

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)


def _get_database_url() -> str:
    """Resolve database URL: Config object, then DATABASE_URL, then PAYGUARD_DB_PATH."""
    configured_url = config.get_main_option("sqlalchemy.url")
    if configured_url:
        return configured_url

    database_url = os.getenv("DATABASE_URL")
    if database_url:
        return database_url

    return f"sqlite:///{os.getenv('PAYGUARD_DB_PATH', '/tmp/payguard.db')}"


def run_migrations_offline() -> None:
    context.configure(
        url=_get_database_url(),
        target_metadata=None,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    url = _get_database_url()

    connect_args = {}
    if url.startswith("sqlite"):
        connect_args["check_same_thread"] = False

    connectable = create_engine(url, poolclass=pool.NullPool, connect_args=connect_args)

    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=None,
            render_as_batch=url.startswith("sqlite"),
        )
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
