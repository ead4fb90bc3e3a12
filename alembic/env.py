"""
Alembic environment configuration for the HUBZone pipeline.

Uses DATABASE_URL from the hubzone settings (single source of truth) and
the hubzone declarative Base as the autogenerate target.
"""

from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool

from hubzone.core.config import get_settings
from hubzone.core.models import Base

# Alembic Config object (provides access to alembic.ini values)
config = context.config

# Set up Python logging from alembic.ini
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# Target metadata for autogenerate
target_metadata = Base.metadata

# APScheduler keeps its own job store table in the same database
_UNMANAGED_TABLES = {"apscheduler_jobs"}


def include_name(name, type_, parent_names):
    """Filter for autogenerate: leave the scheduler's job store alone."""
    if type_ == "table":
        return name not in _UNMANAGED_TABLES
    return True


def get_url() -> str:
    """Read DATABASE_URL from hubzone settings (same source as the running pipeline)."""
    return get_settings().database_url


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode: generates SQL without a live DB connection."""
    context.configure(
        url=get_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        include_name=include_name,
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations in 'online' mode: connects to the database and applies changes."""
    configuration = config.get_section(config.config_ini_section, {})
    configuration["sqlalchemy.url"] = get_url()

    connectable = engine_from_config(
        configuration,
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            include_name=include_name,
        )

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
