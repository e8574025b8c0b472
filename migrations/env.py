"""Alembic migration environment.

The database URL comes from the engine's own settings (DATABASE_URL or
.env), converted to a sync psycopg2 URL. Only the engine's tables
(models.database.Base) are migrated; the platform fact tables in the same
database are left out of autogenerate comparisons.
"""
from logging.config import fileConfig

from sqlalchemy import engine_from_config, pool
from alembic import context

from compliance_engine.core.config import get_settings
from compliance_engine.models import compliance_state  # noqa: F401  registers tables on Base
from compliance_engine.models.database import Base, include_in_migrations, sync_database_url

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# configparser interpolation: a literal % in the password must be doubled
config.set_main_option("sqlalchemy.url", sync_database_url(get_settings().database_url).replace("%", "%%"))

target_metadata = Base.metadata


def _configure(**kwargs) -> None:
    context.configure(
        target_metadata=target_metadata,
        include_object=include_in_migrations,
        compare_type=True,
        **kwargs,
    )


def run_migrations_offline() -> None:
    _configure(url=config.get_main_option("sqlalchemy.url"), literal_binds=True)
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    with connectable.connect() as connection:
        _configure(connection=connection)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
