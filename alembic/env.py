import os
from logging.config import fileConfig

from sqlalchemy import engine_from_config
from sqlalchemy import pool

from alembic import context

from bookstore import models  # noqa: F401
from bookstore.database import Base

config = context.config
fileConfig(config.config_file_name)

target_metadata = Base.metadata


def get_url():
    # alembic runs on a sync driver; the app itself uses asyncpg
    url = os.environ.get('DATABASE_URL')
    if url:
        if '+asyncpg' in url:
            return url.replace('+asyncpg', '')
        if '+aiosqlite' in url:
            return url.replace('+aiosqlite', '')
        return url
    return config.get_main_option('sqlalchemy.url')


def run_migrations_offline():
    context.configure(
        url=get_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online():
    configuration = config.get_section(config.config_ini_section)
    configuration['sqlalchemy.url'] = get_url()

    connectable = engine_from_config(
        configuration,
        prefix='sqlalchemy.',
        poolclass=pool.NullPool,
    )

    with connectable.connect() as connection:
        context.configure(connection=connection, target_metadata=target_metadata)

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
