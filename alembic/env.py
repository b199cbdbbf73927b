# Alembic environment for the ShillMarket order pipeline
# The database URL always comes from config.app_config, so migrations, the API
# and the worker share one source of truth.

import os
import sys
from logging.config import fileConfig

from alembic import context
from sqlalchemy import create_engine, pool

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config.app_config import DATABASE_URL  # noqa: E402
from database.models import Base  # noqa: E402
from database import marketplace_models  # noqa: E402,F401

config = context.config

if config.config_file_name:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def _context_options(url: str) -> dict:
    # SQLite cannot ALTER most constraints in place
    return {
        "target_metadata": target_metadata,
        "compare_type": True,
        "render_as_batch": url.startswith("sqlite"),
    }


def run_migrations_offline():
    """Emit SQL for DATABASE_URL without connecting."""
    context.configure(
        url=DATABASE_URL,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        **_context_options(DATABASE_URL)
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online():
    """Apply migrations against DATABASE_URL."""
    connectable = create_engine(DATABASE_URL, poolclass=pool.NullPool)

    with connectable.connect() as connection:
        context.configure(connection=connection, **_context_options(DATABASE_URL))

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
