import asyncio
from logging.config import fileConfig
from typing import Any

from sqlalchemy import pool
from sqlalchemy.engine import Connection

from alembic import context
import ssl

from app.shared.db.base import Base
# Import all models so Base knows about them!
import app.models  # noqa: F401 # pylint: disable=unused-import

from app.shared.core.config import get_settings
from app.shared.db.session import _normalize_db_url
from sqlalchemy.ext.asyncio import create_async_engine


settings = get_settings()


# this is the Alembic Config object, which provides
# access to the values within the .ini file in use.
config = context.config

# Interpret the config file for Python logging.
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def _database_url() -> str:
    url = _normalize_db_url(settings.DATABASE_URL or "")
    if not url:
        raise ValueError("DATABASE_URL must be set to run migrations")
    return url


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode.

    This configures the context with just a URL
    and not an Engine. Calls to context.execute() here emit the given string
    to the script output.
    """
    url = config.get_main_option("sqlalchemy.url") or _database_url()
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        compare_type=True,
    )

    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection: Connection) -> None:
    context.configure(
        connection=connection,
        target_metadata=target_metadata,
        compare_type=True,
        render_as_batch=connection.dialect.name == "sqlite",
    )

    with context.begin_transaction():
        context.run_migrations()


def _connect_args(url: str) -> dict[str, Any]:
    if "postgresql" not in url:
        return {}

    ssl_mode = (settings.DB_SSL_MODE or "require").lower()
    connect_args: dict[str, Any] = {"statement_cache_size": 0}

    if ssl_mode == "disable":
        connect_args["ssl"] = False
    elif ssl_mode == "require":
        connect_args["ssl"] = "require"
    elif ssl_mode in {"verify-ca", "verify-full"}:
        if not settings.DB_SSL_CA_CERT_PATH:
            raise ValueError(f"DB_SSL_CA_CERT_PATH is required when DB_SSL_MODE={ssl_mode}")
        ssl_context = ssl.create_default_context(cafile=settings.DB_SSL_CA_CERT_PATH)
        ssl_context.check_hostname = ssl_mode == "verify-full"
        ssl_context.verify_mode = ssl.CERT_REQUIRED
        connect_args["ssl"] = ssl_context
    else:
        raise ValueError(
            f"Invalid DB_SSL_MODE: {ssl_mode}. Use: disable, require, verify-ca, verify-full"
        )
    return connect_args


async def run_async_migrations() -> None:
    """Create an async Engine and associate a connection with the context."""
    url = _database_url()
    connectable = create_async_engine(
        url,
        poolclass=pool.NullPool,
        connect_args=_connect_args(url),
    )

    async with connectable.connect() as connection:
        await connection.run_sync(do_run_migrations)

    await connectable.dispose()


def run_migrations_online() -> None:
    """Run migrations in 'online' mode."""
    asyncio.run(run_async_migrations())


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
