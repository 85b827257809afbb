from __future__ import annotations

import logging
import os
import sys
from logging.config import fileConfig
from pathlib import Path

from alembic import context
from dotenv import load_dotenv

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))
load_dotenv(ROOT_DIR / ".env")

from ringokai.db.engine import DEFAULT_SQLITE_URL, make_engine  # noqa: E402
from ringokai.db.utils import resolve_sqlite_url  # noqa: E402
from ringokai.models import Base  # noqa: E402

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

logger = logging.getLogger("alembic.env")

target_metadata = Base.metadata


def _database_url() -> str:
    env_url = os.getenv("DB_URL")
    if env_url:
        return resolve_sqlite_url(env_url, ROOT_DIR)
    return DEFAULT_SQLITE_URL


DATABASE_URL = _database_url()
# ConfigParser treats "%" as interpolation.
config.set_main_option("sqlalchemy.url", DATABASE_URL.replace("%", "%%"))


def _skip_empty_autogenerate(context_, revision, directives) -> None:
    """Drop autogenerated revisions that contain no operations."""

    if getattr(config.cmd_opts, "autogenerate", False):
        script = directives[0]
        if script.upgrade_ops.is_empty():
            directives[:] = []
            logger.info("No schema changes detected; no revision written.")


def _configure_options(is_sqlite: bool) -> dict:
    return {
        "target_metadata": target_metadata,
        "compare_type": True,
        "compare_server_default": True,
        "render_as_batch": is_sqlite,
        "process_revision_directives": _skip_empty_autogenerate,
    }


def run_migrations_offline() -> None:
    """Emit SQL for the migrations without connecting."""

    context.configure(
        url=DATABASE_URL,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        **_configure_options(DATABASE_URL.startswith("sqlite")),
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Apply the migrations to the configured database."""

    engine = make_engine(database_url=DATABASE_URL)
    with engine.connect() as connection:
        context.configure(
            connection=connection,
            **_configure_options(connection.dialect.name == "sqlite"),
        )
        with context.begin_transaction():
            context.run_migrations()
    engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
