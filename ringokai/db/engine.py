import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

from .utils import resolve_sqlite_url

# Get DB url
load_dotenv()
# Project root directory (repo root)
ROOT_DIR = Path(__file__).resolve().parents[2]
DEFAULT_SQLITE_URL = resolve_sqlite_url(
    os.getenv("DB_URL", "sqlite:///./ringokai.db"), ROOT_DIR
)


def make_engine(database_url: Optional[str] = None, echo: bool = False):
    url = database_url or DEFAULT_SQLITE_URL
    engine = create_engine(
        url,
        echo=echo,
        future=True,
    )
    if url.startswith("sqlite"):

        @event.listens_for(engine, "connect")
        def _set_sqlite_pragma(dbapi_connection, connection_record):
            # pysqlite manages BEGIN itself, which breaks SAVEPOINT handling.
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        @event.listens_for(engine, "begin")
        def _do_begin(conn):
            conn.exec_driver_sql("BEGIN")

    return engine


def get_sessionmaker(engine):
    return sessionmaker(
        bind=engine,
        expire_on_commit=False,
        future=True,
    )
