from __future__ import annotations

from typing import Any

from sqlalchemy import Engine, create_engine, event, inspect
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from tool_catalog.env import ENV
from tool_catalog.app.core.logger import get_logger
from tool_catalog.app.models.db_models import Base


logger = get_logger(__name__)


def _configure_sqlite_connection(dbapi_connection: Any, _connection_record: Any) -> None:
    # pysqlite's implicit BEGIN breaks SAVEPOINT; transactions are opened in _begin_sqlite instead.
    dbapi_connection.isolation_level = None
    # SQLite ignores ON DELETE CASCADE unless this pragma is set per connection.
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _begin_sqlite(connection: Any) -> None:
    connection.exec_driver_sql("BEGIN")


def build_engine(database_url: str, *, echo: bool = False) -> Engine:
    kwargs: dict[str, Any] = {"echo": echo}
    if database_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if database_url in {"sqlite://", "sqlite:///:memory:"}:
            kwargs["poolclass"] = StaticPool

    db_engine = create_engine(database_url, **kwargs)
    if db_engine.dialect.name == "sqlite":
        event.listen(db_engine, "connect", _configure_sqlite_connection)
        event.listen(db_engine, "begin", _begin_sqlite)
    return db_engine


def build_session_factory(db_engine: Engine) -> sessionmaker:
    # Discovery summaries are built from rows after commit.
    return sessionmaker(bind=db_engine, autoflush=False, expire_on_commit=False)


def init_db(db_engine: Engine) -> None:
    expected_tables = set(Base.metadata.tables.keys())
    if not expected_tables:
        raise RuntimeError("No SQLAlchemy models are registered in Base.metadata")

    Base.metadata.create_all(bind=db_engine)

    existing_tables = set(inspect(db_engine).get_table_names())
    missing_tables = sorted(expected_tables - existing_tables)
    if missing_tables:
        raise RuntimeError(
            f"Database startup check failed. Missing tables: {', '.join(missing_tables)}"
        )

    logger.info("Startup check ok. Verified tables: %s", ", ".join(sorted(expected_tables)))


engine = build_engine(ENV.database_url, echo=ENV.db_echo)
SessionLocal = build_session_factory(engine)
