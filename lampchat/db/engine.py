"""
SQLite engine for chat storage.

One engine per process, created on first use. Every connection enforces
foreign keys, so removing a chat also removes its messages in the database.
"""

from pathlib import Path

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine, make_url

from lampchat.config import get_settings
from lampchat.core import get_logger

logger = get_logger(__name__)

_engine: Engine | None = None


def _database_file(database_url: str) -> Path | None:
    database = make_url(database_url).database
    if not database or database == ":memory:":
        return None
    return Path(database)


def _enable_foreign_keys(dbapi_connection, _connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def get_engine() -> Engine:
    """Get or create the database engine."""
    global _engine

    if _engine is not None:
        return _engine

    settings = get_settings()
    database_file = _database_file(settings.database_url)
    if database_file is not None and not database_file.parent.exists():
        database_file.parent.mkdir(parents=True, exist_ok=True)
        logger.info("Created database directory", data={"path": str(database_file.parent)})

    _engine = create_engine(
        settings.database_url,
        connect_args={"check_same_thread": False},
        echo=settings.debug,
        pool_pre_ping=True,
    )
    event.listen(_engine, "connect", _enable_foreign_keys)
    logger.info(
        "Database engine created",
        data={"database": str(database_file or ":memory:"), "debug": settings.debug},
    )
    return _engine


def verify_database_connection() -> bool:
    """True when a trivial query succeeds."""
    try:
        with get_engine().connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception as exc:
        logger.error("Database connection failed", data={"error": str(exc)})
        return False
    return True


def dispose_engine() -> None:
    """Dispose of the engine and release all connections."""
    global _engine
    if _engine is not None:
        _engine.dispose()
        _engine = None
        logger.info("Database engine disposed")
