"""SQLAlchemy engine construction for the source and target stores."""

from typing import Any, Dict, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.engine.url import make_url

from migration_hub.config.settings import Settings, get_settings
from migration_hub.utils.logging import get_logger

logger = get_logger(__name__)


def build_engine(uri: str, statement_timeout_seconds: Optional[int] = None) -> Engine:
    """
    Create an engine with a per-statement timeout where the dialect supports one.

    PostgreSQL (psycopg2) receives ``statement_timeout`` as a connect option;
    SQLite gets a busy timeout so concurrent writers wait instead of failing.
    """
    url = make_url(uri)
    connect_args: Dict[str, Any] = {}
    if url.get_backend_name() == "postgresql" and statement_timeout_seconds:
        connect_args["options"] = f"-c statement_timeout={statement_timeout_seconds * 1000}"
    elif url.get_backend_name() == "sqlite":
        connect_args["timeout"] = statement_timeout_seconds or 30
        connect_args["check_same_thread"] = False

    engine = create_engine(uri, connect_args=connect_args, pool_pre_ping=True)

    if url.get_backend_name() == "sqlite":

        @event.listens_for(engine, "connect")
        def _enable_foreign_keys(dbapi_connection, connection_record):  # noqa: ARG001
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    logger.debug(
        "engine.created",
        backend=url.get_backend_name(),
        database=url.database,
        statement_timeout_seconds=statement_timeout_seconds,
    )
    return engine


def build_engines(settings: Optional[Settings] = None) -> Dict[str, Engine]:
    """Return ``{"source": ..., "target": ...}`` engines from settings."""
    settings = settings or get_settings()
    return {
        "source": build_engine(
            settings.source_database_uri, settings.operation_timeout_seconds
        ),
        "target": build_engine(
            settings.target_database_uri, settings.operation_timeout_seconds
        ),
    }
