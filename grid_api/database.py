import os
import re
import logging
import threading
from typing import Dict, Optional

import sqlalchemy
from sqlalchemy import event
from sqlalchemy.engine import Engine
from dotenv import load_dotenv

from grid_api.config import DATABASE_ROUTES, QUERY_TIMEOUT_MS

load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_ROUTE = "default"


# Validate SQL identifiers
def validate_identifier(name: str) -> bool:
    """
    Validate that a database identifier (table/column/procedure) is safe:
    - Non-empty
    - Max 63 chars (PostgreSQL limit)
    - Starts with letter/underscore
    - Contains only letters, digits, underscores
    """
    if not isinstance(name, str) or len(name) == 0 or len(name) > 63:
        return False
    return bool(re.fullmatch(r"[a-zA-Z_][a-zA-Z0-9_]*", name))


# Engines keyed by registry routing key ("default" when the registration has none)
_engines: Dict[str, Engine] = {}
_engines_lock = threading.Lock()


def _default_url():
    database_url = os.environ.get("DATABASE_URL")
    if database_url:
        return database_url

    # Cloud SQL unix socket
    db_socket_path = os.environ.get("DB_SOCKET_PATH")
    if not db_socket_path:
        raise RuntimeError("DATABASE_URL or DB_SOCKET_PATH must be set")

    return sqlalchemy.engine.url.URL.create(
        drivername="postgresql+pg8000",
        host=db_socket_path,
        username=os.environ.get("DB_USER"),
        password=os.environ.get("DB_PASS"),
        database=os.environ.get("DB_NAME"),
    )


def _install_statement_timeout(engine: Engine, timeout_ms: int) -> None:
    """Apply a server-side statement timeout on every new PostgreSQL connection."""

    @event.listens_for(engine, "connect")
    def _set_timeout(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        try:
            cursor.execute(f"SET statement_timeout = {int(timeout_ms)}")
        finally:
            cursor.close()


def create_engine_for(url) -> Engine:
    # Dynamic pool sizing
    DEFAULT_POOL_SIZE = 10
    DEFAULT_MAX_OVERFLOW = 5

    pool_size = int(os.environ.get("DB_POOL_SIZE", DEFAULT_POOL_SIZE))
    max_overflow = int(os.environ.get("DB_MAX_OVERFLOW", DEFAULT_MAX_OVERFLOW))

    MAX_ALLOWED_POOL = 50
    pool_size = min(pool_size, MAX_ALLOWED_POOL)
    max_overflow = min(max_overflow, MAX_ALLOWED_POOL)

    logger.info(
        f"Initializing DB pool with size={pool_size}, "
        f"overflow={max_overflow}, pre_ping=True"
    )

    db_config = {
        'pool_size': pool_size,
        'max_overflow': max_overflow,
        'pool_timeout': 10,
        'pool_recycle': 1800,
        'pool_pre_ping': True,
    }

    engine = sqlalchemy.create_engine(url, **db_config)
    if engine.dialect.name == "postgresql" and QUERY_TIMEOUT_MS > 0:
        _install_statement_timeout(engine, QUERY_TIMEOUT_MS)
    return engine


def init_db_engine(routing_key: Optional[str] = None) -> Engine:
    """
    Initialize the engine for a routing key ONCE and reuse it afterwards.

    Raises:
        RuntimeError: No URL is configured for the routing key
    """
    key = routing_key or DEFAULT_ROUTE
    with _engines_lock:
        engine = _engines.get(key)
        if engine is not None:
            return engine

        if key == DEFAULT_ROUTE:
            url = _default_url()
        elif key in DATABASE_ROUTES:
            url = DATABASE_ROUTES[key]
        else:
            raise RuntimeError(f"No database configured for routing key '{key}'")

        engine = create_engine_for(url)
        _engines[key] = engine
        return engine


def get_db_engine(routing_key: Optional[str] = None) -> Engine:
    """Get the engine for a routing key, creating it on first use."""
    return init_db_engine(routing_key)


def register_engine(routing_key: Optional[str], engine: Engine) -> None:
    """Install an externally built engine (used for tests and embedded setups)."""
    with _engines_lock:
        _engines[routing_key or DEFAULT_ROUTE] = engine


def dispose_engines() -> None:
    """Release every pooled connection during shutdown."""
    with _engines_lock:
        for key, engine in _engines.items():
            engine.dispose()
            logger.info(f"Disposed DB engine for route={key}")
        _engines.clear()


def quote_identifier(name: str) -> str:
    """
    Quote an identifier for embedding in SQL text.

    Only names that passed a whitelist lookup should reach this point; the
    format check is repeated so a bad registry entry can never be embedded.
    """
    if not validate_identifier(name):
        raise ValueError(f"Invalid SQL identifier: {name!r}")
    return f'"{name}"'
