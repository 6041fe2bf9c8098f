"""
core/database.py -- SQLAlchemy engine factory shared by every store.

The principal stores (auth/store.py) and the audit ledger (ledger/store.py)
must live on the same engine: the expired-password set query joins the
principal table to the ledger in a single statement.

Usage:
    engine = make_engine()                                   # SQLite default
    engine = make_engine("postgresql://user:pw@host/db")     # PostgreSQL
    engine = make_engine("sqlite:///file:t?mode=memory&cache=shared&uri=true")
"""

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine

from core.config import get_settings


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    WAL (Write-Ahead Logging) allows readers to proceed without blocking
    during writes. Set per-connection because SQLite PRAGMAs are not
    inherited by new connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def make_engine(db_url: str | None = None) -> Engine:
    """Create an Engine for db_url (default: Settings.database_url)."""
    url = db_url or get_settings().database_url
    connect_args: dict = {}
    if url.startswith("sqlite"):
        # SQLite requires check_same_thread=False when used from FastAPI's
        # threadpool, where one pooled connection may serve several threads.
        connect_args["check_same_thread"] = False
    engine = create_engine(url, connect_args=connect_args)
    if url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    return engine
