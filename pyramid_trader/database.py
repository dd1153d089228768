"""
Run ledger storage
==================
Engine and session factory for the backtest run ledger. ``DATABASE_URL``
selects the backend; SQLite files run in WAL mode so the API can list runs
while the CLI is saving one.
"""
import logging
import os

from dotenv import load_dotenv
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from pyramid_trader.models.database import Base

load_dotenv()

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./pyramid_runs.db")


def _is_memory_sqlite(url: str) -> bool:
    return url in ("sqlite://", "sqlite:///:memory:")


def create_ledger_engine(url: str = DATABASE_URL) -> Engine:
    """Build an engine for *url*.

    In-memory SQLite shares one connection across threads, otherwise every
    session would see its own empty database.
    """
    if not url.startswith("sqlite"):
        return create_engine(url)

    if _is_memory_sqlite(url):
        return create_engine(url, connect_args={"check_same_thread": False},
                             poolclass=StaticPool)

    ledger_engine = create_engine(url, connect_args={"check_same_thread": False})

    @event.listens_for(ledger_engine, "connect")
    def _wal_mode(dbapi_conn, _connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA busy_timeout=5000")
        cursor.close()

    return ledger_engine


engine = create_ledger_engine()
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(bind: Engine = None):
    """Create the run ledger tables on *bind* (default: the configured engine)."""
    target = bind if bind is not None else engine
    Base.metadata.create_all(bind=target)
    logger.info(f"Run ledger ready ({target.url.drivername})")


def get_db():
    """Yield a ledger session, closed when the request finishes."""
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
