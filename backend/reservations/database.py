from pathlib import Path

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from .config import settings


def create_db_engine(url: str, busy_timeout: float | None = None) -> Engine:
    """
    Create the engine for the slot/booking store.

    SQLite gets three tweaks:
    - check_same_thread=False so request workers and the sweep thread share the pool
    - the driver's own transaction handling is disabled and every transaction
      starts with BEGIN IMMEDIATE, so writers serialize on the database lock
      instead of failing on a shared→reserved lock upgrade
    - the busy timeout bounds how long a writer waits for that lock
    """
    if busy_timeout is None:
        busy_timeout = settings.db_busy_timeout_seconds

    if not url.startswith("sqlite"):
        return create_engine(url, pool_pre_ping=True)

    db_path = url.replace("sqlite:///", "", 1)
    if db_path and db_path != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    engine = create_engine(
        url,
        connect_args={"check_same_thread": False, "timeout": busy_timeout},
    )

    @event.listens_for(engine, "connect")
    def _configure_sqlite(dbapi_connection, _):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(engine: Engine) -> None:
    """Create all tables (idempotent)."""
    from .models import Base

    Base.metadata.create_all(engine)


engine = create_db_engine(settings.resolved_database_url)

# SessionLocal: основной способ работы с БД
SessionLocal = create_session_factory(engine)


# Dependency для FastAPI
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
