"""
Database Connection Manager
===========================

Creates the SQLite engine behind the SQL state store.

Every transaction opens with ``BEGIN IMMEDIATE`` so a read-modify-write takes
SQLite's reserved lock up front. Two processes updating the same document are
serialized by the database rather than racing between read and write.
"""

from pathlib import Path

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session

from forgeguard.db.models import Base

DB_FILENAME = "guardian.db"


def create_store_engine(db_path: Path, busy_timeout: float = 10.0) -> Engine:
    """
    Create an engine for the given SQLite file and ensure tables exist.

    Args:
        db_path: Path of the database file (parent directories are created)
        busy_timeout: Seconds to wait for another writer before failing

    Returns:
        Configured Engine
    """
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    engine = create_engine(
        f"sqlite:///{db_path}",
        echo=False,
        connect_args={"timeout": busy_timeout},
    )

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        # Let SQLAlchemy emit BEGIN itself
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    Base.metadata.create_all(engine)
    return engine


def get_session_maker(engine: Engine) -> sessionmaker[Session]:
    """Get a session factory bound to the engine."""
    return sessionmaker(engine, expire_on_commit=False)
