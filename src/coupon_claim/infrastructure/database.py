"""Database connection and session management for Coupon Claim Service."""

from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import QueuePool

# Base class for all ORM models
Base = declarative_base()


def create_db_engine(database_url: str, echo: bool = False) -> Engine:
    """
    Create a SQLAlchemy engine with connection pooling.

    PostgreSQL connections are pinned to UTC with a statement timeout.
    SQLite URLs (local runs and tests) get serialised write transactions
    so unique-index races behave like they do on PostgreSQL.

    Args:
        database_url: Database connection URL
        echo: Log SQL statements

    Returns:
        Configured SQLAlchemy engine
    """
    url = make_url(database_url)

    if url.get_backend_name() == "sqlite":
        engine = create_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": 30},
            echo=echo,
        )
        _enable_sqlite_immediate_transactions(engine)
        return engine

    engine = create_engine(
        url,
        poolclass=QueuePool,
        pool_size=10,  # Number of connections to keep open
        max_overflow=20,  # Additional connections when pool is full
        pool_pre_ping=True,  # Verify connections before using
        pool_recycle=3600,  # Recycle connections after 1 hour
        echo=echo,
    )

    @event.listens_for(engine, "connect")
    def set_postgresql_session(dbapi_conn, connection_record):  # type: ignore
        cursor = dbapi_conn.cursor()
        cursor.execute("SET timezone='UTC'")
        cursor.execute("SET statement_timeout='30000'")  # 30 second timeout
        cursor.close()

    return engine


def _enable_sqlite_immediate_transactions(engine: Engine) -> None:
    # pysqlite's implicit BEGIN breaks SAVEPOINT handling and lets two writers
    # read before either takes the lock.
    @event.listens_for(engine, "connect")
    def disable_pysqlite_begin(dbapi_conn, connection_record):  # type: ignore
        dbapi_conn.isolation_level = None
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def begin_immediate(conn):  # type: ignore
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


@contextmanager
def session_scope(session_factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    """
    Context manager for database sessions.

    Usage:
        with session_scope(resources.session_factory) as session:
            session.query(Coupon).filter_by(vendor_id=vendor_id).all()

    Automatically commits on success, rolls back on exception.
    """
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def init_db(engine: Engine) -> None:
    """
    Initialize database schema (create all tables).

    WARNING: This should only be used for testing and local demos. In
    production, use Alembic migrations.
    """
    # Register models on Base.metadata
    from coupon_claim.infrastructure import models  # noqa: F401

    Base.metadata.create_all(bind=engine)


def drop_all_tables(engine: Engine) -> None:
    """
    Drop all tables in the database.

    WARNING: This is destructive and should only be used for testing.
    """
    from coupon_claim.infrastructure import models  # noqa: F401

    Base.metadata.drop_all(bind=engine)
