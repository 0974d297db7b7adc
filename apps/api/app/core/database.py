from collections.abc import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from app.core.config import get_settings


class Base(DeclarativeBase):
    pass


def enable_sqlite_savepoints(engine: Engine) -> Engine:
    """Let pysqlite honour SAVEPOINT by emitting BEGIN ourselves.

    The stdlib driver defers BEGIN until the first DML statement, which breaks
    ``Session.begin_nested()``. SQLAlchemy documents this event-based workaround.
    Transactions start as ``BEGIN IMMEDIATE`` so concurrent writers queue on the
    database lock instead of failing at commit, as ``FOR UPDATE`` does on PostgreSQL.
    """

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):  # type: ignore[no-untyped-def]
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(connection):  # type: ignore[no-untyped-def]
        connection.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def _build_engine() -> Engine:
    settings = get_settings()
    if settings.database_url.startswith("sqlite"):
        return enable_sqlite_savepoints(
            create_engine(
                settings.database_url,
                echo=settings.database_echo,
                connect_args={"check_same_thread": False},
            )
        )
    return create_engine(
        settings.database_url,
        echo=settings.database_echo,
        pool_size=10,
        max_overflow=10,
        pool_pre_ping=True,
        pool_recycle=1800,
        pool_timeout=30,
    )


engine = _build_engine()
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)


def get_db() -> Generator[Session, None, None]:
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
