from __future__ import annotations

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from supply_desk.config import settings
from supply_desk.models import Base


def _configure_sqlite(engine: Engine) -> None:
    # pysqlite's deferred BEGIN lets two writers deadlock on lock upgrade;
    # take the write lock up front so concurrent transactions queue instead.
    @event.listens_for(engine, 'connect')
    def _on_connect(dbapi_connection, _connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute('PRAGMA foreign_keys=ON')
        cursor.close()

    @event.listens_for(engine, 'begin')
    def _on_begin(conn):
        conn.exec_driver_sql('BEGIN IMMEDIATE')


def build_engine(url: str | None = None) -> Engine:
    url = url or settings.database_url_normalized
    if url.startswith('sqlite'):
        engine = create_engine(
            url,
            connect_args={'check_same_thread': False, 'timeout': settings.sqlite_busy_timeout_seconds},
        )
        _configure_sqlite(engine)
        return engine
    return create_engine(url, pool_pre_ping=True)


def build_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    Base.metadata.create_all(engine)


engine = build_engine()
SessionLocal = build_session_factory(engine)
