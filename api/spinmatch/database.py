from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

from .config import DATABASE_URL

Base = declarative_base()


def make_engine(url: str, **kwargs) -> Engine:
    if not url.startswith("sqlite"):
        return create_engine(url, future=True, pool_pre_ping=True, **kwargs)

    # pysqlite's implicit BEGIN defers the write lock, so two concurrent writers
    # can both read and then fail on upgrade. Take the write lock up front.
    connect_args = {"check_same_thread": False, "timeout": 30}
    connect_args.update(kwargs.pop("connect_args", {}))
    sqlite_engine = create_engine(url, future=True, connect_args=connect_args, **kwargs)

    @event.listens_for(sqlite_engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(sqlite_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return sqlite_engine


def make_session_factory(bind: Engine) -> sessionmaker:
    return sessionmaker(bind=bind, autoflush=True, autocommit=False, expire_on_commit=False, future=True)


engine = make_engine(DATABASE_URL)
SessionLocal = make_session_factory(engine)
