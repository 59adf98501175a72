from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, declarative_base

Base = declarative_base()


def make_engine(database_url: str, **kwargs):
    if database_url.startswith("sqlite"):
        # busy timeout lets concurrent writers wait instead of failing
        kwargs.setdefault("connect_args", {"check_same_thread": False, "timeout": 15})

    engine = create_engine(database_url, **kwargs)

    if database_url.startswith("sqlite"):
        @event.listens_for(engine, "connect")
        def _sqlite_pragmas(dbapi_connection, _):
            cur = dbapi_connection.cursor()
            cur.execute("PRAGMA foreign_keys=ON;")
            cur.close()

    return engine


def make_sessionmaker(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


def init_db(engine):
    # models must be imported so their tables are registered on Base
    from coursepay import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
