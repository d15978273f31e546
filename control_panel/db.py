from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine, Session
from .settings import settings

def make_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url or url.rstrip("/") == "sqlite:":
            kwargs["poolclass"] = StaticPool
        eng = create_engine(url, **kwargs)

        # sqlite ignores ON DELETE CASCADE unless asked per connection
        @event.listens_for(eng, "connect")
        def _fk_on(dbapi_conn, _record):
            cur = dbapi_conn.cursor()
            cur.execute("PRAGMA foreign_keys=ON")
            cur.close()

        return eng
    return create_engine(url, pool_pre_ping=True)

engine = make_engine(settings.database_url)

def init_db(bind: Engine | None = None):
    from . import models  # noqa: F401  registers tables on the metadata
    SQLModel.metadata.create_all(bind or engine)

def get_session(bind: Engine | None = None) -> Session:
    # prevent attribute expiration so simple reads after commit are safe
    return Session(bind or engine, expire_on_commit=False)

def get_db():
    with get_session() as session:
        yield session
