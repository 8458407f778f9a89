import os
from datetime import datetime, timezone

from sqlalchemy import create_engine, event
from sqlalchemy.engine import make_url
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC now; the store keeps every timestamp naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def make_engine(database_url: str, timeout: float = 10.0):
    url = make_url(database_url)
    if url.get_backend_name() == "sqlite":
        in_memory = url.database in (None, "", ":memory:")
        kwargs = {"connect_args": {"timeout": timeout, "check_same_thread": False}}
        if in_memory:
            # one shared connection, otherwise every checkout sees an empty db
            kwargs["poolclass"] = StaticPool
        else:
            folder = os.path.dirname(os.path.abspath(url.database))
            os.makedirs(folder, exist_ok=True)
        engine = create_engine(url, **kwargs)

        @event.listens_for(engine, "connect")
        def _sqlite_pragmas(dbapi_conn, _record):
            cur = dbapi_conn.cursor()
            if not in_memory:
                cur.execute("PRAGMA journal_mode=WAL")
            cur.execute(f"PRAGMA busy_timeout={int(timeout * 1000)}")
            cur.close()

        return engine

    return create_engine(
        url,
        pool_pre_ping=True,
        pool_timeout=timeout,
        connect_args={"connect_timeout": int(timeout)},
    )


def make_session_factory(engine):
    return sessionmaker(bind=engine, expire_on_commit=False)
