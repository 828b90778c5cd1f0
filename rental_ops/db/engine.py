from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool


def _is_memory_sqlite(db_url: str) -> bool:
    return db_url.startswith("sqlite") and (":memory:" in db_url or db_url.rstrip("/").endswith("sqlite:"))


def create_store_engine(db_url: str, pool_timeout: int | None = None) -> Engine:
    if _is_memory_sqlite(db_url):
        # One shared connection, otherwise every checkout sees an empty database.
        return create_engine(
            db_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            future=True,
        )
    kwargs = {"pool_pre_ping": True, "future": True}
    if pool_timeout and not db_url.startswith("sqlite"):
        kwargs["pool_timeout"] = pool_timeout
    return create_engine(db_url, **kwargs)


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
        future=True,
    )
