from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from .settings import settings

class Base(DeclarativeBase):
    pass

def make_engine(url: str) -> Engine:
    connect_args = {}
    if url.startswith("sqlite"):
        # worker pools share the engine across threads
        connect_args = {"check_same_thread": False, "timeout": 30}
    return create_engine(url, pool_pre_ping=True, connect_args=connect_args)

def make_session_factory(bind: Engine) -> sessionmaker:
    return sessionmaker(bind=bind, autoflush=False, expire_on_commit=False)

def init_db(bind: Engine) -> None:
    from . import models  # noqa: F401  registers tables on Base.metadata
    Base.metadata.create_all(bind=bind)

engine = make_engine(settings.database_url)
SessionLocal = make_session_factory(engine)
