"""
Database engine and sessions for the token service: replay records, client registry, audit log.
"""
from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from op_server.config import DATABASE_URL
from op_server.models import Base


def make_engine(url: str) -> Engine:
    """
    SQLite in-memory gets StaticPool so every session sees the same DB (tests).
    File-based SQLite needs check_same_thread=False for FastAPI's threadpool.
    """
    if url.startswith("sqlite"):
        if ":memory:" in url:
            return create_engine(url, connect_args={"check_same_thread": False}, poolclass=StaticPool)
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(url, pool_pre_ping=True)


def make_session_factory(bind: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=bind)


engine = make_engine(DATABASE_URL)
SessionLocal = make_session_factory(engine)


def init_db(bind: Engine | None = None) -> None:
    """Create all tables (replay_records, clients, audit_log)."""
    Base.metadata.create_all(bind=bind or engine)


def get_db():
    """Dependency: yield a DB session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
