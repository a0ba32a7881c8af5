"""
Database engine and session factory for the credential store. SQLite by default.
"""
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from codeassist_auth.config import DATABASE_URL
from codeassist_auth.models import Base


def create_db_engine(url: str = DATABASE_URL) -> Engine:
    """Engine for url with tables created. File-based SQLite gets its directory created first."""
    # SQLite: in-memory needs StaticPool so all connections share the same DB
    if url.startswith("sqlite:///:memory:") or url == "sqlite://":
        engine = create_engine(url, connect_args={"check_same_thread": False}, poolclass=StaticPool)
    else:
        if url.startswith("sqlite:///"):
            Path(url[len("sqlite:///"):]).parent.mkdir(parents=True, exist_ok=True)
        connect_args = {"check_same_thread": False} if "sqlite" in url else {}
        engine = create_engine(url, connect_args=connect_args)
    Base.metadata.create_all(bind=engine)
    return engine


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)
