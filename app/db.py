"""
Database connection and setup
SQLite database with SQLAlchemy, holding the outbound mutation queue
"""
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import sessionmaker
from app.models import Base


def create_session_factory(database_url: str, echo: bool = False) -> sessionmaker:
    """
    Create an engine for database_url, create missing tables, return a session factory
    Safe to call multiple times (won't recreate existing tables)
    """
    url = make_url(database_url)
    connect_args = {}
    if url.get_backend_name() == "sqlite":
        connect_args["check_same_thread"] = False  # Needed for SQLite across threads
        if url.database and url.database != ":memory:":
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)

    engine = create_engine(database_url, connect_args=connect_args, echo=echo)
    Base.metadata.create_all(bind=engine)
    return sessionmaker(autoflush=False, bind=engine, expire_on_commit=False)
