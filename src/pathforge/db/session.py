from __future__ import annotations

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from pathforge.config import get_settings

settings = get_settings()
connect_args = {"check_same_thread": False} if settings.database_url.startswith("sqlite") else {}
engine = create_engine(settings.database_url, connect_args=connect_args, future=True)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


def make_session_factory(database_url: str) -> tuple[Engine, sessionmaker[Session]]:
    args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
    other_engine = create_engine(database_url, connect_args=args, future=True)
    return other_engine, sessionmaker(bind=other_engine, autoflush=False, autocommit=False, future=True)
