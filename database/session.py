# database/session.py

from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, declarative_base

# ---------------------------------------------------------------------------
# Wspólna baza dla modeli (declarative base)
# ---------------------------------------------------------------------------

Base = declarative_base()

# Silnik i fabryka sesji tworzone dopiero w init_db() – baza jest opcjonalna
# (służy tylko do logu audytu webhooków).
engine: Optional[Engine] = None
SessionLocal: Optional[sessionmaker] = None


def init_db(database_url: str) -> Engine:
    """
    Tworzy silnik, fabrykę sesji i tabele.
    """
    global engine, SessionLocal

    # pre_ping = True – żeby szybciej wykrywać zerwane połączenia
    engine = create_engine(
        database_url,
        pool_pre_ping=True,
    )

    SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=engine,
    )

    # import modeli rejestruje tabele w Base.metadata
    from database import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
    return engine


def dispose_db() -> None:
    global engine, SessionLocal

    if engine is not None:
        engine.dispose()
    engine = None
    SessionLocal = None
