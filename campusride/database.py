# campusride/database.py
from __future__ import annotations
from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, create_engine, Session


def normalize_database_url(url: str) -> str:
    url = url.strip()
    # Neon gives: postgresql://...
    # SQLAlchemy + psycopg = postgresql+psycopg://
    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+psycopg://", 1)

    # Always require TLS on hosted Postgres
    if url.startswith("postgresql+psycopg://") and "sslmode=" not in url:
        sep = "&" if "?" in url else "?"
        url = f"{url}{sep}sslmode=require"
    return url


def create_db_engine(url: str) -> Engine:
    url = normalize_database_url(url)
    if url.startswith("sqlite"):
        # worker threads share the pool; wait on the file lock instead of failing
        return create_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": 30},
        )
    return create_engine(
        url,
        pool_pre_ping=True,   # auto-reconnect
        pool_size=5,
        max_overflow=10,
    )


def init_db(engine: Engine) -> None:
    # Creates tables that don't exist; does not drop/alter
    from . import models  # noqa: F401  (registers tables)
    SQLModel.metadata.create_all(engine)


class SessionFactory:
    def __init__(self, engine: Engine):
        self.engine = engine

    def __call__(self) -> Session:
        # refreshed explicitly after conditional updates
        return Session(self.engine, expire_on_commit=False)
