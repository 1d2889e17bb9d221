"""
Engine, session factory and declarative base.

`DATABASE_URL` selects the backend: SQLite by default for local runs, any
SQLAlchemy URL (typically Postgres) in deployment.
"""
import logging
import os
import time

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

slow_query_logger = logging.getLogger("studybuddy.slow_queries")
SLOW_QUERY_MS = int(os.getenv("SLOW_QUERY_THRESHOLD_MS", "100"))
if os.getenv("DEBUG_QUERIES"):
    slow_query_logger.setLevel(logging.DEBUG)


def normalize_database_url(url: str) -> str:
    # SQLAlchemy dropped the bare postgres:// alias
    if url.startswith("postgres://"):
        return "postgresql://" + url[len("postgres://"):]
    return url


DATABASE_URL = normalize_database_url(os.getenv("DATABASE_URL", "sqlite:///./studybuddy.db"))


def engine_options(url: str) -> dict:
    if url.startswith("sqlite"):
        # Requests run on the threadpool; one connection may cross threads
        return {"connect_args": {"check_same_thread": False}, "pool_pre_ping": True}
    return {
        "pool_pre_ping": True,
        "pool_recycle": 1800,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_timeout": 30,
    }


engine = create_engine(DATABASE_URL, **engine_options(DATABASE_URL))


@event.listens_for(Engine, "before_cursor_execute")
def _start_query_timer(conn, cursor, statement, parameters, context, executemany):
    conn.info.setdefault("query_started", []).append(time.perf_counter())


@event.listens_for(Engine, "after_cursor_execute")
def _log_slow_query(conn, cursor, statement, parameters, context, executemany):
    started = conn.info.get("query_started")
    if not started:
        return
    elapsed_ms = (time.perf_counter() - started.pop()) * 1000
    if elapsed_ms > SLOW_QUERY_MS:
        slow_query_logger.warning("Slow query (%.1fms): %.500s", elapsed_ms, statement)


SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    """Request-scoped session; closed when the response is sent."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
