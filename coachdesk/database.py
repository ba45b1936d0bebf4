import os

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from coachdesk.core import config


DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./coachdesk.db")


def _connect_args(url: str) -> dict:
    # SQLite connections are shared across FastAPI's worker threads.
    if url.startswith("sqlite"):
        return {"check_same_thread": False}
    return {}


engine = create_engine(
    DATABASE_URL,
    connect_args=_connect_args(DATABASE_URL),
    echo=config.SQL_ECHO,
)

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)

Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db() -> None:
    # Import for side effects: every model must be registered on Base.metadata.
    from coachdesk.models import availability, booking, habit, messaging, package, subscription, training, user  # noqa: F401

    Base.metadata.create_all(bind=engine)
