"""Database engine, session factory and declarative base."""

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from inventory_sync.config import settings


def make_engine(database_url: str, **kwargs):
    """Create an engine; SQLite connections are shared with the scheduler thread."""
    if database_url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False})
    return create_engine(database_url, **kwargs)


def make_session_factory(bind) -> sessionmaker:
    # Records returned by the services are read after their session closes
    return sessionmaker(bind=bind, autocommit=False, autoflush=False, expire_on_commit=False)


engine = make_engine(settings.database_url)
SessionLocal = make_session_factory(engine)

Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind=None) -> None:
    """Create all tables that do not exist yet."""
    import inventory_sync.models  # noqa: F401  populate Base.metadata

    Base.metadata.create_all(bind=bind or engine)
