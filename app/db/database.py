"""
SQLite database engine and session management.
Database path: <BUILD_DATA_DIR>/build-service.db
"""
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

from app.core.config import get_service_config

# Base class for models
Base = declarative_base()


def create_session_factory(database_path: Path) -> sessionmaker:
    """
    Create an engine and session factory for a SQLite file, creating tables.
    Used for the process-wide database and for isolated test databases.
    """
    database_path = Path(database_path)
    database_path.parent.mkdir(parents=True, exist_ok=True)

    engine = create_engine(
        f"sqlite:///{database_path}",
        connect_args={"check_same_thread": False},
        echo=False,  # No SQL logging (security)
    )

    from app.db.models import Credential, ServiceStats  # noqa: F401
    Base.metadata.create_all(bind=engine)

    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


_session_factory = None


def get_session_factory() -> sessionmaker:
    """Process-wide session factory, created on first use."""
    global _session_factory
    if _session_factory is None:
        _session_factory = create_session_factory(get_service_config().database_path)
    return _session_factory


def init_db() -> None:
    """Initialize database tables."""
    get_session_factory()
