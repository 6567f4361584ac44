"""
SQLAlchemy models for credentials and durable service counters.
"""
from sqlalchemy import Column, Text, Integer

from app.db.database import Base


class Credential(Base):
    """Opaque API token issued to a principal after a proof exchange."""
    __tablename__ = "credentials"

    pubkey = Column(Text, primary_key=True, index=True)
    token = Column(Text, unique=True, nullable=False, index=True)
    created_at = Column(Text, nullable=False)
    last_used_at = Column(Text, nullable=True)


class ServiceStats(Base):
    """Single-row table of build counters (id is always 1)."""
    __tablename__ = "service_stats"

    id = Column(Integer, primary_key=True)
    total_builds = Column(Integer, nullable=False, default=0)
    successful_builds = Column(Integer, nullable=False, default=0)
    failed_builds = Column(Integer, nullable=False, default=0)
    cancelled_builds = Column(Integer, nullable=False, default=0)
    started_at = Column(Text, nullable=True)
    last_build_at = Column(Text, nullable=True)
