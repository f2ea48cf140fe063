# file: models.py

import os
import uuid

from sqlalchemy import Column, DateTime, Float, Integer, JSON, PrimaryKeyConstraint, String, create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy.sql import func

Base = declarative_base()


class TopologySnapshot(Base):
    """Pre-failover network attachment of one service. One row per (cluster, service)."""

    __tablename__ = "topology_snapshots"
    __table_args__ = (PrimaryKeyConstraint("cluster", "service"),)

    cluster = Column(String, nullable=False)
    service = Column(String, nullable=False)
    region = Column(String, nullable=True)
    excluded_az = Column(String, nullable=True)
    subnets = Column(JSON, nullable=False)          # ordered as captured
    security_groups = Column(JSON, default=list)
    status = Column(String, default="active")       # active | consumed
    created_at = Column(DateTime, server_default=func.now())
    consumed_at = Column(DateTime, nullable=True)


class DrillRun(Base):
    __tablename__ = "drill_runs"
    id = Column(String, primary_key=True, default=lambda: f"drill-{uuid.uuid4().hex[:8]}")
    operation = Column(String, nullable=False)      # failover | restore | drill
    cluster = Column(String, nullable=False)
    service = Column(String, nullable=False)
    region = Column(String, nullable=True)
    excluded_az = Column(String, nullable=True)
    status = Column(String, default="running")     # running | converged | timed_out | cancelled | failed
    evicted = Column(Integer, default=0)
    ticks = Column(Integer, default=0)
    duration_seconds = Column(Float, nullable=True)
    placements = Column(JSON, default=dict)         # instance id -> AZ
    error = Column(String, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    finished_at = Column(DateTime, nullable=True)


def create_session_factory(database_url: str):
    """Create the engine and tables; return a sessionmaker bound to it."""
    if database_url.startswith("sqlite:///"):
        db_dir = os.path.dirname(database_url[len("sqlite:///"):])
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)

    kwargs = {"connect_args": {"check_same_thread": False}}
    if database_url == "sqlite://":
        # one shared connection, otherwise every session sees an empty database
        kwargs["poolclass"] = StaticPool

    engine = create_engine(database_url, **kwargs)
    Base.metadata.create_all(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)
