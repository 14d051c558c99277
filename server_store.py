"""
server_store.py — persistent per-host server summaries for the reporting API.

One row per host address. Deployment runs update the status column; the
players/cpu/memory columns are filled in by whatever feeds live metrics
and default to zero.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Generator

from sqlalchemy import Column, DateTime, Float, Integer, String, create_engine, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from coordinator import DeploymentReport

logger = logging.getLogger("maestro-store")

Base = declarative_base()


class ServerStatus:
    DEPLOYED = "deployed"
    DEGRADED = "degraded"
    FAILED = "failed"
    UNREACHABLE = "unreachable"


@dataclass(frozen=True)
class ServerSummary:
    address: str
    name: str
    status: str
    players: int = 0
    cpu: float = 0.0
    memory: float = 0.0

    def to_dict(self) -> dict:
        return {
            "address": self.address,
            "name": self.name,
            "status": self.status,
            "players": self.players,
            "cpu": self.cpu,
            "memory": self.memory,
        }


class ServerORM(Base):
    __tablename__ = "servers"

    address = Column(String(255), primary_key=True)
    name = Column(String(255), nullable=False)
    status = Column(String(32), nullable=False)
    players = Column(Integer, nullable=False, default=0)
    cpu = Column(Float, nullable=False, default=0.0)
    memory = Column(Float, nullable=False, default=0.0)
    updated_at = Column(DateTime(timezone=True), nullable=False)


def _orm_to_summary(orm: ServerORM) -> ServerSummary:
    return ServerSummary(
        address=orm.address,
        name=orm.name,
        status=orm.status,
        players=orm.players,
        cpu=orm.cpu,
        memory=orm.memory,
    )


def _upsert_row(session: Session, address: str, status: str, name: str | None = None) -> None:
    now = datetime.now(timezone.utc)
    row = session.get(ServerORM, address)
    if row is None:
        session.add(ServerORM(
            address=address,
            name=name or address,
            status=status,
            players=0,
            cpu=0.0,
            memory=0.0,
            updated_at=now,
        ))
    else:
        row.status = status
        if name:
            row.name = name
        row.updated_at = now


def create_store_engine(database_url: str) -> Engine:
    if database_url in ("sqlite://", "sqlite:///:memory:"):
        # one shared connection, or every session sees its own empty database
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    if database_url.startswith("sqlite"):
        return create_engine(database_url, connect_args={"check_same_thread": False})
    return create_engine(database_url, pool_pre_ping=True)


def host_status(report: DeploymentReport, address: str) -> str:
    if address in report.unready_hosts:
        return ServerStatus.UNREACHABLE
    tally = report.per_host().get(address, {"succeeded": 0, "failed": 0})
    if tally["failed"] == 0:
        return ServerStatus.DEPLOYED
    if tally["succeeded"] == 0:
        return ServerStatus.FAILED
    return ServerStatus.DEGRADED


class ServerStore:
    """Repository for server summaries keyed by host address."""

    def __init__(self, database_url: str):
        self.engine = create_store_engine(database_url)
        self._session_factory = sessionmaker(
            bind=self.engine, autoflush=False, expire_on_commit=False,
        )
        Base.metadata.create_all(bind=self.engine)

    @contextmanager
    def _session(self) -> Generator[Session, None, None]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def upsert(self, address: str, status: str, name: str | None = None) -> None:
        with self._session() as session:
            _upsert_row(session, address, status, name)

    def update_metrics(self, address: str, players: int, cpu: float, memory: float) -> None:
        with self._session() as session:
            row = session.get(ServerORM, address)
            if row is None:
                raise KeyError(f"unknown server '{address}'")
            row.players = players
            row.cpu = cpu
            row.memory = memory
            row.updated_at = datetime.now(timezone.utc)

    def record_report(self, report: DeploymentReport) -> None:
        """Write every host's status for one run in a single transaction."""
        statuses = {address: host_status(report, address) for address in report.hosts}
        with self._session() as session:
            for address, status in statuses.items():
                _upsert_row(session, address, status)
        for address, status in statuses.items():
            logger.info(f"{address}: recorded status '{status}'")

    def list_servers(self) -> list[ServerSummary]:
        with self._session() as session:
            rows = session.scalars(select(ServerORM).order_by(ServerORM.address)).all()
            return [_orm_to_summary(row) for row in rows]
