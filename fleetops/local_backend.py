"""
SQLite-backed inventory collaborator.

Implements the same contract as HttpBackend against a local database so
the loader, pipeline and dispatcher can run offline and in tests.
"""

import asyncio
import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Sequence, Union

from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text, create_engine, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from .errors import BackendError
from .logger import get_logger
from .models import (
    ConnectivityReport,
    ExistsResult,
    HostAttributes,
    InventoryFilter,
    InventoryPage,
    InventoryRecord,
    ProbeResult,
    TriggerResult,
    as_create_payload,
)
from .normalize import normalize_address

logger = get_logger()

Base = declarative_base()

Prober = Callable[[HostAttributes], Awaitable[ProbeResult]]


class Server(Base):
    """Registered host."""

    __tablename__ = "servers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    hostname = Column(String, nullable=False)
    ip_address = Column(String, nullable=False, unique=True)
    os_version = Column(String, nullable=False, default="Unknown")
    ssh_port = Column(Integer, nullable=False, default=22)
    ssh_user = Column(String, nullable=False)
    ssh_password = Column(String, nullable=False)
    workload_id = Column(Integer, nullable=True)
    status = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=datetime.now)
    updated_at = Column(DateTime, nullable=False, default=datetime.now, onupdate=datetime.now)

    def to_record(self) -> InventoryRecord:
        return InventoryRecord(
            id=self.id,
            attributes={
                "id": self.id,
                "hostname": self.hostname,
                "ip_address": self.ip_address,
                "os_version": self.os_version,
                "ssh_port": self.ssh_port,
                "ssh_user": self.ssh_user,
                "workload_id": self.workload_id,
                "status": self.status,
            },
        )


class ScanRequest(Base):
    """Accepted scan trigger. server_ids is a JSON list, or NULL for all."""

    __tablename__ = "scan_requests"

    id = Column(Integer, primary_key=True, autoincrement=True)
    server_ids = Column(Text, nullable=True)
    batch_size = Column(Integer, nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.now)


async def tcp_probe(host: HostAttributes, timeout: float = 5.0) -> ProbeResult:
    """Reachability check: can a TCP connection be opened to the SSH port?"""
    try:
        _, writer = await asyncio.wait_for(
            asyncio.open_connection(host.ip_address, host.ssh_port), timeout=timeout
        )
    except asyncio.TimeoutError:
        return ProbeResult(key=host.ip_address, ok=False, message="Connection timed out")
    except OSError as e:
        return ProbeResult(key=host.ip_address, ok=False, message="Connection failed", detail=str(e))
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    return ProbeResult(key=host.ip_address, ok=True, message="Port reachable")


class LocalBackend:

    def __init__(self, db_path: Union[Path, str, None] = None, prober: Optional[Prober] = None):
        """
        Args:
            db_path: SQLite file; None keeps everything in memory
            prober: connectivity check per host (default: tcp_probe)
        """
        if db_path is None:
            self.engine = create_engine(
                "sqlite://",
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        else:
            db_path = Path(db_path)
            db_path.parent.mkdir(parents=True, exist_ok=True)
            self.engine = create_engine(f"sqlite:///{db_path}")
        Base.metadata.create_all(self.engine)
        self.Session = sessionmaker(bind=self.engine)
        self.prober = prober or tcp_probe
        self._lock = threading.Lock()

    def add_server(self, **fields) -> int:
        """Insert one host directly (seeding). Returns its id."""
        fields["ip_address"] = normalize_address(fields["ip_address"])
        fields.setdefault("hostname", fields["ip_address"])
        session = self.Session()
        try:
            server = Server(**fields)
            session.add(server)
            session.commit()
            return server.id
        finally:
            session.close()

    def scan_requests(self) -> list:
        session = self.Session()
        try:
            rows = session.query(ScanRequest).order_by(ScanRequest.id).all()
            return [
                {
                    "server_ids": json.loads(r.server_ids) if r.server_ids is not None else None,
                    "batch_size": r.batch_size,
                }
                for r in rows
            ]
        finally:
            session.close()

    async def inventory(self, filter: InventoryFilter, page: int, page_size: int) -> InventoryPage:
        return await self._in_thread(self._inventory, filter, page, page_size)

    async def exists_by_key(self, key: str) -> ExistsResult:
        found = await self._in_thread(self._find_address, normalize_address(key))
        if found:
            return ExistsResult(valid=False, message="IP address already exists in the system")
        return ExistsResult(valid=True, message="IP address is available")

    async def test_connectivity(self, hosts: Sequence[HostAttributes]) -> ConnectivityReport:
        results = await asyncio.gather(*(self.prober(h) for h in hosts))
        return ConnectivityReport(results=tuple(results), successful_count=sum(1 for r in results if r.ok))

    async def create_batch(self, hosts: Sequence[HostAttributes], group_id: int) -> None:
        await self._in_thread(self._create_batch, list(hosts), group_id)

    async def trigger_operation(self, ids: Optional[Sequence[int]], batch_size: int) -> TriggerResult:
        await self._in_thread(self._record_scan, None if ids is None else list(ids), batch_size)
        return TriggerResult(accepted=True, message="Scan request accepted")

    # Blocking session work, run off the event loop

    async def _in_thread(self, func, *args):
        def locked():
            with self._lock:
                return func(*args)

        return await asyncio.to_thread(locked)

    def _inventory(self, filter: InventoryFilter, page: int, page_size: int) -> InventoryPage:
        session = self.Session()
        try:
            query = session.query(Server)
            if filter.keyword:
                pattern = f"%{filter.keyword.strip()}%"
                query = query.filter(or_(Server.hostname.ilike(pattern), Server.ip_address.ilike(pattern)))
            if filter.status:
                query = query.filter(Server.status == (filter.status.lower() in ("active", "true", "1")))
            total = query.count()
            rows = (
                query.order_by(Server.id)
                .offset(max(page - 1, 0) * page_size)
                .limit(page_size)
                .all()
            )
            return InventoryPage(records=tuple(r.to_record() for r in rows), total_count=total)
        finally:
            session.close()

    def _find_address(self, address: str) -> bool:
        session = self.Session()
        try:
            return session.query(Server.id).filter(Server.ip_address == address).first() is not None
        finally:
            session.close()

    def _create_batch(self, hosts: List[HostAttributes], group_id: int) -> None:
        session = self.Session()
        try:
            for item in as_create_payload(hosts, group_id):
                item["ip_address"] = normalize_address(item["ip_address"])
                session.add(Server(**item))
            session.commit()
        except IntegrityError as e:
            session.rollback()
            logger.warning("Batch create rolled back", count=len(hosts), error=str(e.orig))
            raise BackendError("One or more servers already exist", status=409, detail=str(e.orig)) from e
        finally:
            session.close()

    def _record_scan(self, ids: Optional[List[int]], batch_size: int) -> None:
        session = self.Session()
        try:
            session.add(ScanRequest(
                server_ids=json.dumps(ids) if ids is not None else None,
                batch_size=batch_size,
            ))
            session.commit()
        finally:
            session.close()
