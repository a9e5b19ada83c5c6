"""
Pytest configuration and shared fixtures.
"""

import asyncio
from typing import Any, Callable, Dict, List, Optional, Sequence

import pytest

from fleetops.errors import BackendError
from fleetops.models import (
    ConnectivityReport,
    DiscoveredAttributes,
    ExistsResult,
    HostAttributes,
    InventoryFilter,
    InventoryPage,
    InventoryRecord,
    ProbeResult,
    TriggerResult,
)
from fleetops.normalize import normalize_address


HEADER = ["IP Server", "SSH User", "SSH Port", "SSH Password", "Hostname", "OS Version"]


def make_servers(count: int) -> List[InventoryRecord]:
    """Inventory records with ids 1..count."""
    servers = []
    for i in range(1, count + 1):
        servers.append(
            InventoryRecord(
                id=i,
                attributes={
                    "id": i,
                    "hostname": f"srv-{i:05d}",
                    "ip_address": f"10.{i // 65536}.{(i // 256) % 256}.{i % 256}",
                },
            )
        )
    return servers


class FakeBackend:
    """
    In-memory collaborator that records every call.

    Knobs:
        existing: addresses already registered
        unreachable: addresses whose probe fails
        failures: method name -> exception raised by that method
        inventory_delay: filter -> seconds to sleep before answering
        probe_gate: asyncio.Event the probe waits on before answering
        reverse_results: return probe results in reverse order
    """

    def __init__(self, servers: Optional[List[InventoryRecord]] = None):
        self.servers = list(servers or [])
        self.existing = set()
        self.unreachable = set()
        self.failures: Dict[str, BaseException] = {}
        self.inventory_delay: Callable[[InventoryFilter], float] = lambda f: 0
        self.probe_gate: Optional[asyncio.Event] = None
        self.reverse_results = False
        self.omit_results = set()
        self.discovered: Dict[str, DiscoveredAttributes] = {}
        self.accept_triggers = True
        self.calls: List[tuple] = []
        self.created: List[Dict[str, Any]] = []
        self.triggers: List[tuple] = []

    def count(self, name: str) -> int:
        return sum(1 for c in self.calls if c[0] == name)

    def _maybe_fail(self, name: str) -> None:
        if name in self.failures:
            raise self.failures[name]

    def _matching(self, filter: InventoryFilter) -> List[InventoryRecord]:
        if not filter.keyword:
            return self.servers
        kw = filter.keyword.lower()
        return [
            r for r in self.servers
            if kw in r.attributes["hostname"].lower() or kw in r.attributes["ip_address"]
        ]

    async def inventory(self, filter: InventoryFilter, page: int, page_size: int) -> InventoryPage:
        self.calls.append(("inventory", filter, page, page_size))
        delay = self.inventory_delay(filter)
        if delay:
            await asyncio.sleep(delay)
        self._maybe_fail("inventory")
        matching = self._matching(filter)
        start = (page - 1) * page_size
        return InventoryPage(records=tuple(matching[start:start + page_size]), total_count=len(matching))

    async def exists_by_key(self, key: str) -> ExistsResult:
        self.calls.append(("exists_by_key", key))
        await asyncio.sleep(0)
        self._maybe_fail("exists_by_key")
        if normalize_address(key) in self.existing:
            return ExistsResult(valid=False, message="IP address already exists in the system")
        return ExistsResult(valid=True, message="IP address is available")

    async def test_connectivity(self, hosts: Sequence[HostAttributes]) -> ConnectivityReport:
        self.calls.append(("test_connectivity", [h.ip_address for h in hosts]))
        if self.probe_gate is not None:
            await self.probe_gate.wait()
        await asyncio.sleep(0)
        self._maybe_fail("test_connectivity")
        results = []
        for h in hosts:
            if h.ip_address in self.omit_results:
                continue
            if h.ip_address in self.unreachable:
                results.append(ProbeResult(key=h.ip_address, ok=False, message="Authentication failed",
                                           detail="ssh: handshake failed"))
            else:
                results.append(ProbeResult(
                    key=h.ip_address,
                    ok=True,
                    message="Connection successful",
                    discovered=self.discovered.get(h.ip_address, DiscoveredAttributes()),
                ))
        if self.reverse_results:
            results.reverse()
        return ConnectivityReport(results=tuple(results), successful_count=sum(1 for r in results if r.ok))

    async def create_batch(self, hosts: Sequence[HostAttributes], group_id: int) -> None:
        self.calls.append(("create_batch", [h.ip_address for h in hosts], group_id))
        await asyncio.sleep(0)
        self._maybe_fail("create_batch")
        for h in hosts:
            self.created.append({"ip_address": h.ip_address, "hostname": h.hostname, "group_id": group_id})

    async def trigger_operation(self, ids, batch_size: int) -> TriggerResult:
        self.calls.append(("trigger_operation", None if ids is None else list(ids), batch_size))
        await asyncio.sleep(0)
        self._maybe_fail("trigger_operation")
        self.triggers.append((None if ids is None else list(ids), batch_size))
        if not self.accept_triggers:
            return TriggerResult(accepted=False, message="Scanner is busy")
        return TriggerResult(accepted=True, message="Compliance scan started")


@pytest.fixture
def backend() -> FakeBackend:
    """Fake inventory with 25 servers."""
    return FakeBackend(make_servers(25))


@pytest.fixture
def large_backend() -> FakeBackend:
    """Fake inventory with 25,000 servers."""
    return FakeBackend(make_servers(25000))


@pytest.fixture
def host_rows() -> List[List[Any]]:
    """Sheet with three good rows."""
    return [
        HEADER,
        ["10.0.0.1", "root", 22, "secret", "web-01", "Ubuntu 22.04"],
        ["10.0.0.2", "admin", 2222, "secret", "", ""],
        ["10.0.0.3", "admin", None, "secret", "db-01", "Debian 12"],
    ]


@pytest.fixture
def mixed_rows() -> List[List[Any]]:
    """Sheet with one good row, one duplicate and one bad address."""
    return [
        ["IP Server", "SSH User", "SSH Port", "SSH Password"],
        ["10.0.0.1", "root", 22, "x"],
        ["10.0.0.1", "root", 22, "x"],
        ["999.1.1.1", "root", 22, "x"],
    ]


@pytest.fixture
def backend_error() -> BackendError:
    return BackendError("Service unavailable", status=503)
