"""
Domain types shared by the loader, selection, pipeline and dispatcher.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

from .errors import InvalidTransition
from .normalize import normalize_address


@dataclass(frozen=True)
class InventoryFilter:
    """Filter descriptor for a remote inventory query. Hashable."""

    keyword: Optional[str] = None
    status: Optional[str] = None

    def normalized(self) -> "InventoryFilter":
        keyword = self.keyword.strip() if self.keyword else None
        status = self.status.strip() if self.status else None
        return InventoryFilter(keyword=keyword or None, status=status or None)


@dataclass(frozen=True)
class InventoryRecord:
    """Immutable snapshot of one remote inventory entity."""

    id: int
    attributes: Dict[str, Any] = field(default_factory=dict, hash=False, compare=False)

    def get(self, name: str, default: Any = None) -> Any:
        return self.attributes.get(name, default)


@dataclass(frozen=True)
class InventoryPage:
    records: Tuple[InventoryRecord, ...]
    total_count: int


class ProbeStatus(str, Enum):
    UNTESTED = "untested"
    TESTING = "testing"
    SUCCESS = "success"
    FAILED = "failed"


@dataclass
class HostAttributes:
    """
    Known attributes of a host being onboarded, plus an open map for any
    extra sheet columns or probe-discovered facts without a dedicated slot.
    """

    ip_address: str
    ssh_user: str
    ssh_port: int
    ssh_password: str = field(repr=False)
    hostname: Optional[str] = None
    os_version: Optional[str] = None
    extra: Dict[str, str] = field(default_factory=dict)

    def merge_discovered(self, discovered: "DiscoveredAttributes") -> None:
        """Probe results win over sheet values; empty discoveries are ignored."""
        if discovered.hostname:
            self.hostname = discovered.hostname
        if discovered.os_version:
            self.os_version = discovered.os_version
        for key, value in discovered.extra.items():
            if value:
                self.extra[key] = value


@dataclass(frozen=True)
class DiscoveredAttributes:
    hostname: Optional[str] = None
    os_version: Optional[str] = None
    extra: Dict[str, str] = field(default_factory=dict, hash=False)


TESTING_MESSAGE = "Testing..."


@dataclass
class CandidateRecord:
    """
    One parsed sheet row on its way to becoming an inventory entry.

    Status moves UNTESTED -> TESTING -> SUCCESS | FAILED. The only way back
    is reset_probe(), which a fresh probe run calls before testing again.
    """

    row_id: str
    row_number: int
    attributes: HostAttributes
    status: ProbeStatus = ProbeStatus.UNTESTED
    message: Optional[str] = None
    detail: Optional[str] = None

    @property
    def key(self) -> str:
        return normalize_address(self.attributes.ip_address)

    def mark_testing(self, message: str = TESTING_MESSAGE) -> None:
        if self.status is not ProbeStatus.UNTESTED:
            raise InvalidTransition(f"{self.key}: cannot start testing from {self.status.value}")
        self.status = ProbeStatus.TESTING
        self.message = message
        self.detail = None

    def mark_success(self, message: Optional[str] = None, discovered: Optional[DiscoveredAttributes] = None) -> None:
        self._finish(ProbeStatus.SUCCESS, message)
        if discovered is not None:
            self.attributes.merge_discovered(discovered)

    def mark_failed(self, message: str, detail: Optional[str] = None) -> None:
        self._finish(ProbeStatus.FAILED, message)
        self.detail = detail

    def reset_probe(self) -> None:
        self.status = ProbeStatus.UNTESTED
        self.message = None
        self.detail = None

    def snapshot(self) -> "CandidateRecord":
        return replace(self, attributes=replace(self.attributes, extra=dict(self.attributes.extra)))

    def _finish(self, status: ProbeStatus, message: Optional[str]) -> None:
        if self.status is not ProbeStatus.TESTING:
            raise InvalidTransition(f"{self.key}: cannot finish from {self.status.value}")
        self.status = status
        self.message = message


# Collaborator result shapes


@dataclass(frozen=True)
class ExistsResult:
    valid: bool
    message: str = ""


@dataclass(frozen=True)
class ProbeResult:
    key: str
    ok: bool
    message: str = ""
    discovered: DiscoveredAttributes = field(default_factory=DiscoveredAttributes)
    detail: Optional[str] = None


@dataclass(frozen=True)
class ConnectivityReport:
    results: Tuple[ProbeResult, ...]
    successful_count: int


@dataclass(frozen=True)
class TriggerResult:
    accepted: bool
    message: str = ""


# Materialized selections handed to the dispatcher


@dataclass(frozen=True)
class ExplicitIds:
    ids: Tuple[int, ...]

    def __len__(self) -> int:
        return len(self.ids)


@dataclass(frozen=True)
class AllMatching:
    """Everything matching `filter`; `count` is the total known at selection time."""

    filter: InventoryFilter
    count: int


Selection = Union[ExplicitIds, AllMatching]


def as_create_payload(hosts: List[HostAttributes], group_id: int) -> List[Dict[str, Any]]:
    """Shape validated hosts for the batch-create call."""
    payload = []
    for a in hosts:
        payload.append({
            "hostname": a.hostname or f"server-{a.ip_address}",
            "ip_address": a.ip_address,
            "os_version": a.os_version or "Unknown",
            "ssh_port": a.ssh_port,
            "ssh_user": a.ssh_user,
            "ssh_password": a.ssh_password,
            "workload_id": group_id,
        })
    return payload
