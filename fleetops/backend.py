"""
Collaborator contract consumed by the loader, selection, pipeline and
dispatcher. `HttpBackend` and `LocalBackend` implement it.
"""

from typing import Optional, Protocol, Sequence

from .models import (
    ConnectivityReport,
    ExistsResult,
    HostAttributes,
    InventoryFilter,
    InventoryPage,
    TriggerResult,
)


class InventoryBackend(Protocol):

    async def inventory(self, filter: InventoryFilter, page: int, page_size: int) -> InventoryPage:
        """One page (1-based) of records matching filter, plus the total count."""
        ...

    async def exists_by_key(self, key: str) -> ExistsResult:
        """valid=False when a host with this address is already registered."""
        ...

    async def test_connectivity(self, hosts: Sequence[HostAttributes]) -> ConnectivityReport:
        ...

    async def create_batch(self, hosts: Sequence[HostAttributes], group_id: int) -> None:
        """All-or-nothing create. Raises BackendError on rejection."""
        ...

    async def trigger_operation(self, ids: Optional[Sequence[int]], batch_size: int) -> TriggerResult:
        """ids=None means every record in the inventory."""
        ...


async def fetch_all_ids(backend: InventoryBackend, filter: InventoryFilter, total_count: int) -> list[int]:
    """
    Resolve every id matching filter with a single request sized to the
    known total, rather than walking the visible pages.
    """
    if total_count <= 0:
        return []
    page = await backend.inventory(filter, 1, total_count)
    seen = set()
    ids = []
    for record in page.records:
        if record.id not in seen:
            seen.add(record.id)
            ids.append(record.id)
    return ids
