"""
State behind the "start compliance scan" dialog.

Scope is either every server or a user-picked selection. The picker
browses an incrementally loaded, searchable inventory; selection survives
paging but not a change of search filter.
"""

import asyncio
from enum import Enum
from typing import Optional

from .backend import InventoryBackend
from .dispatch import BatchDispatcher, ChunkPolicy, DispatchJob
from .logger import get_logger
from .loader import InventoryLoader
from .models import AllMatching, InventoryFilter, Selection
from .selection import SelectionSet

logger = get_logger()


class ScanScope(str, Enum):
    ALL = "all"
    SELECTED = "selected"


class ScanSession:

    def __init__(
        self,
        backend: InventoryBackend,
        dispatcher: Optional[BatchDispatcher] = None,
        page_size: int = 10,
        debounce: float = 0.3,
    ):
        self.backend = backend
        self.dispatcher = dispatcher or BatchDispatcher(backend)
        self.loader = InventoryLoader(backend, page_size=page_size, debounce=debounce)
        self.selection = SelectionSet(backend)
        self.scope = ScanScope.ALL
        self.scanning = False
        self.inventory_total = 0
        self.last_job: Optional[DispatchJob] = None

    @classmethod
    def from_settings(cls, backend: InventoryBackend, settings) -> "ScanSession":
        return cls(
            backend,
            dispatcher=BatchDispatcher(backend, ChunkPolicy.from_settings(settings)),
            page_size=settings.page_size,
            debounce=settings.search_debounce,
        )

    async def open(self, scope: ScanScope = ScanScope.ALL) -> None:
        """Load the first unfiltered page, which also yields the fleet size."""
        self.scope = scope
        await self.loader.reset(InventoryFilter())
        self.inventory_total = self.loader.total_count

    def set_scope(self, scope: ScanScope) -> None:
        self.scope = scope

    def search(self, keyword: str) -> "asyncio.Task":
        """Debounced filter change. Clears the selection made under the old filter."""
        self.selection.on_filter_change(InventoryFilter(keyword=keyword))
        self.loader.clear(InventoryFilter(keyword=keyword))
        return self.loader.search(keyword)

    async def load_more(self) -> bool:
        return await self.loader.load_more()

    async def toggle(self, record_id: int) -> bool:
        return await self.selection.toggle(record_id)

    async def select_all(self) -> AllMatching:
        """Select every server matching the current search, loaded or not."""
        return await self.selection.select_all_matching(self.loader.filter, self.loader.total_count or None)

    def select_none(self) -> None:
        self.selection.select_none()

    @property
    def total_selected(self) -> int:
        if self.scope is ScanScope.ALL:
            return self.inventory_total
        return self.selection.count

    def target(self) -> Selection:
        if self.scope is ScanScope.ALL:
            return AllMatching(filter=InventoryFilter(), count=self.inventory_total)
        return self.selection.materialize()

    def start_scan(self) -> DispatchJob:
        """
        Submit the scan and return without waiting for the backend.

        The session is reset right away so the dialog can close; the
        returned job reports whether the request was accepted. While that
        answer is pending, calling again returns the same job.
        """
        if self.scanning and self.last_job is not None:
            logger.warning("Scan already submitted, waiting for response")
            return self.last_job
        job = self.dispatcher.submit_scan(self.target())
        self.scanning = True
        job.add_done_callback(self._scan_done)
        if self.scope is ScanScope.ALL:
            logger.info("Scan started for all servers", count=job.target_count)
        else:
            logger.info("Scan started for selected servers", count=job.target_count)
        self.last_job = job
        self.close()
        return job

    def _scan_done(self, job: DispatchJob) -> None:
        self.scanning = False

    def close(self) -> None:
        """Drop selection, search and loaded pages so nothing leaks into the next use."""
        self.loader.cancel_search()
        self.loader.clear(InventoryFilter())
        self.selection.clear()
        self.scope = ScanScope.ALL
