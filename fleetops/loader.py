"""
Incremental inventory loader.

Holds the pages of a remote collection fetched so far for one filter.
Changing the filter throws everything away and starts again at page 1.
Responses that arrive for a superseded filter are dropped.
"""

from typing import Dict, List, Optional

from .backend import InventoryBackend
from .debounce import Debouncer
from .logger import get_logger
from .models import InventoryFilter, InventoryPage, InventoryRecord

logger = get_logger()


class InventoryLoader:

    def __init__(self, backend: InventoryBackend, page_size: int = 10, debounce: float = 0.3):
        if page_size < 1:
            raise ValueError("page_size must be positive")
        self.backend = backend
        self.page_size = page_size
        self.filter = InventoryFilter()
        self.total_count = 0
        self.page = 0
        self.loading = False
        self._records: List[InventoryRecord] = []
        self._index: Dict[int, int] = {}
        self._generation = 0
        self._debouncer = Debouncer(debounce)

    @property
    def records(self) -> List[InventoryRecord]:
        return list(self._records)

    @property
    def held_count(self) -> int:
        return len(self._records)

    @property
    def has_more(self) -> bool:
        # Derived from counts, not from the size of the last page
        return self.total_count > 0 and self.held_count < self.total_count

    def get(self, record_id: int) -> Optional[InventoryRecord]:
        pos = self._index.get(record_id)
        return self._records[pos] if pos is not None else None

    def clear(self, filter: Optional[InventoryFilter] = None) -> None:
        """Drop held pages and invalidate any request still in flight."""
        self._generation += 1
        if filter is not None:
            self.filter = filter.normalized()
        self._records = []
        self._index = {}
        self.total_count = 0
        self.page = 0
        self.loading = False

    def append(self, page: InventoryPage, refresh: bool = False) -> int:
        """
        Merge a fetched page into the held collection.

        Records already held keep their attributes unless refresh is set.
        Returns the number of records newly added.
        """
        added = 0
        for record in page.records:
            pos = self._index.get(record.id)
            if pos is None:
                self._index[record.id] = len(self._records)
                self._records.append(record)
                added += 1
            elif refresh:
                self._records[pos] = record
        self.total_count = page.total_count
        return added

    async def reset(self, filter: Optional[InventoryFilter] = None) -> bool:
        """
        Start over with filter (or the current one) and load page 1.

        Returns False when a newer reset superseded this one before its
        response arrived. Network errors propagate to the caller.
        """
        self.clear(filter if filter is not None else self.filter)
        return await self._fetch(1)

    async def load_more(self) -> bool:
        """Fetch the next page. No-op while loading or when nothing is left."""
        if self.loading or not self.has_more:
            return False
        return await self._fetch(self.page + 1)

    async def refresh(self) -> bool:
        """Re-fetch the first page, overwriting attributes of held records."""
        return await self._fetch(1, refresh=True)

    def search(self, keyword: str, status: Optional[str] = None):
        """Debounced reset for a search box. Returns the scheduled task."""
        target = InventoryFilter(keyword=keyword, status=status)
        return self._debouncer.schedule(lambda: self.reset(target))

    def cancel_search(self) -> None:
        self._debouncer.cancel()

    async def _fetch(self, page_number: int, refresh: bool = False) -> bool:
        generation = self._generation
        current_filter = self.filter
        self.loading = True
        try:
            page = await self.backend.inventory(current_filter, page_number, self.page_size)
        finally:
            if generation == self._generation:
                self.loading = False

        if generation != self._generation:
            logger.debug(
                "Discarding stale inventory page",
                page=page_number,
                keyword=current_filter.keyword,
            )
            return False

        added = self.append(page, refresh=refresh)
        self.page = max(self.page, page_number)
        logger.debug(
            "Inventory page loaded",
            page=page_number,
            added=added,
            held=self.held_count,
            total=self.total_count,
        )
        return True
