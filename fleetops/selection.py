"""
Selection over a partially loaded inventory.

A selection is either an explicit set of ids, which may include ids on
pages that were never loaded, or a symbolic "everything matching this
filter". The symbolic form is resolved to ids only when something needs
the individual ids (a partial deselect, or a dispatcher that cannot take
"all").
"""

from typing import Optional, Set, Union

from .backend import InventoryBackend, fetch_all_ids
from .logger import get_logger
from .models import AllMatching, ExplicitIds, InventoryFilter, Selection

logger = get_logger()


class SelectionSet:

    def __init__(self, backend: InventoryBackend, clear_explicit_on_filter_change: bool = True):
        self.backend = backend
        self.clear_explicit_on_filter_change = clear_explicit_on_filter_change
        self.filter = InventoryFilter()
        self._ids: Set[int] = set()
        self._all: Optional[AllMatching] = None

    @property
    def all_matching(self) -> bool:
        return self._all is not None

    def is_selected(self, record_id: int) -> bool:
        """
        Whether a listed row shows as checked.

        Under a symbolic selection this is True for any id, since matching
        is decided by the backend. Only ask about rows the loader returned
        for the current filter; use resolve_ids() for an exact answer.
        """
        if self._all is not None:
            return True
        return record_id in self._ids

    def resolved_count(self) -> Union[int, AllMatching]:
        """Explicit count, or the AllMatching sentinel carrying the known total."""
        if self._all is not None:
            return self._all
        return len(self._ids)

    @property
    def count(self) -> int:
        if self._all is not None:
            return self._all.count
        return len(self._ids)

    async def toggle(self, record_id: int) -> bool:
        """
        Flip one id. Returns whether it is selected afterwards.

        A symbolic selection is first resolved into explicit ids with one
        bulk fetch so that deselecting a few rows after "select all" works.
        """
        if self._all is not None:
            await self._materialize_all()
        if record_id in self._ids:
            self._ids.discard(record_id)
            return False
        self._ids.add(record_id)
        return True

    async def select_all_matching(self, filter: InventoryFilter, total_count: Optional[int] = None) -> AllMatching:
        """
        Select everything matching filter without fetching ids.

        total_count should come from the loader; when it is unknown a
        single one-row query is made to learn it.
        """
        filter = filter.normalized()
        if total_count is None:
            page = await self.backend.inventory(filter, 1, 1)
            total_count = page.total_count
        self.filter = filter
        self._ids = set()
        self._all = AllMatching(filter=filter, count=total_count)
        logger.info("Selected all matching", keyword=filter.keyword, count=total_count)
        return self._all

    def select_none(self) -> None:
        self._ids = set()
        self._all = None

    def on_filter_change(self, filter: InventoryFilter) -> None:
        """A selection only means something under the filter it was made with."""
        filter = filter.normalized()
        if filter == self.filter:
            return
        self.filter = filter
        if self._all is not None or self.clear_explicit_on_filter_change:
            self.select_none()

    def clear(self) -> None:
        """Drop everything, including the remembered filter."""
        self.select_none()
        self.filter = InventoryFilter()

    def materialize(self) -> Selection:
        """Snapshot for the dispatcher. Symbolic selections stay symbolic."""
        if self._all is not None:
            return self._all
        return ExplicitIds(ids=tuple(sorted(self._ids)))

    async def resolve_ids(self) -> ExplicitIds:
        """Explicit ids even for a symbolic selection (one bulk fetch)."""
        if self._all is not None:
            await self._materialize_all()
        return ExplicitIds(ids=tuple(sorted(self._ids)))

    async def _materialize_all(self) -> None:
        selection = self._all
        ids = await fetch_all_ids(self.backend, selection.filter, selection.count)
        # A concurrent select_none/filter change wins over this fetch
        if self._all is not selection:
            return
        self._ids = set(ids)
        self._all = None
        logger.debug("Materialized all-matching selection", count=len(ids))
