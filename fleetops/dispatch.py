"""
Batch dispatch of finalized selections and validated host sets.

Onboarding (batch create) is awaited by the caller, who needs to know
whether the hosts were added. Scans are fire-and-forget: submit_scan()
returns a DispatchJob at once and the accept/reject outcome arrives later
through the job. Scan completion itself is reported out-of-band by the
backend and is not tracked here.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Sequence, Union

from .backend import InventoryBackend, fetch_all_ids
from .errors import BackendError, DispatchFailure
from .logger import get_logger
from .models import (
    AllMatching,
    CandidateRecord,
    ExplicitIds,
    InventoryFilter,
    ProbeStatus,
    Selection,
    TriggerResult,
)

logger = get_logger()


class OperationKind(str, Enum):
    ONBOARD = "onboard"
    SCAN = "scan"


@dataclass(frozen=True)
class ChunkPolicy:
    """Backend load shaping: large operations use bigger batches."""

    large_threshold: int = 1000
    large_batch_size: int = 50
    small_batch_size: int = 10

    def batch_size_for(self, target_count: int) -> int:
        if target_count > self.large_threshold:
            return self.large_batch_size
        return self.small_batch_size

    @classmethod
    def from_settings(cls, settings) -> "ChunkPolicy":
        return cls(
            large_threshold=settings.large_batch_threshold,
            large_batch_size=settings.large_batch_size,
            small_batch_size=settings.small_batch_size,
        )


def chunked(ids: Sequence[int], size: int) -> List[List[int]]:
    return [list(ids[i:i + size]) for i in range(0, len(ids), size)]


class DispatchJob:
    """
    Handle for a submitted operation.

    Callers may drop the handle; failures are still logged and never left
    as unretrieved task exceptions.
    """

    def __init__(self, kind: OperationKind, target_count: int, batch_size: int, task: "asyncio.Task"):
        self.kind = kind
        self.target_count = target_count
        self.batch_size = batch_size
        self._task = task
        self._callbacks: List[Callable[["DispatchJob"], None]] = []
        task.add_done_callback(self._on_done)

    def done(self) -> bool:
        return self._task.done()

    @property
    def accepted(self) -> Optional[bool]:
        """None while pending, then whether the backend accepted the job."""
        if not self._task.done() or self._task.cancelled():
            return None
        if self._task.exception() is not None:
            return False
        return self._task.result().accepted

    @property
    def error(self) -> Optional[BaseException]:
        if not self._task.done() or self._task.cancelled():
            return None
        return self._task.exception()

    async def wait(self) -> TriggerResult:
        """Wait for the submission outcome. Raises DispatchFailure."""
        return await asyncio.shield(self._task)

    def add_done_callback(self, callback: Callable[["DispatchJob"], None]) -> None:
        if self._task.done():
            callback(self)
            return
        self._callbacks.append(callback)

    def cancel(self) -> bool:
        return self._task.cancel()

    def _on_done(self, task: "asyncio.Task") -> None:
        if not task.cancelled():
            # Mark the exception retrieved; it is reported through logging
            error = task.exception()
            if error is not None:
                logger.error(f"{self.kind.value.capitalize()} dispatch failed", error=str(error))
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback(self)


class BatchDispatcher:

    def __init__(
        self,
        backend: InventoryBackend,
        policy: Optional[ChunkPolicy] = None,
        split_requests: bool = False,
    ):
        self.backend = backend
        self.policy = policy or ChunkPolicy()
        self.split_requests = split_requests

    async def commit(self, records: Sequence[CandidateRecord], group_id: int) -> int:
        """
        Create every record in one all-or-nothing call and wait for it.

        Returns the number of hosts created.

        Raises:
            ValueError: empty input, or a record that has not passed probing
            DispatchFailure: the backend rejected the batch (nothing created)
        """
        if not records:
            raise ValueError("No hosts to add")
        unresolved = [r.key for r in records if r.status is not ProbeStatus.SUCCESS]
        if unresolved:
            raise ValueError(
                f"Only successfully tested hosts can be added; not ready: {', '.join(unresolved)}"
            )

        hosts = [r.attributes for r in records]
        try:
            await self.backend.create_batch(hosts, group_id)
        except BackendError as e:
            logger.record_dispatch(ok=False)
            logger.record_error(type(e).__name__)
            logger.error("Batch create failed", count=len(hosts), group_id=group_id, error=str(e))
            raise DispatchFailure(str(e) or "Unable to add servers", cause=e) from e

        logger.record_dispatch(ok=True)
        logger.info("Batch create succeeded", count=len(hosts), group_id=group_id)
        return len(hosts)

    def submit_scan(self, selection: Selection) -> DispatchJob:
        """
        Start a scan submission in the background and return immediately.

        Must be called from a running event loop.
        """
        if isinstance(selection, AllMatching):
            target_count = selection.count
        elif isinstance(selection, ExplicitIds):
            target_count = len(selection.ids)
            if target_count == 0:
                raise ValueError("No targets selected")
        else:
            raise TypeError(f"Unsupported selection: {type(selection).__name__}")

        batch_size = self.policy.batch_size_for(target_count)
        task = asyncio.ensure_future(self._trigger(selection, batch_size))
        logger.info("Scan submitted", targets=target_count, batch_size=batch_size)
        return DispatchJob(OperationKind.SCAN, target_count, batch_size, task)

    def dispatch(
        self,
        target: Union[Selection, Sequence[CandidateRecord]],
        kind: OperationKind,
        group_id: Optional[int] = None,
    ) -> DispatchJob:
        """Uniform entry point; onboarding callers should await job.wait()."""
        if kind is OperationKind.SCAN:
            return self.submit_scan(target)
        if group_id is None:
            raise ValueError("group_id is required for onboarding")
        records = list(target)
        task = asyncio.ensure_future(self._commit_as_trigger(records, group_id))
        return DispatchJob(OperationKind.ONBOARD, len(records), len(records), task)

    async def _commit_as_trigger(self, records: List[CandidateRecord], group_id: int) -> TriggerResult:
        created = await self.commit(records, group_id)
        return TriggerResult(accepted=True, message=f"Added {created} servers")

    def _plan(self, ids: List[int], batch_size: int) -> List[Optional[List[int]]]:
        if self.split_requests:
            return chunked(ids, batch_size)
        return [ids]

    async def _trigger(self, selection: Selection, batch_size: int) -> TriggerResult:
        requests_ids: List[Optional[List[int]]]
        if isinstance(selection, AllMatching):
            if selection.filter == InventoryFilter():
                # Unfiltered: the backend takes null as "every server"
                requests_ids = [None]
            else:
                try:
                    ids = await fetch_all_ids(self.backend, selection.filter, selection.count)
                except BackendError as e:
                    raise DispatchFailure(f"Unable to resolve scan targets: {e}", cause=e) from e
                requests_ids = self._plan(ids, batch_size)
        else:
            requests_ids = self._plan(list(selection.ids), batch_size)

        accepted = 0
        for ids in requests_ids:
            try:
                result = await self.backend.trigger_operation(ids, batch_size)
            except BackendError as e:
                logger.record_dispatch(ok=False)
                logger.record_error(type(e).__name__)
                raise DispatchFailure(str(e) or "Unable to start scan", cause=e) from e
            logger.record_dispatch(ok=result.accepted)
            if not result.accepted:
                raise DispatchFailure(result.message or "Scan request was rejected")
            accepted += 1

        logger.info("Scan request accepted", requests=accepted, batch_size=batch_size)
        return TriggerResult(accepted=True, message=f"{accepted} scan request(s) accepted")
