"""
Bulk host onboarding pipeline.

Stages, in order:

1. Parse the uploaded sheet into CandidateRecords (sheet.parse_rows).
2. Uniqueness: ask the backend whether each address is already registered.
3. Connectivity probe for every record that passed stage 2.
4. Retention: after a grace window, failed records are pruned so only
   hosts that can be committed remain.

Every run owns a CancellationToken. Starting a new run, loading a new
sheet, discarding or closing cancels the previous token, which aborts
its outstanding requests and its pending prune.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterable, List, Optional, Sequence

from .backend import InventoryBackend
from .cancellation import CancellationToken
from .dispatch import BatchDispatcher
from .errors import BackendError, InputError, OperationCancelled, RowError
from .logger import get_logger
from .models import CandidateRecord, ProbeResult, ProbeStatus
from .normalize import normalize_address
from .sheet import ParseResult, parse_rows, read_workbook

logger = get_logger()

ALREADY_EXISTS_MESSAGE = "IP address already exists in the system"
VALIDATION_ERROR_MESSAGE = "Unable to verify IP address"
TRANSPORT_ERROR_MESSAGE = "Error testing connection"
NO_RESULT_MESSAGE = "No result returned for this host"


class ProbeMode(str, Enum):
    BATCH = "batch"            # one multi-target request
    PER_TARGET = "per_target"  # one request per host, run concurrently


@dataclass
class ProbeSummary:
    tested: int = 0
    succeeded: int = 0
    failed: int = 0
    rejected: int = 0
    cancelled: bool = False
    transport_error: Optional[str] = None


class OnboardingPipeline:

    def __init__(
        self,
        backend: InventoryBackend,
        dispatcher: Optional[BatchDispatcher] = None,
        retention_seconds: float = 5.0,
        max_concurrency: int = 8,
        probe_mode: ProbeMode = ProbeMode.BATCH,
        on_change: Optional[Callable[["OnboardingPipeline"], None]] = None,
    ):
        self.backend = backend
        self.dispatcher = dispatcher or BatchDispatcher(backend)
        self.retention_seconds = retention_seconds
        self.max_concurrency = max(1, max_concurrency)
        self.probe_mode = probe_mode
        self.on_change = on_change

        self.records: List[CandidateRecord] = []
        self.errors: List[RowError] = []
        self.input_error: Optional[str] = None
        self.source_name = ""
        self.uploading = False
        self.testing = False
        self.adding = False

        self._token = CancellationToken("onboarding")
        self._prune_task: Optional[asyncio.Task] = None
        self._snapshot: List[CandidateRecord] = []

    # Derived state

    @property
    def is_dirty(self) -> bool:
        return bool(self.records) or self.uploading or self.testing or self.adding

    @property
    def any_testing(self) -> bool:
        return any(r.status is ProbeStatus.TESTING for r in self.records)

    @property
    def all_connected(self) -> bool:
        return bool(self.records) and all(r.status is ProbeStatus.SUCCESS for r in self.records)

    @property
    def has_failed(self) -> bool:
        return any(r.status is ProbeStatus.FAILED for r in self.records)

    @property
    def can_commit(self) -> bool:
        return self.all_connected and not self.any_testing and not self.adding

    @property
    def prune_pending(self) -> bool:
        return self._prune_task is not None and not self._prune_task.done()

    def get(self, row_id: str) -> Optional[CandidateRecord]:
        for r in self.records:
            if r.row_id == row_id:
                return r
        return None

    # Stage 1: parse

    def load_rows(self, rows: Iterable[Sequence[Any]], source_name: str = "") -> ParseResult:
        """
        Replace the working set with a freshly parsed sheet.

        Raises:
            InputError: the sheet as a whole is unusable
        """
        self.discard(reason="new upload")
        self.uploading = True
        try:
            result = parse_rows(rows)
        except InputError as e:
            self.input_error = str(e)
            logger.record_error("InputError")
            logger.error("Sheet rejected", source=source_name, error=str(e))
            raise
        finally:
            self.uploading = False

        self.records = result.records
        self.errors = result.errors
        self.source_name = source_name
        if result.records:
            logger.info(f"Successfully uploaded {len(result.records)} servers", source=source_name)
        else:
            logger.warning("No valid servers found", source=source_name, row_errors=len(result.errors))
        self._changed()
        return result

    def load_workbook(self, data: bytes, source_name: str = "") -> ParseResult:
        try:
            rows = read_workbook(data)
        except InputError as e:
            self.discard(reason="new upload")
            self.input_error = str(e)
            logger.error("Sheet rejected", source=source_name, error=str(e))
            raise
        return self.load_rows(rows, source_name=source_name)

    # Working set management

    def remove(self, row_id: str) -> bool:
        before = len(self.records)
        self.records = [r for r in self.records if r.row_id != row_id]
        removed = len(self.records) != before
        if removed:
            self._changed()
        return removed

    def discard(self, reason: str = "discarded") -> None:
        """Cancel anything in flight and empty the working set."""
        self._new_token(reason)
        self.records = []
        self.errors = []
        self.input_error = None
        self.source_name = ""
        self.testing = False
        self.adding = False
        self._changed()

    def close(self) -> None:
        self.discard(reason="closed")

    def cancel_test(self) -> bool:
        """Abort the running probe. Records get back their pre-run state."""
        if not self.testing:
            return False
        self._token.cancel("cancelled by user")
        return True

    def prune_failed(self) -> int:
        """Drop FAILED records now. Returns how many were removed."""
        kept = [r for r in self.records if r.status is not ProbeStatus.FAILED]
        removed = len(self.records) - len(kept)
        self.records = kept
        if kept:
            logger.info(
                f"Retained {len(kept)} successfully connected servers",
                removed=removed,
            )
        else:
            logger.error("No servers connected successfully", removed=removed)
        self._changed()
        return removed

    async def wait_for_retention(self) -> int:
        """Wait for the pending prune, if any. Returns records removed."""
        task = self._prune_task
        if task is None:
            return 0
        try:
            return await task
        except asyncio.CancelledError:
            return 0

    # Stages 2-4: validate, probe, schedule prune

    async def test_connections(self) -> ProbeSummary:
        """
        Validate and probe every record, then schedule the failed-record prune.

        Re-running resets each record to UNTESTED first. If the run is
        cancelled the records get back the state they had before it, or
        before the run it superseded while that one was still testing.
        """
        if not self.records:
            return ProbeSummary()

        token = self._new_token("probe re-run")
        # A run superseded mid-flight left its records TESTING; keep its snapshot
        if not self.testing:
            self._snapshot = [r.snapshot() for r in self.records]
        snapshot = self._snapshot
        self.testing = True

        for r in self.records:
            r.reset_probe()
            r.mark_testing()
        self._changed()

        try:
            summary = await self._run_stages(token)
        except (asyncio.CancelledError, OperationCancelled):
            if self._token is token:
                self._restore(snapshot)
                self.testing = False
                if token.cancelled:
                    self._token = CancellationToken("onboarding")
                self._changed()
            if token.cancelled:
                logger.info("Connection test cancelled", reason=token.reason)
                return ProbeSummary(cancelled=True)
            token.cancel("interrupted")
            raise
        except Exception:
            self._fail_pending(TRANSPORT_ERROR_MESSAGE)
            self.testing = False
            self._changed()
            raise

        self.testing = False
        self._changed()
        logger.record_probe(summary.succeeded, summary.failed)
        logger.info(
            f"Test connection completed: {summary.succeeded}/{summary.tested} successful",
            rejected=summary.rejected,
            failed=summary.failed,
        )

        self._prune_task = token.spawn(self._prune_after(token))
        return summary

    async def _run_stages(self, token: CancellationToken) -> ProbeSummary:
        summary = ProbeSummary(tested=len(self.records))
        summary.rejected = await self._check_uniqueness(token)

        survivors = [r for r in self.records if r.status is ProbeStatus.TESTING]
        if survivors:
            summary.transport_error = await self._probe(token, survivors)
        else:
            logger.warning("No valid servers to test connection")

        self._fail_pending(NO_RESULT_MESSAGE)
        summary.succeeded = sum(1 for r in self.records if r.status is ProbeStatus.SUCCESS)
        summary.failed = sum(1 for r in self.records if r.status is ProbeStatus.FAILED)
        return summary

    async def _check_uniqueness(self, token: CancellationToken) -> int:
        by_key = {}
        for r in self.records:
            by_key.setdefault(r.key, []).append(r)

        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def check(key: str):
            async with semaphore:
                return await self.backend.exists_by_key(key)

        keys = list(by_key)
        tasks = [token.spawn(check(k)) for k in keys]
        outcomes = await asyncio.gather(*tasks, return_exceptions=True)
        token.raise_if_cancelled()

        rejected = 0
        for key, outcome in zip(keys, outcomes):
            if isinstance(outcome, BackendError):
                logger.warning("Address validation failed", key=key, error=str(outcome))
                for r in by_key[key]:
                    r.mark_failed(VALIDATION_ERROR_MESSAGE, detail=str(outcome))
                continue
            if isinstance(outcome, BaseException):
                raise outcome
            if not outcome.valid:
                rejected += 1
                for r in by_key[key]:
                    r.mark_failed(outcome.message or ALREADY_EXISTS_MESSAGE)
        if rejected:
            logger.info("Addresses already registered", count=rejected)
        return rejected

    async def _probe(self, token: CancellationToken, survivors: List[CandidateRecord]) -> Optional[str]:
        """Returns the transport error message if the whole batch call failed."""
        if self.probe_mode is ProbeMode.BATCH:
            try:
                report = await token.spawn(
                    self.backend.test_connectivity([r.attributes for r in survivors])
                )
            except BackendError as e:
                logger.record_error(type(e).__name__)
                logger.error("Connectivity test request failed", hosts=len(survivors), error=str(e))
                self._fail_pending(TRANSPORT_ERROR_MESSAGE, detail=str(e))
                return str(e)
            self._apply_results(survivors, report.results)
            return None

        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def probe_one(record: CandidateRecord):
            async with semaphore:
                return await self.backend.test_connectivity([record.attributes])

        tasks = [token.spawn(probe_one(r)) for r in survivors]
        outcomes = await asyncio.gather(*tasks, return_exceptions=True)
        token.raise_if_cancelled()
        for record, outcome in zip(survivors, outcomes):
            if isinstance(outcome, BackendError):
                logger.warning("Connectivity test failed", key=record.key, error=str(outcome))
                record.mark_failed(TRANSPORT_ERROR_MESSAGE, detail=str(outcome))
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                self._apply_results([record], outcome.results)
        return None

    def _apply_results(self, records: List[CandidateRecord], results: Sequence[ProbeResult]) -> None:
        # Results may be partial and in any order; match on the address
        by_key = {normalize_address(res.key): res for res in results}
        for r in records:
            if r.status is not ProbeStatus.TESTING:
                continue
            res = by_key.get(r.key)
            if res is None:
                continue
            if res.ok:
                r.mark_success(res.message or "Connection successful", res.discovered)
            else:
                r.mark_failed(res.message or "Connection failed", detail=res.detail)

    async def _prune_after(self, token: CancellationToken) -> int:
        await asyncio.sleep(self.retention_seconds)
        if self._token is not token:
            return 0
        return self.prune_failed()

    # Commit

    async def commit(self, group_id: int) -> int:
        """
        Add every record to the inventory under group_id and clear the set.

        Raises:
            ValueError: nothing to add, or not every record is SUCCESS
            DispatchFailure: the backend rejected the batch
        """
        if not self.records:
            raise ValueError("No servers to add")
        if not self.can_commit:
            raise ValueError("Please successfully test the connection for all servers before adding")

        token = self._token
        self.adding = True
        self._changed()
        try:
            created = await token.spawn(self.dispatcher.commit(list(self.records), group_id))
        finally:
            if self._token is token:
                self.adding = False
                self._changed()

        logger.info(f"Successfully added {created} servers", group_id=group_id)
        self.discard(reason="committed")
        return created

    # Internals

    def _new_token(self, reason: str) -> CancellationToken:
        self._token.cancel(reason)
        self._prune_task = None
        self._token = CancellationToken("onboarding")
        return self._token

    def _restore(self, snapshot: List[CandidateRecord]) -> None:
        by_id = {s.row_id: s for s in snapshot}
        for r in self.records:
            prior = by_id.get(r.row_id)
            if prior is None:
                continue
            r.status = prior.status
            r.message = prior.message
            r.detail = prior.detail
            r.attributes = prior.attributes

    def _fail_pending(self, message: str, detail: Optional[str] = None) -> None:
        for r in self.records:
            if r.status is ProbeStatus.TESTING:
                r.mark_failed(message, detail=detail)

    def _changed(self) -> None:
        if self.on_change is not None:
            self.on_change(self)
