"""
Tests for the onboarding validation/probe pipeline.
"""

import asyncio

import pytest

from fleetops.errors import BackendError, DispatchFailure, InputError, InvalidTransition, TransportFailure
from fleetops.models import DiscoveredAttributes, ProbeStatus
from fleetops.pipeline import (
    NO_RESULT_MESSAGE,
    TRANSPORT_ERROR_MESSAGE,
    VALIDATION_ERROR_MESSAGE,
    OnboardingPipeline,
    ProbeMode,
)
from fleetops.sheet import parse_rows


def statuses(pipeline):
    return {r.attributes.ip_address: r.status for r in pipeline.records}


class TestProbeStages:
    """Test uniqueness validation and connectivity probing."""

    def test_all_succeed(self, backend, host_rows):
        pipeline = OnboardingPipeline(backend, retention_seconds=0)
        pipeline.load_rows(host_rows)
        summary = asyncio.run(pipeline.test_connections())

        assert summary.tested == 3
        assert summary.succeeded == 3
        assert summary.failed == 0
        assert pipeline.all_connected
        assert pipeline.can_commit
        assert not pipeline.any_testing

    def test_existing_address_fails_without_probe(self, backend, host_rows):
        """A registered address is failed by uniqueness and never probed."""
        backend.existing.add("10.0.0.2")
        pipeline = OnboardingPipeline(backend)
        pipeline.load_rows(host_rows)
        summary = asyncio.run(pipeline.test_connections())

        record = pipeline.records[1]
        assert record.status is ProbeStatus.FAILED
        assert record.message == "IP address already exists in the system"
        assert summary.rejected == 1
        assert backend.count("exists_by_key") == 3
        assert backend.calls[-1] == ("test_connectivity", ["10.0.0.1", "10.0.0.3"])
        assert len(pipeline.records) == 3

    def test_everything_rejected_skips_probe(self, backend, host_rows):
        backend.existing.update({"10.0.0.1", "10.0.0.2", "10.0.0.3"})
        pipeline = OnboardingPipeline(backend)
        pipeline.load_rows(host_rows)
        summary = asyncio.run(pipeline.test_connections())

        assert summary.failed == 3
        assert backend.count("test_connectivity") == 0

    def test_validation_error_fails_record(self, backend, host_rows):
        backend.failures["exists_by_key"] = BackendError("Service unavailable", status=503)
        pipeline = OnboardingPipeline(backend)
        pipeline.load_rows(host_rows)
        asyncio.run(pipeline.test_connections())

        assert all(r.status is ProbeStatus.FAILED for r in pipeline.records)
        assert pipeline.records[0].message == VALIDATION_ERROR_MESSAGE
        assert backend.count("test_connectivity") == 0

    def test_results_matched_regardless_of_order(self, backend, host_rows):
        backend.reverse_results = True
        backend.unreachable.add("10.0.0.3")
        pipeline = OnboardingPipeline(backend)
        pipeline.load_rows(host_rows)
        asyncio.run(pipeline.test_connections())

        assert statuses(pipeline) == {
            "10.0.0.1": ProbeStatus.SUCCESS,
            "10.0.0.2": ProbeStatus.SUCCESS,
            "10.0.0.3": ProbeStatus.FAILED,
        }
        failed = pipeline.records[2]
        assert failed.message == "Authentication failed"
        assert failed.detail == "ssh: handshake failed"

    def test_missing_result_fails_record(self, backend, host_rows):
        backend.omit_results.add("10.0.0.1")
        pipeline = OnboardingPipeline(backend)
        pipeline.load_rows(host_rows)
        asyncio.run(pipeline.test_connections())

        assert pipeline.records[0].status is ProbeStatus.FAILED
        assert pipeline.records[0].message == NO_RESULT_MESSAGE
        assert pipeline.records[1].status is ProbeStatus.SUCCESS

    def test_discovered_attributes_merged(self, backend, host_rows):
        backend.discovered["10.0.0.2"] = DiscoveredAttributes(hostname="app-02", os_version="Rocky 9")
        pipeline = OnboardingPipeline(backend)
        pipeline.load_rows(host_rows)
        asyncio.run(pipeline.test_connections())

        attributes = pipeline.records[1].attributes
        assert attributes.hostname == "app-02"
        assert attributes.os_version == "Rocky 9"

    def test_transport_failure_fails_all_pending(self, backend, host_rows):
        """A failed batch request leaves nothing stuck in TESTING."""
        backend.existing.add("10.0.0.1")
        backend.failures["test_connectivity"] = TransportFailure("Unable to connect to server")
        pipeline = OnboardingPipeline(backend)
        pipeline.load_rows(host_rows)
        summary = asyncio.run(pipeline.test_connections())

        assert not pipeline.any_testing
        assert pipeline.records[0].message == "IP address already exists in the system"
        assert pipeline.records[1].message == TRANSPORT_ERROR_MESSAGE
        assert pipeline.records[1].detail == "Unable to connect to server"
        assert summary.transport_error == "Unable to connect to server"
        assert summary.failed == 3

    def test_unexpected_error_propagates(self, backend, host_rows):
        backend.failures["exists_by_key"] = RuntimeError("bug")
        pipeline = OnboardingPipeline(backend)
        pipeline.load_rows(host_rows)

        with pytest.raises(RuntimeError):
            asyncio.run(pipeline.test_connections())

        assert not pipeline.any_testing
        assert not pipeline.testing

    def test_per_target_mode(self, backend, host_rows):
        backend.unreachable.add("10.0.0.2")
        pipeline = OnboardingPipeline(backend, probe_mode=ProbeMode.PER_TARGET, max_concurrency=2)
        pipeline.load_rows(host_rows)
        summary = asyncio.run(pipeline.test_connections())

        assert backend.count("test_connectivity") == 3
        assert summary.succeeded == 2
        assert pipeline.records[1].status is ProbeStatus.FAILED

    def test_per_target_failure_isolated(self, backend, host_rows):
        """In per-target mode one failing request only fails its own record."""
        pipeline = OnboardingPipeline(backend, probe_mode=ProbeMode.PER_TARGET)
        pipeline.load_rows(host_rows)
        real_probe = backend.test_connectivity

        async def flaky(hosts):
            if hosts[0].ip_address == "10.0.0.3":
                raise BackendError("Gateway timeout", status=504)
            return await real_probe(hosts)

        backend.test_connectivity = flaky
        asyncio.run(pipeline.test_connections())

        assert statuses(pipeline)["10.0.0.3"] is ProbeStatus.FAILED
        assert pipeline.records[2].message == TRANSPORT_ERROR_MESSAGE
        assert statuses(pipeline)["10.0.0.1"] is ProbeStatus.SUCCESS

    def test_empty_working_set(self, backend):
        pipeline = OnboardingPipeline(backend)
        summary = asyncio.run(pipeline.test_connections())

        assert summary.tested == 0
        assert backend.calls == []


class TestCancellation:
    """Test cancel, discard and re-run behavior."""

    def test_cancel_restores_prior_state(self, backend, host_rows):
        """Cancelling a re-run leaves earlier SUCCESS records untouched."""
        pipeline = OnboardingPipeline(backend, retention_seconds=10)
        pipeline.load_rows(host_rows)

        async def run():
            await pipeline.test_connections()
            before = [(r.status, r.message) for r in pipeline.records]
            backend.probe_gate = asyncio.Event()
            task = asyncio.ensure_future(pipeline.test_connections())
            while backend.count("test_connectivity") < 2:
                await asyncio.sleep(0)
            assert pipeline.any_testing
            assert pipeline.cancel_test()
            return before, await task

        before, summary = asyncio.run(run())

        assert summary.cancelled
        assert [(r.status, r.message) for r in pipeline.records] == before
        assert not pipeline.any_testing
        assert not pipeline.testing

    def test_commit_works_after_cancel(self, backend, host_rows):
        pipeline = OnboardingPipeline(backend, retention_seconds=10)
        pipeline.load_rows(host_rows)

        async def run():
            await pipeline.test_connections()
            backend.probe_gate = asyncio.Event()
            task = asyncio.ensure_future(pipeline.test_connections())
            while backend.count("test_connectivity") < 2:
                await asyncio.sleep(0)
            pipeline.cancel_test()
            await task
            return await pipeline.commit(group_id=1)

        assert asyncio.run(run()) == 3

    def test_cancel_rerun_started_while_testing(self, backend, host_rows):
        """Cancelling a run that superseded an in-flight one leaves nothing TESTING."""
        pipeline = OnboardingPipeline(backend, retention_seconds=10)
        pipeline.load_rows(host_rows)
        before = [(r.status, r.message) for r in pipeline.records]

        async def run():
            backend.probe_gate = asyncio.Event()
            first = asyncio.ensure_future(pipeline.test_connections())
            while backend.count("test_connectivity") < 1:
                await asyncio.sleep(0)
            second = asyncio.ensure_future(pipeline.test_connections())
            while backend.count("test_connectivity") < 2:
                await asyncio.sleep(0)
            assert pipeline.cancel_test()
            return await asyncio.gather(first, second)

        first, second = asyncio.run(run())

        assert first.cancelled and second.cancelled
        assert [(r.status, r.message) for r in pipeline.records] == before
        assert ProbeStatus.TESTING not in [r.status for r in pipeline.records]
        assert not pipeline.testing
        assert not pipeline.any_testing

    def test_cancel_when_idle(self, backend):
        pipeline = OnboardingPipeline(backend)

        assert pipeline.cancel_test() is False

    def test_discard_during_probe(self, backend, host_rows):
        pipeline = OnboardingPipeline(backend)
        pipeline.load_rows(host_rows)

        async def run():
            backend.probe_gate = asyncio.Event()
            task = asyncio.ensure_future(pipeline.test_connections())
            while backend.count("test_connectivity") < 1:
                await asyncio.sleep(0)
            pipeline.discard()
            return await task

        summary = asyncio.run(run())

        assert summary.cancelled
        assert pipeline.records == []
        assert not pipeline.is_dirty

    def test_new_upload_cancels_probe(self, backend, host_rows, mixed_rows):
        pipeline = OnboardingPipeline(backend)
        pipeline.load_rows(host_rows)

        async def run():
            backend.probe_gate = asyncio.Event()
            task = asyncio.ensure_future(pipeline.test_connections())
            while backend.count("test_connectivity") < 1:
                await asyncio.sleep(0)
            pipeline.load_rows(mixed_rows)
            return await task

        summary = asyncio.run(run())

        assert summary.cancelled
        assert len(pipeline.records) == 1
        assert pipeline.records[0].status is ProbeStatus.UNTESTED


class TestRetention:
    """Test the post-probe prune of failed records."""

    def test_failed_records_pruned(self, backend, host_rows):
        backend.unreachable.add("10.0.0.2")
        pipeline = OnboardingPipeline(backend, retention_seconds=0.01)
        pipeline.load_rows(host_rows)

        async def run():
            await pipeline.test_connections()
            assert pipeline.has_failed
            assert len(pipeline.records) == 3
            return await pipeline.wait_for_retention()

        removed = asyncio.run(run())

        assert removed == 1
        assert [r.attributes.ip_address for r in pipeline.records] == ["10.0.0.1", "10.0.0.3"]
        assert pipeline.can_commit

    def test_close_cancels_prune(self, backend, host_rows):
        backend.unreachable.add("10.0.0.2")
        pipeline = OnboardingPipeline(backend, retention_seconds=0.05)
        pipeline.load_rows(host_rows)

        async def run():
            await pipeline.test_connections()
            task = pipeline._prune_task
            pipeline.close()
            await asyncio.sleep(0.01)
            return task

        task = asyncio.run(run())

        assert task.cancelled()
        assert not pipeline.prune_pending

    def test_rerun_cancels_pending_prune(self, backend, host_rows):
        """The failed record is fixed and re-tested before the window ends."""
        backend.unreachable.add("10.0.0.2")
        pipeline = OnboardingPipeline(backend, retention_seconds=0.05)
        pipeline.load_rows(host_rows)

        async def run():
            await pipeline.test_connections()
            backend.unreachable.clear()
            await pipeline.test_connections()
            return await pipeline.wait_for_retention()

        removed = asyncio.run(run())

        assert removed == 0
        assert len(pipeline.records) == 3
        assert pipeline.all_connected

    def test_prune_everything_failed(self, backend, host_rows):
        backend.unreachable.update({"10.0.0.1", "10.0.0.2", "10.0.0.3"})
        pipeline = OnboardingPipeline(backend, retention_seconds=0)
        pipeline.load_rows(host_rows)

        async def run():
            await pipeline.test_connections()
            return await pipeline.wait_for_retention()

        assert asyncio.run(run()) == 3
        assert pipeline.records == []
        assert not pipeline.can_commit


class TestCommit:
    """Test handing validated hosts to the dispatcher."""

    def test_commit_refused_before_testing(self, backend, host_rows):
        pipeline = OnboardingPipeline(backend)
        pipeline.load_rows(host_rows)

        with pytest.raises(ValueError):
            asyncio.run(pipeline.commit(group_id=1))
        assert backend.count("create_batch") == 0

    def test_commit_empty(self, backend):
        pipeline = OnboardingPipeline(backend)

        with pytest.raises(ValueError):
            asyncio.run(pipeline.commit(group_id=1))

    def test_commit_creates_and_clears(self, backend, host_rows):
        pipeline = OnboardingPipeline(backend)
        pipeline.load_rows(host_rows)

        async def run():
            await pipeline.test_connections()
            return await pipeline.commit(group_id=7)

        assert asyncio.run(run()) == 3
        assert [c["group_id"] for c in backend.created] == [7, 7, 7]
        assert pipeline.records == []
        assert not pipeline.is_dirty

    def test_commit_failure_keeps_records(self, backend, host_rows):
        backend.failures["create_batch"] = BackendError("IP address already exists", status=409)
        pipeline = OnboardingPipeline(backend)
        pipeline.load_rows(host_rows)

        async def run():
            await pipeline.test_connections()
            with pytest.raises(DispatchFailure):
                await pipeline.commit(group_id=7)

        asyncio.run(run())

        assert len(pipeline.records) == 3
        assert not pipeline.adding
        assert pipeline.can_commit


class TestWorkingSet:
    """Test upload handling and state flags."""

    def test_input_error_recorded(self, backend):
        pipeline = OnboardingPipeline(backend)

        with pytest.raises(InputError):
            pipeline.load_rows([["Hostname"], ["web-01"]])

        assert pipeline.input_error is not None
        assert pipeline.records == []

    def test_row_errors_kept(self, backend, mixed_rows):
        pipeline = OnboardingPipeline(backend)
        pipeline.load_rows(mixed_rows, source_name="hosts.xlsx")

        assert len(pipeline.records) == 1
        assert len(pipeline.errors) == 2
        assert pipeline.source_name == "hosts.xlsx"

    def test_remove(self, backend, host_rows):
        pipeline = OnboardingPipeline(backend)
        pipeline.load_rows(host_rows)
        row_id = pipeline.records[0].row_id

        assert pipeline.remove(row_id) is True
        assert pipeline.get(row_id) is None
        assert pipeline.remove(row_id) is False
        assert len(pipeline.records) == 2

    def test_on_change_notified(self, backend, host_rows):
        seen = []
        pipeline = OnboardingPipeline(backend, on_change=lambda p: seen.append(p.any_testing))
        pipeline.load_rows(host_rows)
        asyncio.run(pipeline.test_connections())

        assert True in seen
        assert seen[-1] is False

    def test_dirty_flag(self, backend, host_rows):
        pipeline = OnboardingPipeline(backend)
        assert not pipeline.is_dirty

        pipeline.load_rows(host_rows)
        assert pipeline.is_dirty

        pipeline.discard()
        assert not pipeline.is_dirty


class TestTransitions:
    """Test the candidate record state machine."""

    def test_illegal_transitions(self, host_rows):
        record = parse_rows(host_rows).records[0]

        with pytest.raises(InvalidTransition):
            record.mark_success()
        record.mark_testing()
        with pytest.raises(InvalidTransition):
            record.mark_testing()
        record.mark_failed("nope")
        with pytest.raises(InvalidTransition):
            record.mark_success()

    def test_reset_probe(self, host_rows):
        record = parse_rows(host_rows).records[0]
        record.mark_testing()
        record.mark_success("ok")
        record.reset_probe()

        assert record.status is ProbeStatus.UNTESTED
        assert record.message is None
