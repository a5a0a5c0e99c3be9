"""
Unit tests for the reconciliation sync engine.
"""

import time
from unittest.mock import patch

import pytest

from models.outcome import OutcomeStatus
from services.scan_engine import ScanEngine
from services.sync_engine import ReconciliationSyncEngine


CODE_X = "PKG-X-20240101"


def queue_offline(engine, fake_api, connectivity, operator, code, action_type, state=None):
    """Cache the package while online, go offline, scan."""
    if state is not None:
        fake_api.add_package(code, state)
        engine.executor.resolve_package(code, operator)
    connectivity.set_online(False)
    return engine.executor.execute(code, action_type, operator)


def retrying_engine(fake_api, store, connectivity, device_info):
    return ScanEngine(
        fake_api,
        store,
        connectivity=connectivity,
        queue_max_size=50,
        probe_interval_seconds=0,
        device_info=device_info,
        sync_retry_interval_seconds=0.02,
    )


class TestReconciliation:

    def test_offline_collect_is_reconciled(self, engine, fake_api, connectivity, rider):
        """Device goes offline, rider scans PKG-X for collect, reconnects."""
        outcome = queue_offline(engine, fake_api, connectivity, rider, CODE_X, "collect", state="submitted")
        assert outcome.status == OutcomeStatus.QUEUED
        assert [a.token for a in engine.queue.list_all()] == [outcome.token]

        connectivity.set_online(True)
        report = engine.sync_engine.run_once()

        assert report.applied == [outcome.token]
        assert engine.queue.size == 0
        assert fake_api.state_of(CODE_X) == "in_transit"
        assert engine.cache.get(CODE_X).snapshot.state == "in_transit"

    def test_replay_marks_offline_sync(self, engine, fake_api, connectivity, rider):
        outcome = queue_offline(engine, fake_api, connectivity, rider, CODE_X, "collect", state="submitted")
        connectivity.set_online(True)

        engine.sync_engine.run_once()

        replay = fake_api.submitted[-1]
        assert replay["token"] == outcome.token
        assert replay["metadata"]["offline_sync"] is True
        assert replay["metadata"]["original_timestamp"] == replay["metadata"]["timestamp"]

    def test_same_code_replayed_in_enqueue_order(self, engine, fake_api, connectivity, rider):
        fake_api.add_package(CODE_X, "submitted")
        engine.executor.resolve_package(CODE_X, rider)
        connectivity.set_online(False)
        collect = engine.executor.execute(CODE_X, "collect", rider)
        # Cached snapshot is still "submitted", so the local check refuses deliver
        deliver = engine.executor.queue_action(CODE_X, "deliver", rider)
        assert deliver.status == OutcomeStatus.REJECTED

        engine.cache.invalidate(CODE_X)
        deliver = engine.executor.queue_action(CODE_X, "deliver", rider)
        assert deliver.status == OutcomeStatus.QUEUED

        connectivity.set_online(True)
        report = engine.sync_engine.run_once()

        assert report.applied == [collect.token, deliver.token]
        assert [t[1] for t in fake_api.transitions] == ["collect", "deliver"]
        assert fake_api.state_of(CODE_X) == "delivered"

    def test_idempotent_replays(self, engine, fake_api, connectivity, rider):
        """Replaying an acknowledged token never transitions twice."""
        outcome = queue_offline(engine, fake_api, connectivity, rider, CODE_X, "collect", state="submitted")
        connectivity.set_online(True)

        action = engine.queue.get(outcome.token)
        engine.sync_engine.run_once()

        # Same action replayed again, as if the first acknowledgement was lost
        engine.queue.enqueue(action)
        second = engine.sync_engine.run_once()

        assert second.applied == [outcome.token]
        assert len([t for t in fake_api.transitions if t[0] == CODE_X]) == 1
        assert engine.queue.size == 0

    def test_empty_queue(self, engine):
        report = engine.sync_engine.run_once()
        assert report.applied == []
        assert report.aborted is False
        assert report.remaining == 0


class TestFailures:

    def test_application_error_needs_attention(self, engine, fake_api, connectivity, rider):
        fake_api.add_package(CODE_X, "submitted")
        engine.executor.resolve_package(CODE_X, rider)
        connectivity.set_online(False)
        collect = engine.executor.execute(CODE_X, "collect", rider)
        engine.cache.invalidate(CODE_X)
        deliver = engine.executor.queue_action(CODE_X, "deliver", rider)

        fake_api.reject(CODE_X, "Package already collected by another rider")
        connectivity.set_online(True)
        report = engine.sync_engine.run_once()

        assert report.needs_attention == [collect.token]
        assert report.skipped == [deliver.token]
        assert engine.queue.size == 2

        flagged = engine.queue.get(collect.token)
        assert flagged.needs_attention is True
        assert flagged.last_error == "Package already collected by another rider"
        assert flagged.attempt_count == 1
        assert engine.sync_status()["needs_attention"] == 1

    def test_flagged_actions_stay_out_of_later_runs(self, engine, fake_api, connectivity, rider):
        outcome = queue_offline(engine, fake_api, connectivity, rider, CODE_X, "collect", state="submitted")
        fake_api.reject(CODE_X, "Rejected")
        connectivity.set_online(True)
        engine.sync_engine.run_once()
        submissions = len(fake_api.submitted)

        report = engine.sync_engine.run_once()

        assert report.skipped == [outcome.token]
        assert len(fake_api.submitted) == submissions

    def test_retry_after_operator_review(self, engine, fake_api, connectivity, rider):
        outcome = queue_offline(engine, fake_api, connectivity, rider, CODE_X, "collect", state="submitted")
        fake_api.reject(CODE_X, "Temporarily locked")
        connectivity.set_online(True)
        engine.sync_engine.run_once()

        del fake_api.rejections[CODE_X]
        engine.queue.clear_attention(outcome.token)
        report = engine.sync_engine.run_once()

        assert report.applied == [outcome.token]
        assert engine.queue.size == 0

    def test_other_packages_continue_after_rejection(self, engine, fake_api, connectivity, rider):
        fake_api.add_package("PKG-A-20240101", "submitted")
        fake_api.add_package("PKG-B-20240101", "submitted")
        engine.executor.resolve_package("PKG-A-20240101", rider)
        engine.executor.resolve_package("PKG-B-20240101", rider)
        connectivity.set_online(False)
        a = engine.executor.execute("PKG-A-20240101", "collect", rider)
        b = engine.executor.execute("PKG-B-20240101", "collect", rider)

        fake_api.reject("PKG-A-20240101", "No")
        connectivity.set_online(True)
        report = engine.sync_engine.run_once()

        assert report.needs_attention == [a.token]
        assert report.applied == [b.token]

    def test_network_error_aborts_run(self, engine, fake_api, connectivity, rider):
        outcome = queue_offline(engine, fake_api, connectivity, rider, CODE_X, "collect", state="submitted")
        fake_api.fail_network = True
        connectivity.set_online(True)

        report = engine.sync_engine.run_once()

        assert report.aborted is True
        assert report.applied == []
        assert report.remaining == 1
        action = engine.queue.get(outcome.token)
        assert action.needs_attention is False
        assert action.attempt_count == 1

    def test_offline_run_does_nothing(self, engine, fake_api, connectivity, rider):
        queue_offline(engine, fake_api, connectivity, rider, CODE_X, "collect", state="submitted")

        report = engine.sync_engine.run_once()

        assert report.aborted is True
        assert report.abort_reason == "Device is offline"
        assert engine.queue.size == 1


class TestTriggers:

    def test_connectivity_transition_starts_sync(self, engine, fake_api, connectivity, rider):
        outcome = queue_offline(engine, fake_api, connectivity, rider, CODE_X, "collect", state="submitted")
        engine.sync_engine.start()
        try:
            connectivity.set_online(True)
            assert engine.sync_engine.wait_idle(timeout=5.0)
        finally:
            engine.sync_engine.stop()

        assert engine.queue.get(outcome.token) is None
        assert fake_api.state_of(CODE_X) == "in_transit"
        assert engine.sync_status()["last_sync"] is not None

    def test_start_drains_leftovers(self, engine, fake_api, connectivity, rider):
        queue_offline(engine, fake_api, connectivity, rider, CODE_X, "collect", state="submitted")
        connectivity.set_online(True)

        engine.sync_engine.start()
        try:
            assert engine.sync_engine.wait_idle(timeout=5.0)
        finally:
            engine.sync_engine.stop()

        assert engine.queue.size == 0

    def test_overlapping_run_is_skipped(self, engine):
        engine.sync_engine._run_guard.acquire()
        try:
            report = engine.sync_engine.run_once()
        finally:
            engine.sync_engine._run_guard.release()

        assert report.aborted is True
        assert report.abort_reason == "Sync already in progress"

    def test_force_sync_reports_counts(self, engine, fake_api, connectivity, rider):
        queue_offline(engine, fake_api, connectivity, rider, CODE_X, "collect", state="submitted")
        connectivity.set_online(True)

        body = engine.force_sync().to_dict()

        assert body["synced"] == 1
        assert body["failed"] == 0
        assert body["remaining"] == 0

    def test_status_shape(self, engine):
        status = engine.sync_status()
        assert set(status) >= {"last_sync", "pending_actions", "needs_attention", "is_online", "sync_in_progress"}
        assert status["sync_in_progress"] is False

    def test_stop_is_idempotent(self, engine):
        engine.sync_engine.start()
        engine.sync_engine.stop()
        engine.sync_engine.stop()
        assert engine.sync_engine.is_running is False


class TestPeriodicRetry:

    def test_action_queued_while_online_is_retried(self, fake_api, store, connectivity, device_info, rider):
        """A submit failed on the network but the device never went offline."""
        engine = retrying_engine(fake_api, store, connectivity, device_info)
        fake_api.add_package(CODE_X, "submitted")
        engine.executor.resolve_package(CODE_X, rider)
        fake_api.fail_network = True
        outcome = engine.executor.execute(CODE_X, "collect", rider)
        assert outcome.status == OutcomeStatus.QUEUED
        assert connectivity.is_online

        engine.sync_engine.start()
        try:
            # Startup sweep hits the outage; only the periodic retry can drain it
            assert engine.sync_engine.wait_idle(timeout=5.0)
            fake_api.fail_network = False

            deadline = time.monotonic() + 5.0
            while engine.queue.size and time.monotonic() < deadline:
                time.sleep(0.02)
        finally:
            engine.sync_engine.stop()

        assert engine.queue.size == 0
        assert fake_api.state_of(CODE_X) == "in_transit"

    def test_flagged_actions_do_not_trigger_retries(self, fake_api, store, connectivity, device_info, rider):
        engine = retrying_engine(fake_api, store, connectivity, device_info)
        queue_offline(engine, fake_api, connectivity, rider, CODE_X, "collect", state="submitted")
        connectivity.set_online(True)
        fake_api.reject(CODE_X, "Package on hold")
        engine.sync_engine.run_once()
        assert engine.queue.needs_attention_count() == 1

        with patch.object(engine.sync_engine, "trigger") as trigger:
            engine.sync_engine.start()
            try:
                time.sleep(0.3)
            finally:
                engine.sync_engine.stop()

        # Only the startup check, never the periodic one
        assert trigger.call_count == 1

    def test_negative_interval_rejected(self, engine, connectivity):
        with pytest.raises(ValueError):
            ReconciliationSyncEngine(engine.executor, engine.queue, connectivity, retry_interval_seconds=-1)
