"""Tests for the monitoring scheduler module."""

import threading
import time
from dataclasses import replace
from datetime import UTC, datetime
from pathlib import Path

import pytest

from pingwatch.config import Intervals
from pingwatch.database import DatabaseError, init_db
from pingwatch.models import (
    STATUS_SUCCESS,
    STATUS_UNREACHABLE,
    TRANSITION_CLOSED,
    TRANSITION_OPENED,
    Outage,
    ProbeOutcome,
    ProbeResult,
    Target,
)
from pingwatch.outage import OutageDetector
from pingwatch.scheduler import (
    STATE_RUNNING,
    STATE_STOPPED,
    AlreadyRunningError,
    MonitoringScheduler,
)
from pingwatch.settings import SettingsStore
from pingwatch.validator import ValidTarget

FAST = Intervals(check_interval_seconds=0.05, outage_check_interval_seconds=0.02)


class FakeGateway:
    """Thread-safe in-memory store for probe results and outages."""

    def __init__(self) -> None:
        self.results: list[ProbeResult] = []
        self.outages: dict[int, Outage] = {}
        self.fail_appends = False
        self._lock = threading.Lock()

    def append_probe_result(self, result: ProbeResult) -> None:
        if self.fail_appends:
            raise DatabaseError("disk full")
        with self._lock:
            self.results.append(result)

    def open_outage(self, outage: Outage) -> int:
        with self._lock:
            outage_id = len(self.outages) + 1
            self.outages[outage_id] = replace(outage, id=outage_id)
            return outage_id

    def close_outage(self, outage_id: int, ended_at: datetime) -> bool:
        with self._lock:
            self.outages[outage_id] = replace(self.outages[outage_id], ended_at=ended_at)
            return True

    def find_open_outage(self, target_id: int) -> Outage | None:
        with self._lock:
            for outage in self.outages.values():
                if outage.target_id == target_id and outage.is_open:
                    return outage
        return None

    def recent_probe_results(self, target_id: int, limit: int) -> list[ProbeResult]:
        with self._lock:
            matching = [r for r in self.results if r.target_id == target_id]
        return list(reversed(matching))[:limit]

    def count(self, target_id: int | None = None) -> int:
        with self._lock:
            return sum(1 for r in self.results if target_id is None or r.target_id == target_id)


class FakeProbe:
    """Probe replacement returning a configurable outcome and counting calls."""

    def __init__(self, status: str = STATUS_SUCCESS, delay: float = 0.0) -> None:
        self.status = status
        self.delay = delay
        self.calls: list[tuple[str, float]] = []
        self.started = threading.Event()
        self._lock = threading.Lock()

    def __call__(self, target: ValidTarget, timeout: float) -> ProbeOutcome:
        with self._lock:
            self.calls.append((target.address, timeout))
        self.started.set()
        if self.delay:
            time.sleep(self.delay)
        latency = 5.0 if self.status == STATUS_SUCCESS else None
        return ProbeOutcome(status=self.status, latency_ms=latency)

    @property
    def call_count(self) -> int:
        with self._lock:
            return len(self.calls)


def wait_for(predicate, timeout: float = 3.0) -> bool:
    """Poll predicate until it is true or timeout expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def targets() -> list[Target]:
    return [
        Target(id=1, address="8.8.8.8", kind="ipv4"),
        Target(id=2, address="example.com", kind="domain"),
    ]


def make_scheduler(gateway: FakeGateway, probe_fn, threshold: int = 3, **kwargs) -> MonitoringScheduler:
    detector = OutageDetector(gateway, failure_threshold=threshold)
    return MonitoringScheduler(detector, gateway, probe_fn=probe_fn, stagger_seconds=0, **kwargs)


class TestLifecycle:
    """Tests for start, stop and status."""

    def test_start_and_stop(self, gateway: FakeGateway, targets: list[Target]) -> None:
        scheduler = make_scheduler(gateway, FakeProbe())

        scheduler.start(targets, FAST)
        try:
            assert scheduler.state == STATE_RUNNING
            assert scheduler.active_loop_count == 4
            assert wait_for(lambda: gateway.count(1) >= 3 and gateway.count(2) >= 3)
        finally:
            scheduler.stop()

        assert scheduler.state == STATE_STOPPED
        assert scheduler.active_loop_count == 0

    def test_start_while_running_raises(self, gateway: FakeGateway, targets: list[Target]) -> None:
        scheduler = make_scheduler(gateway, FakeProbe())
        scheduler.start(targets, FAST)
        try:
            with pytest.raises(AlreadyRunningError):
                scheduler.start(targets, FAST)
        finally:
            scheduler.stop()

    def test_stop_is_idempotent(self, gateway: FakeGateway, targets: list[Target]) -> None:
        scheduler = make_scheduler(gateway, FakeProbe())

        scheduler.stop()
        scheduler.start(targets, FAST)
        scheduler.stop()
        scheduler.stop()

        assert scheduler.state == STATE_STOPPED

    def test_can_restart_after_stop(self, gateway: FakeGateway, targets: list[Target]) -> None:
        scheduler = make_scheduler(gateway, FakeProbe())
        scheduler.start(targets, FAST)
        scheduler.stop()

        scheduler.start()
        try:
            assert scheduler.active_loop_count == 4
        finally:
            scheduler.stop()

    def test_no_results_recorded_after_stop(self, gateway: FakeGateway, targets: list[Target]) -> None:
        probe = FakeProbe()
        scheduler = make_scheduler(gateway, probe)
        scheduler.start(targets, FAST)
        wait_for(lambda: gateway.count() >= 4)

        scheduler.stop()
        count = gateway.count()
        time.sleep(0.2)

        assert gateway.count() == count

    def test_in_flight_probe_is_discarded_on_stop(self, gateway: FakeGateway) -> None:
        """A probe still running when stop() is called is not recorded."""
        probe = FakeProbe(delay=0.3)
        scheduler = make_scheduler(gateway, probe)
        scheduler.start([Target(id=1, address="8.8.8.8", kind="ipv4")], FAST)
        assert probe.started.wait(timeout=2)

        scheduler.stop()

        assert gateway.count() == 0

    def test_skips_inactive_and_invalid_targets(self, gateway: FakeGateway) -> None:
        scheduler = make_scheduler(gateway, FakeProbe())
        targets = [
            Target(id=1, address="8.8.8.8", kind="ipv4"),
            Target(id=2, address="999.1.1.1", kind="ipv4"),
            Target(id=3, address="example.com", kind="domain", active=False),
        ]

        scheduler.start(targets, FAST)
        try:
            assert scheduler.active_loop_count == 2
        finally:
            scheduler.stop()

    def test_status(self, gateway: FakeGateway, targets: list[Target]) -> None:
        scheduler = make_scheduler(gateway, FakeProbe())
        scheduler.start(targets, FAST)
        try:
            status = scheduler.status()
        finally:
            scheduler.stop()

        assert status["state"] == STATE_RUNNING
        assert status["targets"] == 2
        assert status["loops"] == 4
        assert status["intervals"] == FAST.to_dict()


class TestTicks:
    """Tests for per-tick behaviour."""

    def test_probe_timeout_is_shorter_than_interval(self, gateway: FakeGateway) -> None:
        probe = FakeProbe()
        scheduler = make_scheduler(gateway, probe, probe_timeout=5)
        scheduler.start([Target(id=1, address="8.8.8.8", kind="ipv4")], FAST)
        try:
            assert wait_for(lambda: probe.call_count >= 1)
        finally:
            scheduler.stop()

        timeout = probe.calls[0][1]
        assert timeout == pytest.approx(FAST.check_interval_seconds * 0.8)

    def test_timestamps_strictly_increase(self, gateway: FakeGateway) -> None:
        """Even with a frozen clock every result gets a later timestamp."""
        frozen = datetime(2026, 10, 19, 12, 0, 0, tzinfo=UTC)
        scheduler = make_scheduler(gateway, FakeProbe(), clock=lambda: frozen)
        scheduler.start([Target(id=1, address="8.8.8.8", kind="ipv4")], FAST)
        try:
            assert wait_for(lambda: gateway.count() >= 5)
        finally:
            scheduler.stop()

        timestamps = [r.timestamp for r in gateway.results]
        assert all(a < b for a, b in zip(timestamps, timestamps[1:]))

    def test_probe_exception_becomes_unreachable(self, gateway: FakeGateway) -> None:
        def broken_probe(target: ValidTarget, timeout: float) -> ProbeOutcome:
            raise RuntimeError("boom")

        scheduler = make_scheduler(gateway, broken_probe)
        scheduler.start([Target(id=1, address="8.8.8.8", kind="ipv4")], FAST)
        try:
            assert wait_for(lambda: gateway.count() >= 2)
        finally:
            scheduler.stop()

        assert gateway.results[0].outcome.status == STATUS_UNREACHABLE

    def test_persistence_failure_does_not_stop_loop(self, gateway: FakeGateway) -> None:
        probe = FakeProbe()
        gateway.fail_appends = True
        scheduler = make_scheduler(gateway, probe)
        scheduler.start([Target(id=1, address="8.8.8.8", kind="ipv4")], FAST)
        try:
            assert wait_for(lambda: probe.call_count >= 3)
        finally:
            scheduler.stop()

    def test_unexpected_store_error_does_not_stop_loop(self) -> None:
        """Errors other than DatabaseError from the gateway are logged, not fatal."""

        class BrokenDiskGateway(FakeGateway):
            def append_probe_result(self, result: ProbeResult) -> None:
                raise OSError("disk I/O error")

        probe = FakeProbe()
        scheduler = make_scheduler(BrokenDiskGateway(), probe)
        scheduler.start([Target(id=1, address="8.8.8.8", kind="ipv4")], FAST)
        try:
            assert wait_for(lambda: probe.call_count >= 5, timeout=2.0)
            assert scheduler.active_loop_count == 2
        finally:
            scheduler.stop()

    def test_failing_detector_reads_do_not_stop_loops(self) -> None:
        """A tick that raises is logged and the loop keeps its cadence."""

        class UnreadableGateway(FakeGateway):
            def find_open_outage(self, target_id: int) -> Outage | None:
                raise RuntimeError("corrupt row")

        probe = FakeProbe()
        scheduler = make_scheduler(UnreadableGateway(), probe)
        scheduler.start([Target(id=1, address="8.8.8.8", kind="ipv4")], FAST)
        try:
            assert wait_for(lambda: probe.call_count >= 5, timeout=2.0)
            assert scheduler.active_loop_count == 2
        finally:
            scheduler.stop()

    def test_callback_failure_does_not_stop_loop(self, gateway: FakeGateway) -> None:
        probe = FakeProbe(status=STATUS_UNREACHABLE)

        def bad_callback(target: Target, transition) -> None:
            raise RuntimeError("webhook exploded")

        scheduler = make_scheduler(gateway, probe, threshold=1, on_transition=bad_callback)
        scheduler.start([Target(id=1, address="8.8.8.8", kind="ipv4")], FAST)
        try:
            assert wait_for(lambda: probe.call_count >= 3)
        finally:
            scheduler.stop()

    def test_verification_loop_only_probes_during_outage(self, gateway: FakeGateway) -> None:
        """With a long check interval, extra probes only happen while an outage is open."""
        slow = Intervals(check_interval_seconds=5, outage_check_interval_seconds=0.03)

        healthy = FakeProbe()
        scheduler = make_scheduler(gateway, healthy, threshold=1)
        scheduler.start([Target(id=1, address="8.8.8.8", kind="ipv4")], slow)
        try:
            time.sleep(0.3)
        finally:
            scheduler.stop()
        assert healthy.call_count == 1

        failing = FakeProbe(status=STATUS_UNREACHABLE)
        scheduler = make_scheduler(FakeGateway(), failing, threshold=1)
        scheduler.start([Target(id=1, address="8.8.8.8", kind="ipv4")], slow)
        try:
            assert wait_for(lambda: failing.call_count >= 4, timeout=1.0)
        finally:
            scheduler.stop()


class BlockingCallback:
    """Transition callback that blocks for chosen targets until released."""

    def __init__(self, blocked_ids: set[int]) -> None:
        self.blocked_ids = blocked_ids
        self.entered = threading.Event()
        self.release = threading.Event()
        self.calls: list[tuple[int, str]] = []
        self._lock = threading.Lock()

    def __call__(self, target: Target, transition) -> None:
        with self._lock:
            self.calls.append((target.id, transition.kind))
        if target.id in self.blocked_ids:
            self.entered.set()
            self.release.wait(timeout=5)

    def target_ids(self) -> set[int]:
        with self._lock:
            return {target_id for target_id, _ in self.calls}


class TestTransitionCallbacks:
    """Slow transition callbacks run outside the tick."""

    def test_stop_does_not_wait_for_slow_callback(self, gateway: FakeGateway) -> None:
        callback = BlockingCallback({1})
        scheduler = make_scheduler(
            gateway, FakeProbe(status=STATUS_UNREACHABLE), threshold=1, on_transition=callback
        )
        scheduler.start([Target(id=1, address="203.0.113.5", kind="ipv4")], FAST)
        try:
            assert callback.entered.wait(timeout=2)

            started = time.monotonic()
            scheduler.stop(timeout=0.2)
            elapsed = time.monotonic() - started
        finally:
            callback.release.set()
            scheduler.stop()

        assert elapsed < 1.0
        assert scheduler.state == STATE_STOPPED

    def test_slow_callback_does_not_stall_probing(self, gateway: FakeGateway) -> None:
        callback = BlockingCallback({1})
        probe = FakeProbe(status=STATUS_UNREACHABLE)
        scheduler = make_scheduler(gateway, probe, threshold=1, on_transition=callback)
        scheduler.start([Target(id=1, address="203.0.113.5", kind="ipv4")], FAST)
        try:
            assert callback.entered.wait(timeout=2)
            before = probe.call_count

            assert wait_for(lambda: probe.call_count >= before + 5, timeout=2.0)
        finally:
            callback.release.set()
            scheduler.stop()

    def test_slow_callback_does_not_block_other_targets(self, gateway: FakeGateway) -> None:
        callback = BlockingCallback({1})
        scheduler = make_scheduler(
            gateway, FakeProbe(status=STATUS_UNREACHABLE), threshold=2, on_transition=callback
        )
        targets = [
            Target(id=1, address="203.0.113.5", kind="ipv4"),
            Target(id=2, address="198.51.100.7", kind="ipv4"),
        ]
        scheduler.start(targets, FAST)
        try:
            assert callback.entered.wait(timeout=2)

            assert wait_for(lambda: 2 in callback.target_ids(), timeout=2.0)
        finally:
            callback.release.set()
            scheduler.stop()

    def test_callbacks_for_a_target_arrive_in_order(self, gateway: FakeGateway) -> None:
        probe = FakeProbe(status=STATUS_UNREACHABLE)
        callback = BlockingCallback(set())
        scheduler = make_scheduler(gateway, probe, threshold=1, on_transition=callback)
        scheduler.start([Target(id=1, address="203.0.113.5", kind="ipv4")], FAST)
        try:
            assert wait_for(lambda: len(callback.calls) >= 1)
            probe.status = STATUS_SUCCESS
            assert wait_for(lambda: len(callback.calls) >= 2)
        finally:
            scheduler.stop()

        assert [kind for _, kind in callback.calls] == [TRANSITION_OPENED, TRANSITION_CLOSED]


class TestReconfigure:
    """Tests for reconfigure."""

    def test_concurrent_settings_updates_apply_latest_stored_intervals(
        self, gateway: FakeGateway, tmp_path: Path
    ) -> None:
        """Whatever order overlapping updates land in, the scheduler ends on the stored value."""
        conn = init_db(str(tmp_path / "test.db"))
        store = SettingsStore(conn)
        scheduler = make_scheduler(gateway, FakeProbe())
        store.subscribe(scheduler.reconfigure)
        scheduler.start([], FAST)
        try:
            threads = [
                threading.Thread(
                    target=store.update_intervals,
                    args=(Intervals(check_interval_seconds=60 + i, outage_check_interval_seconds=10),),
                )
                for i in range(8)
            ]
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join(timeout=10)

            assert scheduler.intervals == store.read_intervals()
            assert scheduler.state == STATE_RUNNING
        finally:
            scheduler.stop()
            conn.close()

    def test_reconfigure_while_stopped_stores_snapshot(self, gateway: FakeGateway, targets: list[Target]) -> None:
        scheduler = make_scheduler(gateway, FakeProbe())

        scheduler.reconfigure(targets, FAST)

        assert scheduler.state == STATE_STOPPED
        assert scheduler.active_loop_count == 0
        assert scheduler.intervals == FAST

        scheduler.start()
        try:
            assert scheduler.active_loop_count == 4
        finally:
            scheduler.stop()

    def test_reconfigure_replaces_loops(self, gateway: FakeGateway, targets: list[Target]) -> None:
        scheduler = make_scheduler(gateway, FakeProbe())
        scheduler.start(targets[:1], FAST)
        try:
            scheduler.reconfigure(targets, None)

            assert scheduler.state == STATE_RUNNING
            assert scheduler.active_loop_count == 4
            assert scheduler.intervals == FAST
            assert wait_for(lambda: gateway.count(2) >= 1)
        finally:
            scheduler.stop()

    def test_reconfigure_intervals_only(self, gateway: FakeGateway, targets: list[Target]) -> None:
        scheduler = make_scheduler(gateway, FakeProbe())
        new_intervals = Intervals(check_interval_seconds=0.2, outage_check_interval_seconds=0.1)
        scheduler.start(targets, FAST)
        try:
            scheduler.reconfigure(intervals=new_intervals)

            assert scheduler.intervals == new_intervals
            assert scheduler.targets == tuple(targets)
        finally:
            scheduler.stop()

    def test_concurrent_reconfigure_leaves_one_set_of_loops(self, gateway: FakeGateway, targets: list[Target]) -> None:
        scheduler = make_scheduler(gateway, FakeProbe())
        options = [
            Intervals(check_interval_seconds=0.05 * (i + 1), outage_check_interval_seconds=0.02) for i in range(6)
        ]
        scheduler.start(targets, FAST)
        try:
            threads = [threading.Thread(target=scheduler.reconfigure, args=(targets, option)) for option in options]
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join(timeout=10)

            assert scheduler.state == STATE_RUNNING
            assert scheduler.active_loop_count == 4
            assert scheduler.intervals in options
            alive = [t for t in threading.enumerate() if t.name.startswith(("probe-", "verify-"))]
            assert len(alive) == 4
        finally:
            scheduler.stop()

    def test_probe_rate_follows_new_interval(self, gateway: FakeGateway) -> None:
        """After reconfigure only the new cadence is in effect."""
        probe = FakeProbe()
        target = Target(id=1, address="8.8.8.8", kind="ipv4")
        scheduler = make_scheduler(gateway, probe)
        scheduler.start([target], FAST)
        try:
            scheduler.reconfigure([target], Intervals(check_interval_seconds=0.5, outage_check_interval_seconds=0.1))
            before = probe.call_count
            time.sleep(0.75)
            probes = probe.call_count - before
        finally:
            scheduler.stop()

        # One immediate tick plus one after 0.5s
        assert 1 <= probes <= 2


class TestEndToEnd:
    """Scheduler, detector and gateway working together."""

    def test_outage_opens_and_closes(self, gateway: FakeGateway) -> None:
        target = Target(id=7, address="203.0.113.5", kind="ipv4")
        probe = FakeProbe(status=STATUS_UNREACHABLE)
        transitions = []
        scheduler = make_scheduler(
            gateway,
            probe,
            threshold=3,
            on_transition=lambda t, transition: transitions.append((t.id, transition)),
        )

        scheduler.start([target], FAST)
        try:
            assert wait_for(lambda: any(tr.kind == TRANSITION_OPENED for _, tr in transitions))
            probe.status = STATUS_SUCCESS
            assert wait_for(lambda: any(tr.kind == TRANSITION_CLOSED for _, tr in transitions))
        finally:
            scheduler.stop()

        kinds = [tr.kind for _, tr in transitions]
        assert kinds == [TRANSITION_OPENED, TRANSITION_CLOSED]
        assert len(gateway.outages) == 1

        outage = gateway.outages[1]
        failures = [r for r in gateway.results if r.outcome.status == STATUS_UNREACHABLE]
        assert outage.started_at == failures[2].timestamp
        first_success = next(r for r in gateway.results if r.timestamp > outage.started_at and r.is_success)
        assert outage.ended_at == first_success.timestamp
