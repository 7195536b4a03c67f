"""Tests for the outage detector module."""

from dataclasses import replace
from datetime import UTC, datetime, timedelta

import pytest

from pingwatch.database import DatabaseError
from pingwatch.models import (
    STATUS_INVALID_TARGET,
    STATUS_SUCCESS,
    STATUS_TIMEOUT,
    STATUS_UNREACHABLE,
    TRANSITION_CLOSED,
    TRANSITION_NO_CHANGE,
    TRANSITION_OPENED,
    Outage,
    ProbeOutcome,
    ProbeResult,
    Target,
)
from pingwatch.outage import OutageDetector

T0 = datetime(2026, 10, 19, 12, 0, 0, tzinfo=UTC)


class FakeStore:
    """In-memory outage store."""

    def __init__(self) -> None:
        self.outages: dict[int, Outage] = {}
        self.results: list[ProbeResult] = []
        self.fail_writes = False
        self.fail_reads = False
        self._next_id = 1

    def open_outage(self, outage: Outage) -> int:
        if self.fail_writes:
            raise DatabaseError("disk full")
        outage_id = self._next_id
        self._next_id += 1
        self.outages[outage_id] = replace(outage, id=outage_id)
        return outage_id

    def close_outage(self, outage_id: int, ended_at: datetime) -> bool:
        if self.fail_writes:
            raise DatabaseError("disk full")
        self.outages[outage_id] = replace(self.outages[outage_id], ended_at=ended_at)
        return True

    def find_open_outage(self, target_id: int) -> Outage | None:
        if self.fail_reads:
            raise DatabaseError("locked")
        for outage in self.outages.values():
            if outage.target_id == target_id and outage.is_open:
                return outage
        return None

    def recent_probe_results(self, target_id: int, limit: int) -> list[ProbeResult]:
        if self.fail_reads:
            raise DatabaseError("locked")
        matching = [r for r in self.results if r.target_id == target_id]
        return sorted(matching, key=lambda r: r.timestamp, reverse=True)[:limit]


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def target() -> Target:
    return Target(id=1, address="203.0.113.5", kind="ipv4")


def _result(seconds: int, status: str, target_id: int = 1) -> ProbeResult:
    latency = 10.0 if status == STATUS_SUCCESS else None
    return ProbeResult(
        target_id=target_id,
        timestamp=T0 + timedelta(seconds=seconds),
        outcome=ProbeOutcome(status=status, latency_ms=latency),
    )


S = STATUS_SUCCESS
U = STATUS_UNREACHABLE
T = STATUS_TIMEOUT


def _feed(detector: OutageDetector, target: Target, statuses: list[str]) -> list[str]:
    return [detector.record(target, _result(i * 30, status)).kind for i, status in enumerate(statuses)]


class TestOutageDetector:
    """Tests for OutageDetector.record."""

    def test_success_with_no_outage_is_no_change(self, store: FakeStore, target: Target) -> None:
        detector = OutageDetector(store)

        assert _feed(detector, target, [S, S]) == [TRANSITION_NO_CHANGE] * 2

    def test_opens_at_threshold_and_closes_on_success(self, store: FakeStore, target: Target) -> None:
        """[S, U, U, U, S] opens on the third failure and closes on the success."""
        detector = OutageDetector(store, failure_threshold=3)

        kinds = _feed(detector, target, [S, U, U, U, S])

        assert kinds == [
            TRANSITION_NO_CHANGE,
            TRANSITION_NO_CHANGE,
            TRANSITION_NO_CHANGE,
            TRANSITION_OPENED,
            TRANSITION_CLOSED,
        ]
        outage = store.outages[1]
        assert outage.started_at == T0 + timedelta(seconds=90)
        assert outage.ended_at == T0 + timedelta(seconds=120)
        assert outage.consecutive_failures_at_open == 3

    @pytest.mark.parametrize("threshold", [1, 2, 3, 5])
    def test_opens_after_exactly_threshold_failures(self, store: FakeStore, target: Target, threshold: int) -> None:
        detector = OutageDetector(store, failure_threshold=threshold)

        kinds = _feed(detector, target, [U] * (threshold + 2))

        assert kinds.index(TRANSITION_OPENED) == threshold - 1
        assert kinds.count(TRANSITION_OPENED) == 1

    def test_success_resets_counter(self, store: FakeStore, target: Target) -> None:
        detector = OutageDetector(store, failure_threshold=3)

        kinds = _feed(detector, target, [U, U, S, U, U])

        assert TRANSITION_OPENED not in kinds
        assert detector.consecutive_failures(target.id) == 2

    def test_timeout_counts_as_failure(self, store: FakeStore, target: Target) -> None:
        detector = OutageDetector(store, failure_threshold=2)

        assert _feed(detector, target, [T, U]) == [TRANSITION_NO_CHANGE, TRANSITION_OPENED]

    def test_at_most_one_open_outage(self, store: FakeStore, target: Target) -> None:
        detector = OutageDetector(store, failure_threshold=1)

        _feed(detector, target, [U] * 10)

        assert len(store.outages) == 1
        assert detector.has_open_outage(target.id)

    def test_outage_carries_persisted_id(self, store: FakeStore, target: Target) -> None:
        detector = OutageDetector(store, failure_threshold=1)

        transition = detector.record(target, _result(0, U))

        assert transition.outage.id == 1
        assert detector.open_outage(target.id).id == 1

    def test_closed_transition_has_duration(self, store: FakeStore, target: Target) -> None:
        detector = OutageDetector(store, failure_threshold=1)
        detector.record(target, _result(0, U))

        transition = detector.record(target, _result(300, S))

        assert transition.kind == TRANSITION_CLOSED
        assert transition.outage.duration_seconds == 300

    def test_invalid_target_result_raises(self, store: FakeStore, target: Target) -> None:
        detector = OutageDetector(store)

        with pytest.raises(ValueError):
            detector.record(target, _result(0, STATUS_INVALID_TARGET))

    def test_replayed_result_is_ignored(self, store: FakeStore, target: Target) -> None:
        """Recording the same result twice changes nothing."""
        detector = OutageDetector(store, failure_threshold=2)
        first = _result(0, U)
        detector.record(target, first)

        assert detector.record(target, first).kind == TRANSITION_NO_CHANGE
        assert detector.consecutive_failures(target.id) == 1

    def test_older_result_is_ignored(self, store: FakeStore, target: Target) -> None:
        detector = OutageDetector(store, failure_threshold=1)
        detector.record(target, _result(60, S))

        assert detector.record(target, _result(30, U)).kind == TRANSITION_NO_CHANGE
        assert not detector.has_open_outage(target.id)

    def test_targets_are_independent(self, store: FakeStore, target: Target) -> None:
        other = Target(id=2, address="198.51.100.7", kind="ipv4")
        detector = OutageDetector(store, failure_threshold=2)

        detector.record(target, _result(0, U))
        detector.record(other, _result(0, U, target_id=2))
        detector.record(other, _result(30, U, target_id=2))

        assert not detector.has_open_outage(target.id)
        assert detector.has_open_outage(other.id)

    def test_rejects_threshold_below_1(self, store: FakeStore) -> None:
        with pytest.raises(ValueError):
            OutageDetector(store, failure_threshold=0)


class TestPersistenceFailures:
    """State advances even when the store fails."""

    def test_open_write_failure_still_opens(self, store: FakeStore, target: Target) -> None:
        store.fail_writes = True
        detector = OutageDetector(store, failure_threshold=1)

        transition = detector.record(target, _result(0, U))

        assert transition.kind == TRANSITION_OPENED
        assert transition.outage.id is None
        assert detector.has_open_outage(target.id)

    def test_unpersisted_outage_is_written_in_full_on_close(self, store: FakeStore, target: Target) -> None:
        store.fail_writes = True
        detector = OutageDetector(store, failure_threshold=1)
        detector.record(target, _result(0, U))
        store.fail_writes = False

        transition = detector.record(target, _result(60, S))

        assert transition.kind == TRANSITION_CLOSED
        assert len(store.outages) == 1
        saved = store.outages[1]
        assert saved.started_at == T0
        assert saved.ended_at == T0 + timedelta(seconds=60)

    def test_close_write_failure_still_closes(self, store: FakeStore, target: Target) -> None:
        detector = OutageDetector(store, failure_threshold=1)
        detector.record(target, _result(0, U))
        store.fail_writes = True

        transition = detector.record(target, _result(60, S))

        assert transition.kind == TRANSITION_CLOSED
        assert not detector.has_open_outage(target.id)


class TestHydration:
    """State is restored from the store on first use."""

    def test_resumes_open_outage(self, store: FakeStore, target: Target) -> None:
        store.open_outage(Outage(None, target.id, T0, consecutive_failures_at_open=3))
        detector = OutageDetector(store, failure_threshold=3)

        transition = detector.record(target, _result(60, S))

        assert transition.kind == TRANSITION_CLOSED
        assert store.outages[1].ended_at == T0 + timedelta(seconds=60)

    def test_does_not_open_second_outage_after_restart(self, store: FakeStore, target: Target) -> None:
        store.open_outage(Outage(None, target.id, T0))
        store.results = [_result(0, U), _result(30, U), _result(60, U)]
        detector = OutageDetector(store, failure_threshold=3)

        assert detector.record(target, _result(90, U)).kind == TRANSITION_NO_CHANGE
        assert len(store.outages) == 1

    def test_restores_failure_streak(self, store: FakeStore, target: Target) -> None:
        """Two persisted trailing failures plus one new failure reach a threshold of 3."""
        store.results = [_result(0, S), _result(30, U), _result(60, U)]
        detector = OutageDetector(store, failure_threshold=3)

        assert detector.record(target, _result(90, U)).kind == TRANSITION_OPENED

    def test_hydrated_last_timestamp_rejects_replay(self, store: FakeStore, target: Target) -> None:
        store.results = [_result(0, U)]
        detector = OutageDetector(store, failure_threshold=1)

        assert detector.record(target, _result(0, U)).kind == TRANSITION_NO_CHANGE

    def test_read_failure_starts_fresh(self, store: FakeStore, target: Target) -> None:
        store.fail_reads = True
        detector = OutageDetector(store, failure_threshold=1)

        assert detector.record(target, _result(0, U)).kind == TRANSITION_OPENED

    def test_forget_rehydrates(self, store: FakeStore, target: Target) -> None:
        detector = OutageDetector(store, failure_threshold=1)
        detector.record(target, _result(0, U))
        store.outages[1] = replace(store.outages[1], ended_at=T0 + timedelta(seconds=5))

        detector.forget(target.id)

        assert not detector.has_open_outage(target.id)
