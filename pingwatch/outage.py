"""Consecutive-failure state machine that opens and closes outages."""

import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Protocol

from .config import DEFAULT_FAILURE_THRESHOLD
from .database import DatabaseError
from .models import (
    STATUS_INVALID_TARGET,
    TRANSITION_CLOSED,
    TRANSITION_NO_CHANGE,
    TRANSITION_OPENED,
    Outage,
    OutageTransition,
    ProbeResult,
    Target,
)

logger = logging.getLogger(__name__)

_NO_CHANGE = OutageTransition(kind=TRANSITION_NO_CHANGE)


class OutageStore(Protocol):
    """Persistence operations the detector needs."""

    def open_outage(self, outage: Outage) -> int: ...

    def close_outage(self, outage_id: int, ended_at: datetime) -> bool: ...

    def find_open_outage(self, target_id: int) -> Outage | None: ...

    def recent_probe_results(self, target_id: int, limit: int) -> list[ProbeResult]: ...


@dataclass
class _TargetState:
    consecutive_failures: int = 0
    open_outage: Outage | None = None
    last_timestamp: datetime | None = None


class OutageDetector:
    """Tracks consecutive probe failures per target.

    An outage opens when a target reaches failure_threshold consecutive
    failures and closes on the next success. Each target has at most one
    open outage at a time.

    State is hydrated from the store the first time a target is seen, so a
    restart neither loses an open outage nor forgets a failure streak.

    Example:
        detector = OutageDetector(SqliteGateway(conn), failure_threshold=3)
        transition = detector.record(target, result)
        if transition.kind == "opened":
            ...
    """

    def __init__(self, store: OutageStore, failure_threshold: int = DEFAULT_FAILURE_THRESHOLD) -> None:
        if failure_threshold < 1:
            raise ValueError(f"failure_threshold must be at least 1 (got {failure_threshold})")
        self._store = store
        self._failure_threshold = failure_threshold
        self._states: dict[int, _TargetState] = {}
        self._lock = threading.RLock()

    @property
    def failure_threshold(self) -> int:
        return self._failure_threshold

    def _hydrate(self, target_id: int) -> _TargetState:
        state = _TargetState()
        try:
            state.open_outage = self._store.find_open_outage(target_id)
            recent = self._store.recent_probe_results(target_id, self._failure_threshold)
        except DatabaseError as e:
            logger.error("Failed to load outage state for target %d: %s", target_id, e)
            return state

        # recent is newest first
        for result in recent:
            if not result.is_failure:
                break
            state.consecutive_failures += 1
        if recent:
            state.last_timestamp = recent[0].timestamp

        if state.open_outage is not None:
            logger.info(
                "Resuming open outage for target %d since %s",
                target_id,
                state.open_outage.started_at.isoformat(),
            )
        return state

    def _state(self, target_id: int) -> _TargetState:
        state = self._states.get(target_id)
        if state is None:
            state = self._hydrate(target_id)
            self._states[target_id] = state
        return state

    def record(self, target: Target, result: ProbeResult) -> OutageTransition:
        """Feed one probe result and return the resulting transition.

        Results not newer than the last recorded one for the target are
        ignored, so replaying a result is harmless.

        Raises:
            ValueError: If the result carries an invalid_target outcome.
        """
        if result.outcome.status == STATUS_INVALID_TARGET:
            raise ValueError(f"invalid_target result recorded for {target.address}")

        with self._lock:
            state = self._state(target.id)

            if state.last_timestamp is not None and result.timestamp <= state.last_timestamp:
                logger.debug("Ignoring stale result for %s at %s", target.label, result.timestamp.isoformat())
                return _NO_CHANGE
            state.last_timestamp = result.timestamp

            if result.is_success:
                state.consecutive_failures = 0
                if state.open_outage is None:
                    return _NO_CHANGE
                closed = self._close(target, state.open_outage, result.timestamp)
                state.open_outage = None
                return OutageTransition(kind=TRANSITION_CLOSED, outage=closed)

            state.consecutive_failures += 1
            if state.open_outage is None and state.consecutive_failures >= self._failure_threshold:
                state.open_outage = self._open(target, result.timestamp, state.consecutive_failures)
                return OutageTransition(kind=TRANSITION_OPENED, outage=state.open_outage)
            return _NO_CHANGE

    def _open(self, target: Target, started_at: datetime, failures: int) -> Outage:
        outage = Outage(
            id=None,
            target_id=target.id,
            started_at=started_at,
            consecutive_failures_at_open=failures,
        )
        try:
            outage = replace(outage, id=self._store.open_outage(outage))
        except DatabaseError as e:
            logger.error("Failed to persist outage for %s: %s", target.label, e)

        logger.warning("OUTAGE: %s is down after %d consecutive failures", target.label, failures)
        return outage

    def _close(self, target: Target, outage: Outage, ended_at: datetime) -> Outage:
        closed = replace(outage, ended_at=ended_at)
        try:
            if outage.id is None:
                # The open was never persisted; write the whole record now
                closed = replace(closed, id=self._store.open_outage(closed))
            else:
                self._store.close_outage(outage.id, ended_at)
        except DatabaseError as e:
            logger.error("Failed to persist outage end for %s: %s", target.label, e)

        logger.info("RECOVERED: %s is back up after %ds", target.label, closed.duration_seconds)
        return closed

    def has_open_outage(self, target_id: int) -> bool:
        with self._lock:
            return self._state(target_id).open_outage is not None

    def open_outage(self, target_id: int) -> Outage | None:
        with self._lock:
            return self._state(target_id).open_outage

    def consecutive_failures(self, target_id: int) -> int:
        with self._lock:
            return self._state(target_id).consecutive_failures

    def forget(self, target_id: int) -> None:
        """Drop in-memory state; the next use re-reads it from the store."""
        with self._lock:
            self._states.pop(target_id, None)
