"""Per-target probe and outage-verification loops."""

import logging
import threading
import time
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from threading import Event, Thread

from .config import DEFAULT_INTERVALS, Intervals
from .models import STATUS_UNREACHABLE, OutageTransition, ProbeOutcome, ProbeResult, Target
from .outage import OutageDetector
from .probe import DEFAULT_PROBE_TIMEOUT, probe
from .validator import InvalidTarget, ValidTarget, validate_target

logger = logging.getLogger(__name__)

STATE_STOPPED = "stopped"
STATE_RUNNING = "running"
STATE_RECONFIGURING = "reconfiguring"

# Spacing between the first probes of consecutive targets.
DEFAULT_STAGGER_SECONDS = 2.0

# Probes must finish well inside a tick.
PROBE_TIMEOUT_RATIO = 0.8

# How long stop() waits for each loop thread.
DEFAULT_STOP_TIMEOUT = 10.0


class SchedulerError(Exception):
    """Raised when the scheduler is used incorrectly."""

    pass


class AlreadyRunningError(SchedulerError):
    """Raised by start() when the scheduler is already running."""

    pass


@dataclass(frozen=True)
class _Snapshot:
    """Targets and intervals a generation of loops runs with."""

    targets: tuple[Target, ...]
    intervals: Intervals


def _utcnow() -> datetime:
    return datetime.now(UTC)


class MonitoringScheduler:
    """Runs one probe loop and one outage-verification loop per active target.

    The probe loop pings every check_interval_seconds. The verification
    loop wakes every outage_check_interval_seconds and pings only while the
    target has an open outage, so recoveries are noticed quickly.

    Each tick of either loop holds the target's lock for
    probe, detector update and persistence, so both loops share one failure
    counter without interleaving. Transition callbacks run afterwards on a
    per-target notifier thread, outside that lock.

    Example:
        scheduler = MonitoringScheduler(detector, gateway)
        scheduler.start(targets, intervals)
        # ... later ...
        scheduler.reconfigure(targets, new_intervals)
        scheduler.stop()
    """

    def __init__(
        self,
        detector: OutageDetector,
        gateway,
        probe_fn: Callable[[ValidTarget, float], ProbeOutcome] = probe,
        probe_timeout: float = DEFAULT_PROBE_TIMEOUT,
        on_transition: Callable[[Target, OutageTransition], None] | None = None,
        stagger_seconds: float = DEFAULT_STAGGER_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        """Initialize the scheduler.

        Args:
            detector: Outage state machine fed with every probe result.
            gateway: Store with an append_probe_result(result) method.
            probe_fn: Probe implementation taking (ValidTarget, timeout).
            probe_timeout: Upper bound for one probe in seconds.
            on_transition: Called with (target, transition) when an outage opens or closes.
            stagger_seconds: Delay between the first probes of consecutive targets.
            clock: Source of probe timestamps.
        """
        self._detector = detector
        self._gateway = gateway
        self._probe_fn = probe_fn
        self._probe_timeout = probe_timeout
        self._on_transition = on_transition
        self._stagger_seconds = stagger_seconds
        self._clock = clock

        self._state = STATE_STOPPED
        self._snapshot = _Snapshot(targets=(), intervals=DEFAULT_INTERVALS)
        self._stop_event = Event()
        self._threads: list[Thread] = []

        # Single-flight lock for start, stop and reconfigure
        self._lifecycle_lock = threading.Lock()
        self._locks_guard = threading.Lock()
        self._target_locks: dict[int, threading.RLock] = {}
        self._last_timestamps: dict[int, datetime] = {}
        # One single-worker executor per target keeps callbacks ordered per target
        self._notifiers: dict[int, ThreadPoolExecutor] = {}

    @property
    def state(self) -> str:
        return self._state

    @property
    def intervals(self) -> Intervals:
        return self._snapshot.intervals

    @property
    def targets(self) -> tuple[Target, ...]:
        return self._snapshot.targets

    @property
    def active_loop_count(self) -> int:
        return sum(1 for thread in self._threads if thread.is_alive())

    def is_running(self) -> bool:
        return self._state == STATE_RUNNING

    def status(self) -> dict:
        """Summary of the scheduler for the status API."""
        snapshot = self._snapshot
        return {
            "state": self._state,
            "intervals": snapshot.intervals.to_dict(),
            "targets": sum(1 for target in snapshot.targets if target.active),
            "loops": self.active_loop_count,
        }

    def start(
        self,
        targets: Iterable[Target] | None = None,
        intervals: Intervals | None = None,
    ) -> None:
        """Start loops for every active target.

        Args:
            targets: Targets to monitor; defaults to the last snapshot.
            intervals: Probe cadences; defaults to the last snapshot.

        Raises:
            AlreadyRunningError: If the scheduler is not stopped.
        """
        with self._lifecycle_lock:
            if self._state != STATE_STOPPED:
                raise AlreadyRunningError(f"Scheduler is {self._state}")
            self._launch(self._make_snapshot(targets, intervals))
            self._state = STATE_RUNNING

    def stop(self, timeout: float = DEFAULT_STOP_TIMEOUT) -> None:
        """Stop all loops and wait for in-flight ticks.

        No probe result is recorded after this returns. Calling stop() on a
        stopped scheduler does nothing.
        """
        with self._lifecycle_lock:
            if self._state == STATE_STOPPED:
                return
            logger.info("Stopping scheduler...")
            self._halt(timeout)
            self._shutdown_notifiers()
            self._state = STATE_STOPPED
            logger.info("Scheduler stopped")

    def reconfigure(
        self,
        targets: Iterable[Target] | None = None,
        intervals: Intervals | None = None,
    ) -> None:
        """Replace targets and/or intervals.

        The old loops are fully stopped before new ones start. Concurrent
        calls are serialized, so the last call wins and only one set of
        loops ever runs. When stopped, the new values are kept for the next
        start().
        """
        with self._lifecycle_lock:
            snapshot = self._make_snapshot(targets, intervals)
            if self._state == STATE_STOPPED:
                self._snapshot = snapshot
                logger.debug("Scheduler stopped, stored new configuration")
                return

            self._state = STATE_RECONFIGURING
            try:
                self._halt(DEFAULT_STOP_TIMEOUT)
                self._launch(snapshot)
            except Exception:
                self._state = STATE_STOPPED
                raise
            self._state = STATE_RUNNING
            logger.info(
                "Scheduler reconfigured: check every %gs, outage check every %gs, %d targets",
                snapshot.intervals.check_interval_seconds,
                snapshot.intervals.outage_check_interval_seconds,
                len(snapshot.targets),
            )

    def _make_snapshot(self, targets: Iterable[Target] | None, intervals: Intervals | None) -> _Snapshot:
        return _Snapshot(
            targets=tuple(targets) if targets is not None else self._snapshot.targets,
            intervals=intervals if intervals is not None else self._snapshot.intervals,
        )

    def _launch(self, snapshot: _Snapshot) -> None:
        """Start a new generation of loops. Caller holds the lifecycle lock."""
        previous_ids = {target.id for target in self._snapshot.targets}
        self._snapshot = snapshot
        self._stop_event = stop_event = Event()
        self._threads = []

        scheduled: list[tuple[Target, ValidTarget]] = []
        for target in snapshot.targets:
            if not target.active:
                continue
            validated = validate_target(target.address)
            if isinstance(validated, InvalidTarget):
                logger.error("Skipping target %s: %s", target.address, validated.message)
                continue
            scheduled.append((target, validated))

        # Removed targets are re-read from the store if they come back
        for target_id in previous_ids - {target.id for target, _ in scheduled}:
            self._detector.forget(target_id)

        check_interval = snapshot.intervals.check_interval_seconds
        outage_interval = snapshot.intervals.outage_check_interval_seconds

        for index, (target, validated) in enumerate(scheduled):
            initial_delay = (index * self._stagger_seconds) % check_interval
            self._spawn(
                f"probe-{target.id}",
                self._probe_loop,
                (target, validated, check_interval, initial_delay, stop_event),
            )
            self._spawn(
                f"verify-{target.id}",
                self._verify_loop,
                (target, validated, outage_interval, stop_event),
            )

        logger.info(
            "Scheduler started with %d targets (%d loops)",
            len(scheduled),
            len(self._threads),
        )

    def _spawn(self, name: str, loop: Callable, args: tuple) -> None:
        thread = Thread(target=loop, args=args, daemon=True, name=name)
        self._threads.append(thread)
        thread.start()

    def _halt(self, timeout: float) -> None:
        """Stop the current generation. Caller holds the lifecycle lock."""
        self._stop_event.set()

        current = threading.current_thread()
        for thread in self._threads:
            if thread is current:
                continue
            thread.join(timeout=timeout)
            if thread.is_alive():
                logger.warning("Loop %s did not stop within %.1fs", thread.name, timeout)

        # A tick still inside its probe checks the stop flag before recording;
        # passing every target lock waits for such ticks to finish.
        with self._locks_guard:
            locks = list(self._target_locks.values())
        for lock in locks:
            with lock:
                pass

        self._threads = []

    def _target_lock(self, target_id: int) -> threading.RLock:
        with self._locks_guard:
            lock = self._target_locks.get(target_id)
            if lock is None:
                lock = threading.RLock()
                self._target_locks[target_id] = lock
            return lock

    def _notifier(self, target_id: int) -> ThreadPoolExecutor:
        with self._locks_guard:
            executor = self._notifiers.get(target_id)
            if executor is None:
                executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"notify-{target_id}")
                self._notifiers[target_id] = executor
            return executor

    def _shutdown_notifiers(self) -> None:
        """Let queued callbacks finish in the background without waiting for them."""
        with self._locks_guard:
            executors = list(self._notifiers.values())
            self._notifiers.clear()
        for executor in executors:
            executor.shutdown(wait=False)

    def _probe_timeout_for(self, interval: float) -> float:
        return min(self._probe_timeout, interval * PROBE_TIMEOUT_RATIO)

    def _run_every(self, interval: float, initial_delay: float, stop_event: Event, tick: Callable[[], None]) -> None:
        """Call tick at a fixed rate until stop_event is set. Missed ticks are skipped."""
        next_tick = time.monotonic() + initial_delay
        while True:
            if stop_event.wait(timeout=max(0.0, next_tick - time.monotonic())):
                return
            try:
                tick()
            except Exception:
                logger.exception("Tick failed in %s", threading.current_thread().name)
            next_tick += interval
            now = time.monotonic()
            if next_tick <= now:
                skipped = int((now - next_tick) // interval) + 1
                next_tick += skipped * interval
                logger.debug("Skipped %d tick(s) after a slow probe", skipped)

    def _probe_loop(
        self,
        target: Target,
        validated: ValidTarget,
        interval: float,
        initial_delay: float,
        stop_event: Event,
    ) -> None:
        logger.debug("Probe loop for %s started (every %gs)", target.label, interval)
        timeout = self._probe_timeout_for(interval)
        self._run_every(
            interval,
            initial_delay,
            stop_event,
            lambda: self._tick(target, validated, timeout, stop_event),
        )
        logger.debug("Probe loop for %s exited", target.label)

    def _verify_loop(self, target: Target, validated: ValidTarget, interval: float, stop_event: Event) -> None:
        logger.debug("Verification loop for %s started (every %gs)", target.label, interval)
        timeout = self._probe_timeout_for(interval)

        def verify() -> None:
            if self._detector.has_open_outage(target.id):
                self._tick(target, validated, timeout, stop_event)

        self._run_every(interval, interval, stop_event, verify)
        logger.debug("Verification loop for %s exited", target.label)

    def _next_timestamp(self, target_id: int) -> datetime:
        """Return a timestamp strictly after the previous one for this target."""
        timestamp = self._clock()
        last = self._last_timestamps.get(target_id)
        if last is not None and timestamp <= last:
            timestamp = last + timedelta(microseconds=1)
        self._last_timestamps[target_id] = timestamp
        return timestamp

    def _tick(self, target: Target, validated: ValidTarget, timeout: float, stop_event: Event) -> None:
        """Probe once, update outage state and persist, then hand off any transition."""
        transition = self._record_tick(target, validated, timeout, stop_event)
        if transition is not None and transition.changed and self._on_transition is not None:
            self._notifier(target.id).submit(self._deliver, target, transition)

    def _deliver(self, target: Target, transition: OutageTransition) -> None:
        try:
            self._on_transition(target, transition)
        except Exception as e:
            logger.error("Transition callback failed for %s: %s", target.label, e)

    def _record_tick(
        self,
        target: Target,
        validated: ValidTarget,
        timeout: float,
        stop_event: Event,
    ) -> OutageTransition | None:
        """Probe, record and persist under the target lock. Returns None if stopped."""
        with self._target_lock(target.id):
            if stop_event.is_set():
                return None

            timestamp = self._next_timestamp(target.id)
            try:
                outcome = self._probe_fn(validated, timeout)
            except Exception as e:
                logger.error("Probe of %s raised: %s", target.label, e)
                outcome = ProbeOutcome(status=STATUS_UNREACHABLE, error_message=str(e))

            if stop_event.is_set():
                return None

            result = ProbeResult(target_id=target.id, timestamp=timestamp, outcome=outcome)
            logger.debug(
                "%s: %s (%s ms)",
                target.label,
                outcome.status,
                f"{outcome.latency_ms:.1f}" if outcome.latency_ms is not None else "-",
            )

            transition = self._detector.record(target, result)

            try:
                self._gateway.append_probe_result(result)
            except Exception as e:
                logger.error("Failed to store probe result for %s: %s", target.label, e)

            return transition
