"""Runtime settings: monitoring intervals and the target list."""

import logging
import sqlite3
import threading
from collections.abc import Callable

from .config import DEFAULT_INTERVALS, ConfigError, Intervals, TargetConfig, check_interval_bounds
from .database import (
    DatabaseError,
    delete_settings,
    get_settings,
    get_target_by_address,
    insert_target,
    list_targets,
    set_settings,
)
from .database import set_target_active as db_set_target_active
from .models import Target
from .validator import InvalidTarget, validate_target

logger = logging.getLogger(__name__)

CHECK_INTERVAL_KEY = "check_interval_seconds"
OUTAGE_CHECK_INTERVAL_KEY = "outage_check_interval_seconds"
INTERVAL_KEYS = (CHECK_INTERVAL_KEY, OUTAGE_CHECK_INTERVAL_KEY)

DUPLICATE_TARGET_MESSAGE = "Target already exists"

ChangeListener = Callable[[list[Target], Intervals], None]


class ValidationError(Exception):
    """Raised when user supplied settings or targets are rejected.

    Attributes:
        reason: Optional machine readable reason.
    """

    def __init__(self, message: str, reason: str | None = None) -> None:
        super().__init__(message)
        self.reason = reason


def _to_number(value: str) -> int | float:
    number = float(value)
    return int(number) if number.is_integer() else number


def parse_intervals(payload: object) -> Intervals:
    """Validate an interval update request.

    Both values are required, must be numbers (booleans are rejected), and
    must fall inside the supported range.

    Raises:
        ValidationError: If the payload is rejected.
    """
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object")

    values = {}
    for key in INTERVAL_KEYS:
        if key not in payload:
            raise ValidationError(f"'{key}' is required")
        value = payload[key]
        if isinstance(value, bool) or not isinstance(value, int | float):
            raise ValidationError(f"'{key}' must be a number")
        if value <= 0:
            raise ValidationError(f"'{key}' must be positive")
        values[key] = value

    try:
        intervals = Intervals(**values)
        check_interval_bounds(intervals)
    except ConfigError as e:
        raise ValidationError(str(e))
    return intervals


class SettingsStore:
    """Reads and writes runtime settings, notifying subscribers on change.

    Intervals stored in the database override the configured defaults.
    Listeners are called with the current (active targets, intervals) after
    every successful change.

    Each change holds one lock across write, read-back and notification, so
    listeners see changes in the order they were written and the last
    notification always matches the stored values.
    """

    def __init__(self, conn: sqlite3.Connection, defaults: Intervals = DEFAULT_INTERVALS) -> None:
        self._conn = conn
        self._defaults = defaults
        self._listeners: list[ChangeListener] = []
        self._listeners_lock = threading.Lock()
        self._change_lock = threading.RLock()

    @property
    def defaults(self) -> Intervals:
        return self._defaults

    def subscribe(self, listener: ChangeListener) -> None:
        with self._listeners_lock:
            self._listeners.append(listener)

    def _notify(self) -> None:
        with self._listeners_lock:
            listeners = list(self._listeners)
        if not listeners:
            return
        targets = self.read_targets()
        intervals = self.read_intervals()
        for listener in listeners:
            try:
                listener(targets, intervals)
            except Exception as e:
                logger.error("Settings listener failed: %s", e)

    def _stored_intervals(self) -> Intervals | None:
        """Return intervals stored in the database, None if absent or unusable."""
        try:
            stored = get_settings(self._conn)
        except DatabaseError as e:
            logger.warning("Failed to read interval settings, using defaults: %s", e)
            return None

        if not all(key in stored for key in INTERVAL_KEYS):
            return None
        try:
            return Intervals(
                check_interval_seconds=_to_number(stored[CHECK_INTERVAL_KEY]),
                outage_check_interval_seconds=_to_number(stored[OUTAGE_CHECK_INTERVAL_KEY]),
            )
        except (ValueError, ConfigError) as e:
            logger.warning("Ignoring invalid stored intervals: %s", e)
            return None

    def read_intervals(self) -> Intervals:
        """Current intervals: stored override or the defaults."""
        return self._stored_intervals() or self._defaults

    def is_using_defaults(self) -> bool:
        return self._stored_intervals() is None

    def update_intervals(self, intervals: Intervals) -> Intervals:
        """Persist new intervals and notify listeners.

        Raises:
            DatabaseError: If the settings cannot be written.
        """
        with self._change_lock:
            set_settings(
                self._conn,
                {
                    CHECK_INTERVAL_KEY: str(intervals.check_interval_seconds),
                    OUTAGE_CHECK_INTERVAL_KEY: str(intervals.outage_check_interval_seconds),
                },
            )
            logger.info(
                "Intervals updated: check every %gs, outage check every %gs",
                intervals.check_interval_seconds,
                intervals.outage_check_interval_seconds,
            )
            self._notify()
        return intervals

    def reset_intervals(self) -> Intervals:
        """Remove stored overrides so the defaults apply again."""
        with self._change_lock:
            delete_settings(self._conn, list(INTERVAL_KEYS))
            logger.info("Intervals reset to defaults")
            self._notify()
        return self._defaults

    def read_targets(self, include_inactive: bool = False) -> list[Target]:
        return list_targets(self._conn, include_inactive=include_inactive)

    def add_target(self, address: str, display_name: str | None = None, priority: int = 100) -> Target:
        """Validate and add a new target.

        Raises:
            ValidationError: If the address is invalid or already present.
            DatabaseError: If the insert fails.
        """
        validated = validate_target(address)
        if isinstance(validated, InvalidTarget):
            raise ValidationError(validated.message, reason=validated.reason)

        with self._change_lock:
            if get_target_by_address(self._conn, validated.address) is not None:
                raise ValidationError(DUPLICATE_TARGET_MESSAGE, reason="duplicate")

            target = insert_target(
                self._conn,
                address=validated.address,
                kind=validated.kind,
                display_name=display_name,
                priority=priority,
            )
            logger.info("Added target %s (%s)", target.address, target.kind)
            self._notify()
        return target

    def set_target_active(self, target_id: int, active: bool) -> Target | None:
        """Activate or deactivate a target. Returns None if it does not exist."""
        with self._change_lock:
            target = db_set_target_active(self._conn, target_id, active)
            if target is None:
                return None
            logger.info("Target %s %s", target.address, "activated" if active else "deactivated")
            self._notify()
        return target

    def seed_targets(self, seeds: list[TargetConfig]) -> int:
        """Insert seed targets into an empty target table.

        Returns:
            Number of targets inserted.
        """
        if list_targets(self._conn, include_inactive=True):
            return 0
        for seed in seeds:
            insert_target(
                self._conn,
                address=seed.address,
                kind=seed.kind,
                display_name=seed.name,
                priority=seed.priority,
            )
        logger.info("Seeded %d targets", len(seeds))
        return len(seeds)


class MonitoringSettings:
    """Entry point for interval changes coming from the API."""

    def __init__(self, store: SettingsStore) -> None:
        self._store = store

    def to_dict(self) -> dict:
        return {
            "current": self._store.read_intervals().to_dict(),
            "defaults": self._store.defaults.to_dict(),
            "is_using_defaults": self._store.is_using_defaults(),
        }

    def update_intervals(self, payload: object) -> Intervals:
        """Apply an update request, or a reset when payload is {"reset": true}.

        Raises:
            ValidationError: If the payload is rejected. Nothing is changed.
            DatabaseError: If the settings cannot be written.
        """
        if isinstance(payload, dict) and payload.get("reset") is True:
            return self._store.reset_intervals()
        return self._store.update_intervals(parse_intervals(payload))

    def reset(self) -> Intervals:
        return self._store.reset_intervals()
