"""SQLite persistence for targets, probe results, outages and settings."""

import sqlite3
import threading
from datetime import UTC, datetime, timedelta
from pathlib import Path

from .models import (
    STATUS_SUCCESS,
    Outage,
    ProbeOutcome,
    ProbeResult,
    Target,
    TargetStatus,
)


class DatabaseError(Exception):
    """Raised when a database operation fails."""

    pass


# Global lock for thread-safe database access.
# SQLite allows concurrent reads but only one writer at a time, and the
# connection is shared by the probe loops and the API handlers.
_db_lock = threading.Lock()


def _to_db(value: datetime) -> str:
    """Serialize a timestamp as sortable UTC ISO-8601 text."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def _from_db(value: str | None) -> datetime | None:
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def init_db(db_path: str) -> sqlite3.Connection:
    """Initialize the database and create tables if they don't exist.

    Args:
        db_path: Path to the SQLite database file.

    Returns:
        Database connection with WAL mode enabled.

    Raises:
        DatabaseError: If database initialization fails.
    """
    try:
        parent_dir = Path(db_path).parent
        if not parent_dir.exists():
            parent_dir.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row

        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")

        conn.execute("""
            CREATE TABLE IF NOT EXISTS targets (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                address TEXT NOT NULL UNIQUE,
                display_name TEXT,
                kind TEXT NOT NULL,
                active INTEGER NOT NULL DEFAULT 1,
                priority INTEGER NOT NULL DEFAULT 100,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS probe_results (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                target_id INTEGER NOT NULL REFERENCES targets(id),
                timestamp TEXT NOT NULL,
                status TEXT NOT NULL,
                latency_ms REAL,
                error_message TEXT
            )
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS outages (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                target_id INTEGER NOT NULL REFERENCES targets(id),
                started_at TEXT NOT NULL,
                ended_at TEXT,
                duration_sec INTEGER,
                consecutive_failures_at_open INTEGER NOT NULL DEFAULT 0
            )
        """)

        # Single key/value table for runtime settings (intervals)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS settings (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
        """)

        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_targets_active_priority
            ON targets(active, priority)
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_probe_results_target_timestamp
            ON probe_results(target_id, timestamp)
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_probe_results_timestamp
            ON probe_results(timestamp)
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_outages_target_ended
            ON outages(target_id, ended_at)
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_outages_started_at
            ON outages(started_at)
        """)

        conn.commit()
        return conn

    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to initialize database: {e}")
    except OSError as e:
        raise DatabaseError(f"Failed to create database directory: {e}")


# =============================================================================
# TARGETS
# =============================================================================


def _row_to_target(row: sqlite3.Row) -> Target:
    return Target(
        id=row["id"],
        address=row["address"],
        kind=row["kind"],
        active=bool(row["active"]),
        display_name=row["display_name"],
        priority=row["priority"],
    )


def insert_target(
    conn: sqlite3.Connection,
    address: str,
    kind: str,
    display_name: str | None = None,
    priority: int = 100,
    active: bool = True,
) -> Target:
    """Insert a new target.

    Raises:
        DatabaseError: If the address already exists or the insert fails.
    """
    now = _to_db(datetime.now(UTC))
    try:
        with _db_lock:
            cursor = conn.execute(
                """
                INSERT INTO targets (address, display_name, kind, active, priority, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (address, display_name, kind, 1 if active else 0, priority, now, now),
            )
            conn.commit()
            target_id = cursor.lastrowid
    except sqlite3.IntegrityError:
        raise DatabaseError(f"Target already exists: {address}")
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to insert target: {e}")

    return Target(
        id=target_id,
        address=address,
        kind=kind,
        active=active,
        display_name=display_name,
        priority=priority,
    )


def get_target(conn: sqlite3.Connection, target_id: int) -> Target | None:
    """Get a target by id."""
    try:
        with _db_lock:
            row = conn.execute("SELECT * FROM targets WHERE id = ?", (target_id,)).fetchone()
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to get target: {e}")
    return _row_to_target(row) if row else None


def get_target_by_address(conn: sqlite3.Connection, address: str) -> Target | None:
    """Get a target by address."""
    try:
        with _db_lock:
            row = conn.execute("SELECT * FROM targets WHERE address = ?", (address,)).fetchone()
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to get target: {e}")
    return _row_to_target(row) if row else None


def list_targets(conn: sqlite3.Connection, include_inactive: bool = False) -> list[Target]:
    """List targets ordered by priority, then id.

    Args:
        conn: Database connection.
        include_inactive: Also return deactivated targets.
    """
    query = "SELECT * FROM targets"
    if not include_inactive:
        query += " WHERE active = 1"
    query += " ORDER BY priority ASC, id ASC"
    try:
        with _db_lock:
            rows = conn.execute(query).fetchall()
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to list targets: {e}")
    return [_row_to_target(row) for row in rows]


def set_target_active(conn: sqlite3.Connection, target_id: int, active: bool) -> Target | None:
    """Activate or deactivate a target. Returns None if it does not exist."""
    try:
        with _db_lock:
            cursor = conn.execute(
                "UPDATE targets SET active = ?, updated_at = ? WHERE id = ?",
                (1 if active else 0, _to_db(datetime.now(UTC)), target_id),
            )
            conn.commit()
            if cursor.rowcount == 0:
                return None
            row = conn.execute("SELECT * FROM targets WHERE id = ?", (target_id,)).fetchone()
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to update target: {e}")
    return _row_to_target(row)


# =============================================================================
# PROBE RESULTS
# =============================================================================


def _row_to_probe_result(row: sqlite3.Row) -> ProbeResult:
    return ProbeResult(
        target_id=row["target_id"],
        timestamp=_from_db(row["timestamp"]),
        outcome=ProbeOutcome(
            status=row["status"],
            latency_ms=row["latency_ms"],
            error_message=row["error_message"],
        ),
    )


def insert_probe_result(conn: sqlite3.Connection, result: ProbeResult) -> None:
    """Append a probe result.

    Raises:
        DatabaseError: If the insert fails.
    """
    try:
        with _db_lock:
            conn.execute(
                """
                INSERT INTO probe_results (target_id, timestamp, status, latency_ms, error_message)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    result.target_id,
                    _to_db(result.timestamp),
                    result.outcome.status,
                    result.outcome.latency_ms,
                    result.outcome.error_message,
                ),
            )
            conn.commit()
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to insert probe result: {e}")


def get_recent_results(conn: sqlite3.Connection, target_id: int, limit: int) -> list[ProbeResult]:
    """Get the most recent probe results for a target, newest first."""
    try:
        with _db_lock:
            rows = conn.execute(
                """
                SELECT * FROM probe_results
                WHERE target_id = ?
                ORDER BY timestamp DESC, id DESC
                LIMIT ?
                """,
                (target_id, limit),
            ).fetchall()
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to get recent results: {e}")
    return [_row_to_probe_result(row) for row in rows]


def get_history(
    conn: sqlite3.Connection,
    target_id: int,
    since: datetime,
    limit: int | None = None,
) -> list[ProbeResult]:
    """Get probe results for a target since a timestamp, newest first."""
    query = """
        SELECT * FROM probe_results
        WHERE target_id = ? AND timestamp >= ?
        ORDER BY timestamp DESC, id DESC
    """
    params: tuple = (target_id, _to_db(since))
    if limit is not None:
        query += " LIMIT ?"
        params = params + (limit,)
    try:
        with _db_lock:
            rows = conn.execute(query, params).fetchall()
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to get history: {e}")
    return [_row_to_probe_result(row) for row in rows]


# =============================================================================
# OUTAGES
# =============================================================================


def _row_to_outage(row: sqlite3.Row) -> Outage:
    return Outage(
        id=row["id"],
        target_id=row["target_id"],
        started_at=_from_db(row["started_at"]),
        ended_at=_from_db(row["ended_at"]),
        consecutive_failures_at_open=row["consecutive_failures_at_open"],
    )


def insert_outage(conn: sqlite3.Connection, outage: Outage) -> int:
    """Insert an outage (open or already closed) and return its id.

    Raises:
        DatabaseError: If the insert fails.
    """
    try:
        with _db_lock:
            cursor = conn.execute(
                """
                INSERT INTO outages (target_id, started_at, ended_at, duration_sec, consecutive_failures_at_open)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    outage.target_id,
                    _to_db(outage.started_at),
                    _to_db(outage.ended_at) if outage.ended_at else None,
                    outage.duration_seconds,
                    outage.consecutive_failures_at_open,
                ),
            )
            conn.commit()
            return cursor.lastrowid
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to insert outage: {e}")


def close_outage(conn: sqlite3.Connection, outage_id: int, ended_at: datetime) -> bool:
    """Close an open outage and store its duration.

    Returns:
        True if an open outage was closed, False if none matched.

    Raises:
        DatabaseError: If the update fails.
    """
    try:
        with _db_lock:
            row = conn.execute(
                "SELECT started_at FROM outages WHERE id = ? AND ended_at IS NULL",
                (outage_id,),
            ).fetchone()
            if row is None:
                return False
            started_at = _from_db(row["started_at"])
            duration_sec = int((ended_at.astimezone(UTC) - started_at).total_seconds())
            conn.execute(
                "UPDATE outages SET ended_at = ?, duration_sec = ? WHERE id = ?",
                (_to_db(ended_at), duration_sec, outage_id),
            )
            conn.commit()
            return True
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to close outage: {e}")


def find_open_outage(conn: sqlite3.Connection, target_id: int) -> Outage | None:
    """Get the currently open outage for a target, if any."""
    try:
        with _db_lock:
            row = conn.execute(
                """
                SELECT * FROM outages
                WHERE target_id = ? AND ended_at IS NULL
                ORDER BY started_at DESC
                LIMIT 1
                """,
                (target_id,),
            ).fetchone()
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to find open outage: {e}")
    return _row_to_outage(row) if row else None


def list_outages(
    conn: sqlite3.Connection,
    target_id: int | None = None,
    limit: int = 50,
) -> list[Outage]:
    """List outages, newest first, optionally for a single target."""
    query = "SELECT * FROM outages"
    params: tuple = ()
    if target_id is not None:
        query += " WHERE target_id = ?"
        params = (target_id,)
    query += " ORDER BY started_at DESC, id DESC LIMIT ?"
    params = params + (limit,)
    try:
        with _db_lock:
            rows = conn.execute(query, params).fetchall()
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to list outages: {e}")
    return [_row_to_outage(row) for row in rows]


# =============================================================================
# STATUS
# =============================================================================


def get_target_statuses(conn: sqlite3.Connection, now: datetime | None = None) -> list[TargetStatus]:
    """Build a status summary for every active target.

    Includes the latest probe, 24h uptime and average latency, and the
    currently open outage.
    """
    now = now or datetime.now(UTC)
    since = _to_db(now - timedelta(hours=24))
    targets = list_targets(conn)

    statuses: list[TargetStatus] = []
    try:
        with _db_lock:
            for target in targets:
                last = conn.execute(
                    """
                    SELECT status, latency_ms, timestamp FROM probe_results
                    WHERE target_id = ?
                    ORDER BY timestamp DESC, id DESC
                    LIMIT 1
                    """,
                    (target.id,),
                ).fetchone()
                stats = conn.execute(
                    """
                    SELECT
                        COUNT(*) AS total,
                        SUM(CASE WHEN status = ? THEN 1 ELSE 0 END) AS up,
                        AVG(CASE WHEN status = ? THEN latency_ms END) AS avg_latency
                    FROM probe_results
                    WHERE target_id = ? AND timestamp >= ?
                    """,
                    (STATUS_SUCCESS, STATUS_SUCCESS, target.id, since),
                ).fetchone()
                outage_row = conn.execute(
                    """
                    SELECT * FROM outages
                    WHERE target_id = ? AND ended_at IS NULL
                    ORDER BY started_at DESC
                    LIMIT 1
                    """,
                    (target.id,),
                ).fetchone()

                total = stats["total"] or 0
                up = stats["up"] or 0
                statuses.append(
                    TargetStatus(
                        target=target,
                        last_status=last["status"] if last else None,
                        last_latency_ms=last["latency_ms"] if last else None,
                        last_probe_at=_from_db(last["timestamp"]) if last else None,
                        probes_24h=total,
                        uptime_24h=(up / total * 100.0) if total else 0.0,
                        avg_latency_24h=stats["avg_latency"],
                        open_outage=_row_to_outage(outage_row) if outage_row else None,
                    )
                )
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to get target statuses: {e}")

    return statuses


# =============================================================================
# SETTINGS
# =============================================================================


def get_settings(conn: sqlite3.Connection) -> dict[str, str]:
    """Get all stored settings as a key/value mapping."""
    try:
        with _db_lock:
            rows = conn.execute("SELECT key, value FROM settings").fetchall()
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to read settings: {e}")
    return {row["key"]: row["value"] for row in rows}


def set_settings(conn: sqlite3.Connection, values: dict[str, str]) -> None:
    """Insert or replace several settings in one transaction."""
    try:
        with _db_lock:
            conn.executemany(
                "INSERT OR REPLACE INTO settings (key, value) VALUES (?, ?)",
                list(values.items()),
            )
            conn.commit()
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to write settings: {e}")


def delete_settings(conn: sqlite3.Connection, keys: list[str]) -> None:
    """Delete settings by key; missing keys are ignored."""
    try:
        with _db_lock:
            conn.executemany("DELETE FROM settings WHERE key = ?", [(key,) for key in keys])
            conn.commit()
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to delete settings: {e}")


# =============================================================================
# RETENTION
# =============================================================================


def cleanup_old_results(conn: sqlite3.Connection, retention_days: int) -> int:
    """Delete probe results and closed outages older than the retention period.

    Args:
        conn: Database connection.
        retention_days: Number of days to keep.

    Returns:
        Number of probe results deleted.

    Raises:
        DatabaseError: If the cleanup fails.
    """
    cutoff = _to_db(datetime.now(UTC) - timedelta(days=retention_days))
    try:
        with _db_lock:
            cursor = conn.execute("DELETE FROM probe_results WHERE timestamp < ?", (cutoff,))
            deleted = cursor.rowcount
            conn.execute("DELETE FROM outages WHERE ended_at IS NOT NULL AND ended_at < ?", (cutoff,))
            conn.commit()
            return deleted
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to cleanup old results: {e}")


def delete_all_results(conn: sqlite3.Connection) -> int:
    """Delete every probe result and outage. Targets and settings are kept.

    Returns:
        Number of probe results deleted.
    """
    try:
        with _db_lock:
            cursor = conn.execute("DELETE FROM probe_results")
            deleted = cursor.rowcount
            conn.execute("DELETE FROM outages")
            conn.commit()
            return deleted
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to delete results: {e}")


class SqliteGateway:
    """Persistence operations used by the outage detector and scheduler."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    def append_probe_result(self, result: ProbeResult) -> None:
        insert_probe_result(self._conn, result)

    def open_outage(self, outage: Outage) -> int:
        return insert_outage(self._conn, outage)

    def close_outage(self, outage_id: int, ended_at: datetime) -> bool:
        return close_outage(self._conn, outage_id, ended_at)

    def find_open_outage(self, target_id: int) -> Outage | None:
        return find_open_outage(self._conn, target_id)

    def recent_probe_results(self, target_id: int, limit: int) -> list[ProbeResult]:
        return get_recent_results(self._conn, target_id, limit)
