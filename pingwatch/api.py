"""HTTP API server for connectivity status, outages and settings."""

import json
import logging
import re
import sqlite3
import threading
import time
from collections import defaultdict
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import parse_qs, urlsplit

from .config import ApiConfig
from .database import DatabaseError, get_target_statuses, list_outages, list_targets
from .models import Outage, Target, TargetStatus
from .network_info import ExternalFetchError, NetworkInfoService
from .probe import TargetCheck, check_target
from .scheduler import MonitoringScheduler
from .settings import DUPLICATE_TARGET_MESSAGE, MonitoringSettings, SettingsStore, ValidationError

logger = logging.getLogger(__name__)

# Rate limiting configuration.
# Allows 60 requests per minute per IP.
RATE_LIMIT_MAX_REQUESTS = 60
RATE_LIMIT_WINDOW_SECONDS = 60

# Request bodies larger than this are rejected with 413.
MAX_BODY_BYTES = 16 * 1024

OUTAGES_DEFAULT_LIMIT = 50
OUTAGES_MAX_LIMIT = 500

NETWORK_INFO_ERROR = "Unable to fetch network information"

_TARGET_PATH_RE = re.compile(r"/targets/(\d+)")


class RateLimiter:
    """Simple sliding window rate limiter by IP address.

    Allows up to max_requests requests per IP within the time window.
    Thread-safe for use in multi-threaded HTTP server.
    """

    def __init__(
        self,
        max_requests: int = RATE_LIMIT_MAX_REQUESTS,
        window_seconds: int = RATE_LIMIT_WINDOW_SECONDS,
    ) -> None:
        self._max_requests = max_requests
        self._window_seconds = window_seconds
        self._requests: Dict[str, List[float]] = defaultdict(list)
        self._lock = threading.Lock()

    def is_allowed(self, client_ip: str) -> bool:
        """Record a request and report whether it is within the limit."""
        now = time.monotonic()
        cutoff = now - self._window_seconds

        with self._lock:
            timestamps = self._requests[client_ip]
            timestamps[:] = [ts for ts in timestamps if ts > cutoff]

            if len(timestamps) >= self._max_requests:
                return False

            timestamps.append(now)
            return True

    def cleanup(self) -> None:
        """Remove IPs with no requests inside the window."""
        cutoff = time.monotonic() - self._window_seconds

        with self._lock:
            for ip in list(self._requests):
                timestamps = [ts for ts in self._requests[ip] if ts > cutoff]
                if timestamps:
                    self._requests[ip] = timestamps
                else:
                    del self._requests[ip]


class ApiError(Exception):
    """Raised when an API operation fails."""

    pass


class _BadRequest(Exception):
    def __init__(self, code: int, message: str) -> None:
        super().__init__(message)
        self.code = code


def _iso(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _target_to_dict(target: Target) -> Dict[str, Any]:
    return {
        "id": target.id,
        "address": target.address,
        "kind": target.kind,
        "display_name": target.label,
        "priority": target.priority,
        "active": target.active,
    }


def _outage_to_dict(outage: Outage) -> Dict[str, Any]:
    return {
        "id": outage.id,
        "target_id": outage.target_id,
        "started_at": _iso(outage.started_at),
        "ended_at": _iso(outage.ended_at),
        "duration_seconds": outage.duration_seconds,
        "consecutive_failures": outage.consecutive_failures_at_open,
        "is_open": outage.is_open,
    }


def _target_status_to_dict(status: TargetStatus) -> Dict[str, Any]:
    data = _target_to_dict(status.target)
    data.update(
        {
            "is_up": status.is_up,
            "last_status": status.last_status,
            "last_latency_ms": status.last_latency_ms,
            "last_probe_at": _iso(status.last_probe_at),
            "probes_24h": status.probes_24h,
            "uptime_24h": round(status.uptime_24h, 2),
            "avg_latency_24h": round(status.avg_latency_24h, 2) if status.avg_latency_24h is not None else None,
            "open_outage": _outage_to_dict(status.open_outage) if status.open_outage else None,
        }
    )
    return data


def _build_status_response(statuses: List[TargetStatus]) -> Dict[str, Any]:
    """Build the full status response with summary."""
    up_count = sum(1 for s in statuses if s.is_up)
    in_outage = sum(1 for s in statuses if s.open_outage is not None)

    return {
        "targets": [_target_status_to_dict(s) for s in statuses],
        "summary": {
            "total": len(statuses),
            "up": up_count,
            "down": len(statuses) - up_count,
            "in_outage": in_outage,
        },
    }


class StatusHandler(BaseHTTPRequestHandler):
    """HTTP request handler for the JSON API."""

    # Class-level references set by factory
    db_conn: Optional[sqlite3.Connection] = None
    rate_limiter: Optional[RateLimiter] = None
    settings_store: Optional[SettingsStore] = None
    network_info: Optional[NetworkInfoService] = None
    scheduler: Optional[MonitoringScheduler] = None
    target_checker: Callable[[str], TargetCheck] = staticmethod(check_target)

    def log_message(self, format: str, *args: Any) -> None:
        """Override to use Python logging instead of stderr."""
        logger.debug("API %s - %s", self.address_string(), format % args)

    def _check_rate_limit(self) -> bool:
        """Return False (after sending 429) if the client is over the limit."""
        if self.rate_limiter is None:
            return True

        client_ip = self.client_address[0]
        if not self.rate_limiter.is_allowed(client_ip):
            logger.warning("Rate limit exceeded for %s", client_ip)
            self._send_error_json(429, "Rate limit exceeded. Try again later.")
            return False
        return True

    def _send_json(self, code: int, data: Dict[str, Any]) -> None:
        """Send a JSON response with the given status code."""
        body = json.dumps(data, indent=2).encode("utf-8")
        self.send_response(code)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.send_header("Connection", "close")
        self.end_headers()
        self.wfile.write(body)

    def _send_error_json(self, code: int, message: str, **extra: Any) -> None:
        """Send a JSON error response."""
        self._send_json(code, {"error": message, **extra})

    def _read_json(self) -> Any:
        """Read and decode the request body.

        Raises:
            _BadRequest: If the body is missing, too large or not JSON.
        """
        try:
            length = int(self.headers.get("Content-Length", 0))
        except ValueError:
            raise _BadRequest(400, "Invalid Content-Length")
        if length > MAX_BODY_BYTES:
            raise _BadRequest(413, "Request body too large")
        if length <= 0:
            raise _BadRequest(400, "Request body is required")

        raw = self.rfile.read(length)
        try:
            return json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise _BadRequest(400, "Request body must be valid JSON")

    def _dispatch(self, routes: Dict[str, Callable[[], None]], path: str) -> None:
        handler = routes.get(path)
        if handler is None:
            self._send_error_json(404, "Not found")
            return
        handler()

    def _handle(self, method: str) -> None:
        if not self._check_rate_limit():
            return

        parsed = urlsplit(self.path)
        path = parsed.path.rstrip("/") or "/"
        query = parse_qs(parsed.query)

        try:
            if method == "GET":
                self._dispatch(
                    {
                        "/health": self._handle_health,
                        "/status": self._handle_status,
                        "/outages": lambda: self._handle_outages(query),
                        "/network-info": self._handle_network_info,
                        "/settings/monitoring": self._handle_get_monitoring,
                        "/targets": self._handle_list_targets,
                    },
                    path,
                )
            elif method == "POST":
                self._dispatch(
                    {
                        "/settings/monitoring": self._handle_update_monitoring,
                        "/targets": self._handle_add_target,
                        "/targets/validate": self._handle_validate_target,
                    },
                    path,
                )
            elif method == "PUT":
                match = _TARGET_PATH_RE.fullmatch(path)
                if match is None:
                    self._send_error_json(404, "Not found")
                else:
                    self._handle_update_target(int(match.group(1)))
        except _BadRequest as e:
            self._send_error_json(e.code, str(e))
        except DatabaseError as e:
            logger.error("Database error in %s %s: %s", method, path, e)
            self._send_error_json(500, "Database error")
        except Exception as e:
            logger.exception("Error handling %s request: %s", method, e)
            self._send_error_json(500, "Internal server error")

    def do_GET(self) -> None:
        """Handle GET requests."""
        self._handle("GET")

    def do_POST(self) -> None:
        """Handle POST requests."""
        self._handle("POST")

    def do_PUT(self) -> None:
        """Handle PUT requests."""
        self._handle("PUT")

    def _require_db(self) -> sqlite3.Connection:
        if self.db_conn is None:
            raise _BadRequest(503, "Database not available")
        return self.db_conn

    def _require_settings(self) -> SettingsStore:
        if self.settings_store is None:
            raise _BadRequest(503, "Settings not available")
        return self.settings_store

    def _handle_health(self) -> None:
        self._send_json(200, {"status": "ok"})

    def _handle_status(self) -> None:
        """Handle GET /status endpoint."""
        statuses = get_target_statuses(self._require_db())
        response = _build_status_response(statuses)
        response["scheduler"] = self.scheduler.status() if self.scheduler is not None else None
        self._send_json(200, response)

    def _handle_outages(self, query: Dict[str, List[str]]) -> None:
        """Handle GET /outages?target_id=&limit= endpoint."""
        try:
            limit = int(query.get("limit", [OUTAGES_DEFAULT_LIMIT])[0])
            target_id = int(query["target_id"][0]) if "target_id" in query else None
        except ValueError:
            raise _BadRequest(400, "limit and target_id must be integers")
        limit = max(1, min(limit, OUTAGES_MAX_LIMIT))

        outages = list_outages(self._require_db(), target_id=target_id, limit=limit)
        self._send_json(
            200,
            {
                "outages": [_outage_to_dict(o) for o in outages],
                "count": len(outages),
            },
        )

    def _handle_network_info(self) -> None:
        """Handle GET /network-info endpoint."""
        if self.network_info is None:
            self._send_error_json(503, "Network information not available")
            return

        try:
            info = self.network_info.get()
        except ExternalFetchError as e:
            logger.error("Network info fetch failed: %s", e)
            self._send_error_json(500, NETWORK_INFO_ERROR, details=str(e))
            return

        data = info.to_dict()
        age = self.network_info.cache_age
        data["cache_age_seconds"] = round(age, 1) if age is not None else None
        data["stale"] = self.network_info.is_stale
        self._send_json(200, data)

    def _handle_get_monitoring(self) -> None:
        self._send_json(200, MonitoringSettings(self._require_settings()).to_dict())

    def _handle_update_monitoring(self) -> None:
        """Handle POST /settings/monitoring endpoint."""
        monitoring = MonitoringSettings(self._require_settings())
        payload = self._read_json()
        try:
            monitoring.update_intervals(payload)
        except ValidationError as e:
            self._send_error_json(400, str(e))
            return
        self._send_json(200, monitoring.to_dict())

    def _handle_list_targets(self) -> None:
        targets = list_targets(self._require_db(), include_inactive=True)
        self._send_json(200, {"targets": [_target_to_dict(t) for t in targets]})

    def _handle_add_target(self) -> None:
        """Handle POST /targets endpoint."""
        store = self._require_settings()
        payload = self._read_json()
        if not isinstance(payload, dict):
            raise _BadRequest(400, "Request body must be a JSON object")

        display_name = payload.get("display_name")
        priority = payload.get("priority", 100)
        if display_name is not None and not isinstance(display_name, str):
            raise _BadRequest(400, "'display_name' must be a string")
        if isinstance(priority, bool) or not isinstance(priority, int) or priority < 1:
            raise _BadRequest(400, "'priority' must be a positive integer")

        try:
            target = store.add_target(payload.get("address"), display_name=display_name, priority=priority)
        except ValidationError as e:
            extra = {"reason": e.reason} if e.reason else {}
            self._send_error_json(400, str(e), **extra)
            return
        self._send_json(201, {"target": _target_to_dict(target)})

    def _handle_update_target(self, target_id: int) -> None:
        """Handle PUT /targets/<id> endpoint."""
        store = self._require_settings()
        payload = self._read_json()
        if not isinstance(payload, dict) or not isinstance(payload.get("active"), bool):
            raise _BadRequest(400, "'active' must be a boolean")

        target = store.set_target_active(target_id, payload["active"])
        if target is None:
            self._send_error_json(404, "Target not found")
            return
        self._send_json(200, {"target": _target_to_dict(target)})

    def _handle_validate_target(self) -> None:
        """Handle POST /targets/validate endpoint."""
        payload = self._read_json()
        if not isinstance(payload, dict) or not isinstance(payload.get("address"), str):
            raise _BadRequest(400, "'address' is required")

        result = self.target_checker(payload["address"])
        self._send_json(200 if result.valid else 400, result.to_dict())


def _create_handler_class(
    db_conn: sqlite3.Connection,
    rate_limiter: Optional[RateLimiter] = None,
    settings_store: Optional[SettingsStore] = None,
    network_info: Optional[NetworkInfoService] = None,
    scheduler: Optional[MonitoringScheduler] = None,
    target_checker: Optional[Callable[[str], TargetCheck]] = None,
) -> type:
    """Create a handler class with the collaborators bound."""

    class BoundStatusHandler(StatusHandler):
        pass

    BoundStatusHandler.db_conn = db_conn
    BoundStatusHandler.rate_limiter = rate_limiter
    BoundStatusHandler.settings_store = settings_store
    BoundStatusHandler.network_info = network_info
    BoundStatusHandler.scheduler = scheduler
    if target_checker is not None:
        BoundStatusHandler.target_checker = staticmethod(target_checker)
    return BoundStatusHandler


class ApiServer:
    """Threaded HTTP server for the JSON API."""

    def __init__(
        self,
        config: ApiConfig,
        db_conn: sqlite3.Connection,
        settings_store: Optional[SettingsStore] = None,
        network_info: Optional[NetworkInfoService] = None,
        scheduler: Optional[MonitoringScheduler] = None,
        target_checker: Optional[Callable[[str], TargetCheck]] = None,
    ) -> None:
        """Initialize the API server.

        Args:
            config: API configuration.
            db_conn: Database connection for status and outage queries.
            settings_store: Settings layer for intervals and targets.
            network_info: Cached public address / geolocation lookup.
            scheduler: Running scheduler, reported by /status.
            target_checker: Override for the ad-hoc target check (tests).
        """
        self.config = config
        self.db_conn = db_conn
        self._settings_store = settings_store
        self._network_info = network_info
        self._scheduler = scheduler
        self._target_checker = target_checker
        self._server: Optional[ThreadingHTTPServer] = None
        self._thread: Optional[threading.Thread] = None
        self._shutdown_event = threading.Event()
        self._rate_limiter = RateLimiter()

    def start(self) -> None:
        """Start the API server in a background thread.

        Raises:
            ApiError: If the server fails to start.
        """
        if self._thread is not None and self._thread.is_alive():
            logger.warning("API server is already running")
            return

        try:
            handler_class = _create_handler_class(
                self.db_conn,
                rate_limiter=self._rate_limiter,
                settings_store=self._settings_store,
                network_info=self._network_info,
                scheduler=self._scheduler,
                target_checker=self._target_checker,
            )
            self._server = ThreadingHTTPServer(("", self.config.port), handler_class)
            self._server.daemon_threads = True
            self._server.timeout = 1.0  # Allow periodic shutdown checks

            self._shutdown_event.clear()
            self._thread = threading.Thread(
                target=self._serve_forever,
                name="api-server",
                daemon=True,
            )
            self._thread.start()

            logger.info("API server started on port %d", self.config.port)

        except OSError as e:
            if e.errno in (98, 48):  # EADDRINUSE (Linux=98, macOS=48)
                raise ApiError(
                    f"Port {self.config.port} is already in use. "
                    f"Another process may be using this port, or pingwatch is already running."
                )
            if e.errno == 13:  # EACCES
                raise ApiError(
                    f"Permission denied for port {self.config.port}. "
                    f"Ports below 1024 require root privileges."
                )
            raise ApiError(f"Failed to start API server on port {self.config.port}: {e}")

    def _serve_forever(self) -> None:
        """Server loop that checks for shutdown."""
        cycles = 0
        while not self._shutdown_event.is_set():
            if self._server:
                self._server.handle_request()
            cycles += 1
            if cycles % 600 == 0:
                self._rate_limiter.cleanup()

    def stop(self) -> None:
        """Stop the API server gracefully."""
        if self._thread is None:
            return

        logger.info("Stopping API server...")
        self._shutdown_event.set()

        if self._server:
            self._server.server_close()

        if self._thread.is_alive():
            self._thread.join(timeout=5.0)

        self._server = None
        self._thread = None
        logger.info("API server stopped")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
