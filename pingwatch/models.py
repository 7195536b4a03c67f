"""Data models for probe results, outages and monitored targets."""

from dataclasses import dataclass
from datetime import datetime

# Target kinds, fixed at creation by validation
KIND_IPV4 = "ipv4"
KIND_DOMAIN = "domain"
TARGET_KINDS = (KIND_IPV4, KIND_DOMAIN)

# Probe outcome statuses
STATUS_SUCCESS = "success"
STATUS_TIMEOUT = "timeout"
STATUS_UNREACHABLE = "unreachable"
STATUS_INVALID_TARGET = "invalid_target"
FAILURE_STATUSES = (STATUS_TIMEOUT, STATUS_UNREACHABLE)

# Outage transition kinds
TRANSITION_OPENED = "opened"
TRANSITION_CLOSED = "closed"
TRANSITION_NO_CHANGE = "no_change"


@dataclass(frozen=True)
class Target:
    """A monitored network endpoint.

    Attributes:
        id: Database identifier.
        address: IPv4 address or domain name.
        kind: Either "ipv4" or "domain".
        active: Inactive targets keep their history but are not probed.
        display_name: Human readable label, defaults to the address.
        priority: Lower values are listed and scheduled first.
    """

    id: int
    address: str
    kind: str
    active: bool = True
    display_name: str | None = None
    priority: int = 100

    @property
    def label(self) -> str:
        return self.display_name or self.address


@dataclass(frozen=True)
class ProbeOutcome:
    """Outcome of a single ping.

    Attributes:
        status: One of success, timeout, unreachable, invalid_target.
        latency_ms: Round trip time for successful probes, None if not reported.
        error_message: Short description for failed probes.
    """

    status: str
    latency_ms: float | None = None
    error_message: str | None = None

    @property
    def is_success(self) -> bool:
        return self.status == STATUS_SUCCESS

    @property
    def is_failure(self) -> bool:
        return self.status in FAILURE_STATUSES


@dataclass(frozen=True)
class ProbeResult:
    """Result of one scheduler tick for one target. Append-only."""

    target_id: int
    timestamp: datetime
    outcome: ProbeOutcome

    @property
    def is_success(self) -> bool:
        return self.outcome.is_success

    @property
    def is_failure(self) -> bool:
        return self.outcome.is_failure

    @property
    def latency_ms(self) -> float | None:
        return self.outcome.latency_ms


@dataclass(frozen=True)
class Outage:
    """A contiguous period during which a target is considered down.

    Attributes:
        id: Database identifier, None until persisted.
        target_id: Target the outage belongs to.
        started_at: Timestamp of the probe that crossed the failure threshold.
        ended_at: Timestamp of the first successful probe afterwards, None while open.
        consecutive_failures_at_open: Failure count when the outage was opened.
    """

    id: int | None
    target_id: int
    started_at: datetime
    ended_at: datetime | None = None
    consecutive_failures_at_open: int = 0

    @property
    def is_open(self) -> bool:
        return self.ended_at is None

    @property
    def duration_seconds(self) -> int | None:
        if self.ended_at is None:
            return None
        return int((self.ended_at - self.started_at).total_seconds())


@dataclass(frozen=True)
class OutageTransition:
    """State change emitted by the outage detector for one probe result."""

    kind: str
    outage: Outage | None = None

    @property
    def changed(self) -> bool:
        return self.kind != TRANSITION_NO_CHANGE


@dataclass(frozen=True)
class TargetStatus:
    """Current status summary for a monitored target.

    Attributes:
        target: The monitored target.
        last_status: Status of the most recent probe, None if never probed.
        last_latency_ms: Latency of the most recent probe.
        last_probe_at: Timestamp of the most recent probe.
        probes_24h: Number of probes in the last 24 hours.
        uptime_24h: Percentage of successful probes in the last 24 hours.
        avg_latency_24h: Average latency of successful probes in the last 24 hours.
        open_outage: Currently open outage, if any.
    """

    target: Target
    last_status: str | None
    last_latency_ms: float | None
    last_probe_at: datetime | None
    probes_24h: int
    uptime_24h: float
    avg_latency_24h: float | None = None
    open_outage: Outage | None = None

    @property
    def is_up(self) -> bool:
        return self.last_status == STATUS_SUCCESS and self.open_outage is None
