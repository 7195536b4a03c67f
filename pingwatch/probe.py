"""Single-shot ping probes executed without a shell."""

import logging
import math
import re
import subprocess
import sys
import time
from dataclasses import dataclass

from .models import (
    STATUS_SUCCESS,
    STATUS_TIMEOUT,
    STATUS_UNREACHABLE,
    ProbeOutcome,
)
from .validator import InvalidTarget, ValidTarget, validate_target

logger = logging.getLogger(__name__)

# Default upper bound for one probe in seconds.
DEFAULT_PROBE_TIMEOUT = 5.0

# Latency as printed by iputils, BSD and Windows ping ("time=12.3 ms").
LATENCY_RE = re.compile(r"time=(\d+(?:\.\d+)?)")

UNREACHABLE_WARNING = "Target is not currently reachable via ping. You can still add it."


def build_ping_command(address: str, timeout: float, platform: str | None = None) -> list[str]:
    """Build the argument vector for a single ping.

    The address is always passed as its own argument; no shell is involved.

    Args:
        address: Validated IPv4 address or domain name.
        timeout: Seconds to wait for the reply.
        platform: Override for sys.platform (used by tests).

    Returns:
        Argument list suitable for subprocess.run().
    """
    platform = platform or sys.platform
    wait_seconds = max(1, math.ceil(timeout))

    if platform == "win32":
        return ["ping", "-n", "1", "-w", str(wait_seconds * 1000), address]
    if platform == "darwin":
        return ["ping", "-c", "1", "-t", str(wait_seconds), address]
    return ["ping", "-c", "1", "-W", str(wait_seconds), address]


def parse_latency(output: str) -> float | None:
    """Extract the round trip time in milliseconds from ping output."""
    match = LATENCY_RE.search(output)
    if match is None:
        return None
    return float(match.group(1))


def probe(target: ValidTarget, timeout: float = DEFAULT_PROBE_TIMEOUT) -> ProbeOutcome:
    """Ping a validated target once.

    The subprocess timeout is the hard bound on how long this call blocks;
    an overrunning ping process is killed.

    Args:
        target: Target returned by validate_target().
        timeout: Maximum seconds to spend on the probe.

    Returns:
        ProbeOutcome with status success, timeout or unreachable.

    Raises:
        TypeError: If target was not produced by the validator.
    """
    if not isinstance(target, ValidTarget):
        raise TypeError(f"probe() requires a ValidTarget, got {type(target).__name__}")

    cmd = build_ping_command(target.address, timeout)

    try:
        completed = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        logger.debug("Ping to %s timed out after %.1fs", target.address, timeout)
        return ProbeOutcome(status=STATUS_TIMEOUT, error_message=f"No reply within {timeout:g}s")
    except OSError as e:
        logger.error("Failed to run ping for %s: %s", target.address, e)
        return ProbeOutcome(status=STATUS_UNREACHABLE, error_message=f"Failed to run ping: {e}")

    if completed.returncode != 0:
        stderr = (completed.stderr or "").strip()
        message = stderr.splitlines()[-1] if stderr else f"ping exited with code {completed.returncode}"
        return ProbeOutcome(status=STATUS_UNREACHABLE, error_message=message)

    return ProbeOutcome(status=STATUS_SUCCESS, latency_ms=parse_latency(completed.stdout or ""))


@dataclass(frozen=True)
class TargetCheck:
    """Result of an ad-hoc "test this target" request.

    Attributes:
        valid: Whether the address passed validation.
        reachable: Whether a single ping succeeded (False when invalid).
        latency_ms: Reported round trip time, if any.
        suggested_kind: "ipv4" or "domain" for valid addresses.
        warning: Non-fatal note for valid but unreachable targets.
        error: User-facing validation message for invalid addresses.
        reason: Machine readable validation failure reason.
        elapsed_ms: Wall time spent probing.
    """

    valid: bool
    reachable: bool
    latency_ms: float | None = None
    suggested_kind: str | None = None
    warning: str | None = None
    error: str | None = None
    reason: str | None = None
    elapsed_ms: int = 0

    def to_dict(self) -> dict:
        data: dict = {"valid": self.valid, "reachable": self.reachable}
        if self.valid:
            data["latency_ms"] = self.latency_ms
            data["suggested_kind"] = self.suggested_kind
        if self.warning:
            data["warning"] = self.warning
        if self.error:
            data["error"] = self.error
            data["reason"] = self.reason
        return data


def check_target(raw: str, timeout: float = DEFAULT_PROBE_TIMEOUT, probe_fn=probe) -> TargetCheck:
    """Validate a raw address and ping it once, outside the schedule.

    Args:
        raw: Address as entered by the user.
        timeout: Probe timeout in seconds.
        probe_fn: Probe implementation (injectable for tests).

    Returns:
        TargetCheck describing validity and reachability.
    """
    validated = validate_target(raw)
    if isinstance(validated, InvalidTarget):
        return TargetCheck(
            valid=False,
            reachable=False,
            error=validated.message,
            reason=validated.reason,
        )

    start = time.monotonic()
    try:
        outcome = probe_fn(validated, timeout)
    except Exception as e:
        logger.error("Ad-hoc probe of %s failed: %s", validated.address, e)
        outcome = ProbeOutcome(status=STATUS_UNREACHABLE, error_message=str(e))
    elapsed_ms = int((time.monotonic() - start) * 1000)

    if outcome.is_success:
        return TargetCheck(
            valid=True,
            reachable=True,
            latency_ms=outcome.latency_ms,
            suggested_kind=validated.kind,
            elapsed_ms=elapsed_ms,
        )

    return TargetCheck(
        valid=True,
        reachable=False,
        suggested_kind=validated.kind,
        warning=UNREACHABLE_WARNING,
        elapsed_ms=elapsed_ms,
    )
