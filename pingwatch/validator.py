"""Target classification and validation.

Every address that reaches the probe layer goes through validate_target()
first. Dotted-numeric strings are always treated as IPv4 candidates: if they
are not a valid address they are rejected as malformed instead of being
retried as domain names.
"""

import re
from dataclasses import dataclass

from .models import KIND_DOMAIN, KIND_IPV4

REASON_MALFORMED_IPV4 = "malformed IPv4"
REASON_BAD_FORMAT = "bad format"

MALFORMED_IPV4_MESSAGE = "Invalid IPv4 address: each octet must be a number between 0 and 255."
BAD_FORMAT_MESSAGE = "Invalid target format. Must be a valid IP address or domain name."

_DOTTED_NUMERIC_RE = re.compile(r"[0-9.]+")
_OCTET_RE = re.compile(r"[0-9]{1,3}")
_LABEL_RE = re.compile(r"[a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?")


@dataclass(frozen=True)
class ValidTarget:
    """An address that passed validation and may be probed."""

    address: str
    kind: str


@dataclass(frozen=True)
class InvalidTarget:
    """A rejected address with the reason it was rejected."""

    raw: str
    reason: str

    @property
    def message(self) -> str:
        """User-facing explanation for the rejection."""
        if self.reason == REASON_MALFORMED_IPV4:
            return MALFORMED_IPV4_MESSAGE
        return BAD_FORMAT_MESSAGE


def is_valid_ipv4(address: str) -> bool:
    """Check for exactly four decimal octets in 0-255.

    Octets with a leading zero ("01") are rejected since some ping
    implementations read them as octal.
    """
    parts = address.split(".")
    if len(parts) != 4:
        return False
    for part in parts:
        if not _OCTET_RE.fullmatch(part):
            return False
        if len(part) > 1 and part[0] == "0":
            return False
        if int(part) > 255:
            return False
    return True


def is_valid_domain(address: str) -> bool:
    """Check RFC 1123 label rules for every dot-separated label."""
    if not address:
        return False
    return all(_LABEL_RE.fullmatch(label) for label in address.split("."))


def validate_target(raw: str) -> ValidTarget | InvalidTarget:
    """Classify a raw target string.

    Args:
        raw: Address as entered by the user or read from configuration.

    Returns:
        ValidTarget with the detected kind, or InvalidTarget with a reason of
        "malformed IPv4" or "bad format".
    """
    if not isinstance(raw, str) or not raw:
        return InvalidTarget(raw=str(raw), reason=REASON_BAD_FORMAT)

    if _DOTTED_NUMERIC_RE.fullmatch(raw):
        if is_valid_ipv4(raw):
            return ValidTarget(address=raw, kind=KIND_IPV4)
        return InvalidTarget(raw=raw, reason=REASON_MALFORMED_IPV4)

    if is_valid_domain(raw):
        return ValidTarget(address=raw, kind=KIND_DOMAIN)

    return InvalidTarget(raw=raw, reason=REASON_BAD_FORMAT)
