"""Public address and geolocation lookup backed by ReachabilityCache."""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass

import requests

from .cache import ReachabilityCache

logger = logging.getLogger(__name__)

IPV4_URL = "https://api.ipify.org?format=json"
IPV6_URL = "https://api6.ipify.org?format=json"
# ip-api.com free tier only serves plain HTTP
GEO_URL = "http://ip-api.com/json/?fields=status,message,city,region,country,org,timezone,as"

DEFAULT_FETCH_TIMEOUT = 5
DEFAULT_CACHE_SECONDS = 600
CACHE_KEY = "network-info"

# Sentinels for fields a source could not provide
NOT_AVAILABLE = "N/A"
UNKNOWN = "Unknown"

USER_AGENT = "pingwatch/0.1"


class ExternalFetchError(Exception):
    """Raised when no metadata source could be reached."""

    pass


@dataclass(frozen=True)
class NetworkInfo:
    """Public addresses plus geo/ISP details of this host's connection."""

    ipv4: str = NOT_AVAILABLE
    ipv6: str = NOT_AVAILABLE
    city: str = UNKNOWN
    region: str = UNKNOWN
    country: str = UNKNOWN
    isp: str = UNKNOWN
    timezone: str = UNKNOWN
    asn: str = UNKNOWN

    @property
    def has_geo(self) -> bool:
        return any(
            value != UNKNOWN
            for value in (self.city, self.region, self.country, self.isp, self.timezone, self.asn)
        )

    def to_dict(self) -> dict[str, str]:
        return asdict(self)


def _get_json(url: str, timeout: float) -> dict:
    response = requests.get(url, timeout=timeout, headers={"User-Agent": USER_AGENT})
    response.raise_for_status()
    data = response.json()
    if not isinstance(data, dict):
        raise ValueError(f"Unexpected response from {url}")
    return data


def _fetch_address(url: str, timeout: float) -> str | None:
    """Return the "ip" field from an ipify-style endpoint, None on failure."""
    try:
        data = _get_json(url, timeout)
    except (requests.RequestException, ValueError) as e:
        logger.debug("Address lookup via %s failed: %s", url, e)
        return None
    ip = data.get("ip")
    return str(ip) if ip else None


def _fetch_geo(timeout: float) -> dict[str, str] | None:
    """Return normalized geo fields from ip-api.com, None on failure."""
    try:
        data = _get_json(GEO_URL, timeout)
    except (requests.RequestException, ValueError) as e:
        logger.warning("Geo lookup failed: %s", e)
        return None

    if data.get("status") != "success":
        logger.warning("Geo API returned error: %s", data.get("message"))
        return None

    mapping = {
        "city": "city",
        "region": "region",
        "country": "country",
        "isp": "org",
        "timezone": "timezone",
        "asn": "as",
    }
    return {field: str(data[key]) for field, key in mapping.items() if data.get(key)}


def fetch_network_info(
    timeout: float = DEFAULT_FETCH_TIMEOUT,
    previous: NetworkInfo | None = None,
) -> NetworkInfo:
    """Query all metadata sources concurrently and merge the results.

    A failing source only blanks its own fields. When the geo lookup fails
    and a previous result is given, its geo fields are carried over.

    Args:
        timeout: Per-request timeout in seconds.
        previous: Last known value, used to fill in missing geo data.

    Returns:
        NetworkInfo with sentinels for anything that could not be fetched.

    Raises:
        ExternalFetchError: If every source failed.
    """
    with ThreadPoolExecutor(max_workers=3) as executor:
        ipv4_future = executor.submit(_fetch_address, IPV4_URL, timeout)
        ipv6_future = executor.submit(_fetch_address, IPV6_URL, timeout)
        geo_future = executor.submit(_fetch_geo, timeout)
        ipv4 = ipv4_future.result()
        ipv6 = ipv6_future.result()
        geo = geo_future.result()

    if ipv4 is None and ipv6 is None and geo is None:
        raise ExternalFetchError("All network information sources failed")

    if geo is None and previous is not None and previous.has_geo:
        logger.info("Geo lookup failed, reusing previous geo data")
        geo = {
            "city": previous.city,
            "region": previous.region,
            "country": previous.country,
            "isp": previous.isp,
            "timezone": previous.timezone,
            "asn": previous.asn,
        }

    info = NetworkInfo(
        ipv4=ipv4 or NOT_AVAILABLE,
        ipv6=ipv6 or NOT_AVAILABLE,
        **(geo or {}),
    )
    logger.info("Network info fetched - IPv4: %s, IPv6: %s", info.ipv4, info.ipv6)
    return info


class NetworkInfoService:
    """Serves NetworkInfo through a ReachabilityCache."""

    def __init__(
        self,
        cache: ReachabilityCache | None = None,
        ttl_seconds: float = DEFAULT_CACHE_SECONDS,
        timeout: float = DEFAULT_FETCH_TIMEOUT,
    ) -> None:
        self._cache = cache if cache is not None else ReachabilityCache()
        self._ttl_seconds = ttl_seconds
        self._timeout = timeout

    def _refresh(self) -> NetworkInfo:
        entry = self._cache.peek(CACHE_KEY)
        previous = entry.value if entry is not None else None
        return fetch_network_info(self._timeout, previous=previous)

    def get(self) -> NetworkInfo:
        """Return cached or freshly fetched network info.

        Raises:
            ExternalFetchError: If nothing is cached and every source failed.
        """
        return self._cache.get(CACHE_KEY, self._ttl_seconds, self._refresh)

    @property
    def cache_age(self) -> float | None:
        return self._cache.age(CACHE_KEY)

    @property
    def is_stale(self) -> bool:
        """True when the last refresh failed and an older value is being served."""
        return self._cache.last_error(CACHE_KEY) is not None
