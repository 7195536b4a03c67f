"""Configuration loader with type-safe dataclasses."""

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from .validator import InvalidTarget, validate_target


class ConfigError(Exception):
    """Raised when configuration is invalid or cannot be loaded."""

    pass


# Bounds accepted for the two probe cadences.
MIN_CHECK_INTERVAL = 10
MAX_CHECK_INTERVAL = 3600
MIN_OUTAGE_CHECK_INTERVAL = 5
MAX_OUTAGE_CHECK_INTERVAL = 600

DEFAULT_CHECK_INTERVAL = 300
DEFAULT_OUTAGE_CHECK_INTERVAL = 30
DEFAULT_FAILURE_THRESHOLD = 3
DEFAULT_PROBE_TIMEOUT = 5

# Seeded into an empty database when the config lists no targets.
DEFAULT_TARGETS = (
    ("8.8.8.8", "Google DNS"),
    ("1.1.1.1", "Cloudflare DNS"),
    ("google.com", "Google"),
)


@dataclass(frozen=True)
class Intervals:
    """Probe cadences in seconds.

    Only positivity is enforced here; the scheduler accepts any positive
    value. Operator-facing bounds are checked by check_interval_bounds().
    """

    check_interval_seconds: float = DEFAULT_CHECK_INTERVAL
    outage_check_interval_seconds: float = DEFAULT_OUTAGE_CHECK_INTERVAL

    def __post_init__(self) -> None:
        if self.check_interval_seconds <= 0:
            raise ConfigError(f"check_interval_seconds must be positive (got {self.check_interval_seconds})")
        if self.outage_check_interval_seconds <= 0:
            raise ConfigError(
                f"outage_check_interval_seconds must be positive (got {self.outage_check_interval_seconds})"
            )

    def to_dict(self) -> dict[str, float]:
        return {
            "check_interval_seconds": self.check_interval_seconds,
            "outage_check_interval_seconds": self.outage_check_interval_seconds,
        }


DEFAULT_INTERVALS = Intervals()


def check_interval_bounds(intervals: Intervals) -> None:
    """Validate intervals against the supported operating range.

    Raises:
        ConfigError: If a value is out of range or the outage cadence is not
            tighter than the regular one.
    """
    check = intervals.check_interval_seconds
    outage = intervals.outage_check_interval_seconds
    if not (MIN_CHECK_INTERVAL <= check <= MAX_CHECK_INTERVAL):
        raise ConfigError(
            f"check_interval_seconds must be between {MIN_CHECK_INTERVAL} and {MAX_CHECK_INTERVAL} (got {check})"
        )
    if not (MIN_OUTAGE_CHECK_INTERVAL <= outage <= MAX_OUTAGE_CHECK_INTERVAL):
        raise ConfigError(
            f"outage_check_interval_seconds must be between {MIN_OUTAGE_CHECK_INTERVAL} "
            f"and {MAX_OUTAGE_CHECK_INTERVAL} (got {outage})"
        )
    if outage >= check:
        raise ConfigError("outage_check_interval_seconds must be less than check_interval_seconds")


@dataclass(frozen=True)
class MonitorConfig:
    """Configuration for the probe scheduler and outage detection."""

    check_interval_seconds: int = DEFAULT_CHECK_INTERVAL
    outage_check_interval_seconds: int = DEFAULT_OUTAGE_CHECK_INTERVAL
    failure_threshold: int = DEFAULT_FAILURE_THRESHOLD  # consecutive failures that open an outage
    probe_timeout_seconds: int = DEFAULT_PROBE_TIMEOUT

    def __post_init__(self) -> None:
        check_interval_bounds(self.intervals)
        if self.failure_threshold < 1:
            raise ConfigError(f"failure_threshold must be at least 1 (got {self.failure_threshold})")
        if self.probe_timeout_seconds < 1:
            raise ConfigError(f"probe_timeout_seconds must be at least 1 (got {self.probe_timeout_seconds})")
        if self.probe_timeout_seconds >= self.outage_check_interval_seconds:
            raise ConfigError(
                f"probe_timeout_seconds ({self.probe_timeout_seconds}) must be shorter than "
                f"outage_check_interval_seconds ({self.outage_check_interval_seconds})"
            )

    @property
    def intervals(self) -> Intervals:
        return Intervals(
            check_interval_seconds=self.check_interval_seconds,
            outage_check_interval_seconds=self.outage_check_interval_seconds,
        )


@dataclass(frozen=True)
class TargetConfig:
    """A target listed in the configuration file."""

    address: str
    name: str | None = None
    priority: int = 100

    def __post_init__(self) -> None:
        result = validate_target(self.address)
        if isinstance(result, InvalidTarget):
            raise ConfigError(f"Invalid target '{self.address}': {result.message}")
        if self.priority < 1:
            raise ConfigError(f"Target priority must be at least 1 for '{self.address}'")

    @property
    def kind(self) -> str:
        return validate_target(self.address).kind


def _get_default_db_path() -> str:
    """Get the default database path using XDG-compliant directory.

    Returns ~/.local/share/pingwatch/pingwatch.db which is the standard
    location for user-specific data files on Linux/macOS.
    """
    home = Path.home()
    return str(home / ".local" / "share" / "pingwatch" / "pingwatch.db")


# Default database path (XDG-compliant user data directory)
DEFAULT_DB_PATH = _get_default_db_path()


@dataclass(frozen=True)
class DatabaseConfig:
    """Configuration for SQLite database."""

    path: str = DEFAULT_DB_PATH
    retention_days: int = 30

    def __post_init__(self) -> None:
        if self.retention_days < 1:
            raise ConfigError("Database retention_days must be at least 1")


@dataclass(frozen=True)
class ApiConfig:
    """Configuration for JSON API server."""

    enabled: bool = True
    port: int = 8080

    def __post_init__(self) -> None:
        if self.port < 1 or self.port > 65535:
            raise ConfigError(f"API port must be between 1 and 65535, got {self.port}")


@dataclass(frozen=True)
class NetworkInfoConfig:
    """Configuration for the public address / geolocation lookup."""

    cache_seconds: int = 600
    fetch_timeout_seconds: int = 5

    def __post_init__(self) -> None:
        if self.cache_seconds < 0:
            raise ConfigError(f"network_info cache_seconds must be non-negative (got {self.cache_seconds})")
        if self.fetch_timeout_seconds < 1:
            raise ConfigError(
                f"network_info fetch_timeout_seconds must be at least 1 (got {self.fetch_timeout_seconds})"
            )


@dataclass(frozen=True)
class WebhookConfig:
    """Configuration for a single webhook alert."""

    url: str
    enabled: bool = True
    on_outage: bool = True  # Send alert when an outage opens
    on_recovery: bool = True  # Send alert when an outage closes
    cooldown_seconds: int = 300  # Minimum time between alerts for same target

    def __post_init__(self) -> None:
        if not self.url:
            raise ConfigError("Webhook URL cannot be empty")
        if not self.url.startswith(("http://", "https://")):
            raise ConfigError(f"Webhook URL must start with http:// or https://, got '{self.url}'")
        if self.cooldown_seconds < 0:
            raise ConfigError(f"Webhook cooldown_seconds must be non-negative, got {self.cooldown_seconds}")
        if not self.on_outage and not self.on_recovery:
            raise ConfigError("Webhook must have at least one of 'on_outage' or 'on_recovery' enabled")


@dataclass(frozen=True)
class AlertsConfig:
    """Configuration for alert mechanisms."""

    webhooks: list[WebhookConfig] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not isinstance(self.webhooks, list):
            raise ConfigError("Webhooks must be a list")


@dataclass(frozen=True)
class Config:
    """Main configuration container."""

    targets: list[TargetConfig] = field(default_factory=list)
    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    api: ApiConfig = field(default_factory=ApiConfig)
    network_info: NetworkInfoConfig = field(default_factory=NetworkInfoConfig)
    alerts: AlertsConfig = field(default_factory=AlertsConfig)

    def __post_init__(self) -> None:
        addresses = [target.address for target in self.targets]
        duplicates = {address for address in addresses if addresses.count(address) > 1}
        if duplicates:
            raise ConfigError(f"Duplicate targets found: {duplicates}")

    @property
    def seed_targets(self) -> list[TargetConfig]:
        """Targets to insert into an empty database."""
        if self.targets:
            return list(self.targets)
        return [TargetConfig(address=address, name=name) for address, name in DEFAULT_TARGETS]


def _parse_target_config(data: dict | str, index: int) -> TargetConfig:
    """Parse a single target entry (a bare address or a mapping)."""
    if isinstance(data, str):
        return TargetConfig(address=data)
    if not isinstance(data, dict):
        raise ConfigError(f"Target entry {index} must be a string or a dictionary")

    address = data.get("address")
    if address is None:
        raise ConfigError(f"Target entry {index} is missing 'address' field")

    name = data.get("name")
    return TargetConfig(
        address=str(address),
        name=str(name) if name is not None else None,
        priority=int(data.get("priority", 100)),
    )


def _parse_monitor_config(data: dict | None) -> MonitorConfig:
    """Parse monitor configuration section."""
    if data is None:
        return MonitorConfig()
    if not isinstance(data, dict):
        raise ConfigError("'monitor' section must be a dictionary")

    return MonitorConfig(
        check_interval_seconds=int(data.get("check_interval_seconds", DEFAULT_CHECK_INTERVAL)),
        outage_check_interval_seconds=int(data.get("outage_check_interval_seconds", DEFAULT_OUTAGE_CHECK_INTERVAL)),
        failure_threshold=int(data.get("failure_threshold", DEFAULT_FAILURE_THRESHOLD)),
        probe_timeout_seconds=int(data.get("probe_timeout_seconds", DEFAULT_PROBE_TIMEOUT)),
    )


def _parse_database_config(data: dict | None) -> DatabaseConfig:
    """Parse database configuration section."""
    if data is None:
        return DatabaseConfig()
    if not isinstance(data, dict):
        raise ConfigError("'database' section must be a dictionary")

    return DatabaseConfig(
        path=str(data.get("path", DEFAULT_DB_PATH)),
        retention_days=int(data.get("retention_days", 30)),
    )


def _parse_api_config(data: dict | None) -> ApiConfig:
    """Parse API configuration section."""
    if data is None:
        return ApiConfig()
    if not isinstance(data, dict):
        raise ConfigError("'api' section must be a dictionary")

    return ApiConfig(
        enabled=bool(data.get("enabled", True)),
        port=int(data.get("port", 8080)),
    )


def _parse_network_info_config(data: dict | None) -> NetworkInfoConfig:
    """Parse network_info configuration section."""
    if data is None:
        return NetworkInfoConfig()
    if not isinstance(data, dict):
        raise ConfigError("'network_info' section must be a dictionary")

    return NetworkInfoConfig(
        cache_seconds=int(data.get("cache_seconds", 600)),
        fetch_timeout_seconds=int(data.get("fetch_timeout_seconds", 5)),
    )


def _parse_webhook_config(data: dict, index: int) -> WebhookConfig:
    """Parse a single webhook configuration entry."""
    if not isinstance(data, dict):
        raise ConfigError(f"Webhook entry {index} must be a dictionary")

    url = data.get("url")
    if url is None:
        raise ConfigError(f"Webhook entry {index} is missing 'url' field")

    return WebhookConfig(
        url=str(url),
        enabled=bool(data.get("enabled", True)),
        on_outage=bool(data.get("on_outage", True)),
        on_recovery=bool(data.get("on_recovery", True)),
        cooldown_seconds=int(data.get("cooldown_seconds", 300)),
    )


def _parse_alerts_config(data: dict | None) -> AlertsConfig:
    """Parse alerts configuration section."""
    if data is None:
        return AlertsConfig()
    if not isinstance(data, dict):
        raise ConfigError("'alerts' section must be a dictionary")

    webhooks_data = data.get("webhooks", [])
    if not isinstance(webhooks_data, list):
        raise ConfigError("'alerts.webhooks' must be a list")

    webhooks = [_parse_webhook_config(webhook_data, i) for i, webhook_data in enumerate(webhooks_data)]

    return AlertsConfig(webhooks=webhooks)


def _apply_env_overrides(config_data: dict) -> dict:
    """Apply environment variable overrides to configuration.

    Supported overrides:
    - PINGWATCH_CHECK_INTERVAL: Override monitor.check_interval_seconds
    - PINGWATCH_OUTAGE_CHECK_INTERVAL: Override monitor.outage_check_interval_seconds
    - PINGWATCH_FAILURE_THRESHOLD: Override monitor.failure_threshold
    - PINGWATCH_API_PORT: Override api.port
    - PINGWATCH_API_ENABLED: Override api.enabled (true/false)
    - PINGWATCH_DB_PATH: Override database.path
    - PINGWATCH_DB_RETENTION_DAYS: Override database.retention_days
    - PINGWATCH_NETWORK_INFO_CACHE_SECONDS: Override network_info.cache_seconds
    """
    for section in ("monitor", "api", "database", "network_info"):
        if config_data.get(section) is None:
            config_data[section] = {}

    int_overrides = {
        "PINGWATCH_CHECK_INTERVAL": ("monitor", "check_interval_seconds"),
        "PINGWATCH_OUTAGE_CHECK_INTERVAL": ("monitor", "outage_check_interval_seconds"),
        "PINGWATCH_FAILURE_THRESHOLD": ("monitor", "failure_threshold"),
        "PINGWATCH_API_PORT": ("api", "port"),
        "PINGWATCH_DB_RETENTION_DAYS": ("database", "retention_days"),
        "PINGWATCH_NETWORK_INFO_CACHE_SECONDS": ("network_info", "cache_seconds"),
    }
    for env_var, (section, key) in int_overrides.items():
        value = os.environ.get(env_var)
        if value is None:
            continue
        try:
            config_data[section][key] = int(value)
        except ValueError:
            raise ConfigError(f"{env_var} must be an integer, got '{value}'")

    api_enabled = os.environ.get("PINGWATCH_API_ENABLED")
    if api_enabled is not None:
        config_data["api"]["enabled"] = api_enabled.lower() in ("true", "1", "yes")

    db_path = os.environ.get("PINGWATCH_DB_PATH")
    if db_path is not None:
        config_data["database"]["path"] = db_path

    return config_data


def load_config(config_path: str) -> Config:
    """Load and validate configuration from a YAML file.

    A missing file is an error; an empty file yields the defaults.

    Args:
        config_path: Path to the YAML configuration file.

    Returns:
        Validated Config object.

    Raises:
        ConfigError: If the file cannot be read or configuration is invalid.
    """
    path = Path(config_path)

    if not path.exists():
        raise ConfigError(f"Configuration file not found: {config_path}")

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse YAML configuration: {e}")
    except OSError as e:
        raise ConfigError(f"Failed to read configuration file: {e}")

    if data is None:
        data = {}

    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a YAML dictionary")

    data = _apply_env_overrides(data)

    targets_data = data.get("targets")
    if targets_data is not None and not isinstance(targets_data, list):
        raise ConfigError("'targets' must be a list")

    try:
        targets = [_parse_target_config(entry, i) for i, entry in enumerate(targets_data or [])]
        return Config(
            targets=targets,
            monitor=_parse_monitor_config(data.get("monitor")),
            database=_parse_database_config(data.get("database")),
            api=_parse_api_config(data.get("api")),
            network_info=_parse_network_info_config(data.get("network_info")),
            alerts=_parse_alerts_config(data.get("alerts")),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid configuration value: {e}")
