import os
import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Callable, Dict, List, Tuple

import relaywatch.settings as default_settings
from relaywatch.local.errors import ConfigError

log = logging.getLogger(__name__)


def _gb_to_bytes(value: str) -> int:
    return int(float(value) * default_settings.GB)


# Environment variable -> (config field, parser)
ENV_FIELDS: Dict[str, Tuple[str, Callable[[str], Any]]] = {
    "RELAYWATCH_TRAFFIC_LIMIT_GB": ("traffic_limit_bytes", _gb_to_bytes),
    "RELAYWATCH_TRAFFIC_PERIOD_DAYS": ("traffic_period_days", int),
    "RELAYWATCH_BANDWIDTH_THRESHOLD": ("threshold_percent", int),
    "RELAYWATCH_MIN_CONNECTIONS": ("throttled_max_clients", int),
    "RELAYWATCH_MIN_BANDWIDTH": ("throttled_bandwidth_mbps", float),
    "RELAYWATCH_MAX_CONSECUTIVE_CRASHES": ("max_consecutive_crashes", int),
}


def _environment_overrides() -> Dict[str, Any]:
    """
    Reads the numeric settings from the environment (or the `.env` file loaded by settings.py).

    :return dict: Config field values for every variable that is set.
    :raises ConfigError: If a variable does not hold a number.
    """
    values = {}
    for name, (field_name, parse) in ENV_FIELDS.items():
        raw = os.getenv(name)
        if raw is None or not raw.strip():
            continue
        try:
            values[field_name] = parse(raw.strip())
        except ValueError:
            raise ConfigError(f"{name} must be a number, got '{raw}'") from None
    return values


@dataclass(frozen=True)
class SupervisorConfig:
    """
    The validated, immutable configuration for one supervisor run.

    Values follow a clear precedence:
    1. Base values from `settings.py`.
    2. Overrides from the environment / `.env` file (handled by `python-dotenv` in settings.py).
    3. Overrides from command-line flags (see `relaywatch.local.cli`).
    """
    traffic_limit_bytes: int = 0
    traffic_period_days: int = 0
    threshold_percent: int = default_settings.BANDWIDTH_THRESHOLD_PERCENT
    throttled_max_clients: int = default_settings.THROTTLED_MAX_CLIENTS
    throttled_bandwidth_mbps: float = default_settings.THROTTLED_BANDWIDTH_MBPS
    data_dir: Path = default_settings.DATA_DIR
    metrics_addr: str = default_settings.METRICS_ADDR
    worker_command: List[str] = field(default_factory=lambda: [default_settings.WORKER_EXECUTABLE])
    worker_args: List[str] = field(default_factory=lambda: [default_settings.WORKER_DEFAULT_COMMAND])

    monitor_interval: float = default_settings.MONITOR_INTERVAL
    scrape_timeout: float = default_settings.SCRAPE_TIMEOUT
    stop_timeout: float = default_settings.GRACEFUL_SHUTDOWN_TIMEOUT
    restart_backoff: float = default_settings.RESTART_BACKOFF
    max_consecutive_crashes: int = default_settings.MAX_CONSECUTIVE_CRASHES
    crash_reset_seconds: float = default_settings.CRASH_RESET_SECONDS

    @classmethod
    def from_settings(cls, **overrides: Any) -> "SupervisorConfig":
        """
        Builds a config from the defaults in `settings.py`, then the numeric
        `RELAYWATCH_*` environment variables, then keyword overrides.

        :param overrides: Field values that take precedence over the defaults.
        :return SupervisorConfig: The merged (not yet validated) configuration.
        :raises ConfigError: On an unknown key or a non-numeric environment value.
        """
        base = cls(
            traffic_limit_bytes=int(default_settings.TRAFFIC_LIMIT_GB * default_settings.GB),
            traffic_period_days=default_settings.TRAFFIC_PERIOD_DAYS,
        )
        unknown = set(overrides) - set(base.__dataclass_fields__)
        if unknown:
            raise ConfigError(f"Unknown configuration keys: {', '.join(sorted(unknown))}")
        return replace(base, **{**_environment_overrides(), **overrides})

    #* --- Derived values ---
    @property
    def monitoring_enabled(self) -> bool:
        """A zero traffic limit means the worker runs without quota supervision."""
        return self.traffic_limit_bytes > 0

    @property
    def period_seconds(self) -> float:
        return self.traffic_period_days * default_settings.SECONDS_PER_DAY

    @property
    def threshold_bytes(self) -> int:
        return int(self.traffic_limit_bytes * self.threshold_percent / 100.0)

    @property
    def state_file(self) -> Path:
        return Path(self.data_dir) / default_settings.STATE_FILE_NAME

    @property
    def metrics_url(self) -> str:
        return f"http://{self.metrics_addr}{default_settings.METRICS_PATH}"

    def validate(self) -> None:
        """
        Checks every operator setting against the allowed ranges.
        Called once at startup; nothing is re-checked per tick.

        :raises ConfigError: On the first setting that is out of range.
        """
        if self.traffic_period_days < default_settings.MIN_TRAFFIC_PERIOD_DAYS:
            raise ConfigError(f"traffic-period must be at least {default_settings.MIN_TRAFFIC_PERIOD_DAYS} days")
        if self.traffic_limit_bytes < default_settings.MIN_TRAFFIC_LIMIT_GB * default_settings.GB:
            raise ConfigError(f"traffic-limit must be at least {default_settings.MIN_TRAFFIC_LIMIT_GB} GB")
        if not default_settings.MIN_THRESHOLD_PERCENT <= self.threshold_percent <= default_settings.MAX_THRESHOLD_PERCENT:
            raise ConfigError(
                f"bandwidth-threshold must be between "
                f"{default_settings.MIN_THRESHOLD_PERCENT}-{default_settings.MAX_THRESHOLD_PERCENT}%"
            )
        if self.throttled_max_clients <= 0:
            raise ConfigError("min-connections must be positive")
        if self.throttled_bandwidth_mbps <= 0:
            raise ConfigError("min-bandwidth must be positive")
        if not self.worker_command:
            raise ConfigError("A worker executable must be configured")

        timings = {
            "monitor interval": self.monitor_interval,
            "scrape timeout": self.scrape_timeout,
            "stop timeout": self.stop_timeout,
            "restart backoff": self.restart_backoff,
            "crash reset window": self.crash_reset_seconds,
        }
        for name, value in timings.items():
            if value <= 0:
                raise ConfigError(f"The {name} must be positive, got {value}")
        if self.max_consecutive_crashes < 0:
            raise ConfigError("max consecutive crashes cannot be negative (0 means unlimited)")

        log.debug(f"Configuration validated: {self.describe()}")

    def describe(self) -> Dict[str, Any]:
        """Returns a loggable summary of the quota settings."""
        return {
            "traffic_limit_gb": round(self.traffic_limit_bytes / default_settings.GB, 2),
            "traffic_period_days": self.traffic_period_days,
            "threshold_percent": self.threshold_percent,
            "throttled_max_clients": self.throttled_max_clients,
            "throttled_bandwidth_mbps": self.throttled_bandwidth_mbps,
            "data_dir": str(self.data_dir),
            "metrics_url": self.metrics_url,
        }
