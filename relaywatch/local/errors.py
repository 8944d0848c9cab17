"""
Exception types shared across the supervisor package.

Only the entry point (`relaywatch.main`) turns these into process exit codes;
everything below it raises and lets the caller decide.
"""


class RelayWatchError(Exception):
    """Base class for all supervisor errors."""


class ConfigError(RelayWatchError):
    """Invalid or out-of-range operator settings. Fatal before supervision starts."""


class LaunchError(RelayWatchError):
    """The worker executable is missing or could not be spawned."""


class WorkerCrashLoopError(RelayWatchError):
    """The worker kept exiting with an error more often than the configured cap allows."""


class ScrapeError(RelayWatchError):
    """A metrics scrape failed. Never fatal: the tick's accounting is skipped."""


class LedgerNotFoundError(RelayWatchError):
    """No ledger has been persisted yet. The normal first-run condition."""


class LedgerCorruptError(RelayWatchError):
    """The ledger file exists but could not be decoded."""
