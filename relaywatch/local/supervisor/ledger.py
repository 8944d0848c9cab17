import re
import json
import logging
from pathlib import Path
from datetime import datetime, timedelta, timezone
from dataclasses import dataclass, replace
from typing import Tuple, Union
from relaywatch.local.errors import LedgerCorruptError, LedgerNotFoundError

log = logging.getLogger(__name__)

# Go-style timestamps carry nanoseconds; datetime only understands microseconds.
_FRACTION_RE = re.compile(r"(\.\d{6})\d+")


@dataclass(frozen=True)
class UsageLedger:
    """
    Usage accounting for the current quota period.

    `bytes_used` only grows, except when the period rolls over and it resets to zero.
    """
    period_start: datetime
    bytes_used: int = 0
    is_throttled: bool = False

    @classmethod
    def fresh(cls, now: datetime) -> "UsageLedger":
        """Returns an empty, un-throttled ledger whose period starts at `now`."""
        return cls(period_start=now)

    def period_end(self, period_length: timedelta) -> datetime:
        return self.period_start + period_length

    def to_dict(self) -> dict:
        return {
            "periodStart": self.period_start.isoformat(),
            "bytesUsed": self.bytes_used,
            "isThrottled": self.is_throttled,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "UsageLedger":
        """
        Decodes a persisted ledger record.

        :param data: The decoded JSON object.
        :return UsageLedger: The ledger it describes.
        :raises LedgerCorruptError: If a field is missing or has the wrong type.
        """
        if not isinstance(data, dict):
            raise LedgerCorruptError(f"Expected a JSON object, got {type(data).__name__}")
        # Files written by older conduit-monitor releases use `periodStartTime`.
        raw_start = data.get("periodStart", data.get("periodStartTime"))
        bytes_used = data.get("bytesUsed", 0)
        is_throttled = data.get("isThrottled", False)

        if not isinstance(raw_start, str):
            raise LedgerCorruptError("Ledger is missing a 'periodStart' timestamp")
        if isinstance(bytes_used, bool) or not isinstance(bytes_used, int) or bytes_used < 0:
            raise LedgerCorruptError(f"Invalid 'bytesUsed' value: {bytes_used!r}")
        if not isinstance(is_throttled, bool):
            raise LedgerCorruptError(f"Invalid 'isThrottled' value: {is_throttled!r}")

        return cls(period_start=parse_timestamp(raw_start), bytes_used=bytes_used, is_throttled=is_throttled)


def parse_timestamp(value: str) -> datetime:
    """
    Parses an RFC 3339 timestamp into an aware datetime (UTC when no offset is given).

    :raises LedgerCorruptError: If the string is not a valid timestamp.
    """
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    text = _FRACTION_RE.sub(r"\1", text)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as e:
        raise LedgerCorruptError(f"Invalid timestamp {value!r}: {e}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


#* --- Pure ledger transitions ---
def rollover(ledger: UsageLedger, now: datetime, period_length: timedelta) -> Tuple[UsageLedger, bool]:
    """
    Starts a new quota period once the current one has ended.

    :param ledger: The current ledger.
    :param now: The current time.
    :param period_length: The length of one quota period.
    :return tuple: (ledger, did_rollover). The input ledger is returned untouched
                   when the period is still running.
    """
    if now >= ledger.period_end(period_length):
        return UsageLedger.fresh(now), True
    return ledger, False


def account_delta(ledger: UsageLedger, delta: int) -> UsageLedger:
    """
    Adds newly observed traffic to the ledger.

    :raises ValueError: If `delta` is negative. Callers must turn a counter reset
                        into a positive delta before accounting it.
    """
    if delta < 0:
        raise ValueError(f"Usage delta cannot be negative, got {delta}")
    if delta == 0:
        return ledger
    return replace(ledger, bytes_used=ledger.bytes_used + delta)


def should_throttle(ledger: UsageLedger, threshold_bytes: int) -> bool:
    """True only at the moment usage first reaches the threshold in this period."""
    return not ledger.is_throttled and ledger.bytes_used >= threshold_bytes


#* --- Persistence ---
def load_ledger(path: Union[str, Path]) -> UsageLedger:
    """
    Reads the ledger file from disk.

    :param path: The path to the ledger file.
    :return UsageLedger: The persisted ledger.
    :raises LedgerNotFoundError: If no ledger has been written yet.
    :raises LedgerCorruptError: If the file cannot be read or decoded.
    """
    path = Path(path)
    try:
        with path.open("r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError as e:
        raise LedgerNotFoundError(f"No ledger at '{path}'") from e
    except json.JSONDecodeError as e:
        raise LedgerCorruptError(f"Ledger at '{path}' is not valid JSON: {e}") from e
    except OSError as e:
        raise LedgerCorruptError(f"Ledger at '{path}' could not be read: {e}") from e
    return UsageLedger.from_dict(data)


def save_ledger(ledger: UsageLedger, path: Union[str, Path]) -> None:
    """
    Atomically writes the ledger: a temporary file is written first and then
    renamed over the real one, so a crash never leaves a half-written ledger.

    :param ledger: The ledger to persist.
    :param path: The path to the ledger file.
    :raises OSError: If the file could not be written.
    """
    path = Path(path)
    temp_path = path.with_suffix(".tmp")
    try:
        with temp_path.open("w", encoding="utf-8") as f:
            json.dump(ledger.to_dict(), f, indent=2)
        temp_path.replace(path)
    finally:
        temp_path.unlink(missing_ok=True)
    log.debug(f"Ledger saved to '{path}': {ledger.bytes_used} bytes used, throttled={ledger.is_throttled}")
