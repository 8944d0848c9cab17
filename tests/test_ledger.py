import json
from datetime import datetime, timedelta, timezone

import pytest

from relaywatch.local.errors import LedgerCorruptError, LedgerNotFoundError
from relaywatch.local.supervisor.ledger import (
    UsageLedger,
    account_delta,
    load_ledger,
    parse_timestamp,
    rollover,
    save_ledger,
    should_throttle,
)

T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
WEEK = timedelta(days=7)


@pytest.mark.parametrize("elapsed", [timedelta(0), timedelta(hours=1), timedelta(days=6, hours=23, seconds=59)])
def test_rollover_leaves_running_period_untouched(elapsed):
    ledger = UsageLedger(period_start=T0, bytes_used=1234, is_throttled=True)

    result, did_rollover = rollover(ledger, T0 + elapsed, WEEK)

    assert did_rollover is False
    assert result is ledger


def test_rollover_resets_after_period_end():
    ledger = UsageLedger(period_start=T0, bytes_used=90 * 1024 ** 3, is_throttled=True)
    now = T0 + WEEK + timedelta(seconds=1)

    result, did_rollover = rollover(ledger, now, WEEK)

    assert did_rollover is True
    assert result == UsageLedger(period_start=now, bytes_used=0, is_throttled=False)


def test_rollover_happens_exactly_at_period_end():
    ledger = UsageLedger(period_start=T0, bytes_used=10)

    result, did_rollover = rollover(ledger, T0 + WEEK, WEEK)

    assert did_rollover is True
    assert result.period_start == T0 + WEEK
    assert result.bytes_used == 0


def test_account_delta_adds_and_rejects_negative():
    ledger = UsageLedger(period_start=T0, bytes_used=100)

    assert account_delta(ledger, 50).bytes_used == 150
    assert account_delta(ledger, 0) is ledger
    with pytest.raises(ValueError):
        account_delta(ledger, -1)


def test_should_throttle_only_when_not_already_throttled():
    assert should_throttle(UsageLedger(period_start=T0, bytes_used=80), 80) is True
    assert should_throttle(UsageLedger(period_start=T0, bytes_used=79), 80) is False
    assert should_throttle(UsageLedger(period_start=T0, bytes_used=500, is_throttled=True), 80) is False


def test_save_then_load_preserves_ledger(tmp_path):
    path = tmp_path / "traffic_state.json"
    ledger = UsageLedger(period_start=T0, bytes_used=42_000, is_throttled=True)

    save_ledger(ledger, path)

    assert load_ledger(path) == ledger
    assert json.loads(path.read_text()) == {
        "periodStart": "2026-03-01T12:00:00+00:00",
        "bytesUsed": 42_000,
        "isThrottled": True,
    }
    assert not path.with_suffix(".tmp").exists()


def test_load_missing_file_is_not_found(tmp_path):
    with pytest.raises(LedgerNotFoundError):
        load_ledger(tmp_path / "traffic_state.json")


@pytest.mark.parametrize("content", [
    "{not json",
    "[]",
    '{"bytesUsed": 5, "isThrottled": false}',
    '{"periodStart": "2026-03-01T12:00:00Z", "bytesUsed": -5, "isThrottled": false}',
    '{"periodStart": "2026-03-01T12:00:00Z", "bytesUsed": 5, "isThrottled": "yes"}',
    '{"periodStart": "yesterday", "bytesUsed": 5, "isThrottled": false}',
])
def test_load_rejects_corrupt_ledger(tmp_path, content):
    path = tmp_path / "traffic_state.json"
    path.write_text(content)

    with pytest.raises(LedgerCorruptError):
        load_ledger(path)


def test_load_accepts_files_written_by_go_monitor(tmp_path):
    path = tmp_path / "traffic_state.json"
    path.write_text(json.dumps({
        "periodStartTime": "2026-03-01T12:00:00.123456789Z",
        "bytesUsed": 77,
        "isThrottled": False,
    }))

    ledger = load_ledger(path)

    assert ledger.period_start == datetime(2026, 3, 1, 12, 0, 0, 123456, tzinfo=timezone.utc)
    assert ledger.bytes_used == 77


def test_parse_timestamp_keeps_offsets_and_defaults_to_utc():
    assert parse_timestamp("2026-03-01T14:00:00+02:00") == T0
    assert parse_timestamp("2026-03-01T12:00:00").tzinfo == timezone.utc
