from __future__ import annotations

import sys
import time
import itertools
import threading
from pathlib import Path

import pytest

ROOT = str(Path(__file__).resolve().parents[1])
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from relaywatch.settings import GB
from relaywatch.local.config import SupervisorConfig
from relaywatch.local.errors import LaunchError, ScrapeError
from relaywatch.local.supervisor.shutdown import ExitOutcome

FAKE_WORKER = str(Path(__file__).resolve().parent / "fake_worker.py")

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="relies on POSIX signal semantics")


def wait_until(predicate, timeout: float = 5.0, interval: float = 0.01) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def make_config(tmp_path):
    def _make(**overrides) -> SupervisorConfig:
        values = dict(
            traffic_limit_bytes=100 * GB,
            traffic_period_days=7,
            threshold_percent=80,
            data_dir=tmp_path,
            worker_command=[sys.executable, FAKE_WORKER],
            worker_args=["start"],
            monitor_interval=3600,
            restart_backoff=0.05,
            stop_timeout=2,
        )
        values.update(overrides)
        return SupervisorConfig.from_settings(**values)
    return _make


class FakeHandle:
    """Mimics WorkerHandle; the test decides when the 'process' exits."""
    _pids = itertools.count(1000)

    def __init__(self, args, on_exit):
        self.args = list(args)
        self.pid = next(self._pids)
        self.returncode = None
        self.started_at = time.monotonic()
        self._on_exit = on_exit
        self._exited = threading.Event()

    @property
    def has_exited(self) -> bool:
        return self._exited.is_set()

    @property
    def uptime(self) -> float:
        return time.monotonic() - self.started_at

    def wait_for_exit(self, timeout=None) -> bool:
        return self._exited.wait(timeout)

    def exit(self, returncode: int) -> None:
        self.returncode = returncode
        self._exited.set()
        if self._on_exit is not None:
            self._on_exit(self)


class FakeController:
    """Records launches and stops instead of spawning processes."""

    def __init__(self, on_start=None, launch_error=False):
        self.on_start = on_start
        self.launch_error = launch_error
        self.handles = []
        self.stopped = []

    def start(self, args, on_exit=None):
        if self.launch_error:
            raise LaunchError(f"Failed to start worker '{args[0]}'")
        handle = FakeHandle(args, on_exit)
        self.handles.append(handle)
        if self.on_start is not None:
            self.on_start(handle)
        return handle

    def request_graceful_stop(self, handle, timeout):
        self.stopped.append(handle)
        if not handle.has_exited:
            handle.exit(-15)
        return ExitOutcome(exited=True, forced=False, returncode=handle.returncode)


class FakeScraper:
    """Returns queued samples; raises ScrapeError when none are queued."""

    def __init__(self, samples=()):
        self.samples = list(samples)
        self.calls = 0

    def scrape(self):
        self.calls += 1
        if not self.samples:
            raise ScrapeError("metrics endpoint not ready")
        return self.samples.pop(0)
