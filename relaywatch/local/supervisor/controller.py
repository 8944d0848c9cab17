"""
Ownership of the single worker process.

The controller spawns the worker and, in the same call, claims the one-shot
exit waiter and hands it to a dedicated thread. Every other party (graceful
stop, the control loop) observes the exit through the handle's notification
instead of waiting on the process, so two waiters on one process can't happen.
"""
import time
import psutil
import logging
import threading
import subprocess
from typing import Callable, List, Optional, Sequence
from relaywatch.local.errors import LaunchError
from relaywatch.local.supervisor.process_utils import get_popen_kwargs
from relaywatch.local.supervisor.shutdown import ExitOutcome, graceful_shutdown_sequence

log = logging.getLogger(__name__)

ExitCallback = Callable[["WorkerHandle"], None]


class ExitWaiter:
    """The right to block on a process's exit. Can be claimed exactly once."""

    def __init__(self, process: subprocess.Popen) -> None:
        self._process = process
        self._claimed = False
        self._lock = threading.Lock()

    def claim(self) -> Callable[[], int]:
        """
        :return callable: The blocking wait function for the process.
        :raises RuntimeError: If the waiter has already been claimed.
        """
        with self._lock:
            if self._claimed:
                raise RuntimeError(f"Exit waiter for PID {self._process.pid} has already been claimed")
            self._claimed = True
        return self._process.wait


class WorkerHandle:
    """A launched worker process and its exit notification."""

    def __init__(self, popen: subprocess.Popen, args: Sequence[str]) -> None:
        self.args: List[str] = list(args)
        self.pid: int = popen.pid
        self.process = psutil.Process(popen.pid)
        self.started_at = time.monotonic()
        self.returncode: Optional[int] = None
        self._exit_waiter = ExitWaiter(popen)
        self._exited = threading.Event()

    def claim_exit_waiter(self) -> Callable[[], int]:
        return self._exit_waiter.claim()

    @property
    def has_exited(self) -> bool:
        return self._exited.is_set()

    @property
    def uptime(self) -> float:
        return time.monotonic() - self.started_at

    def wait_for_exit(self, timeout: Optional[float] = None) -> bool:
        """
        Blocks until the exit notification fires.

        :param timeout: Seconds to wait, or None to wait indefinitely.
        :return bool: True if the worker has exited.
        """
        return self._exited.wait(timeout)

    def _record_exit(self, returncode: int) -> None:
        self.returncode = returncode
        self._exited.set()

    def __repr__(self) -> str:
        return f"<WorkerHandle pid={self.pid} returncode={self.returncode}>"


class ChildProcessController:
    """Starts and stops the worker. Owns at most one live worker at a time."""

    def __init__(self, lock: Optional[threading.Lock] = None) -> None:
        """
        :param lock: The lock guarding the current handle. The supervisor passes
                     its own state lock so all shared state sits behind one boundary.
        """
        self._lock = lock or threading.Lock()
        self._current: Optional[WorkerHandle] = None

    @property
    def current(self) -> Optional[WorkerHandle]:
        with self._lock:
            return self._current

    def start(self, args: Sequence[str], on_exit: Optional[ExitCallback] = None) -> WorkerHandle:
        """
        Spawns the worker with inherited stdio and starts its exit-waiter thread.

        :param args: Executable followed by its arguments.
        :param on_exit: Called from the exit-waiter thread once the worker has exited.
        :return WorkerHandle: The handle of the running worker.
        :raises LaunchError: If the executable is missing or cannot be spawned.
        :raises RuntimeError: If a previously started worker is still alive.
        """
        with self._lock:
            if self._current is not None and not self._current.has_exited:
                raise RuntimeError(f"Worker (PID {self._current.pid}) is still running")

        log.info(f"Starting worker: {' '.join(args)}")
        try:
            popen = subprocess.Popen(list(args), **get_popen_kwargs())
        except OSError as e:
            raise LaunchError(f"Failed to start worker '{args[0]}': {e}") from e

        try:
            handle = WorkerHandle(popen, args)
        except psutil.Error as e:
            popen.kill()
            popen.wait()
            raise LaunchError(f"Worker '{args[0]}' vanished right after launch: {e}") from e

        wait = handle.claim_exit_waiter()
        threading.Thread(
            target=self._wait_for_exit,
            args=(handle, wait, on_exit),
            daemon=True,
            name=f"WorkerExitWaiter-{handle.pid}",
        ).start()

        with self._lock:
            self._current = handle
        log.info(f"Worker started successfully with PID: {handle.pid}")
        return handle

    @staticmethod
    def _wait_for_exit(handle: WorkerHandle, wait: Callable[[], int], on_exit: Optional[ExitCallback]) -> None:
        """Target of the exit-waiter thread: the only place the worker is waited on."""
        returncode = wait()
        handle._record_exit(returncode)
        log.debug(f"Worker (PID {handle.pid}) exited with status {returncode} after {handle.uptime:.1f}s.")
        if on_exit is None:
            return
        try:
            on_exit(handle)
        except Exception as e:
            log.error(f"Worker exit callback failed: {e}", exc_info=True)

    def request_graceful_stop(self, handle: WorkerHandle, timeout: float) -> ExitOutcome:
        """
        Stops the worker: terminate, wait up to `timeout`, then kill.
        Returns only once the worker has actually exited.
        """
        return graceful_shutdown_sequence(handle, timeout)
