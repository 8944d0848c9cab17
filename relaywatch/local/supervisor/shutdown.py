import psutil
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .controller import WorkerHandle

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExitOutcome:
    """How a stop request ended."""
    exited: bool
    forced: bool
    returncode: Optional[int] = None


def _terminate_process(handle: "WorkerHandle") -> None:
    """Sends SIGTERM (TerminateProcess on Windows) to the worker."""
    try:
        log.debug(f"Sending SIGTERM to worker (PID {handle.pid})")
        handle.process.terminate()
    except psutil.NoSuchProcess:
        log.debug(f"Worker {handle.pid} already gone, skipping termination.")
    except psutil.Error as e:
        log.error(f"Failed to send termination signal to worker {handle.pid}: {e}")


def _forceful_kill(handle: "WorkerHandle") -> None:
    """Forcefully kills a worker that didn't terminate gracefully."""
    try:
        log.warning(f"Killing stubborn worker (PID {handle.pid}).")
        handle.process.kill()
    except psutil.NoSuchProcess:
        log.debug(f"Worker {handle.pid} exited before it could be killed.")
    except psutil.Error as e:
        # Beyond recovery: an OS-level fault. We still wait for the real exit status.
        log.critical(f"Failed to kill worker {handle.pid}: {e}")


def graceful_shutdown_sequence(handle: "WorkerHandle", timeout: float) -> ExitOutcome:
    """
    Runs the full stop sequence for one worker: terminate, wait up to `timeout`
    seconds, then kill and wait for the exit without a further timeout.

    The waits observe the handle's exit notification; they never call wait()
    on the process themselves, so the launch-time exit waiter stays the only one.

    :param handle: The worker to stop.
    :param timeout: Seconds to allow for a graceful exit.
    :return ExitOutcome: Always `exited=True`; `forced` tells whether a kill was needed.
    """
    if handle.has_exited:
        return ExitOutcome(exited=True, forced=False, returncode=handle.returncode)

    _terminate_process(handle)
    if handle.wait_for_exit(timeout):
        log.info(f"Worker (PID {handle.pid}) stopped gracefully with status {handle.returncode}.")
        return ExitOutcome(exited=True, forced=False, returncode=handle.returncode)

    log.warning(f"Worker (PID {handle.pid}) did not exit within {timeout}s. Forcing shutdown...")
    _forceful_kill(handle)
    handle.wait_for_exit()
    log.info(f"Worker (PID {handle.pid}) killed, final status {handle.returncode}.")
    return ExitOutcome(exited=True, forced=True, returncode=handle.returncode)
