"""
An embeddable, start/stop-able wrapper around the Supervisor.

The command-line entry point runs the supervisor on the main thread; hosts that
embed it instead (a system service, a test harness) use `SupervisorService`,
which runs it on a background thread. Start and stop are guarded by
compare-and-set transitions so that concurrent calls cannot both succeed.
"""
import enum
import logging
import threading
from typing import Callable, Optional
from relaywatch.local.config import SupervisorConfig
from relaywatch.local.supervisor import Supervisor

log = logging.getLogger(__name__)


class LifecycleState(enum.Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


class LifecycleGuard:
    """Holds a LifecycleState and only changes it through compare-and-set."""

    def __init__(self, initial: LifecycleState = LifecycleState.STOPPED) -> None:
        self._state = initial
        self._lock = threading.Lock()

    @property
    def state(self) -> LifecycleState:
        with self._lock:
            return self._state

    def compare_and_set(self, expected: LifecycleState, new: LifecycleState) -> bool:
        with self._lock:
            if self._state is not expected:
                return False
            self._state = new
            return True


class SupervisorService:
    """Runs a Supervisor on a background thread with guarded start/stop."""

    def __init__(self, config: SupervisorConfig, factory: Optional[Callable[[SupervisorConfig], Supervisor]] = None) -> None:
        """
        :param config: The validated supervisor configuration.
        :param factory: Builds the Supervisor for each start. Defaults to `Supervisor(config)`.
        """
        self.config = config
        self.factory = factory or Supervisor
        self.lifecycle = LifecycleGuard()
        self.supervisor: Optional[Supervisor] = None
        self.error: Optional[BaseException] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def state(self) -> LifecycleState:
        return self.lifecycle.state

    def start(self) -> bool:
        """
        Starts supervision in the background.

        :return bool: False if the service was not stopped (already starting, running or stopping).
        """
        if not self.lifecycle.compare_and_set(LifecycleState.STOPPED, LifecycleState.STARTING):
            log.info("Service is not stopped; cannot start.")
            return False

        self.error = None
        self.supervisor = self.factory(self.config)
        self._thread = threading.Thread(target=self._run, daemon=True, name="SupervisorServiceThread")
        self._thread.start()
        self.lifecycle.compare_and_set(LifecycleState.STARTING, LifecycleState.RUNNING)
        log.info("Supervisor service started.")
        return True

    def _run(self) -> None:
        try:
            self.supervisor.run()
        except Exception as e:
            self.error = e
            log.critical(f"Supervisor service failed: {e}", exc_info=True)
        finally:
            # The supervisor may end on its own (clean worker exit, launch failure).
            for state in (LifecycleState.RUNNING, LifecycleState.STARTING, LifecycleState.STOPPING):
                if self.lifecycle.compare_and_set(state, LifecycleState.STOPPED):
                    break

    def stop(self, timeout: Optional[float] = None) -> bool:
        """
        Requests a graceful stop and waits for the supervisor thread to finish.

        :param timeout: Seconds to wait for the thread, or None to wait until it ends.
        :return bool: False if the service was not running.
        """
        if not self.lifecycle.compare_and_set(LifecycleState.RUNNING, LifecycleState.STOPPING):
            log.info("Stop request ignored; service not running.")
            return False

        log.info("Stopping supervisor service...")
        self.supervisor.request_stop()
        if self._thread is not None:
            self._thread.join(timeout)
        return True

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)
