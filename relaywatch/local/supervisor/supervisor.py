import enum
import time
import queue
import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional
from relaywatch.local.config import SupervisorConfig
from relaywatch.local.errors import LedgerCorruptError, LedgerNotFoundError, ScrapeError, WorkerCrashLoopError
from relaywatch.local.metrics_client import MetricsScraper, ScrapeSample
from relaywatch.local.supervisor import background_tasks
from relaywatch.local.supervisor.controller import ChildProcessController, WorkerHandle
from relaywatch.local.supervisor.ledger import UsageLedger, account_delta, load_ledger, rollover, save_ledger, should_throttle
from relaywatch.local.supervisor.process_utils import SupervisorMode, build_worker_args

log = logging.getLogger(__name__)


class SupervisorState(enum.Enum):
    STARTING = "starting"
    RUNNING = "running"
    RESTARTING = "restarting"
    STOPPED = "stopped"


class EventKind(enum.Enum):
    WORKER_EXITED = "worker_exited"
    RESTART = "restart"
    STOP = "stop"


@dataclass(frozen=True)
class SupervisorEvent:
    kind: EventKind
    handle: Optional[WorkerHandle] = None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Supervisor:
    """
    Keeps the worker alive and runs it in NORMAL or THROTTLED mode depending on
    how much of the traffic quota has been used in the current period.

    The control loop (`run`) owns the worker's lifecycle; a monitor thread scrapes
    usage and raises restart requests. The ledger, the last scrape total and the
    live worker handle are guarded by one lock that is never held across the HTTP
    scrape, a process signal/wait or a ledger write.
    """

    def __init__(
        self,
        config: SupervisorConfig,
        controller: Optional[ChildProcessController] = None,
        scraper: Optional[MetricsScraper] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        """
        :param config: The validated supervisor configuration.
        :param controller: Starts and stops the worker. Defaults to a real process controller.
        :param scraper: Reads the worker's counters. Defaults to an HTTP scraper for `config.metrics_url`.
        :param clock: Returns the current aware datetime. Defaults to UTC wall-clock time.
        """
        self.config = config
        self.period_length = timedelta(days=config.traffic_period_days)
        self.clock = clock or _utc_now

        self._lock = threading.Lock()
        self.controller = controller or ChildProcessController(lock=self._lock)
        self.scraper = scraper or MetricsScraper(config.metrics_url, timeout=config.scrape_timeout)

        # State guarded by self._lock
        self._ledger: Optional[UsageLedger] = None
        self._last_scrape_total = 0
        self._revision = 0
        self._handle: Optional[WorkerHandle] = None
        self._state = SupervisorState.STARTING
        self._mode = SupervisorMode.NORMAL

        # Ledger writes happen outside the state lock, ordered by revision.
        self._persist_lock = threading.Lock()
        self._persisted_revision = 0

        # SimpleQueue.put is reentrant, so signal handlers may post stop events directly.
        self._events: "queue.SimpleQueue[SupervisorEvent]" = queue.SimpleQueue()
        self._restart_requests: "queue.Queue[bool]" = queue.Queue(maxsize=1)
        self._stop_requested = False
        self.monitor_stop = threading.Event()
        self._consecutive_crashes = 0

    #* --- Read-only views ---
    @property
    def ledger(self) -> Optional[UsageLedger]:
        with self._lock:
            return self._ledger

    @property
    def last_scrape_total(self) -> int:
        with self._lock:
            return self._last_scrape_total

    @property
    def state(self) -> SupervisorState:
        with self._lock:
            return self._state

    @property
    def mode(self) -> SupervisorMode:
        with self._lock:
            return self._mode

    def status(self) -> Dict[str, Any]:
        """Returns a snapshot of the supervisor's state for logging and inspection."""
        with self._lock:
            ledger, handle, state, mode = self._ledger, self._handle, self._state, self._mode
        return {
            "state": state.name,
            "mode": mode.name,
            "worker_pid": handle.pid if handle is not None and not handle.has_exited else None,
            "bytes_used": ledger.bytes_used if ledger else None,
            "threshold_bytes": self.config.threshold_bytes,
            "period_end": ledger.period_end(self.period_length).isoformat() if ledger else None,
        }

    def _set_state(self, state: SupervisorState) -> None:
        with self._lock:
            self._state = state

    #* --- Ledger state ---
    def _commit(self, ledger: UsageLedger) -> int:
        """Installs a new ledger. Must be called with self._lock held."""
        self._ledger = ledger
        self._revision += 1
        return self._revision

    def _persist(self, revision: int, ledger: UsageLedger) -> None:
        """
        Writes a committed ledger to disk unless a newer revision is already there.
        A failed write is logged; the in-memory ledger stays authoritative.
        """
        with self._persist_lock:
            if revision <= self._persisted_revision:
                return
            try:
                save_ledger(ledger, self.config.state_file)
            except OSError as e:
                log.warning(f"Failed to save state to '{self.config.state_file}': {e}")
                return
            self._persisted_revision = revision

    def load_state(self) -> UsageLedger:
        """
        Loads the persisted ledger, rolling it over if its period has ended, or
        starts (and immediately persists) a fresh quota period when there is none
        or it is unreadable.

        :return UsageLedger: The ledger the supervisor starts with.
        """
        state_file = self.config.state_file
        try:
            ledger = load_ledger(state_file)
        except LedgerNotFoundError:
            log.info("No previous state found, starting fresh traffic period.")
        except LedgerCorruptError as e:
            log.warning(f"Failed to load state, starting fresh: {e}")
        else:
            log.info(
                f"Loaded traffic state from '{state_file}': {ledger.bytes_used} bytes used "
                f"since {ledger.period_start.isoformat()}, throttled={ledger.is_throttled}."
            )
            # A period that ended while stopped is reset before the first launch.
            ledger, did_rollover = rollover(ledger, self.clock(), self.period_length)
            if not did_rollover:
                with self._lock:
                    self._persisted_revision = self._commit(ledger)
                return ledger
            log.info("[RESET] Traffic period ended while stopped. Resetting stats.")
            with self._lock:
                revision = self._commit(ledger)
            self._persist(revision, ledger)
            return ledger

        ledger = UsageLedger.fresh(self.clock())
        with self._lock:
            revision = self._commit(ledger)
        self._persist(revision, ledger)
        return ledger

    #* --- Monitoring side ---
    def check_traffic(self) -> None:
        """
        One monitor tick: roll the period over if it has ended, otherwise scrape
        the worker's counters and account the new usage.
        """
        now = self.clock()
        with self._lock:
            ledger, did_rollover = rollover(self._ledger, now, self.period_length)
            if did_rollover:
                was_throttled = self._ledger.is_throttled
                revision = self._commit(ledger)

        if did_rollover:
            log.info("[RESET] Traffic period ended. Resetting stats.")
            self._persist(revision, ledger)
            if was_throttled:
                self.request_restart()
            return

        try:
            sample = self.scraper.scrape()
        except ScrapeError as e:
            # The worker may still be starting up.
            log.debug(f"Skipping usage accounting for this tick: {e}")
            return

        self.record_scrape(sample)

    def record_scrape(self, sample: ScrapeSample) -> int:
        """
        Accounts one scrape into the ledger and throttles once the threshold is hit.

        The counters are cumulative since the worker started, so a total below the
        previous one means the worker restarted and the whole total is new usage.

        :param sample: The scraped counters.
        :return int: The delta that was accounted.
        """
        total = sample.total
        with self._lock:
            delta = total - self._last_scrape_total
            if delta < 0:
                delta = total
            self._last_scrape_total = total

            ledger = account_delta(self._ledger, delta)
            newly_throttled = should_throttle(ledger, self.config.threshold_bytes)
            if newly_throttled:
                ledger = replace(ledger, is_throttled=True)
            revision = self._commit(ledger) if ledger is not self._ledger else None

        if revision is not None:
            self._persist(revision, ledger)
        if newly_throttled:
            log.warning(
                f"[THROTTLE] Threshold reached ({self.config.threshold_percent}%, "
                f"{ledger.bytes_used} bytes used). Throttling..."
            )
            self.request_restart()
        return delta

    #* --- Requests from other threads ---
    def request_restart(self) -> bool:
        """
        Asks the control loop to relaunch the worker with a freshly computed mode.
        At most one restart is pending at a time; further requests are dropped.

        :return bool: True if the request was queued, False if one was already pending.
        """
        try:
            self._restart_requests.put_nowait(True)
        except queue.Full:
            log.debug("Restart already pending, dropping duplicate request.")
            return False
        self._events.put(SupervisorEvent(EventKind.RESTART))
        return True

    def request_stop(self) -> None:
        """Asks the control loop to stop the worker and exit. Safe to call from a signal handler."""
        self._stop_requested = True
        self._events.put(SupervisorEvent(EventKind.STOP))

    def _take_restart_request(self) -> bool:
        try:
            self._restart_requests.get_nowait()
            return True
        except queue.Empty:
            return False

    def _on_worker_exit(self, handle: WorkerHandle) -> None:
        self._events.put(SupervisorEvent(EventKind.WORKER_EXITED, handle))

    #* --- Control loop ---
    def run(self) -> None:
        """
        Runs the supervisor until the worker exits cleanly or a stop is requested.

        :raises LaunchError: If the worker cannot be spawned.
        :raises WorkerCrashLoopError: If the optional crash cap is exceeded.
        """
        if self._ledger is None:
            self.load_state()
        monitor_thread = background_tasks.start_usage_monitor(self)
        try:
            self._control_loop()
        finally:
            self.monitor_stop.set()
            monitor_thread.join(timeout=self.config.scrape_timeout + 1)
            self._set_state(SupervisorState.STOPPED)
            log.info(f"Supervisor stopped. Final status: {self.status()}")

    def _control_loop(self) -> None:
        while not self._stop_requested:
            # Any pending restart is satisfied by this launch, which reads the freshest mode.
            self._take_restart_request()
            with self._lock:
                mode = SupervisorMode.from_throttled(self._ledger.is_throttled)

            log.info(f"Starting worker in {mode.name} mode.")
            handle = self.controller.start(build_worker_args(self.config, mode), on_exit=self._on_worker_exit)
            with self._lock:
                self._handle = handle
                self._mode = mode
                self._state = SupervisorState.RUNNING
            log.info(f"Supervisor status: {self.status()}")

            event = self._await_event(handle)

            if event.kind is EventKind.WORKER_EXITED:
                if handle.returncode == 0:
                    log.info("Worker exited normally.")
                    return
                log.error(f"Worker exited with error status {handle.returncode}.")
                self._register_crash(handle)
                self._set_state(SupervisorState.RESTARTING)
                if self._wait_backoff():
                    log.info("Stop requested during restart backoff.")
                    return

            elif event.kind is EventKind.RESTART:
                log.info("Restarting worker to apply new settings...")
                self._set_state(SupervisorState.RESTARTING)
                self.controller.request_graceful_stop(handle, self.config.stop_timeout)
                self._consecutive_crashes = 0

            else:
                log.info("Received stop request, shutting down worker...")
                self.controller.request_graceful_stop(handle, self.config.stop_timeout)
                return

    def _await_event(self, handle: WorkerHandle) -> SupervisorEvent:
        """
        Blocks until the current worker exits, a restart is pending, or a stop arrives.
        Exit notices from earlier workers and already-satisfied restart wakeups are skipped.
        """
        while True:
            event = self._events.get()
            if event.kind is EventKind.WORKER_EXITED and event.handle is not handle:
                continue
            if event.kind is EventKind.RESTART and not self._take_restart_request():
                continue
            return event

    def _wait_backoff(self) -> bool:
        """
        Waits out the restart backoff while still listening for stop requests.

        :return bool: True if a stop was requested during the wait.
        """
        deadline = time.monotonic() + self.config.restart_backoff
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            try:
                event = self._events.get(timeout=remaining)
            except queue.Empty:
                return False
            if event.kind is EventKind.STOP:
                return True

    def _register_crash(self, handle: WorkerHandle) -> None:
        """
        Counts a non-zero worker exit against the optional crash cap.

        :raises WorkerCrashLoopError: If the cap is set and has been reached.
        """
        if handle.uptime >= self.config.crash_reset_seconds:
            self._consecutive_crashes = 0
        self._consecutive_crashes += 1

        cap = self.config.max_consecutive_crashes
        if cap and self._consecutive_crashes >= cap:
            log.critical(f"PANIC: Worker has failed {self._consecutive_crashes} times in a row. Giving up.")
            raise WorkerCrashLoopError(f"Worker crashed {self._consecutive_crashes} consecutive times")
        log.warning(
            f"Relaunching worker in {self.config.restart_backoff}s "
            f"(consecutive failure #{self._consecutive_crashes})."
        )
