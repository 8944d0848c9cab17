import logging
import threading
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .supervisor import Supervisor

log = logging.getLogger(__name__)


def _run_usage_check(supervisor: "Supervisor") -> None:
    try:
        supervisor.check_traffic()
    except Exception as e:
        log.error(f"Usage check failed: {e}", exc_info=True)


def _monitor_usage(supervisor: "Supervisor") -> None:
    """
    Checks quota usage once immediately and then every monitor interval,
    until the supervisor sets its monitor stop event.
    Runs in a dedicated background thread.

    :param supervisor: The Supervisor instance.
    """
    interval = supervisor.config.monitor_interval
    log.info(f"Starting usage monitor (every {interval}s) against {supervisor.config.metrics_url}")

    _run_usage_check(supervisor)
    while not supervisor.monitor_stop.wait(interval):
        _run_usage_check(supervisor)

    log.info("Usage monitor thread has stopped.")


def start_usage_monitor(supervisor: "Supervisor") -> threading.Thread:
    """
    Starts the thread that periodically scrapes metrics and updates the ledger.

    :param supervisor: The Supervisor instance.
    :return threading.Thread: The started monitor thread.
    """
    supervisor.monitor_stop.clear()
    monitor_thread = threading.Thread(
        target=_monitor_usage,
        args=(supervisor,),
        daemon=True,
        name="UsageMonitorThread"
    )
    monitor_thread.start()
    return monitor_thread
