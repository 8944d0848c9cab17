import sys
import queue
import signal
import logging
from pathlib import Path
from typing import Callable, List, Optional

# Basic console logger for messages BEFORE full setup is complete.
# This logger will be replaced by the full setup later.
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)-8s - [relaywatch] - %(message)s',
    stream=sys.stdout
)
log = logging.getLogger("relaywatch")

import setproctitle
import relaywatch.settings as default_settings
from relaywatch.log import setup_logging
from relaywatch.local.cli import parse_command_line
from relaywatch.local.config import SupervisorConfig
from relaywatch.local.errors import ConfigError, LaunchError, WorkerCrashLoopError
from relaywatch.local.supervisor import Supervisor
from relaywatch.local.supervisor.controller import ChildProcessController

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG_ERROR = 2


def install_signal_handlers(on_stop: Callable[[], None]) -> None:
    """
    Routes SIGINT/SIGTERM to `on_stop`. Must be called from the main thread.

    :param on_stop: Called from the signal handler; must not block.
    """
    def _handle(signum, frame):
        on_stop()

    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, _handle)


def exit_status(returncode: Optional[int]) -> int:
    """Maps a worker return code to a shell-style exit status (128+N for signal N)."""
    if returncode is None:
        return EXIT_FAILURE
    return returncode if returncode >= 0 else 128 - returncode


def run_worker_directly(config: SupervisorConfig) -> int:
    """
    Runs the worker without quota monitoring and forwards stop signals to it.

    :param config: The supervisor configuration (only the worker settings are used).
    :return int: The worker's exit status.
    :raises LaunchError: If the worker cannot be spawned.
    """
    events: "queue.SimpleQueue[str]" = queue.SimpleQueue()
    install_signal_handlers(lambda: events.put("stop"))
    controller = ChildProcessController()
    handle = controller.start(
        [*config.worker_command, *config.worker_args],
        on_exit=lambda _handle: events.put("exited"),
    )

    if events.get() == "stop":
        log.info("Received signal, shutting down worker...")
        controller.request_graceful_stop(handle, config.stop_timeout)
    else:
        handle.wait_for_exit()

    if handle.returncode != 0:
        log.error(f"Worker exited with error status {handle.returncode}.")
    return exit_status(handle.returncode)


def main(argv: Optional[List[str]] = None) -> int:
    """The main entry point for the supervisor. Returns the process exit status."""
    setproctitle.setproctitle(default_settings.SUPERVISOR_PROCESS_TITLE)
    argv = sys.argv[1:] if argv is None else argv

    try:
        command_line = parse_command_line(argv)
    except ConfigError as e:
        log.critical(f"Configuration error: {e}")
        return EXIT_CONFIG_ERROR

    config = command_line.config
    console_level = logging.DEBUG if command_line.verbose else logging.INFO

    if not config.monitoring_enabled:
        setup_logging(console_level)
        log.info("No traffic limit set. Running worker directly.")
        try:
            return run_worker_directly(config)
        except LaunchError as e:
            log.critical(str(e))
            return EXIT_FAILURE

    try:
        config.validate()
    except ConfigError as e:
        log.critical(f"Configuration error: {e}")
        return EXIT_CONFIG_ERROR

    try:
        Path(config.data_dir).mkdir(mode=0o700, parents=True, exist_ok=True)
    except OSError as e:
        log.critical(f"Failed to create data directory '{config.data_dir}': {e}")
        return EXIT_FAILURE

    setup_logging(console_level, config.data_dir)
    log.info("=" * 20 + " Supervisor Starting " + "=" * 20)
    log.info(f"Quota settings: {config.describe()}")

    supervisor = Supervisor(config)
    install_signal_handlers(supervisor.request_stop)
    try:
        supervisor.run()
    except LaunchError as e:
        log.critical(f"Supervisor failed: {e}")
        return EXIT_FAILURE
    except WorkerCrashLoopError as e:
        log.critical(f"Supervisor gave up: {e}")
        return EXIT_FAILURE
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
