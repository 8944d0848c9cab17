import sys
import logging
from pathlib import Path
from typing import Optional
from logging.handlers import RotatingFileHandler

import relaywatch.settings as default_settings

LOG_FORMAT = '%(asctime)s - %(levelname)-8s - [%(name)s] - %(message)s'


class MainFormatter(logging.Formatter):
    """The console/file formatter shared by every supervisor log line."""

    def __init__(self) -> None:
        super().__init__(fmt=LOG_FORMAT)

    def formatException(self, ei) -> str:
        # Keep tracebacks visually attached to the record that produced them.
        return "\n".join(f"    {line}" for line in super().formatException(ei).splitlines())


def setup_logging(console_level: int = logging.INFO, data_dir: Optional[Path] = None) -> None:
    """
    Configures the root logger for the supervisor.
    This sets up a console handler and, when a data directory is given, a
    size-rotating log file inside it, clearing any previously configured
    handlers to prevent duplication.

    :param console_level: The logging level for the console output (e.g., logging.INFO).
    :param data_dir: The supervisor's data directory; logs go to `<data_dir>/logs/`.
    """
    root_logger = logging.getLogger()
    # Set root level to lowest to capture all messages for handler filtering
    root_logger.setLevel(logging.DEBUG)

    # Clear any existing handlers to prevent re-adding them on re-runs
    if root_logger.hasHandlers():
        root_logger.handlers.clear()

    # --- Console Handler ---
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(console_level)
    console_handler.setFormatter(MainFormatter())
    root_logger.addHandler(console_handler)

    # --- Rotating File Handler (always at DEBUG) ---
    if data_dir is not None:
        try:
            log_dir = Path(data_dir) / default_settings.LOGS_DIR_NAME
            log_dir.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                log_dir / default_settings.LOG_FILE_NAME,
                maxBytes=default_settings.LOG_FILE_MAX_BYTES,
                backupCount=default_settings.LOG_FILE_BACKUP_COUNT,
                encoding="utf-8",
            )
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(MainFormatter())
            root_logger.addHandler(file_handler)
        except OSError as e:
            root_logger.error(f"Failed to initialize file logging handler: {e}. Logging to file will be disabled.")

    # urllib3 logs every connection at DEBUG; one line per scrape is plenty.
    logging.getLogger("urllib3").setLevel(logging.WARNING)
