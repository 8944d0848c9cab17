"""
This module contains the default configuration settings for the RelayWatch supervisor.
It defines quota limits, worker launch settings, timing constants and logging paths.
Command-line flags override these values; environment variables (or a `.env` file)
override the defaults themselves.
"""

import os
import pathlib
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv(override=True)

#* --- Units ---
GB = 1024 * 1024 * 1024
SECONDS_PER_DAY = 24 * 60 * 60

#* --- Quota Guard Rails ---
# Minimum values protect the relay's reputation with the network.
MIN_TRAFFIC_LIMIT_GB = 100
MIN_TRAFFIC_PERIOD_DAYS = 7
MIN_THRESHOLD_PERCENT = 60
MAX_THRESHOLD_PERCENT = 90

#* --- Quota Defaults ---
# Environment overrides (RELAYWATCH_TRAFFIC_LIMIT_GB and friends) are parsed by
# SupervisorConfig.from_settings, so a malformed value is reported as a config error.
TRAFFIC_LIMIT_GB = 0  # 0 = unlimited
TRAFFIC_PERIOD_DAYS = 0
BANDWIDTH_THRESHOLD_PERCENT = 80
THROTTLED_MAX_CLIENTS = 10
THROTTLED_BANDWIDTH_MBPS = 10.0

#* --- Paths ---
DATA_DIR = pathlib.Path(os.getenv("RELAYWATCH_DATA_DIR", "./data"))
STATE_FILE_NAME = "traffic_state.json"
LOGS_DIR_NAME = "logs"
LOG_FILE_NAME = "relaywatch.log"
LOG_FILE_MAX_BYTES = 5 * 1024 * 1024
LOG_FILE_BACKUP_COUNT = 3

#* --- Worker Launch Settings ---
WORKER_EXECUTABLE = os.getenv("RELAYWATCH_WORKER", "conduit")
WORKER_DEFAULT_COMMAND = "start"
MAX_CLIENTS_FLAGS = ("--max-clients", "-m")
BANDWIDTH_FLAGS = ("--bandwidth", "-b")
DATA_DIR_FLAGS = ("--data-dir", "-d")
METRICS_ADDR_FLAGS = ("--metrics-addr",)

#* --- Metrics Endpoint ---
METRICS_ADDR = os.getenv("RELAYWATCH_METRICS_ADDR", "127.0.0.1:9090")
METRICS_PATH = "/metrics"
UPLOAD_COUNTER_NAME = "conduit_bytes_uploaded"
DOWNLOAD_COUNTER_NAME = "conduit_bytes_downloaded"

#* --- Supervisor Timing ---
MONITOR_INTERVAL = 10          # seconds between usage checks
SCRAPE_TIMEOUT = 5             # seconds before an HTTP scrape is abandoned
GRACEFUL_SHUTDOWN_TIMEOUT = 5  # seconds before force-killing the worker
RESTART_BACKOFF = 5            # seconds to wait after a worker crash
MAX_CONSECUTIVE_CRASHES = 0       # 0 = unlimited
CRASH_RESET_SECONDS = 60       # a run at least this long clears the crash counter

#* --- Process Titles ---
SUPERVISOR_PROCESS_TITLE = "RelayWatch - Supervisor"
