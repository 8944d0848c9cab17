"""
Command-line handling for the supervisor.

The supervisor sits in front of the worker's own command line: its quota flags
are split out, `--data-dir`/`-d` and `--metrics-addr` are shared with the worker,
and everything else (plus anything after `--`) is passed through to the worker,
which is always launched with the `start` subcommand.

    relaywatch --traffic-limit 500 --traffic-period 30 -- --max-clients 50
"""
import argparse
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, NoReturn, Sequence, Tuple
import relaywatch.settings as default_settings
from relaywatch.local.config import SupervisorConfig
from relaywatch.local.errors import ConfigError
from relaywatch.local.supervisor.process_utils import looks_like_value

log = logging.getLogger(__name__)

VALUE_FLAGS = (
    "--traffic-limit",
    "--traffic-period",
    "--bandwidth-threshold",
    "--min-connections",
    "--min-bandwidth",
)
BOOLEAN_FLAGS = ("--monitor-verbose",)
SHARED_FLAGS = default_settings.DATA_DIR_FLAGS + default_settings.METRICS_ADDR_FLAGS


@dataclass(frozen=True)
class CommandLine:
    config: SupervisorConfig
    verbose: bool = False


class _ArgumentParser(argparse.ArgumentParser):
    """An ArgumentParser that raises ConfigError instead of exiting."""

    def error(self, message: str) -> NoReturn:
        raise ConfigError(message)


def _matches(arg: str, flags: Sequence[str]) -> bool:
    return arg in flags or any(arg.startswith(f"{flag}=") for flag in flags)


def split_arguments(argv: Sequence[str]) -> Tuple[List[str], List[str]]:
    """
    Separates the supervisor's flags from the worker's.

    :param argv: The command-line arguments, without the program name.
    :return tuple: (supervisor arguments, worker arguments). The worker arguments
                   always start with the default `start` subcommand.
    """
    argv = list(argv)
    monitor_args: List[str] = []
    worker_args: List[str] = [default_settings.WORKER_DEFAULT_COMMAND]

    def has_value_after(index: int) -> bool:
        return index + 1 < len(argv) and looks_like_value(argv[index + 1])

    i = 0
    while i < len(argv):
        arg = argv[i]

        if arg == "--":
            rest = argv[i + 1:]
            # Skip a redundant "start"; the worker already gets it.
            if rest and rest[0] == default_settings.WORKER_DEFAULT_COMMAND:
                rest = rest[1:]
            worker_args.extend(rest)
            break

        if _matches(arg, BOOLEAN_FLAGS):
            monitor_args.append(arg)
        elif _matches(arg, VALUE_FLAGS):
            monitor_args.append(arg)
            if "=" not in arg and has_value_after(i):
                monitor_args.append(argv[i + 1])
                i += 1
        elif _matches(arg, SHARED_FLAGS):
            if "=" in arg:
                monitor_args.append(arg)
                worker_args.append(arg)
            elif has_value_after(i):
                monitor_args.extend((arg, argv[i + 1]))
                worker_args.extend((arg, argv[i + 1]))
                i += 1
            else:
                # No value: let the worker report the error.
                worker_args.append(arg)
        else:
            worker_args.append(arg)
            if arg.startswith("-") and "=" not in arg and has_value_after(i):
                worker_args.append(argv[i + 1])
                i += 1
        i += 1

    return monitor_args, worker_args


def _build_parser() -> _ArgumentParser:
    parser = _ArgumentParser(
        prog="relaywatch",
        description="Supervises the relay worker and enforces a traffic quota.",
        usage="relaywatch [supervisor flags] -- [worker flags]",
    )
    parser.add_argument("--traffic-limit", type=float, default=None,
                        help="Total traffic limit in GB (0 = unlimited)")
    parser.add_argument("--traffic-period", type=int, default=None,
                        help="Time period in days for the traffic limit")
    parser.add_argument("--bandwidth-threshold", type=int, default=None,
                        help="Throttle at this %% of the quota (60-90%%)")
    parser.add_argument("--min-connections", type=int, default=None,
                        help="Max clients when throttled")
    parser.add_argument("--min-bandwidth", type=float, default=None,
                        help="Bandwidth in Mbps when throttled")
    parser.add_argument("--data-dir", "-d", type=Path, default=None,
                        help="Directory for keys and state")
    parser.add_argument("--metrics-addr", default=None,
                        help="Metrics listen address of the worker")
    parser.add_argument("--monitor-verbose", action="store_true",
                        help="Log supervisor debug output to the console")
    return parser


def parse_command_line(argv: Sequence[str]) -> CommandLine:
    """
    Builds the supervisor configuration from the command line.

    :param argv: The command-line arguments, without the program name.
    :return CommandLine: The (not yet validated) config and the verbosity flag.
    :raises ConfigError: If a supervisor flag is malformed.
    """
    monitor_args, worker_args = split_arguments(argv)
    log.debug(f"Supervisor args: {monitor_args}, worker args: {worker_args}")
    ns = _build_parser().parse_args(monitor_args)

    overrides = {"worker_args": worker_args}
    if ns.traffic_limit is not None:
        if ns.traffic_limit < 0:
            raise ConfigError("traffic-limit cannot be negative")
        overrides["traffic_limit_bytes"] = int(ns.traffic_limit * default_settings.GB)
    if ns.traffic_period is not None:
        overrides["traffic_period_days"] = ns.traffic_period
    if ns.bandwidth_threshold is not None:
        overrides["threshold_percent"] = ns.bandwidth_threshold
    if ns.min_connections is not None:
        overrides["throttled_max_clients"] = ns.min_connections
    if ns.min_bandwidth is not None:
        overrides["throttled_bandwidth_mbps"] = ns.min_bandwidth
    if ns.data_dir is not None:
        overrides["data_dir"] = ns.data_dir
    if ns.metrics_addr is not None:
        overrides["metrics_addr"] = ns.metrics_addr

    return CommandLine(config=SupervisorConfig.from_settings(**overrides), verbose=ns.monitor_verbose)
