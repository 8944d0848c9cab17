import sys
import enum
import logging
import subprocess
from typing import Any, Dict, List, Sequence
import relaywatch.settings as default_settings
from relaywatch.local.config import SupervisorConfig

log = logging.getLogger(__name__)


class SupervisorMode(enum.Enum):
    """The worker's operating mode, derived from the ledger's throttled flag."""
    NORMAL = "normal"
    THROTTLED = "throttled"

    @classmethod
    def from_throttled(cls, is_throttled: bool) -> "SupervisorMode":
        return cls.THROTTLED if is_throttled else cls.NORMAL


#* --- Argument Handling ---
def looks_like_value(arg: str) -> bool:
    """
    Checks whether an argument is a flag value rather than a flag.
    Negative numbers such as `-5` start with a dash but are values.
    """
    if not arg.startswith("-"):
        return True
    try:
        float(arg)
        return True
    except ValueError:
        return False


def filter_args(args: Sequence[str], flags: Sequence[str]) -> List[str]:
    """
    Removes every occurrence of the given flags from an argument list,
    including `--flag=value` forms and the value following a bare flag.

    :param args: The argument list to filter.
    :param flags: All spellings of the flag (e.g. `("--bandwidth", "-b")`).
    :return list: A new list without the flags or their values.
    """
    filtered: List[str] = []
    prefixes = tuple(f"{flag}=" for flag in flags)
    skip_next = False

    for i, arg in enumerate(args):
        if skip_next:
            skip_next = False
            continue
        if arg in flags:
            if i + 1 < len(args) and looks_like_value(args[i + 1]):
                skip_next = True
            continue
        if arg.startswith(prefixes):
            continue
        filtered.append(arg)
    return filtered


def format_bandwidth(mbps: float) -> str:
    """Formats a bandwidth ceiling the way the worker expects it (whole Mbps)."""
    return f"{mbps:.0f}"


def build_worker_args(config: SupervisorConfig, mode: SupervisorMode) -> List[str]:
    """
    Returns the full command line for launching the worker in the given mode.

    In THROTTLED mode any operator-supplied client and bandwidth limits are
    stripped and replaced by the reduced-capacity values.

    :param config: The supervisor configuration.
    :param mode: The mode to launch in.
    :return list: Executable followed by its arguments.
    """
    args = list(config.worker_args)
    if mode is SupervisorMode.THROTTLED:
        args = filter_args(args, default_settings.MAX_CLIENTS_FLAGS)
        args = filter_args(args, default_settings.BANDWIDTH_FLAGS)
        args += [
            default_settings.MAX_CLIENTS_FLAGS[0], str(config.throttled_max_clients),
            default_settings.BANDWIDTH_FLAGS[0], format_bandwidth(config.throttled_bandwidth_mbps),
        ]
    return [*config.worker_command, *args]


#* --- Process Creation ---
def get_popen_kwargs() -> Dict[str, Any]:
    """
    Returns platform-specific keyword arguments for subprocess.Popen.

    The worker gets its own session (or process group on Windows) so terminal
    signals reach only the supervisor, which then stops the worker itself.
    """
    if sys.platform == "win32":
        return {"creationflags": subprocess.CREATE_NEW_PROCESS_GROUP}
    return {"start_new_session": True}
