import pytest

from relaywatch.local.supervisor.process_utils import (
    SupervisorMode,
    build_worker_args,
    filter_args,
    looks_like_value,
)


@pytest.mark.parametrize("arg, expected", [
    ("50", True),
    ("/var/lib/conduit", True),
    ("-5", True),
    ("-0.5", True),
    ("-m", False),
    ("--bandwidth", False),
])
def test_looks_like_value(arg, expected):
    assert looks_like_value(arg) is expected


def test_filter_args_strips_every_spelling_and_its_value():
    args = ["start", "--max-clients", "50", "-v", "-m", "20", "--max-clients=30", "--data-dir", "/d"]

    assert filter_args(args, ("--max-clients", "-m")) == ["start", "-v", "--data-dir", "/d"]


def test_filter_args_keeps_following_flag_when_value_missing():
    assert filter_args(["--bandwidth", "--verbose"], ("--bandwidth", "-b")) == ["--verbose"]


def test_filter_args_treats_negative_number_as_value():
    assert filter_args(["-b", "-1", "start"], ("--bandwidth", "-b")) == ["start"]


def test_normal_mode_uses_operator_args(make_config):
    config = make_config(worker_command=["conduit"], worker_args=["start", "--max-clients", "50"])

    assert build_worker_args(config, SupervisorMode.NORMAL) == ["conduit", "start", "--max-clients", "50"]


def test_throttled_mode_replaces_limits(make_config):
    config = make_config(
        worker_command=["conduit"],
        worker_args=["start", "-m", "50", "--bandwidth=40", "--data-dir", "/d"],
        throttled_max_clients=10,
        throttled_bandwidth_mbps=2.6,
    )

    assert build_worker_args(config, SupervisorMode.THROTTLED) == [
        "conduit", "start", "--data-dir", "/d", "--max-clients", "10", "--bandwidth", "3",
    ]


def test_mode_from_throttled_flag():
    assert SupervisorMode.from_throttled(True) is SupervisorMode.THROTTLED
    assert SupervisorMode.from_throttled(False) is SupervisorMode.NORMAL
