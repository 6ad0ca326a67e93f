import socket
from unittest import mock

import pytest

from slurm_telemetry import ports
from slurm_telemetry.ports import (
    PortSearchError,
    find_open_port,
    is_port_open,
    is_port_open_on_all,
    random_port,
)


@pytest.fixture
def listener():
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    sock.listen(1)
    yield sock
    sock.close()


def test_bound_port_is_not_open(listener):
    assert is_port_open("127.0.0.1", listener.getsockname()[1], timeout=1) is False


def test_unbound_port_is_open():
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    assert is_port_open("127.0.0.1", port, timeout=1) is True


@mock.patch("slurm_telemetry.ports.socket.create_connection")
def test_connect_errors_count_as_open(mocked_connect):
    for error in (ConnectionRefusedError(), socket.timeout(), socket.gaierror()):
        mocked_connect.side_effect = error
        assert is_port_open("h1", 9999) is True


def test_open_on_all_short_circuits():
    checked = []

    def fake_is_port_open(host, port, timeout=None):
        checked.append(host)
        return host != "h2"

    with mock.patch.object(ports, "is_port_open", side_effect=fake_is_port_open):
        assert is_port_open_on_all(9999, ["h1", "h2", "h3"]) is False
    assert checked == ["h1", "h2"]


def test_open_on_all_checks_every_host():
    with mock.patch.object(ports, "is_port_open", return_value=True) as mocked_check:
        assert is_port_open_on_all(9999, ["h1", "h2", "h3"]) is True
    assert [c.args[0] for c in mocked_check.call_args_list] == ["h1", "h2", "h3"]


def test_random_port_stays_below_max():
    with mock.patch("slurm_telemetry.ports.random.randrange", side_effect=lambda n: n - 1):
        assert random_port(2048, 65500) == 65499
    with mock.patch("slurm_telemetry.ports.random.randrange", return_value=0):
        assert random_port(2048, 65500) == 2048


def test_random_port_rejects_empty_range():
    with pytest.raises(ValueError):
        random_port(100, 100)


def test_find_open_port_retries_until_free():
    candidates = iter([3000, 3001, 3002])
    free = {3002}

    with mock.patch.object(ports, "random_port", side_effect=lambda lo, hi: next(candidates)), \
            mock.patch.object(ports, "is_port_open", side_effect=lambda h, p, timeout=None: p in free):
        assert find_open_port(["h1", "h2"]) == 3002


def test_find_open_port_result_is_free_everywhere():
    with mock.patch.object(ports, "is_port_open", side_effect=lambda h, p, timeout=None: p % 2 == 0):
        port = find_open_port(["h1", "h2"], min_port=5000, max_port=5100)
        assert 5000 <= port < 5100
        assert is_port_open_on_all(port, ["h1", "h2"])


def test_find_open_port_gives_up():
    with mock.patch.object(ports, "is_port_open", return_value=False) as mocked_check:
        with pytest.raises(PortSearchError):
            find_open_port(["h1"], max_attempts=5)
    assert mocked_check.call_count == 5
