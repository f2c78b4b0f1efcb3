import socket

import pytest

from orchestrator.services.port_guard import ensure_ports_free
from orchestrator.utils.errors import PortInUse


@pytest.fixture
def listener():
    sock = socket.socket()
    sock.bind(("127.0.0.1", 0))
    sock.listen()
    yield sock.getsockname()[1]
    sock.close()


def test_free_ports_pass():
    with socket.socket() as probe:
        probe.bind(("127.0.0.1", 0))
        free_port = probe.getsockname()[1]
    ensure_ports_free("127.0.0.1", [free_port])


def test_bound_port_is_named(listener):
    with pytest.raises(PortInUse) as exc:
        ensure_ports_free("127.0.0.1", [listener])
    assert exc.value.port == listener
    assert str(listener) in str(exc.value)


def test_wildcard_bind_conflicts_with_loopback():
    with socket.socket() as sock:
        sock.bind(("0.0.0.0", 0))
        sock.listen()
        port = sock.getsockname()[1]
        with pytest.raises(PortInUse):
            ensure_ports_free("127.0.0.1", [port])


def test_bound_but_not_listening_is_free():
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        ensure_ports_free("127.0.0.1", [sock.getsockname()[1]])
