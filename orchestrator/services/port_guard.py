import logging
from typing import Iterable

import psutil

from orchestrator.utils.errors import PortInUse

logger = logging.getLogger(__name__)

WILDCARD_HOSTS = {"0.0.0.0", "::", ""}


def _listening(host: str):
    hosts = {host, "127.0.0.1", "::1"} if host == "localhost" else {host}
    for conn in psutil.net_connections(kind="inet"):
        if conn.status != psutil.CONN_LISTEN or not conn.laddr:
            continue
        if host in WILDCARD_HOSTS or conn.laddr.ip in WILDCARD_HOSTS or conn.laddr.ip in hosts:
            yield conn


def ensure_ports_free(host: str, ports: Iterable[int]) -> None:
    """Raise PortInUse for the first required port that already has a listener."""
    required = list(ports)
    bound = {}
    for conn in _listening(host):
        bound.setdefault(conn.laddr.port, conn.pid)

    for port in required:
        if port in bound:
            raise PortInUse(port, bound[port])
    logger.debug(f"All {len(required)} required ports on {host} are free")
