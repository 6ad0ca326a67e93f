"""Find a TCP port that is free on every host of an allocation."""

import logging
import random
import socket
from typing import Iterable, Optional

from slurm_telemetry.config import DEFAULT_MAX_PORT, DEFAULT_MIN_PORT

logger = logging.getLogger(__name__)


class PortSearchError(RuntimeError):
    """Raised when no free port was found within the allowed attempts."""


def is_port_open(host: str, port: int, timeout: Optional[float] = None) -> bool:
    """
    Check whether ``port`` is free on ``host``.

    Free means nothing accepts connections there: if a TCP connection can be
    established, the port is taken and this returns False. Refused,
    unreachable and timed-out connects all count as free.
    """
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return False
    except OSError:
        return True


def is_port_open_on_all(port: int, hosts: Iterable[str], timeout: Optional[float] = None) -> bool:
    """
    Check whether ``port`` is free on all ``hosts``.

    Stops at the first host where the port is taken; later hosts are not checked.
    """
    for host in hosts:
        if not is_port_open(host, port, timeout=timeout):
            logger.warning("Port %d is NOT open everywhere (taken on %s)", port, host)
            return False
    logger.debug("Port %d is open everywhere!", port)
    return True


def random_port(min_port: int = DEFAULT_MIN_PORT, max_port: int = DEFAULT_MAX_PORT) -> int:
    """Draw a port uniformly from ``[min_port, max_port)``; ``max_port`` itself is never drawn."""
    if min_port >= max_port:
        raise ValueError(f"Empty port range: {min_port}-{max_port}")
    port = min_port + random.randrange(max_port - min_port)
    logger.debug("random_port -> %d", port)
    return port


def find_open_port(
    hosts: Iterable[str],
    min_port: int = DEFAULT_MIN_PORT,
    max_port: int = DEFAULT_MAX_PORT,
    max_attempts: Optional[int] = None,
    timeout: Optional[float] = None,
) -> int:
    """
    Return a random port that is free on all hosts at the time of the check.

    Candidates are drawn from ``[min_port, max_port)`` until one passes. Nothing
    reserves the port, so another process may still take it afterwards.

    Args:
        hosts: Hosts the port has to be free on.
        min_port: Smallest port that may be returned.
        max_port: Exclusive upper bound of the candidates.
        max_attempts: Give up after this many candidates. None keeps trying
            forever, which never ends if every port is taken.
        timeout: Connect timeout per port check in seconds.

    Raises:
        PortSearchError: If ``max_attempts`` candidates were all taken.
        ValueError: If the port range is empty.
    """
    hosts = list(hosts)
    attempts = 0
    while max_attempts is None or attempts < max_attempts:
        attempts += 1
        port = random_port(min_port, max_port)
        if is_port_open_on_all(port, hosts, timeout=timeout):
            logger.debug("Port: %d", port)
            return port
    raise PortSearchError(
        f"No port in {min_port}-{max_port} was free on all {len(hosts)} hosts "
        f"after {attempts} attempts"
    )
