"""Run commands on allocated nodes via SSH."""

import logging
import shlex
import subprocess
from typing import Callable, Dict, Iterable, List, Optional, Sequence

logger = logging.getLogger(__name__)

# Exit statuses reported when ssh itself could not run to completion
EXIT_TIMEOUT = 124
EXIT_NOT_FOUND = 127

SSH_OPTIONS = [
    "-o",
    "LogLevel=ERROR",
    "-o",
    "BatchMode=yes",
]

Runner = Callable[..., subprocess.CompletedProcess]


def ssh_command(hostname: str, args: Sequence[str]) -> List[str]:
    """
    Build the ssh argument vector for running ``args`` on ``hostname``.

    The remote shell sees the arguments quoted one by one, so paths with
    spaces or shell metacharacters arrive unchanged.
    """
    return ["ssh", *SSH_OPTIONS, hostname, shlex.join(args)]


def run_remote(
    hostname: str,
    args: Sequence[str],
    timeout: Optional[float] = None,
    runner: Runner = subprocess.run,
) -> int:
    """
    Run a command on a node and return its exit status.

    Args:
        hostname: The hostname to SSH into.
        args: Command and arguments to run on the node.
        timeout: Seconds to wait for the command; None waits indefinitely.
        runner: Replacement for ``subprocess.run``.

    Returns:
        The remote exit status. Connection and authentication problems show
        up as ssh's own non-zero status, a missing ssh binary as 127 and a
        timeout as 124.
    """
    cmd = ssh_command(hostname, args)
    logger.debug("Running %s", shlex.join(cmd))
    try:
        result = runner(cmd, timeout=timeout)
    except FileNotFoundError:
        logger.error("ssh not found in PATH")
        return EXIT_NOT_FOUND
    except subprocess.TimeoutExpired:
        logger.warning("%s: command timed out after %ss", hostname, timeout)
        return EXIT_TIMEOUT

    logger.debug("EXIT-Code: %d", result.returncode)
    return result.returncode


def run_on_all_nodes(
    hostnames: Iterable[str],
    args: Sequence[str],
    timeout: Optional[float] = None,
    runner: Runner = subprocess.run,
) -> Dict[str, int]:
    """Run the same command on every node, one after another."""
    statuses = {}
    for hostname in hostnames:
        statuses[hostname] = run_remote(hostname, args, timeout=timeout, runner=runner)
    return statuses
