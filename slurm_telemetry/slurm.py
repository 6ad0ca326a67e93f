"""Slurm node-list expansion and allocation helpers."""

import logging
import os
import re
import subprocess
from typing import Callable, List, Mapping, Optional

logger = logging.getLogger(__name__)

FALLBACK_HOST = "127.0.0.1"

# <prefix>[<numbers>] terminated by a comma, a line break or the end of input
_GROUP_RE = re.compile(r"(.*?)\[(.*?)\](?:,|\r\n|\n|\r|$)")
_RANGE_RE = re.compile(r"(\d+)-(\d+)")
_WORKDIR_RE = re.compile(r"^\s*WorkDir=(.*)$", re.MULTILINE)


class SlurmError(RuntimeError):
    """Raised when Slurm cannot tell us something we cannot do without."""


def _expand_range(prefix: str, low: str, high: str) -> List[str]:
    # A zero-padded lower bound fixes the width of every generated number
    width = len(low) if len(low) > 1 and low.startswith("0") else 0
    return [f"{prefix}{n:0{width}d}" for n in range(int(low), int(high) + 1)]


def expand_node_list(node_list: str) -> List[str]:
    """
    Expand a compact Slurm node list into hostnames.

    Each ``prefix[numbers]`` group contributes hostnames in order. A group
    without any range emits every comma-separated entry verbatim; a group that
    contains a ``low-high`` range emits only that range, ascending.

    Args:
        node_list: Node list as found in ``SLURM_JOB_NODELIST``,
            e.g. ``"node[01-03],gpu[7]"``.

    Returns:
        List of hostnames, or ``["127.0.0.1"]`` if nothing could be parsed.
    """
    hosts: List[str] = []
    for match in _GROUP_RE.finditer(node_list or ""):
        prefix, numbers = match.group(1), match.group(2)
        if numbers and "-" not in numbers:
            hosts.extend(f"{prefix}{number}" for number in numbers.split(","))

        bounds = _RANGE_RE.search(numbers)
        if bounds:
            hosts.extend(_expand_range(prefix, bounds.group(1), bounds.group(2)))

    if not hosts:
        logger.debug("No node groups found in %r, falling back to %s", node_list, FALLBACK_HOST)
        return [FALLBACK_HOST]
    return hosts


def parse_node_list(node_string: str) -> List[str]:
    """
    Parse a comma-separated list of nodes.

    Args:
        node_string: Comma-separated node names, e.g., "visko-1,visko-2,visko-3"

    Returns:
        List of node hostnames.
    """
    nodes = []
    for node in node_string.split(","):
        node = node.strip()
        if node:
            nodes.append(node)
    return nodes


def get_slurm_nodes() -> List[str]:
    """
    Detect all available Slurm nodes using sinfo command.

    Returns:
        List of node hostnames.

    Raises:
        SlurmError: If Slurm is not available or sinfo fails.
    """
    try:
        # -h: no header, -o "%n": just node names
        result = subprocess.run(
            ["sinfo", "-h", "-o", "%n"],
            capture_output=True,
            text=True,
            timeout=10,
        )
    except FileNotFoundError:
        raise SlurmError(
            "Slurm is not installed or sinfo is not in PATH. "
            "Pass the node list explicitly instead."
        )
    except subprocess.TimeoutExpired:
        raise SlurmError("sinfo command timed out")

    if result.returncode != 0:
        raise SlurmError(f"sinfo command failed: {result.stderr}")

    nodes = set()
    for line in result.stdout.strip().split("\n"):
        node = line.strip()
        if node:
            nodes.add(node)
    return sorted(nodes)


def get_working_directory(
    job_id: Optional[str] = None,
    runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
) -> str:
    """
    Return the directory the job was submitted from.

    Slurm copies the batch script elsewhere, so inside a job the original
    working directory is looked up with ``scontrol show job``. Outside of a
    job this is the current working directory.

    Raises:
        SlurmError: If the directory cannot be determined or does not exist.
    """
    if job_id:
        try:
            result = runner(
                ["scontrol", "show", "job", str(job_id)],
                capture_output=True,
                text=True,
                timeout=30,
            )
        except (FileNotFoundError, subprocess.TimeoutExpired) as e:
            raise SlurmError(f"Cannot query job {job_id}: {e}") from e
        match = _WORKDIR_RE.search(result.stdout or "")
        cwd = match.group(1).strip() if match else ""
    else:
        logger.debug("Not inside a Slurm job, using the current directory")
        cwd = os.getcwd()

    if not cwd:
        raise SlurmError("Working directory seems to be empty")
    if not os.path.isdir(cwd):
        raise SlurmError(f"{cwd} could not be found")
    return cwd


def count_allocated_gpus(environ: Mapping[str, str]) -> int:
    """Number of GPUs Slurm allocated to this job on the current node."""
    ordinal = environ.get("GPU_DEVICE_ORDINAL")
    if ordinal and "dev" not in ordinal.lower():
        return len(ordinal.split(","))
    logger.info("No GPUs allocated")
    return 0
