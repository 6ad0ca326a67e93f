"""Append one nvidia-smi sample of the job's GPUs to a CSV file."""

import logging
import socket
import subprocess
from pathlib import Path
from typing import Callable, List, Optional

from rich.console import Console

from slurm_telemetry.telemetry import QUERY_FIELDS

logger = logging.getLogger(__name__)

# Written by the job's own processes: the value of their CUDA_VISIBLE_DEVICES
CUDA_DEVICES_FILE = "/tmp/LOG_CUDA_VISIBLE_DEVICES"

console = Console()


def nvidia_smi_command(devices: str, with_header: bool) -> List[str]:
    """nvidia-smi invocation querying the telemetry fields of ``devices``."""
    output_format = "csv" if with_header else "csv,noheader"
    return [
        "nvidia-smi",
        "-i",
        devices,
        f"--query-gpu={','.join(QUERY_FIELDS)}",
        f"--format={output_format}",
    ]


def _write_error(logfile: str, hostname: Optional[str]) -> int:
    console.print(
        f"ERROR: cannot write {logfile} on {hostname or socket.gethostname()}",
        markup=False,
        soft_wrap=True,
    )
    return 1


def append_gpu_sample(
    logfile: str,
    cuda_file: str = CUDA_DEVICES_FILE,
    runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    hostname: Optional[str] = None,
) -> int:
    """
    Append the current GPU metrics to ``logfile``.

    Only the GPUs listed in ``cuda_file`` are sampled, so other jobs sharing
    the node do not show up. The header row is written only when the log is
    still empty.

    Returns:
        nvidia-smi's exit status, or 1 if ``cuda_file`` is missing or
        ``logfile`` cannot be written.
    """
    devices_file = Path(cuda_file)
    if not devices_file.is_file():
        console.print(
            f"ERROR: {cuda_file} not found on {hostname or socket.gethostname()}",
            markup=False,
            soft_wrap=True,
        )
        return 1

    devices = devices_file.read_text().strip()
    path = Path(logfile)
    try:
        path.touch()
        with_header = path.stat().st_size == 0
        fh = path.open("a")
    except OSError:
        return _write_error(logfile, hostname)

    cmd = nvidia_smi_command(devices, with_header)
    logger.debug("Running %s", " ".join(cmd))
    with fh:
        try:
            result = runner(cmd, stdout=fh, text=True)
        except FileNotFoundError:
            console.print("ERROR: nvidia-smi not found in PATH", soft_wrap=True)
            return 127
    return result.returncode
