"""Periodic GPU telemetry sampling across the nodes of a job."""

import logging
import multiprocessing
import os
import signal
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from slurm_telemetry.config import Settings
from slurm_telemetry.log import setup_logging
from slurm_telemetry.remote import run_remote
from slurm_telemetry.slurm import get_working_directory

logger = logging.getLogger(__name__)

QUERY_FIELDS = [
    "timestamp",
    "name",
    "pci.bus_id",
    "driver_version",
    "pstate",
    "pcie.link.gen.max",
    "pcie.link.gen.current",
    "temperature.gpu",
    "utilization.gpu",
    "utilization.memory",
    "memory.total",
    "memory.free",
    "memory.used",
]
CSV_HEADER = ",".join(QUERY_FIELDS)
LOG_FILE_NAME = "gpu_usage.csv"

RemoteRunner = Callable[[str, Sequence[str]], int]


class WorkerSpawnError(RuntimeError):
    """Raised when the background sampling worker cannot be started."""


def log_path(workdir: str, job_id: Optional[str], hostname: str, prefix: str = "nvidia") -> Path:
    """Location of the CSV log for one host of one job."""
    return Path(workdir) / str(job_id or "local") / f"{prefix}-{hostname}" / LOG_FILE_NAME


def ensure_log_file(path: Path) -> bool:
    """
    Create the log directory and an empty log file if they are missing.

    Existing files are left untouched.

    Returns:
        True if the file is empty, i.e. the next write has to start with the header.
    """
    if not path.parent.is_dir():
        logger.debug("%s does not exist yet, creating it", path.parent)
        path.parent.mkdir(parents=True, exist_ok=True)
    if not path.exists():
        path.touch()
    return path.stat().st_size == 0


@dataclass
class TelemetrySession:
    """Log state of one host within one job."""

    hostname: str
    path: Path
    first_write: bool = True

    @classmethod
    def open(cls, hostname: str, path: Path) -> "TelemetrySession":
        return cls(hostname=hostname, path=path, first_write=ensure_log_file(path))


class TelemetrySampler:
    """
    Samples GPU metrics on every host of a job, one host after another.

    Each pass appends one sample per host to that host's CSV log by running
    the sampling command remotely. A failing host is reported and skipped.
    """

    def __init__(self, hosts: Sequence[str], settings: Settings, remote: RemoteRunner = run_remote):
        self.hosts = list(hosts)
        self.settings = settings
        self.remote = remote
        self.workdir = settings.workdir or get_working_directory(settings.job_id)
        self.sessions: Dict[str, TelemetrySession] = {}
        self.passes = 0

    def session(self, hostname: str) -> TelemetrySession:
        """Return the session for ``hostname``, creating it on first use."""
        session = self.sessions.get(hostname)
        if session is None:
            path = log_path(self.workdir, self.settings.job_id, hostname, self.settings.log_dir_prefix)
            session = TelemetrySession.open(hostname, path)
            self.sessions[hostname] = session
        else:
            # The file may have been removed between passes
            ensure_log_file(session.path)
        return session

    def sample_host(self, hostname: str) -> int:
        session = self.session(hostname)
        command = [*self.settings.sample_command, str(session.path)]
        status = self.remote(hostname, command)
        if status:
            logger.warning("Sampling on %s seems to have failed! Exit-Code: %d", hostname, status)
        else:
            session.first_write = False
        return status

    def run_pass(self) -> List[Tuple[str, int]]:
        """Sample every host once. Returns ``(host, exit status)`` pairs in host order."""
        results = [(hostname, self.sample_host(hostname)) for hostname in self.hosts]
        self.passes += 1
        return results

    def run(self, stop) -> int:
        """
        Sample until ``stop`` is set.

        ``stop`` is an event-like object (``is_set()``, ``wait(timeout)``). It is
        checked between passes only, so a pass that has started always covers
        every host.

        Returns:
            Number of completed passes.
        """
        interval = self.settings.sleep_nvidia_smi
        while not stop.is_set():
            self.run_pass()
            logger.debug(
                "Sleeping for %s seconds before executing nvidia-smi on each server again",
                interval,
            )
            if stop.wait(interval):
                break
        logger.debug("Telemetry sampler stopping after %d passes", self.passes)
        return self.passes


def _sampler_main(hosts: List[str], settings: Settings, stop, remote: RemoteRunner = run_remote) -> None:
    # Nothing is inherited from the controller unless the worker was forked
    setup_logging(debug=settings.debug, messages=settings.messages, warnings=settings.warnings)

    # The worker shares the controller's shutdown signals
    def request_stop(signum, frame):
        stop.set()

    signal.signal(signal.SIGUSR1, request_stop)
    signal.signal(signal.SIGTERM, request_stop)
    logger.debug("Telemetry worker %d sampling %s", os.getpid(), ", ".join(hosts))
    TelemetrySampler(hosts, settings, remote=remote).run(stop)


def start_sampler(
    settings: Settings,
    stop,
    context=None,
    remote: RemoteRunner = run_remote,
) -> Optional[multiprocessing.Process]:
    """
    Start the background sampling worker for the current allocation.

    Args:
        settings: Options of this run; the worker keeps this snapshot.
        stop: ``multiprocessing.Event`` shared with the worker.
        context: Multiprocessing context to create the process with; forks by
            default so the worker starts from the controller's state.
        remote: Runs the sampling command on a host; must be picklable for
            non-fork contexts.

    Returns:
        The started worker, or None if sampling is disabled or there is no
        allocation to sample.

    Raises:
        WorkerSpawnError: If the worker process could not be started.
    """
    if not settings.run_nvidia_smi:
        logger.debug("Not running nvidia-smi because of --run-nvidia-smi=0")
        return None
    if not settings.node_list:
        logger.info(
            "SLURM_JOB_NODELIST not defined, are you sure you are in a Slurm-Job? Not running nvidia-smi."
        )
        return None

    logger.debug("SLURM_JOB_NODELIST exists (%s), running nvidia-smi periodically", settings.node_list)
    if settings.workdir is None:
        settings = settings.replace(workdir=get_working_directory(settings.job_id))

    ctx = context or multiprocessing.get_context("fork")
    worker = ctx.Process(
        target=_sampler_main,
        args=(settings.hosts, settings, stop, remote),
        name="telemetry-sampler",
    )
    try:
        worker.start()
    except OSError as e:
        raise WorkerSpawnError(f"ERROR Forking for nvidia-smi: {e}") from e
    logger.debug("Started telemetry worker %s", worker.pid)
    return worker
