"""CLI entry point for slurm-telemetry."""

import logging
import multiprocessing
import shlex
import signal
import sys
from typing import Optional, Tuple

import click
from rich.console import Console

from slurm_telemetry import __version__
from slurm_telemetry.config import ConfigError, Settings
from slurm_telemetry.display import cancel_message, hosts_table, settings_table
from slurm_telemetry.gpulog import CUDA_DEVICES_FILE, append_gpu_sample
from slurm_telemetry.launcher import Launcher, module_load
from slurm_telemetry.log import setup_logging
from slurm_telemetry.ports import PortSearchError, find_open_port
from slurm_telemetry.remote import run_on_all_nodes
from slurm_telemetry.slurm import SlurmError, expand_node_list, get_slurm_nodes, parse_node_list
from slurm_telemetry.telemetry import TelemetrySampler, WorkerSpawnError, start_sampler

logger = logging.getLogger(__name__)

console = Console()


def _load_settings(**overrides) -> Settings:
    try:
        return Settings.from_environ(**overrides)
    except ConfigError as e:
        console.print(f"[red]✗ Error: {e}[/]")
        sys.exit(1)


def _split_command(command: Optional[str]) -> Optional[Tuple[str, ...]]:
    return tuple(shlex.split(command)) if command else None


@click.group()
@click.version_option(version=__version__, prog_name="slurm-telemetry")
def main():
    """
    📈 Slurm job helper - GPU telemetry, free ports and node lists.

    \b
    Examples:
        slurm-telemetry run --srun 'python train.py'   # Sample GPUs while training
        slurm-telemetry expand 'node[01-04]'           # List the hosts of a node list
        slurm-telemetry find-port                      # Port free on all job nodes
        slurm-telemetry exec-all hostname              # Run a command on all job nodes
    """


@main.command()
@click.option("--debug", is_flag=True, default=False, help="Enables lots and lots of debug outputs")
@click.option("--dryrun", is_flag=True, default=False, help="Do not start job steps or load modules")
@click.option("--nomsgs", is_flag=True, default=False, help="Disables messages")
@click.option("--nowarnings", is_flag=True, default=False, help="Disables warnings (not recommended!)")
@click.option("--nosanitycheck", is_flag=True, default=False, help="Disables the sanity checks (not recommended!)")
@click.option(
    "--run-nvidia-smi/--no-run-nvidia-smi",
    default=None,
    help="Run nvidia-smi periodically to log the GPU usage of the job (default: on)",
)
@click.option(
    "--sleep-nvidia-smi",
    type=float,
    default=None,
    help="Seconds to sleep between two samples of all nodes (default: 30)",
)
@click.option("--workdir", type=click.Path(file_okay=False), default=None, help="Directory to write the logs to")
@click.option("--sample-command", type=str, default=None, help="Command run on each node to append a sample")
@click.option("--module", "-m", "modules", multiple=True, help="Lmod module to load before starting job steps")
@click.option("--srun", "sruns", multiple=True, help="Shell command to start as a job step via srun")
def run(
    debug: bool,
    dryrun: bool,
    nomsgs: bool,
    nowarnings: bool,
    nosanitycheck: bool,
    run_nvidia_smi: Optional[bool],
    sleep_nvidia_smi: Optional[float],
    workdir: Optional[str],
    sample_command: Optional[str],
    modules: Tuple[str, ...],
    sruns: Tuple[str, ...],
):
    """
    Run a job: sample GPU usage on all nodes and start the given job steps.

    The GPU sampler keeps running until the job steps have finished or the
    job receives USR1 (scancel --signal=USR1 --batch JOBID).
    """
    setup_logging(debug=debug, messages=not nomsgs, warnings=not nowarnings)
    settings = _load_settings(
        debug=debug,
        dryrun=dryrun,
        messages=not nomsgs,
        warnings=not nowarnings,
        sanity_check=not nosanitycheck,
        run_nvidia_smi=run_nvidia_smi,
        sleep_nvidia_smi=sleep_nvidia_smi,
        workdir=workdir,
        sample_command=_split_command(sample_command),
    )
    if debug:
        console.print(settings_table(settings))

    if settings.job_id:
        console.print(cancel_message(settings.job_id))

    if settings.sanity_check:
        for problem in settings.sanity_check_warnings():
            logger.warning(problem)
    else:
        logger.info("Disabled sanity check")

    for module in modules:
        module_load(module, dryrun=settings.dryrun)

    stop = multiprocessing.get_context("fork").Event()

    def signal_handler(sig, frame):
        logger.debug("Received signal %d, shutting down", sig)
        stop.set()

    signal.signal(signal.SIGUSR1, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        worker = start_sampler(settings, stop)
    except (WorkerSpawnError, SlurmError) as e:
        console.print(f"[red]✗ Error: {e}[/]")
        sys.exit(1)

    launcher = Launcher(dryrun=settings.dryrun)
    failed = 0
    try:
        for command in sruns:
            launcher.srun(command, gpus=settings.allocated_gpus)
        failed = sum(1 for code in launcher.wait_all() if code)
        if sruns:
            stop.set()
        if worker is not None:
            worker.join()
    except KeyboardInterrupt:
        stop.set()
        if worker is not None:
            worker.join()

    if failed:
        console.print(f"[red]✗ {failed} job step(s) failed[/]")
        sys.exit(1)
    console.print("[green]✓ Done[/]")


@main.command()
@click.argument("nodelist", required=False, envvar="SLURM_JOB_NODELIST")
@click.option("--all", "all_nodes", is_flag=True, default=False, help="List every node known to sinfo instead")
@click.option("--table", "-t", is_flag=True, default=False, help="Show the hosts as a table")
def expand(nodelist: Optional[str], all_nodes: bool, table: bool):
    """Expand a Slurm node list (default: $SLURM_JOB_NODELIST) into hostnames."""
    if all_nodes:
        try:
            hosts = get_slurm_nodes()
        except SlurmError as e:
            console.print(f"[red]✗ Error: {e}[/]")
            sys.exit(1)
    else:
        hosts = expand_node_list(nodelist or "")

    if table:
        console.print(hosts_table(hosts))
    else:
        for host in hosts:
            click.echo(host)


@main.command(name="find-port")
@click.option("--nodes", "-n", type=str, default=None, help="Comma-separated hosts (default: all job nodes)")
@click.option("--min-port", type=int, default=None, help="Smallest candidate port (default: 2048)")
@click.option("--max-port", type=int, default=None, help="Candidates stay below this port (default: 65500)")
@click.option("--max-attempts", type=int, default=None, help="Give up after this many candidates")
@click.option("--timeout", type=float, default=2.0, help="Connect timeout per port check in seconds")
@click.option("--debug", is_flag=True, default=False, help="Show every port check")
def find_port(
    nodes: Optional[str],
    min_port: Optional[int],
    max_port: Optional[int],
    max_attempts: Optional[int],
    timeout: float,
    debug: bool,
):
    """Print a random TCP port that is free on all nodes."""
    setup_logging(debug=debug)
    settings = _load_settings(min_port=min_port, max_port=max_port)
    hosts = parse_node_list(nodes) if nodes else settings.hosts
    try:
        port = find_open_port(
            hosts,
            min_port=settings.min_port,
            max_port=settings.max_port,
            max_attempts=max_attempts,
            timeout=timeout,
        )
    except (PortSearchError, ValueError) as e:
        console.print(f"[red]✗ Error: {e}[/]")
        sys.exit(1)
    click.echo(port)


@main.command(name="log-gpu")
@click.argument("logfile", type=click.Path(dir_okay=False))
@click.option("--cuda-file", default=CUDA_DEVICES_FILE, show_default=True, help="File holding the job's CUDA_VISIBLE_DEVICES")
def log_gpu(logfile: str, cuda_file: str):
    """Append one GPU sample of this node to LOGFILE."""
    sys.exit(append_gpu_sample(logfile, cuda_file=cuda_file))


@main.command(name="sample-once")
@click.option("--nodes", "-n", type=str, default=None, help="Comma-separated hosts (default: all job nodes)")
@click.option("--workdir", type=click.Path(file_okay=False), default=None, help="Directory to write the logs to")
@click.option("--sample-command", type=str, default=None, help="Command run on each node to append a sample")
@click.option("--debug", is_flag=True, default=False, help="Enables debug outputs")
def sample_once(nodes: Optional[str], workdir: Optional[str], sample_command: Optional[str], debug: bool):
    """Take a single GPU sample on every node and show the results."""
    setup_logging(debug=debug)
    settings = _load_settings(workdir=workdir, sample_command=_split_command(sample_command))
    hosts = parse_node_list(nodes) if nodes else settings.hosts
    try:
        sampler = TelemetrySampler(hosts, settings)
    except SlurmError as e:
        console.print(f"[red]✗ Error: {e}[/]")
        sys.exit(1)

    results = sampler.run_pass()
    console.print(hosts_table(hosts, results))
    if any(status for _, status in results):
        sys.exit(1)


@main.command(name="exec-all", context_settings={"ignore_unknown_options": True})
@click.option("--nodes", "-n", type=str, default=None, help="Comma-separated hosts (default: all job nodes)")
@click.option("--timeout", type=float, default=None, help="Seconds to wait for the command on each node")
@click.option("--debug", is_flag=True, default=False, help="Enables debug outputs")
@click.argument("command", nargs=-1, required=True, type=click.UNPROCESSED)
def exec_all(nodes: Optional[str], timeout: Optional[float], debug: bool, command: Tuple[str, ...]):
    """Run COMMAND on every node over ssh and show the exit statuses."""
    setup_logging(debug=debug)
    settings = _load_settings()
    hosts = parse_node_list(nodes) if nodes else settings.hosts
    statuses = run_on_all_nodes(hosts, command, timeout=timeout)
    console.print(hosts_table(hosts, list(statuses.items())))
    if any(statuses.values()):
        sys.exit(1)


if __name__ == "__main__":
    main()
