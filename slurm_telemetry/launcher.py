"""Launch job steps with srun, track child processes and load Lmod modules."""

import ast
import logging
import os
import shlex
import subprocess
from typing import Callable, List, MutableMapping, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)


def srun_command(run: str, gpus: int = 0) -> List[str]:
    """
    Build the srun invocation for a shell command.

    With GPUs allocated every step gets one GPU of its own.
    """
    cmd = ["srun"]
    if gpus:
        cmd += ["--gres=gpu:1", "--accel-bind=g", "--exclusive"]
    cmd += ["--mpi=none", "--no-kill", "bash", "-c", run]
    return cmd


class Launcher:
    """Starts child processes without waiting and collects them at the end."""

    def __init__(self, dryrun: bool = False):
        self.dryrun = dryrun
        self.children: List[subprocess.Popen] = []

    def spawn(self, args: Sequence[str]) -> Optional[subprocess.Popen]:
        """Start ``args`` in the background. Returns None in dryrun mode."""
        if self.dryrun:
            logger.info("DRYRUN: Not running %s because of --dryrun", shlex.join(args))
            return None
        logger.debug("Starting %s", shlex.join(args))
        proc = subprocess.Popen(list(args))
        self.children.append(proc)
        return proc

    def srun(self, run: str, gpus: int = 0) -> Optional[subprocess.Popen]:
        return self.spawn(srun_command(run, gpus))

    def wait_all(self) -> List[int]:
        """Block until every started child has exited; returns their exit codes."""
        logger.debug("Waiting for started subjobs to exit")
        codes = [child.wait() for child in self.children]
        self.children = []
        logger.debug("Done waiting for started subjobs")
        return codes


class ModuleLoadError(ValueError):
    """Raised for Lmod output that is not a plain list of environment changes."""


def _environ_key(node: ast.AST) -> str:
    # os.environ['KEY']
    if (
        isinstance(node, ast.Subscript)
        and isinstance(node.value, ast.Attribute)
        and node.value.attr == "environ"
        and isinstance(node.value.value, ast.Name)
        and node.value.value.id == "os"
        and isinstance(node.slice, ast.Constant)
        and isinstance(node.slice.value, str)
    ):
        return node.slice.value
    raise ModuleLoadError(f"unexpected target at line {node.lineno}")


def parse_lmod_output(output: str) -> List[Tuple[str, Optional[str]]]:
    """
    Read the environment changes out of ``lmod python load`` output.

    Accepts ``os.environ['K'] = 'V'`` and ``del os.environ['K']`` statements
    plus Lmod's ``_mlstatus`` flag. Nothing is evaluated.

    Returns:
        ``(key, value)`` pairs in order; a value of None removes the key.

    Raises:
        ModuleLoadError: On any other statement.
    """
    try:
        tree = ast.parse(output)
    except SyntaxError as e:
        raise ModuleLoadError(f"cannot parse Lmod output: {e}") from e

    changes: List[Tuple[str, Optional[str]]] = []
    for stmt in tree.body:
        if isinstance(stmt, ast.Assign) and len(stmt.targets) == 1:
            target = stmt.targets[0]
            if isinstance(target, ast.Name) and target.id == "_mlstatus":
                continue
            if not (isinstance(stmt.value, ast.Constant) and isinstance(stmt.value.value, str)):
                raise ModuleLoadError(f"non-string value at line {stmt.lineno}")
            changes.append((_environ_key(target), stmt.value.value))
        elif isinstance(stmt, ast.Delete):
            changes.extend((_environ_key(target), None) for target in stmt.targets)
        else:
            raise ModuleLoadError(f"unsupported statement at line {stmt.lineno}")
    return changes


def module_load(
    name: str,
    environ: Optional[MutableMapping[str, str]] = None,
    runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    dryrun: bool = False,
) -> bool:
    """
    Load an Lmod module into ``environ`` so later children see it.

    Lmod's ``python`` mode prints ``os.environ`` assignments, which are
    applied to ``environ`` (the process environment by default). Output
    containing anything else is refused as a whole.

    Returns:
        True if the module was loaded.
    """
    if environ is None:
        environ = os.environ
    if not name:
        logger.warning("Empty module_load!")
        return False
    if dryrun:
        logger.info("DRYRUN: Not loading module %s because of --dryrun", name)
        return False

    lmod_cmd = environ.get("LMOD_CMD")
    if not lmod_cmd:
        logger.warning("LMOD_CMD not set! Cannot load modules.")
        return False

    result = runner([lmod_cmd, "python", "load", name], capture_output=True, text=True)
    if result.returncode != 0:
        logger.warning("Loading module %s failed: %s", name, result.stderr.strip())
        return False

    try:
        changes = parse_lmod_output(result.stdout)
    except ModuleLoadError as e:
        logger.warning("Not loading module %s: %s", name, e)
        return False

    for key, value in changes:
        if value is None:
            environ.pop(key, None)
        else:
            environ[key] = value
    logger.debug("Loaded module %s", name)
    return True
