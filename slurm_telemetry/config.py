"""Run configuration, built once at startup and passed to every component."""

import dataclasses
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Tuple

from slurm_telemetry.slurm import FALLBACK_HOST, count_allocated_gpus, expand_node_list

DEFAULT_MIN_PORT = 2048
DEFAULT_MAX_PORT = 65500
DEFAULT_SLEEP_NVIDIA_SMI = 30
DEFAULT_SAMPLE_COMMAND = ("slurm-telemetry", "log-gpu")

# Environment variable -> (settings field, type)
ENV_FIELDS: Dict[str, Tuple[str, type]] = {
    "SLURM_TELEMETRY_RUN_NVIDIA_SMI": ("run_nvidia_smi", bool),
    "SLURM_TELEMETRY_SLEEP": ("sleep_nvidia_smi", float),
    "SLURM_TELEMETRY_MIN_PORT": ("min_port", int),
    "SLURM_TELEMETRY_MAX_PORT": ("max_port", int),
    "SLURM_TELEMETRY_LOG_PREFIX": ("log_dir_prefix", str),
}

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


class ConfigError(ValueError):
    """Raised for configuration values that cannot be used."""


def _cast_value(name: str, value: str, typ: type) -> Any:
    if typ is bool:
        lowered = value.strip().lower()
        if lowered in _TRUE:
            return True
        if lowered in _FALSE:
            return False
        raise ConfigError(f"{name}: expected a boolean, got {value!r}")
    try:
        return typ(value)
    except ValueError:
        raise ConfigError(f"{name}: expected {typ.__name__}, got {value!r}")


@dataclass(frozen=True)
class Settings:
    """Immutable options for one invocation."""

    job_id: Optional[str] = None
    node_list: Optional[str] = None
    workdir: Optional[str] = None
    run_nvidia_smi: bool = True
    sleep_nvidia_smi: float = DEFAULT_SLEEP_NVIDIA_SMI
    min_port: int = DEFAULT_MIN_PORT
    max_port: int = DEFAULT_MAX_PORT
    log_dir_prefix: str = "nvidia"
    sample_command: Tuple[str, ...] = DEFAULT_SAMPLE_COMMAND
    allocated_gpus: int = 0
    debug: bool = False
    dryrun: bool = False
    messages: bool = True
    warnings: bool = True
    sanity_check: bool = True

    @classmethod
    def from_environ(cls, environ: Optional[Mapping[str, str]] = None, **overrides: Any) -> "Settings":
        """
        Build settings from Slurm's environment plus explicit overrides.

        Overrides whose value is ``None`` are ignored so that unset CLI options
        fall through to the environment and the defaults.

        Raises:
            ConfigError: If a value cannot be converted or the sampling
                interval is not positive.
        """
        if environ is None:
            environ = os.environ

        values: Dict[str, Any] = {
            "job_id": environ.get("SLURM_JOB_ID"),
            "node_list": environ.get("SLURM_JOB_NODELIST"),
            "allocated_gpus": count_allocated_gpus(environ),
        }
        for env_name, (field, typ) in ENV_FIELDS.items():
            if env_name in environ:
                values[field] = _cast_value(env_name, environ[env_name], typ)

        known = {f.name for f in dataclasses.fields(cls)}
        for key, value in overrides.items():
            if key not in known:
                raise ConfigError(f"Unknown setting: {key}")
            if value is not None:
                values[key] = value

        if "sample_command" in values:
            values["sample_command"] = tuple(values["sample_command"])
        sleep = values.get("sleep_nvidia_smi", DEFAULT_SLEEP_NVIDIA_SMI)
        if sleep <= 0:
            raise ConfigError(f"Sampling interval must be positive, got {sleep}")
        return cls(**values)

    def replace(self, **changes: Any) -> "Settings":
        return dataclasses.replace(self, **changes)

    @property
    def hosts(self) -> List[str]:
        """Hostnames of the allocation, in node-list order."""
        return expand_node_list(self.node_list or FALLBACK_HOST)

    def sanity_check_warnings(self) -> List[str]:
        """Problems worth telling the user about before starting."""
        problems = []
        if not self.job_id:
            problems.append("No Slurm-ID!")
        if self.min_port >= self.max_port:
            problems.append(f"Port range {self.min_port}-{self.max_port} is empty")
        return problems

    def as_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)
