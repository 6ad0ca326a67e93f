"""slurm-telemetry: GPU usage logging and port discovery for Slurm allocations."""

import logging

__version__ = "0.1.0"

logger = logging.getLogger("slurm_telemetry")
logger.addHandler(logging.NullHandler())
