# step_workflows/conda.py
from __future__ import annotations

from typing import Tuple

from ..model import SetupStep

CONDA = "conda"


def in_env(env_name: str, *argv: str) -> Tuple[str, ...]:
    """
    Wrap argv so it runs inside a conda env without activating it.

    `conda run` keeps activation scoped to the child process, so nothing
    leaks into the caller's shell.
    """
    return (CONDA, "run", "--no-capture-output", "-n", env_name, *argv)


def create_env_step(
    name: str,
    env_name: str,
    python_version: str,
    *,
    timeout: float | None = None,
) -> SetupStep:
    """Create (or overwrite) a conda env pinned to a Python version."""
    cmd = (CONDA, "create", "--yes", "--name", env_name, f"python={python_version}")
    return SetupStep(name=name, run=cmd, timeout=timeout)
