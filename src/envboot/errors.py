# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional


class EnvbootError(Exception):
    """Base class for every error envboot raises on purpose."""

    exit_code: int = 1


@dataclass
class ConfigurationError(EnvbootError):
    """
    Bad input to the planner.

    Always raised before any external process is started.
    """
    message: str
    details: dict = field(default_factory=dict)

    exit_code = 2

    def __str__(self) -> str:
        lines = [f"configuration: {self.message}"]
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


@dataclass
class StepExecutionError(EnvbootError):
    """A setup step's child process failed (non-zero exit, timeout or missing cwd)."""
    step: str
    message: str
    returncode: Optional[int] = None
    cmd: str = ""
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False

    exit_code = 3

    def __str__(self) -> str:
        lines = [f"step '{self.step}' failed: {self.message}"]
        if self.returncode is not None:
            lines.append(f"exit={self.returncode}")
        if self.timed_out:
            lines.append("timed_out=True")
        if self.cmd:
            lines.append(f"cmd={self.cmd}")
        return "\n".join(lines)


@dataclass
class ProbeClassificationError(EnvbootError):
    """The verification workload failed; `outcome` says how."""
    outcome: str
    message: str
    hint: Optional[str] = None
    output: str = ""

    def __str__(self) -> str:
        lines = [f"probe {self.outcome}: {self.message}"]
        if self.hint:
            lines.append(f"hint={self.hint}")
        return "\n".join(lines)

    @property
    def exit_code(self) -> int:  # type: ignore[override]
        return PROBE_EXIT_CODES.get(self.outcome, 6)


class RunInterrupted(KeyboardInterrupt):
    """Ctrl-C during a step. `results` holds every attempted step, the interrupted one last."""

    def __init__(self, results):
        super().__init__("interrupted")
        self.results = list(results)


PROBE_EXIT_CODES = {
    "hardware-incompatibility": 4,
    "dependency-conflict": 5,
    "unknown-failure": 6,
}
