# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Iterator, Mapping, Optional, Tuple, Union

Command = Union[str, Tuple[str, ...]]

SUCCESS = "success"
FAILURE = "failure"
INTERRUPTED = "interrupted"


def _freeze(mapping: Optional[Mapping[str, str]]) -> Mapping[str, str]:
    # force values to str for env compatibility
    return MappingProxyType({str(k): str(v) for k, v in (mapping or {}).items()})


@dataclass(frozen=True)
class SetupStep:
    """
    A single command in an environment plan.

    `run` is either a shell string (run with shell=True) or an argv tuple
    (run without a shell). `env` is layered on top of the ambient
    environment for this step only.
    """
    name: str
    run: Command
    env: Mapping[str, str] = field(default_factory=dict)
    no_build_isolation: bool = False
    cwd: str | None = None
    needs: Tuple[str, ...] = ()
    timeout: float | None = None

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("SetupStep needs a name")
        if isinstance(self.run, (list, tuple)):
            if not self.run:
                raise ValueError(f"step '{self.name}' has an empty command")
            object.__setattr__(self, "run", tuple(str(a) for a in self.run))
        elif not isinstance(self.run, str) or not self.run.strip():
            raise ValueError(f"step '{self.name}' has an empty command")
        object.__setattr__(self, "env", _freeze(self.env))
        object.__setattr__(self, "needs", tuple(self.needs))

    @property
    def display(self) -> str:
        """Printable form of the command."""
        if isinstance(self.run, str):
            return self.run
        return " ".join(self.run)


@dataclass(frozen=True)
class TargetConfig:
    """What the planner is asked to build."""
    env_name: str
    arch: str
    python_version: str = "3.11"
    pins: Mapping[str, str] = field(default_factory=dict)
    source_packages: Tuple[str, ...] = ()
    framework: str = "torch"
    index_url: str | None = None
    max_jobs: int = 4
    force_build: bool = True
    step_timeout: float | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "pins", _freeze(self.pins))
        object.__setattr__(self, "source_packages", tuple(self.source_packages))


@dataclass(frozen=True)
class EnvironmentPlan:
    """Ordered, immutable sequence of setup steps built from one TargetConfig."""
    steps: Tuple[SetupStep, ...]
    config: Optional[TargetConfig] = None
    arch_token: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "steps", tuple(self.steps))

    def __len__(self) -> int:
        return len(self.steps)

    def __iter__(self) -> Iterator[SetupStep]:
        return iter(self.steps)

    def __getitem__(self, index: int) -> SetupStep:
        return self.steps[index]

    def names(self) -> list[str]:
        return [s.name for s in self.steps]

    def get(self, name: str) -> SetupStep:
        for s in self.steps:
            if s.name == name:
                return s
        raise KeyError(name)


@dataclass(frozen=True)
class ExecutionResult:
    """Outcome of one attempted step."""
    step: str
    status: str
    exit_code: int | None
    stdout: str = ""
    stderr: str = ""
    duration: float = 0.0
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.status == SUCCESS

    @property
    def output(self) -> str:
        return "\n".join(part for part in (self.stdout, self.stderr) if part)
