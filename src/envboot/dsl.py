# src/envboot/dsl.py
from __future__ import annotations

from typing import Dict, List, Mapping, Optional, Sequence

from .dag import check_order
from .model import Command, EnvironmentPlan, SetupStep, TargetConfig


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    cwd: str | None = None,
    env: Optional[Dict[str, str]] = None,
    needs: Sequence[str] = (),
    timeout: float | None = None,
) -> SetupStep:
    """Create a shell step."""
    return SetupStep(name=name, run=cmd, cwd=cwd, env=env or {}, needs=tuple(needs), timeout=timeout)


def step(
    name: str,
    *argv: str,
    cwd: str | None = None,
    env: Optional[Dict[str, str]] = None,
    needs: Sequence[str] = (),
    no_build_isolation: bool = False,
    timeout: float | None = None,
) -> SetupStep:
    """Create an argv step (no shell)."""
    return SetupStep(
        name=name,
        run=tuple(argv),
        cwd=cwd,
        env=env or {},
        needs=tuple(needs),
        no_build_isolation=no_build_isolation,
        timeout=timeout,
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class PlanBuilder:
    """
    Fluent plan assembly.

    Example:
        plan = (
            PlanBuilder()
            .add(step("install-A", "pip", "install", "a", env={"X": "1"}))
            .define_step("install-B", ("pip", "install", "b"), needs=["install-A"])
            .build()
        )
    """

    def __init__(self, config: TargetConfig | None = None, arch_token: str | None = None):
        self._config = config
        self._arch_token = arch_token
        self._steps: List[SetupStep] = []

    def add(self, *steps: SetupStep) -> "PlanBuilder":
        self._steps.extend(steps)
        return self

    def define_step(
        self,
        name: str,
        run: Command,
        *,
        env: Optional[Mapping[str, str]] = None,
        cwd: str | None = None,
        needs: Sequence[str] = (),
        no_build_isolation: bool = False,
        timeout: float | None = None,
    ) -> "PlanBuilder":
        self._steps.append(
            SetupStep(
                name=name,
                run=run,
                env=dict(env or {}),
                cwd=cwd,
                needs=tuple(needs),
                no_build_isolation=no_build_isolation,
                timeout=timeout,
            )
        )
        return self

    def build(self) -> EnvironmentPlan:
        if not self._steps:
            raise ValueError("plan has no steps")
        check_order(self._steps)
        return EnvironmentPlan(steps=tuple(self._steps), config=self._config, arch_token=self._arch_token)


def plan(*steps: SetupStep) -> EnvironmentPlan:
    """
    Hand-written plan helper for config files:

        from envboot import plan, sh

        PLAN = plan(
            sh("install-A", "pip install a"),
            sh("install-B", "pip install b", needs=["install-A"]),
        )
    """
    return PlanBuilder().add(*steps).build()
