# dag.py
from __future__ import annotations

from typing import Iterable, List, Set

from .errors import ConfigurationError
from .model import SetupStep


def check_order(steps: Iterable[SetupStep]) -> None:
    """
    Validate the prerequisites of a plan.

    Requires:
      - step.name: str (unique)
      - step.needs: names of steps that must succeed BEFORE this step

    Plan order is authoritative, so every prerequisite must appear earlier
    in the sequence than the step that needs it.
    """
    steps = list(steps)
    names = [s.name for s in steps]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise ConfigurationError("duplicate step names", {"steps": dupes})

    known = set(names)
    seen: Set[str] = set()

    for step in steps:
        for need in step.needs:
            if need not in known:
                raise ConfigurationError(
                    f"step '{step.name}' needs missing step '{need}'",
                    {"known": sorted(known)},
                )
            if need not in seen:
                raise ConfigurationError(
                    f"step '{step.name}' needs '{need}', which comes later in the plan",
                    {"order": names},
                )
        seen.add(step.name)


def unmet_needs(step: SetupStep, succeeded: Iterable[str]) -> List[str]:
    """Prerequisites of `step` that have not recorded success."""
    done = set(succeeded)
    return [n for n in step.needs if n not in done]
