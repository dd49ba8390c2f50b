# step_workflows/pip.py
from __future__ import annotations

from typing import Mapping, Sequence, Tuple

from ..model import Command, SetupStep
from .conda import in_env

NO_BUILD_ISOLATION = "--no-build-isolation"


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def requirement(package: str, constraint: str | None = None) -> str:
    """Join a package and its constraint into one requirement argument."""
    if not constraint:
        return package
    return f"{package}{constraint}"


def pip_install_step(
    name: str,
    env_name: str,
    requirements: Sequence[str],
    *,
    upgrade: bool = False,
    index_url: str | None = None,
    env: Mapping[str, str] | None = None,
    no_build_isolation: bool = False,
    needs: Sequence[str] = (),
    timeout: float | None = None,
) -> SetupStep:
    """Create a `pip install` step that runs inside a conda env."""
    if not requirements:
        raise ValueError(f"pip step {name!r} has nothing to install")

    cmd = ["python", "-m", "pip", "install"]
    if upgrade:
        cmd.append("--upgrade")
    if index_url:
        cmd.extend(["--index-url", index_url])
    # each requirement is its own argv item, never shell-parsed
    cmd.extend(requirements)

    return SetupStep(
        name=name,
        run=in_env(env_name, *cmd),
        env=dict(env or {}),
        no_build_isolation=no_build_isolation,
        needs=tuple(needs),
        timeout=timeout,
    )


# ---------------------------------------------------------------------
# Build isolation
# ---------------------------------------------------------------------

def is_pip_install(cmd: Command) -> bool:
    """True if the command invokes `pip install` (argv or shell form)."""
    if isinstance(cmd, str):
        words = cmd.split()
    else:
        words = list(cmd)
    for i, word in enumerate(words[:-1]):
        if word.rsplit("/", 1)[-1] in ("pip", "pip3") and words[i + 1] == "install":
            return True
    return False


def without_build_isolation(cmd: Command) -> Command:
    """
    Return `cmd` with build isolation disabled.

    Builds then see the headers and libraries already installed in the env
    (the framework a CUDA extension compiles against). Commands that are
    not pip installs are returned unchanged.
    """
    if not is_pip_install(cmd):
        return cmd
    if isinstance(cmd, str):
        if NO_BUILD_ISOLATION in cmd.split():
            return cmd
        return f"{cmd} {NO_BUILD_ISOLATION}"
    argv: Tuple[str, ...] = tuple(cmd)
    if NO_BUILD_ISOLATION in argv:
        return argv
    return argv + (NO_BUILD_ISOLATION,)
