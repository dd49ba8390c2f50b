# runner.py
from __future__ import annotations

import os
import signal
import subprocess
import threading
import time
from pathlib import Path
from typing import Callable, List, Mapping, Optional, Sequence

from .dag import unmet_needs
from .errors import RunInterrupted, StepExecutionError
from .model import FAILURE, INTERRUPTED, SUCCESS, EnvironmentPlan, ExecutionResult, SetupStep
from .step_workflows.pip import without_build_isolation
from .ui.console import get_console

# tail kept from each stream so a failed native build doesn't flood memory
OUTPUT_TAIL = 8000

TOOL_HINTS = {
    "conda": "Install Miniconda/Miniforge or put conda on PATH.",
    "nvcc": "Install the CUDA toolkit and set CUDA_HOME.",
    "git": "Install Git (needed for git+https source packages).",
}


def tail_text(text: str | bytes | None) -> str:
    if text is None:
        return ""
    if isinstance(text, bytes):
        text = text.decode("utf-8", errors="replace")
    return text[-OUTPUT_TAIL:]


# ----------------------------------------------------------------------
# Execution primitives
# ----------------------------------------------------------------------

def _kill_group(proc: subprocess.Popen) -> None:
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        # group already gone
        return


def run_process(
    cmd,
    *,
    shell: bool = False,
    cwd: str | None = None,
    env: Optional[Mapping[str, str]] = None,
    text: bool = True,
    capture_output: bool = True,
    timeout: float | None = None,
) -> subprocess.CompletedProcess:
    """
    subprocess.run, but the child leads its own process group.

    Steps go through `conda run` or `sh`, so the real pip/nvcc work is a
    grandchild. On timeout or Ctrl-C the whole group is killed, so nothing
    keeps installing into the env after the step is recorded.
    """
    pipe = subprocess.PIPE if capture_output else None
    proc = subprocess.Popen(
        cmd,
        shell=shell,
        cwd=cwd,
        env=dict(env) if env is not None else None,
        text=text,
        stdout=pipe,
        stderr=pipe,
        start_new_session=True,
    )
    try:
        stdout, stderr = proc.communicate(timeout=timeout)
    except subprocess.TimeoutExpired:
        _kill_group(proc)
        stdout, stderr = proc.communicate()
        raise subprocess.TimeoutExpired(cmd, timeout, output=stdout, stderr=stderr)
    except BaseException:
        # KeyboardInterrupt: the new session doesn't receive the terminal's SIGINT
        _kill_group(proc)
        proc.wait()
        raise
    return subprocess.CompletedProcess(cmd, proc.returncode, stdout, stderr)


def step_env(step: SetupStep, base: Optional[Mapping[str, str]] = None) -> dict:
    """Ambient environment with the step's overrides layered on top."""
    env = dict(os.environ if base is None else base)
    env.update(step.env)
    return env


def _run_step(
    step: SetupStep,
    root: Path,
    *,
    timeout: float | None,
    base_env: Optional[Mapping[str, str]],
    runner: Callable[..., subprocess.CompletedProcess],
) -> ExecutionResult:
    cwd = (root / (step.cwd or ".")).resolve()
    if not cwd.is_dir():
        return ExecutionResult(
            step=step.name,
            status=FAILURE,
            exit_code=None,
            stderr=f"working directory not found: {cwd}",
        )

    cmd = without_build_isolation(step.run) if step.no_build_isolation else step.run
    limit = step.timeout if step.timeout is not None else timeout

    start = time.monotonic()
    try:
        proc = runner(
            cmd,
            shell=isinstance(cmd, str),
            cwd=str(cwd),
            env=step_env(step, base_env),
            text=True,
            capture_output=True,
            timeout=limit,
        )
    except subprocess.TimeoutExpired as e:
        return ExecutionResult(
            step=step.name,
            status=FAILURE,
            exit_code=None,
            stdout=tail_text(e.stdout),
            stderr=tail_text(e.stderr) + f"\ntimed out after {limit}s",
            duration=time.monotonic() - start,
            timed_out=True,
        )
    except OSError as e:
        # could not start: missing from PATH, not executable, ...
        message = str(e)
        if isinstance(e, FileNotFoundError):
            tool = cmd[0] if isinstance(cmd, tuple) else cmd.split()[0]
            message += "\n" + TOOL_HINTS.get(tool, f"Install {tool} or fix PATH.")
        return ExecutionResult(
            step=step.name,
            status=FAILURE,
            exit_code=None,
            stderr=message,
            duration=time.monotonic() - start,
        )

    return ExecutionResult(
        step=step.name,
        status=SUCCESS if proc.returncode == 0 else FAILURE,
        exit_code=proc.returncode,
        stdout=tail_text(proc.stdout),
        stderr=tail_text(proc.stderr),
        duration=time.monotonic() - start,
    )


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------

def run_plan(
    plan: EnvironmentPlan,
    *,
    cwd: str | Path = ".",
    timeout: float | None = None,
    cancel: threading.Event | None = None,
    base_env: Optional[Mapping[str, str]] = None,
    runner: Callable[..., subprocess.CompletedProcess] = run_process,
) -> List[ExecutionResult]:
    """
    Run every step of `plan` in order, stopping at the first failure.

    Returns one ExecutionResult per attempted step. Steps after a failure
    are never started. `cancel` is checked between steps. A Ctrl-C during
    a step is recorded as "interrupted" and re-raised as RunInterrupted,
    which carries the results so far. Nothing is rolled back.
    """
    console = get_console()
    root = Path(cwd).resolve()
    results: List[ExecutionResult] = []
    succeeded: List[str] = []

    for index, step in enumerate(plan, start=1):
        if cancel is not None and cancel.is_set():
            console.print_info(f"Cancelled before step '{step.name}'")
            break

        missing = unmet_needs(step, succeeded)
        if missing:
            # only reachable with a hand-built plan that skipped validation
            results.append(
                ExecutionResult(
                    step=step.name,
                    status=FAILURE,
                    exit_code=None,
                    stderr=f"prerequisites not satisfied: {', '.join(missing)}",
                )
            )
            break

        console.print_step(step.name, index, len(plan))
        console.print_debug(f"$ {step.display}")
        for k, v in sorted(step.env.items()):
            console.print_debug(f"  {k}={v}")

        try:
            result = _run_step(step, root, timeout=timeout, base_env=base_env, runner=runner)
        except KeyboardInterrupt:
            results.append(ExecutionResult(step=step.name, status=INTERRUPTED, exit_code=None))
            console.print_failure(step.name, "interrupted by user")
            raise RunInterrupted(results) from None

        results.append(result)
        if not result.ok:
            console.print_failure(
                step.name,
                result.output,
                exit_code=result.exit_code,
                hint="timed out" if result.timed_out else None,
            )
            break

        succeeded.append(step.name)
        console.print_success(step.name, result.duration)

    return results


def raise_for_failure(results: Sequence[ExecutionResult], plan: EnvironmentPlan | None = None) -> None:
    """Raise StepExecutionError for the failed (last) result, if any."""
    for result in results:
        if result.ok:
            continue
        cmd = ""
        if plan is not None:
            try:
                cmd = plan.get(result.step).display
            except KeyError:
                pass
        if result.timed_out:
            message = "timed out"
        elif result.status == INTERRUPTED:
            message = "interrupted"
        elif result.exit_code is None:
            message = (result.stderr.strip().splitlines() or ["could not start"])[0]
        else:
            message = f"exited with status {result.exit_code}"
        raise StepExecutionError(
            step=result.step,
            message=message,
            returncode=result.exit_code,
            cmd=cmd,
            stdout=result.stdout,
            stderr=result.stderr,
            timed_out=result.timed_out,
        )
