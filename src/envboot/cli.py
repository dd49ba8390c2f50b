# cli.py
from __future__ import annotations

import re
import shlex
import sys

import click

from envboot.config import load_config
from envboot.errors import (
    ConfigurationError,
    EnvbootError,
    ProbeClassificationError,
    RunInterrupted,
    StepExecutionError,
)
from envboot.model import TargetConfig
from envboot.probe import DEFAULT_PROBE_TIMEOUT, run_probe
from envboot.runner import raise_for_failure, run_plan
from envboot.ui.console import Console, set_console

EXIT_INTERRUPTED = 130

_PIN = re.compile(r"^\s*([A-Za-z0-9][A-Za-z0-9._-]*)\s*(.*?)\s*$")


def parse_pins(values: tuple[str, ...]) -> dict[str, str]:
    """
    Parse repeated --pin values.

    Accepts `numpy<2` or `torch==2.7.0`. A bare name means "any version".
    """
    pins: dict[str, str] = {}
    for raw in values:
        m = _PIN.match(raw)
        if not m:
            raise click.BadParameter(f"cannot parse pin {raw!r}", param_hint="--pin")
        name, constraint = m.group(1), m.group(2)
        if constraint and not re.match(r"^(==|~=|<=|>=|<|>|!=)", constraint):
            raise click.BadParameter(
                f"pin {raw!r} needs an operator (e.g. {name}==1.2 or {name}<2)",
                param_hint="--pin",
            )
        if name in pins and pins[name] != constraint:
            raise click.BadParameter(
                f"{name} pinned twice: {name}{pins[name]} and {raw}", param_hint="--pin"
            )
        pins[name] = constraint
    return pins


def _report(console: Console, exc: EnvbootError) -> None:
    if isinstance(exc, ConfigurationError):
        console.print_error(
            "Invalid configuration",
            exc.message,
            details=[f"{k}: {v}" for k, v in exc.details.items()] or None,
            suggestion="Nothing was run. Fix the options above and rerun.",
        )
    elif isinstance(exc, StepExecutionError):
        details = [f"command: {exc.cmd}"] if exc.cmd else []
        if exc.returncode is not None:
            details.append(f"exit code: {exc.returncode}")
        console.print_error(
            f"Step '{exc.step}' failed",
            exc.message,
            details=details or None,
            suggestion="Later steps were not run. Fix the cause and rerun; completed steps are safe to repeat.",
        )
    elif isinstance(exc, ProbeClassificationError):
        console.print_error(
            f"Verification failed ({exc.outcome})",
            exc.message,
            suggestion=exc.hint,
        )
    else:
        console.print_exception(exc)


@click.command()
@click.argument("env_name")
@click.option("--arch", required=True, envvar="ENVBOOT_ARCH", help="GPU compute capability, e.g. 12.0 or sm_120")
@click.option("--python", "python_version", default="3.11", show_default=True, envvar="ENVBOOT_PYTHON", help="Python version for the env")
@click.option("--pin", "pins", multiple=True, help="Version pin, e.g. --pin 'numpy<2' (repeatable)")
@click.option("--source", "source_packages", multiple=True, help="Package to build from source for the target arch (repeatable)")
@click.option("--framework", default="torch", show_default=True, help="Framework installed before source builds")
@click.option("--index-url", default=None, envvar="ENVBOOT_INDEX_URL", help="Wheel index for the framework")
@click.option("--jobs", "max_jobs", default=4, show_default=True, type=int, envvar="ENVBOOT_JOBS", help="Parallel build jobs (MAX_JOBS)")
@click.option("--force-build/--no-force-build", default=True, show_default=True, help="Set FORCE_CUDA=1 for source builds")
@click.option("--timeout", default=None, type=float, help="Per-step timeout in seconds (default: none)")
@click.option("--config", "config_path", default=None, envvar="ENVBOOT_CONFIG", help="Config file (defaults to envboot_config.py if present)")
@click.option("--probe/--no-probe", default=True, show_default=True, help="Run the verification workload after setup")
@click.option("--probe-command", default=None, help="Custom verification command, run inside the env")
@click.option("--probe-timeout", default=DEFAULT_PROBE_TIMEOUT, show_default=True, type=float, help="Verification timeout in seconds")
@click.option("--dry-run", is_flag=True, default=False, help="Print the plan without running it")
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show commands, full output and stack traces)",
)
def cli(
    env_name,
    arch,
    python_version,
    pins,
    source_packages,
    framework,
    index_url,
    max_jobs,
    force_build,
    timeout,
    config_path,
    probe,
    probe_command,
    probe_timeout,
    dry_run,
    debug,
):
    """envboot: build a GPU-ready ML environment for ENV_NAME."""
    console = Console(debug=debug)
    set_console(console)

    try:
        file_config = load_config(config_path)
        if file_config.path:
            console.print_debug(f"Loaded config from {file_config.path}")

        target = file_config.apply(
            TargetConfig(
                env_name=env_name,
                arch=arch,
                python_version=python_version,
                pins=parse_pins(pins),
                source_packages=tuple(source_packages),
                framework=framework,
                index_url=index_url,
                max_jobs=max_jobs,
                force_build=force_build,
                step_timeout=timeout,
            )
        )
        plan = file_config.plan(target)

        console.print_run_started(env_name, arch, plan.arch_token, len(plan))
        console.print_plan(plan)
        if dry_run:
            console.print_info("\nDry run: nothing executed.")
            return

        results = run_plan(plan, timeout=timeout)
        console.print_results(results, total=len(plan))
        raise_for_failure(results, plan)

        if probe:
            command = shlex.split(probe_command) if probe_command else None
            verdict = run_probe(target, command, timeout=probe_timeout)
            console.print_probe(verdict)
            verdict.check()

        console.print_info(f"\nEnvironment '{env_name}' is ready.")

    except click.BadParameter:
        raise
    except EnvbootError as e:
        _report(console, e)
        sys.exit(e.exit_code)
    except KeyboardInterrupt as e:
        if isinstance(e, RunInterrupted):
            console.print_results(e.results, total=len(plan))
        console.print_info("\nInterrupted by user; the environment is left as the last step left it.")
        sys.exit(EXIT_INTERRUPTED)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
