"""Console output formatting utilities for envboot."""

from __future__ import annotations

import sys
from typing import TYPE_CHECKING, Optional, Sequence

if TYPE_CHECKING:
    from envboot.model import EnvironmentPlan, ExecutionResult
    from envboot.probe import ProbeResult


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show full captured output, commands and stack traces
        """
        self.debug = debug

    def print_header(self, title: str) -> None:
        """Print a section header."""
        print(f"\n{title}")
        print("-" * len(title))

    def print_run_started(
        self,
        env_name: str,
        arch: str,
        arch_token: Optional[str],
        step_count: int,
    ) -> None:
        """Print run start information."""
        print("\nBOOTSTRAP STARTED")
        print(f"Environment: {env_name}")
        print(f"Architecture: {arch} (compile for {arch_token or 'n/a'})")
        print(f"Steps: {step_count}")
        print()

    def print_plan(self, plan: "EnvironmentPlan") -> None:
        """Print every step of a plan with its overrides."""
        self.print_header("PLAN")
        for i, step in enumerate(plan, start=1):
            flags = []
            if step.no_build_isolation:
                flags.append("no-build-isolation")
            if step.cwd:
                flags.append(f"cwd={step.cwd}")
            if step.needs:
                flags.append(f"needs={','.join(step.needs)}")
            suffix = f"  [{'; '.join(flags)}]" if flags else ""
            print(f"  {i}. {step.name}{suffix}")
            print(f"     $ {step.display}")
            for k, v in sorted(step.env.items()):
                print(f"     {k}={v}")

    def print_step(self, name: str, index: int, total: int) -> None:
        """Print step start message."""
        print(f"\nSTEP {index}/{total}: {name}")

    def print_success(self, name: str, duration: Optional[float] = None) -> None:
        """Print success message."""
        if duration is not None:
            print(f"STATUS: success ({duration:.1f}s)")
        else:
            print("STATUS: success")

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        hint: Optional[str] = None,
    ) -> None:
        """
        Print failure message.

        Args:
            name: Step name
            reason: Failure reason or captured output
            exit_code: Optional exit code
            hint: Optional hint for user
        """
        print(f"STEP FAILED: {name}")
        if exit_code is not None:
            print(f"Exit code: {exit_code}")
        if hint:
            print(f"Hint: {hint}")
        if self.debug:
            print(f"Output:\n{reason}")
        else:
            # Last lines are where compilers and pip put the actual error
            lines = [ln for ln in (reason or "").splitlines() if ln.strip()]
            for line in lines[-15:]:
                print(f"  {line}")

    def print_results(self, results: Sequence["ExecutionResult"], total: Optional[int] = None) -> None:
        """Print final results summary."""
        print("\n" + "=" * 40)
        print("RESULTS")
        print("=" * 40)
        for result in results:
            print(f"  {result.step}: {result.status.upper()}")
        if total is not None and total > len(results):
            print(f"  ({total - len(results)} step(s) not run)")

    def print_probe(self, result: "ProbeResult") -> None:
        """Print the verification verdict."""
        self.print_header("VERIFICATION")
        print(f"Outcome: {result.outcome.value}")
        if result.matched:
            print(f"Matched: {result.matched!r}")
        if result.hint:
            print(f"Hint: {result.hint}")
        if self.debug and result.output:
            print(f"Output:\n{result.output}")

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        print(f"\nERROR: {title}", file=sys.stderr)
        print(f"{message}", file=sys.stderr)
        if details:
            for detail in details:
                print(f"  {detail}", file=sys.stderr)
        if suggestion:
            print(f"\n{suggestion}", file=sys.stderr)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exc()
        else:
            print(f"Error: {exc}", file=sys.stderr)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        print(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            print(f"[DEBUG] {message}", file=sys.stderr)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
