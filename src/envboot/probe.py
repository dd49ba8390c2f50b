# probe.py
from __future__ import annotations

import enum
import subprocess
from dataclasses import dataclass
from typing import Callable, Optional, Sequence, Tuple

from .errors import ProbeClassificationError
from .model import TargetConfig
from .runner import TOOL_HINTS, run_process, tail_text
from .step_workflows.conda import in_env

DEFAULT_PROBE_TIMEOUT = 300.0

# Small matmul on the GPU; enough to force a kernel launch for the compiled arch.
DEFAULT_WORKLOAD = (
    "import torch; "
    "assert torch.cuda.is_available(), 'CUDA is not available'; "
    "a = torch.randn(256, 256, device='cuda'); "
    "b = (a @ a).sum(); "
    "torch.cuda.synchronize(); "
    "print('probe ok', torch.__version__, torch.cuda.get_device_name(0), float(b))"
)


class ProbeOutcome(enum.Enum):
    SUCCESS = "success"
    HARDWARE_INCOMPATIBILITY = "hardware-incompatibility"
    DEPENDENCY_CONFLICT = "dependency-conflict"
    UNKNOWN_FAILURE = "unknown-failure"


@dataclass(frozen=True)
class DiagnosticPattern:
    substring: str
    outcome: ProbeOutcome
    hint: str


# Checked in order, case-insensitively; first match wins.
DIAGNOSTIC_PATTERNS: Tuple[DiagnosticPattern, ...] = (
    DiagnosticPattern(
        "no kernel image is available",
        ProbeOutcome.HARDWARE_INCOMPATIBILITY,
        "Kernels were not built for this GPU. Rerun with a different --arch fallback (e.g. one with +PTX).",
    ),
    DiagnosticPattern(
        "is not compatible with the current pytorch installation",
        ProbeOutcome.HARDWARE_INCOMPATIBILITY,
        "The framework wheel does not ship this compute capability. Use a newer --index-url build.",
    ),
    DiagnosticPattern(
        "unsupported gpu architecture",
        ProbeOutcome.HARDWARE_INCOMPATIBILITY,
        "nvcc does not know this architecture. Fall back to an older compile target.",
    ),
    DiagnosticPattern(
        "invalid device function",
        ProbeOutcome.HARDWARE_INCOMPATIBILITY,
        "A kernel was compiled for a different architecture than the running GPU.",
    ),
    DiagnosticPattern(
        "compiled using numpy 1.x cannot be run in numpy 2",
        ProbeOutcome.DEPENDENCY_CONFLICT,
        "NumPy 2 is installed under extensions built for NumPy 1.x. Pin numpy<2.",
    ),
    DiagnosticPattern(
        "_array_api not found",
        ProbeOutcome.DEPENDENCY_CONFLICT,
        "NumPy ABI mismatch. Pin numpy<2 or rebuild the extension.",
    ),
    DiagnosticPattern(
        "numpy.dtype size changed",
        ProbeOutcome.DEPENDENCY_CONFLICT,
        "Binary incompatibility with the installed NumPy. Reinstall with matching pins.",
    ),
    DiagnosticPattern(
        "metaclass conflict",
        ProbeOutcome.DEPENDENCY_CONFLICT,
        "Two packages disagree on a shared base class. Check the version pins.",
    ),
    DiagnosticPattern(
        "undefined symbol",
        ProbeOutcome.DEPENDENCY_CONFLICT,
        "A native extension was built against a different framework version. Rebuild it.",
    ),
)


@dataclass(frozen=True)
class ProbeResult:
    outcome: ProbeOutcome
    exit_code: Optional[int]
    output: str = ""
    matched: Optional[str] = None
    hint: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.outcome is ProbeOutcome.SUCCESS

    def check(self) -> "ProbeResult":
        """Raise ProbeClassificationError unless the probe succeeded."""
        if self.ok:
            return self
        if self.matched:
            message = f"recognised {self.matched!r} in probe output"
        elif self.exit_code is None:
            message = "probe did not finish"
        else:
            message = f"probe exited with status {self.exit_code}"
        raise ProbeClassificationError(
            outcome=self.outcome.value,
            message=message,
            hint=self.hint,
            output=self.output,
        )


def classify_output(
    output: str,
    exit_code: Optional[int],
    patterns: Sequence[DiagnosticPattern] = DIAGNOSTIC_PATTERNS,
) -> ProbeResult:
    """Map a finished workload's output and exit code to a ProbeResult."""
    if exit_code == 0:
        return ProbeResult(ProbeOutcome.SUCCESS, exit_code, output)
    haystack = output.lower()
    for pattern in patterns:
        if pattern.substring.lower() in haystack:
            return ProbeResult(pattern.outcome, exit_code, output, pattern.substring, pattern.hint)
    return ProbeResult(ProbeOutcome.UNKNOWN_FAILURE, exit_code, output)


def probe_command(config: TargetConfig, command: Optional[Sequence[str]] = None) -> Tuple[str, ...]:
    """argv for the probe, run inside the configured env."""
    if command:
        return in_env(config.env_name, *command)
    return in_env(config.env_name, "python", "-c", DEFAULT_WORKLOAD)


def run_probe(
    config: TargetConfig,
    command: Optional[Sequence[str]] = None,
    *,
    timeout: float | None = DEFAULT_PROBE_TIMEOUT,
    patterns: Sequence[DiagnosticPattern] = DIAGNOSTIC_PATTERNS,
    runner: Callable[..., subprocess.CompletedProcess] = run_process,
) -> ProbeResult:
    """Run the bounded verification workload and classify what it printed."""
    argv = probe_command(config, command)
    try:
        proc = runner(argv, capture_output=True, text=True, timeout=timeout)
    except subprocess.TimeoutExpired as e:
        output = "\n".join(p for p in (tail_text(e.stdout), tail_text(e.stderr)) if p)
        return ProbeResult(
            ProbeOutcome.UNKNOWN_FAILURE,
            None,
            output,
            hint=f"Probe did not finish within {timeout}s.",
        )
    except OSError as e:
        return ProbeResult(
            ProbeOutcome.UNKNOWN_FAILURE,
            None,
            str(e),
            hint=TOOL_HINTS.get(argv[0], "Could not start the verification command."),
        )
    output = "\n".join(p for p in (tail_text(proc.stdout), tail_text(proc.stderr)) if p)
    return classify_output(output, proc.returncode, patterns)
