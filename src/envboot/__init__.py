from .dsl import sh, step, plan, PlanBuilder
from .errors import ConfigurationError, StepExecutionError, ProbeClassificationError, RunInterrupted
from .model import SetupStep, EnvironmentPlan, ExecutionResult, TargetConfig
from .planner import build_plan, ARCH_FALLBACKS
from .probe import run_probe, classify_output, ProbeOutcome
from .runner import run_plan, raise_for_failure

__all__ = [
    "sh", "step", "plan", "PlanBuilder",
    "ConfigurationError", "StepExecutionError", "ProbeClassificationError", "RunInterrupted",
    "SetupStep", "EnvironmentPlan", "ExecutionResult", "TargetConfig",
    "build_plan", "ARCH_FALLBACKS",
    "run_probe", "classify_output", "ProbeOutcome",
    "run_plan", "raise_for_failure",
]
