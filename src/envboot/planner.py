# planner.py
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, Dict, Mapping, Optional, Sequence

from .dsl import PlanBuilder
from .errors import ConfigurationError
from .model import EnvironmentPlan, TargetConfig
from .step_workflows.conda import create_env_step
from .step_workflows.pip import pip_install_step, requirement

# Compute capability -> TORCH_CUDA_ARCH_LIST token.
# Archs the toolchain supports natively map to themselves; newer ones are
# compiled for the newest supported target with PTX so the driver can JIT
# forward. Callers pass their own table when toolchains catch up.
ARCH_FALLBACKS: Dict[str, str] = {
    "7.0": "7.0",
    "7.5": "7.5",
    "8.0": "8.0",
    "8.6": "8.6",
    "8.7": "8.7",
    "8.9": "8.9",
    "9.0": "9.0",
    "10.0": "9.0+PTX",
    "10.1": "9.0+PTX",
    "12.0": "9.0+PTX",
    "12.1": "9.0+PTX",
}

_ENV_NAME = re.compile(r"^[A-Za-z0-9_.-]+$")
_PYTHON_VERSION = re.compile(r"^3\.\d+(\.\d+)?$")
_PACKAGE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
_BOUND = re.compile(r"(==|~=|<=|>=|<|>|!=)\s*(\d+(?:\.\d+)*)")


# ---------------------------------------------------------------------
# Architecture
# ---------------------------------------------------------------------

def normalize_arch(arch: str) -> str:
    """'sm_120' / '120' / 'compute_120' / '12.0' -> '12.0'."""
    raw = arch.strip().lower()
    for prefix in ("sm_", "compute_"):
        if raw.startswith(prefix):
            raw = raw[len(prefix):]
    if re.fullmatch(r"\d+\.\d+", raw):
        return raw
    if re.fullmatch(r"\d{2,3}", raw):
        return f"{raw[:-1]}.{raw[-1]}"
    raise ConfigurationError(f"unrecognised compute capability {arch!r}", {"expected": "e.g. 8.9, sm_120"})


def resolve_arch_token(arch: str, fallbacks: Mapping[str, str] = ARCH_FALLBACKS) -> str:
    cap = normalize_arch(arch)
    try:
        return fallbacks[cap]
    except KeyError:
        raise ConfigurationError(
            f"no known compatibility fallback for compute capability {cap}",
            {"known": ", ".join(sorted(fallbacks, key=_cap_key))},
        ) from None


def _cap_key(cap: str):
    try:
        return tuple(int(p) for p in cap.split("."))
    except ValueError:
        return (999, cap)


# ---------------------------------------------------------------------
# Version pins
# ---------------------------------------------------------------------

def canonical_name(package: str) -> str:
    return re.sub(r"[-_.]+", "-", package).lower()


def major_bounds(constraint: str) -> tuple[Optional[int], Optional[int]]:
    """
    Smallest and largest major version a constraint can admit.

    Only the (major, minor) of each clause is read; that is all the
    conflict rules need. `None` means unbounded on that side.
    """
    lo: Optional[int] = None
    hi: Optional[int] = None
    for op, release in _BOUND.findall(constraint):
        parts = _release(release)
        major = parts[0]
        top: Optional[int] = None
        if op in ("==", "~=", ">=", ">"):
            lo = major if lo is None else max(lo, major)
        if op == "==" or op == "<=":
            top = major
        elif op == "~=" and len(parts) > 1:
            # ~=2.2 stops below 3.0, ~=2.2.0 below 2.3
            top = major
        elif op == "<":
            top = major - 1 if not any(parts[1:]) else major
        if top is not None:
            hi = top if hi is None else min(hi, top)
    return lo, hi


def version_bounds(constraint: str) -> tuple[Optional[tuple[int, int]], Optional[tuple[int, int]]]:
    """Like major_bounds but on (major, minor); the upper bound is exclusive."""
    lo: Optional[tuple[int, int]] = None
    hi: Optional[tuple[int, int]] = None
    for op, release in _BOUND.findall(constraint):
        parts = _release(release)
        v = (parts[0], parts[1] if len(parts) > 1 else 0)
        nxt: Optional[tuple[int, int]] = None
        if op in ("==", "~=", ">=", ">"):
            lo = v if lo is None else max(lo, v)
        if op in ("==", "<="):
            nxt = (v[0], v[1] + 1)
        elif op == "<":
            nxt = v if not any(parts[2:]) else (v[0], v[1] + 1)
        elif op == "~=" and len(parts) > 2:
            nxt = (v[0], v[1] + 1)
        elif op == "~=" and len(parts) == 2:
            nxt = (v[0] + 1, 0)
        if nxt is not None:
            hi = nxt if hi is None else min(hi, nxt)
    return lo, hi


def _release(text: str) -> tuple[int, ...]:
    return tuple(int(p) for p in text.split("."))


@dataclass(frozen=True)
class ConflictRule:
    """Two pins that cannot be satisfied together."""
    first: str
    second: str
    check: Callable[[str, str], bool]
    reason: str


def _numpy2_with_old_torch(numpy_spec: str, torch_spec: str) -> bool:
    np_lo, _ = major_bounds(numpy_spec)
    _, torch_hi = version_bounds(torch_spec)
    # torch wheels before 2.3 are built against the NumPy 1.x ABI
    return np_lo is not None and np_lo >= 2 and torch_hi is not None and torch_hi <= (2, 3)


CONFLICT_RULES: tuple[ConflictRule, ...] = (
    ConflictRule(
        first="numpy",
        second="torch",
        check=_numpy2_with_old_torch,
        reason="NumPy 2 is ABI-incompatible with torch builds older than 2.3; pin numpy<2",
    ),
)


def check_conflicts(pins: Mapping[str, str], rules: Sequence[ConflictRule] = CONFLICT_RULES) -> None:
    by_name = {canonical_name(k): v for k, v in pins.items()}
    for rule in rules:
        a = by_name.get(canonical_name(rule.first))
        b = by_name.get(canonical_name(rule.second))
        if a is None or b is None:
            continue
        if rule.check(a, b):
            raise ConfigurationError(
                f"conflicting pins: {rule.first}{a} and {rule.second}{b}",
                {"reason": rule.reason},
            )


# ---------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------

def _source_name(spec: str) -> str:
    # "flash-attn==2.6.3" / "git+https://host/org/repo.git@v1" / "./local"
    if "://" in spec or spec.startswith((".", "/")):
        tail = spec.rstrip("/").split("/")[-1]
        tail = tail.split("@")[0].split("#")[0]
        return canonical_name(tail[:-4] if tail.endswith(".git") else tail)
    return canonical_name(re.split(r"[<>=!~\[;\s]", spec, maxsplit=1)[0])


def validate_config(config: TargetConfig) -> None:
    if not _ENV_NAME.match(config.env_name or ""):
        raise ConfigurationError(f"invalid environment name {config.env_name!r}")
    if not _PYTHON_VERSION.match(config.python_version or ""):
        raise ConfigurationError(
            f"invalid python version {config.python_version!r}", {"expected": "e.g. 3.11"}
        )
    if config.max_jobs < 1:
        raise ConfigurationError(f"max_jobs must be >= 1, got {config.max_jobs}")
    for pkg in config.pins:
        if not _PACKAGE.match(pkg):
            raise ConfigurationError(f"invalid package name in pins: {pkg!r}")

    pinned = {canonical_name(k): requirement(k, v) for k, v in config.pins.items()}
    for spec in config.source_packages:
        name = _source_name(spec)
        if name == canonical_name(config.framework):
            raise ConfigurationError(f"the framework {config.framework!r} cannot also be a source package")
        # a bare name picks up its pin; anything else must match it exactly
        if name in pinned and not _PACKAGE.match(spec) and spec != pinned[name]:
            raise ConfigurationError(
                f"{name} is both pinned and built from source with a different spec",
                {"pin": pinned[name], "source": spec},
            )


# ---------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------

def build_plan(
    config: TargetConfig,
    *,
    fallbacks: Mapping[str, str] = ARCH_FALLBACKS,
    conflicts: Sequence[ConflictRule] = CONFLICT_RULES,
) -> EnvironmentPlan:
    """
    Turn a target configuration into an ordered EnvironmentPlan.

    Deterministic: pins are emitted sorted by name, source packages in the
    order given. Raises ConfigurationError before anything is run.
    """
    validate_config(config)
    token = resolve_arch_token(config.arch, fallbacks)
    check_conflicts(config.pins, conflicts)

    env_name = config.env_name
    timeout = config.step_timeout
    framework_key = canonical_name(config.framework)
    built_from_source = {_source_name(spec) for spec in config.source_packages}
    pin_by_name = {canonical_name(k): requirement(k, v) for k, v in config.pins.items()}
    framework_pin = None
    other_pins: list[str] = []
    for pkg in sorted(config.pins, key=canonical_name):
        key = canonical_name(pkg)
        if key == framework_key:
            framework_pin = config.pins[pkg]
        elif key not in built_from_source:
            other_pins.append(requirement(pkg, config.pins[pkg]))

    builder = PlanBuilder(config=config, arch_token=token)
    builder.add(create_env_step("create-env", env_name, config.python_version, timeout=timeout))
    builder.add(
        pip_install_step(
            "bootstrap-pip",
            env_name,
            ["pip", "setuptools", "wheel"],
            upgrade=True,
            needs=["create-env"],
            timeout=timeout,
        )
    )

    framework_step = f"install-{framework_key}"
    builder.add(
        pip_install_step(
            framework_step,
            env_name,
            [requirement(config.framework, framework_pin)],
            index_url=config.index_url,
            needs=["bootstrap-pip"],
            timeout=timeout,
        )
    )

    if other_pins:
        builder.add(
            pip_install_step(
                "install-pins",
                env_name,
                other_pins,
                needs=[framework_step],
                timeout=timeout,
            )
        )

    build_env = {"TORCH_CUDA_ARCH_LIST": token, "MAX_JOBS": str(config.max_jobs)}
    if config.force_build:
        build_env["FORCE_CUDA"] = "1"

    for spec in config.source_packages:
        name = _source_name(spec)
        if _PACKAGE.match(spec):
            spec = pin_by_name.get(name, spec)
        builder.add(
            pip_install_step(
                f"build-{name}",
                env_name,
                [spec],
                env=build_env,
                no_build_isolation=True,
                needs=[framework_step],
                timeout=timeout,
            )
        )

    return builder.build()
