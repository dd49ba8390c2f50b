# config.py
from __future__ import annotations

import runpy
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .errors import ConfigurationError
from .model import EnvironmentPlan, TargetConfig
from .planner import ARCH_FALLBACKS, build_plan, canonical_name

DEFAULT_CONFIG_FILE = "envboot_config.py"


@dataclass
class FileConfig:
    """What a user config file contributed."""
    path: Optional[Path] = None
    arch_fallbacks: Dict[str, str] = field(default_factory=dict)
    pins: Dict[str, str] = field(default_factory=dict)
    source_packages: List[str] = field(default_factory=list)
    plan_factory: Optional[Callable[[TargetConfig], EnvironmentPlan]] = None

    def fallbacks(self) -> Dict[str, str]:
        merged = dict(ARCH_FALLBACKS)
        merged.update(self.arch_fallbacks)
        return merged

    def apply(self, config: TargetConfig) -> TargetConfig:
        """File pins go under the CLI's; file source packages come first."""
        # keyed by canonical name so "NumPy" in the file and "numpy" on the CLI are one pin
        merged = {canonical_name(k): (k, v) for k, v in self.pins.items()}
        merged.update((canonical_name(k), (k, v)) for k, v in config.pins.items())
        pins = dict(merged.values())
        sources = list(self.source_packages)
        sources.extend(s for s in config.source_packages if s not in sources)
        return replace(config, pins=pins, source_packages=tuple(sources))

    def plan(self, config: TargetConfig) -> EnvironmentPlan:
        config = self.apply(config)
        if self.plan_factory is not None:
            result = self.plan_factory(config)
            if not isinstance(result, EnvironmentPlan):
                raise ConfigurationError(
                    f"plan() in {self.path} must return an EnvironmentPlan, got {type(result).__name__}"
                )
            return result
        return build_plan(config, fallbacks=self.fallbacks())


def _expect(globals_dict: dict, name: str, kind, path: Path):
    value = globals_dict.get(name)
    if value is None:
        return None
    if not isinstance(value, kind):
        kinds = kind if isinstance(kind, tuple) else (kind,)
        expected = " or ".join(k.__name__ for k in kinds)
        raise ConfigurationError(
            f"{name} in {path.name} must be a {expected}, got {type(value).__name__}"
        )
    return value


def load_config(path: str | Path | None = None) -> FileConfig:
    """
    Load a config from a python file path.

    The file may define any of:
      - ARCH_FALLBACKS = {"12.0": "9.0+PTX", ...}   (merged over the defaults)
      - PINS = {"numpy": "<2", ...}                 (CLI pins win)
      - SOURCE_PACKAGES = ["flash-attn", ...]
      - plan(config) -> EnvironmentPlan, or PLAN = plan(...)

    With no path, ./envboot_config.py is used if it exists; otherwise the
    built-in defaults apply.
    """
    if path is None:
        default = Path(DEFAULT_CONFIG_FILE)
        if not default.exists():
            return FileConfig()
        path = default

    cfg_path = Path(path).expanduser().resolve()
    if not cfg_path.exists():
        raise ConfigurationError(f"config file not found: {cfg_path}")
    if cfg_path.suffix != ".py":
        raise ConfigurationError(f"config must be a .py file, got: {cfg_path.name}")

    module_name = f"envboot_config_{cfg_path.stem}"
    try:
        globals_dict = runpy.run_path(str(cfg_path), run_name=module_name)
    except ConfigurationError:
        raise
    except Exception as e:
        raise ConfigurationError(f"could not load {cfg_path.name}: {e}") from e

    fallbacks = _expect(globals_dict, "ARCH_FALLBACKS", dict, cfg_path) or {}
    pins = _expect(globals_dict, "PINS", dict, cfg_path) or {}
    sources = _expect(globals_dict, "SOURCE_PACKAGES", (list, tuple), cfg_path) or []

    plan_factory = None
    if callable(globals_dict.get("plan")):
        # skip the helper when a file only did `from envboot import plan`
        if getattr(globals_dict["plan"], "__module__", None) != "envboot.dsl":
            plan_factory = globals_dict["plan"]
    if plan_factory is None and "PLAN" in globals_dict:
        fixed = globals_dict["PLAN"]
        if not isinstance(fixed, EnvironmentPlan):
            raise ConfigurationError(f"PLAN in {cfg_path.name} must be an EnvironmentPlan")
        plan_factory = lambda _config: fixed  # noqa: E731

    return FileConfig(
        path=cfg_path,
        arch_fallbacks={str(k): str(v) for k, v in fallbacks.items()},
        pins={str(k): str(v) for k, v in pins.items()},
        source_packages=[str(s) for s in sources],
        plan_factory=plan_factory,
    )
