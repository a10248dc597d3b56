import logging
import os
from dataclasses import dataclass, field, fields
from importlib import resources
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Optional, TypeVar

import jax.tree as jt
from ruamel.yaml import YAML

from muscle_redundancy.types import TreeNamespace, dict_to_namespace

logger = logging.getLogger(__name__)


CONFIG_DIR_ENV_VAR_NAME = "MUSCLE_REDUNDANCY_CONFIG_DIR"
DEFAULT_CONFIG_FILENAME = "default"


T = TypeVar("T", bound=SimpleNamespace)


yaml = YAML(typ="safe")


def _maybe_open_yaml(resource_root: str, stem: str) -> Optional[dict]:
    """
    Return parsed YAML from package resources, or None if missing.
    """
    try:
        path = resources.files(resource_root) / f"{stem}.yml"
    except ModuleNotFoundError:
        return None

    if not path.is_file():
        return None

    with resources.as_file(path) as real_path:
        with open(real_path, "r", encoding="utf-8") as f:
            return yaml.load(f) or {}


def get_user_config_dir():
    """Get user config directory from environment variable, or return None."""
    env_config_dir = os.environ.get(CONFIG_DIR_ENV_VAR_NAME)
    if env_config_dir is None:
        return
    else:
        return Path(env_config_dir).expanduser()


def load_config(name: str = DEFAULT_CONFIG_FILENAME) -> dict[str, Any]:
    """Load a YAML config as a dict.

    Precedence:
      1) user config dir:  {user_config_dir}/{name}.yml
      2) base fallback:    muscle_redundancy.config/{name}.yml

    A user file only needs to contain the keys it overrides; it is merged
    over the packaged file of the same name, when there is one.
    """
    base = _maybe_open_yaml("muscle_redundancy.config", name)

    user_config_dir = get_user_config_dir()
    if user_config_dir is not None:
        upath = user_config_dir / f"{name}.yml"
        if upath.exists():
            with open(upath, "r", encoding="utf-8") as f:
                return deep_merge(base or {}, yaml.load(f) or {})
        else:
            logger.info(
                f"Config file {name}.yml not found in user config directory "
                f"`{user_config_dir}`. Falling back to base resources."
            )

    if base is None:
        raise ValueError(f"Config '{name}.yml' not found in base package resources.")
    return base


def load_config_as_ns(name: str = DEFAULT_CONFIG_FILENAME, to_type: type[T] = TreeNamespace) -> T:
    """Load the contents of a project YAML config file resource as a namespace."""
    return dict_to_namespace(load_config(name), to_type=to_type)


def deep_merge(base: dict, update: dict) -> dict:
    """Recursively merge `update` into a copy of `base`."""
    merged = dict(base)
    for key, value in update.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _normalize_log_level(label: str, lvl: str | int) -> int:
    if isinstance(lvl, str):
        lvl = lvl.strip().upper()
        try:
            lvl = logging.getLevelNamesMapping()[lvl]
        except KeyError:
            raise ValueError(f"Invalid {label} specified in YAML config: {lvl!r}")
    if not isinstance(lvl, int):
        raise ValueError(f"Cannot parse log level {lvl!r}")
    return lvl


def _setup_logging(logging_ns: TreeNamespace):
    for label in ["file_level", "console_level", "pkg_console_levels"]:
        tree = getattr(logging_ns, label, None)
        if tree is None:
            continue
        tree_normalized = jt.map(
            lambda x: _normalize_log_level(label, x),
            tree,
        )
        setattr(logging_ns, label, tree_normalized)

    return logging_ns


@dataclass(frozen=True)
class SolverConfig:
    """Options for `GlobalStaticOptimizationSolver`.

    Values are not range-checked here; the solver validates them before
    doing any expensive work, so that errors name the offending option in
    the context of the model being solved.
    """

    coordinates_to_include: tuple[str, ...] = ()
    actuators_to_include: tuple[str, ...] = ()
    create_reserve_actuators: float = -1
    initial_time: Optional[float] = None
    final_time: Optional[float] = None
    lowpass_cutoff_frequency_for_kinematics: float = -1
    lowpass_cutoff_frequency_for_joint_moments: float = -1
    filter_order: int = 4
    scheme: str = "trapezoidal"
    num_mesh_points: int = 100
    tolerance: float = 1e-8
    max_iterations: int = 500
    control_weights: dict[str, float] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, d: dict, **overrides) -> "SolverConfig":
        names = {f.name for f in fields(cls)}
        merged = {**d, **overrides}
        unknown = set(merged) - names
        if unknown:
            raise ValueError(f"Unknown solver option(s): {', '.join(sorted(unknown))}")
        for key in ("coordinates_to_include", "actuators_to_include"):
            if key in merged:
                merged[key] = tuple(merged[key] or ())
        if merged.get("control_weights") is None:
            merged["control_weights"] = {}
        return cls(**merged)


def load_solver_config(name: str = DEFAULT_CONFIG_FILENAME, **overrides) -> SolverConfig:
    """Build a `SolverConfig` from the `solver` section of a YAML config."""
    return SolverConfig.from_dict(load_config(name).get("solver", {}), **overrides)
