"""Run configuration shared by every component.

A configuration is a plain dict merged over :data:`DEFAULT_CONFIG`, the same
way model configs are merged with their defaults elsewhere in the package::

    config = DEFAULT_CONFIG | {"solver": "immutable"}
"""

from typing import Any, Dict, Mapping, Optional

from .errors import ConfigError

DEFAULT_CONFIG: Dict[str, Any] = {
    "solver": "mutable",
    "interp": "direct",
    "timeidx": None,
    "ptyidx": None,
    "styidx": None,
    "min_value": 1e-6,
    "nonfinite": "clamp",
}

SOLVER_NAMES = ("mutable", "immutable")
INTERP_NAMES = ("direct", "linear")
NONFINITE_POLICIES = ("clamp", "warn")


def normalize_config(config: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
    """Merge ``config`` over the defaults and validate the result."""
    config = dict(config or {})
    unknown = set(config) - set(DEFAULT_CONFIG)
    if unknown:
        raise ConfigError(
            f"Unknown configuration keys: {sorted(unknown)}. "
            f"Expected a subset of {sorted(DEFAULT_CONFIG)}"
        )
    merged = DEFAULT_CONFIG | config

    if merged["solver"] not in SOLVER_NAMES:
        raise ConfigError(
            f"solver must be one of {SOLVER_NAMES}, got {merged['solver']!r}"
        )
    if merged["interp"] not in INTERP_NAMES:
        raise ConfigError(
            f"interp must be one of {INTERP_NAMES}, got {merged['interp']!r}"
        )
    if merged["nonfinite"] not in NONFINITE_POLICIES:
        raise ConfigError(
            f"nonfinite must be one of {NONFINITE_POLICIES}, got {merged['nonfinite']!r}"
        )
    if not float(merged["min_value"]) > 0:
        raise ConfigError(f"min_value must be positive, got {merged['min_value']}")
    return merged


def merge_config(base: Mapping[str, Any], **overrides: Any) -> Dict[str, Any]:
    """Return a new validated config with ``overrides`` applied on top of ``base``."""
    return normalize_config(dict(base) | overrides)
