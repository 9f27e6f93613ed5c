from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

"""Config loader and validator.

Provides `load_config` which accepts either a path to a YAML file,
a dictionary or None and returns a normalized configuration dict
using DEFAULTS (and QUIRK_DEFAULTS for the nested `quirks` mapping)
for missing values.
"""


# Canonical behaviour; each entry flips one historically disputed semantic.
QUIRK_DEFAULTS: dict[str, bool] = {
    "borrow_flag_inverted": False,
    "clip_sprites": True,
    "index_overflow_flag": False,
    "load_store_increments_index": False,
    "shift_uses_vy": False,
}

DEFAULTS: dict[str, Any] = {
    "cycles_per_frame": 10,
    "frame_rate": 60,
    "frame_limit": 600,
    "seed": None,
    "lenient_log": False,
    "quirks": None,
}


class ConfigError(ValueError):
    """Raised when configuration is invalid or cannot be loaded."""

    pass


def _convert_quirks(raw: Any) -> dict[str, bool]:
    if raw is None:
        return dict(QUIRK_DEFAULTS)
    if not isinstance(raw, dict):
        msg = "quirks must be a mapping"
        raise ConfigError(msg)
    unknown = sorted(set(raw) - set(QUIRK_DEFAULTS))
    if unknown:
        msg = f"Unknown quirk(s): {', '.join(str(u) for u in unknown)}"
        raise ConfigError(msg)
    quirks = dict(QUIRK_DEFAULTS)
    for name, value in raw.items():
        if not isinstance(value, bool):
            msg = f"quirk {name} must be boolean"
            raise ConfigError(msg)
        quirks[name] = value
    return quirks


def _convert_types(cfg: dict[str, Any]) -> None:
    """Normalize types for configuration values in-place.

    Raises ConfigError on conversion failure.
    """
    try:
        cfg["cycles_per_frame"] = int(cfg.get("cycles_per_frame", DEFAULTS["cycles_per_frame"]))
        cfg["frame_rate"] = float(cfg.get("frame_rate", DEFAULTS["frame_rate"]))
        cfg["frame_limit"] = int(cfg.get("frame_limit", DEFAULTS["frame_limit"]))

        # seed
        v = cfg.get("seed")
        if v is None:
            cfg["seed"] = None
        else:
            cfg["seed"] = int(v)

        # lenient_log (bool coercion)
        cfg["lenient_log"] = bool(cfg.get("lenient_log", DEFAULTS["lenient_log"]))
    except (TypeError, ValueError) as e:
        msg = f"Bad types in config: {e}"
        raise ConfigError(msg) from e

    cfg["quirks"] = _convert_quirks(cfg.get("quirks"))


def _validate_cfg(cfg: dict[str, Any]) -> None:
    """Perform semantic validation on normalized config dict.

    Raises ConfigError on invalid values.
    """
    if cfg["cycles_per_frame"] <= 0:
        msg = "cycles_per_frame must be positive"
        raise ConfigError(msg)

    if cfg["frame_rate"] <= 0:
        msg = "frame_rate must be positive"
        raise ConfigError(msg)

    if cfg["frame_limit"] < 0:
        msg = "frame_limit must be non-negative"
        raise ConfigError(msg)


def load_config(path_or_dict: str | dict[str, Any] | None = None) -> dict[str, Any]:
    """Load and normalize configuration.

    Accepts:
      - None -> returns DEFAULTS copy
      - dict -> overlay DEFAULTS with provided dict
      - str (path) -> load YAML and overlay DEFAULTS

    Returns a normalized dict or raises ConfigError.
    """
    if path_or_dict is None:
        cfg: dict[str, Any] = dict(DEFAULTS)
    elif isinstance(path_or_dict, dict):
        cfg = dict(DEFAULTS)
        cfg.update(path_or_dict)
    elif isinstance(path_or_dict, str):
        p = Path(path_or_dict)
        if not p.exists():
            msg = f"Config file not found: {path_or_dict}"
            raise ConfigError(msg)
        try:
            with p.open("r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            msg = f"Failed to load config file {path_or_dict}: {e}"
            raise ConfigError(msg) from e
        if not isinstance(data, dict):
            msg = f"Config file {path_or_dict} does not contain a mapping"
            raise ConfigError(msg)
        cfg = dict(DEFAULTS)
        cfg.update(data)
    else:
        msg = "Unsupported config input"
        raise ConfigError(msg)

    # convert types and validate semantics
    _convert_types(cfg)
    _validate_cfg(cfg)

    return cfg
