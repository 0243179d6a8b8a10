# resonance/pipeline/utils_config.py
from __future__ import annotations

import dataclasses
from typing import Any, Dict, Mapping, Optional, Tuple

from .config import PARAMETER_ALIASES, PARAMETER_RANGES


def clamp(value: float, lo: float, hi: float) -> float:
    return min(max(value, lo), hi)


def clamp_parameter(path: str, value: Any, ranges: Optional[Mapping[str, Tuple[float, float]]] = None) -> Any:
    """Clamp a tunable value into its declared range; untracked paths pass through."""
    bounds = (ranges or PARAMETER_RANGES).get(path)
    if bounds is None:
        return value
    return clamp(float(value), bounds[0], bounds[1])


def resolve_alias(name: str) -> str:
    return PARAMETER_ALIASES.get(name, name)


def apply_dotted_overrides(target: Any, overrides: Mapping[str, Any]) -> Any:
    """
    Apply dotted-path overrides to nested frozen dataclasses.
    Returns a new object; ``target`` is left untouched. Values on a path listed
    in PARAMETER_RANGES are clamped.
    """
    result = target
    for path, value in (overrides or {}).items():
        path = resolve_alias(str(path))
        parts = path.split(".")
        result = _replace_path(result, parts, clamp_parameter(path, value), path)
    return result


def _replace_path(obj: Any, parts: list, value: Any, full_path: str) -> Any:
    head = parts[0]
    if not dataclasses.is_dataclass(obj) or head not in {f.name for f in dataclasses.fields(obj)}:
        raise KeyError(f"unknown config parameter: {full_path}")

    if len(parts) == 1:
        current = getattr(obj, head)
        if isinstance(current, bool):
            value = bool(value)
        elif isinstance(current, int) and not isinstance(value, bool):
            value = int(round(float(value)))
        elif isinstance(current, float):
            value = float(value)
        return dataclasses.replace(obj, **{head: value})

    child = _replace_path(getattr(obj, head), parts[1:], value, full_path)
    return dataclasses.replace(obj, **{head: child})


def parse_override(text: str) -> Tuple[str, Any]:
    """Parse ``key=value`` from the command line; numbers become floats."""
    if "=" not in text:
        raise ValueError(f"override must look like key=value, got {text!r}")
    key, raw = text.split("=", 1)
    raw = raw.strip()
    lowered = raw.lower()
    if lowered in {"true", "false"}:
        return key.strip(), lowered == "true"
    try:
        return key.strip(), float(raw)
    except ValueError:
        return key.strip(), raw


def config_to_dict(config: Any) -> Dict[str, Any]:
    return dataclasses.asdict(config)


def clamp_section(config: Any, section: str, ranges: Optional[Mapping[str, Tuple[float, float]]] = None) -> Any:
    """Clamp every field of one config section that has a declared range."""
    prefix = section + "."
    updates = {}
    for path in (ranges or PARAMETER_RANGES):
        if not path.startswith(prefix):
            continue
        name = path[len(prefix):]
        if hasattr(config, name):
            updates[name] = clamp_parameter(path, getattr(config, name), ranges)
    if not updates:
        return config
    return dataclasses.replace(config, **updates)
