# pitchroute/pipeline/utils_config.py
from __future__ import annotations

import dataclasses
import json
from typing import Any, Dict, Iterable, Mapping, Tuple

from .config import ConfigurationError


def parse_override(text: str) -> Tuple[str, Any]:
    """Split ``a.b=value`` and decode the value as JSON when possible.

    ``fusion.enable_snapping=false`` -> ("fusion.enable_snapping", False);
    anything that is not valid JSON stays a string.
    """
    if "=" not in str(text):
        raise ConfigurationError(f"override {text!r} must look like key=value")
    key, raw = str(text).split("=", 1)
    key = key.strip()
    if not key:
        raise ConfigurationError(f"override {text!r} has an empty key")
    raw = raw.strip()
    try:
        value = json.loads(raw)
    except ValueError:
        value = raw
    return key, value


def parse_overrides(items: Iterable[str]) -> Dict[str, Any]:
    return dict(parse_override(item) for item in (items or []))


def _coerce(current: Any, value: Any, path: str) -> Any:
    # keep the declared scalar type; lists coming from JSON become tuples where a tuple was declared
    if isinstance(current, bool):
        if not isinstance(value, bool):
            raise ConfigurationError(f"{path} expects a boolean, got {value!r}")
        return value
    if isinstance(current, int) and isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(current, float) and isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    if isinstance(current, tuple) and isinstance(value, list):
        return tuple(value)
    return value


def apply_dotted_overrides(target: Any, overrides: Mapping[str, Any]) -> None:
    """
    Apply dotted-path overrides into nested dataclasses/dicts.

    Unlike a permissive setattr, unknown keys are an error: a typo in an
    override must never silently create a new attribute.
    """
    for path, value in (overrides or {}).items():
        parts = str(path).split(".")
        cur = target
        for i, part in enumerate(parts):
            last = i == len(parts) - 1

            if isinstance(cur, dict):
                if part not in cur:
                    raise ConfigurationError(f"unknown config key {path!r}")
                if last:
                    cur[part] = _coerce(cur[part], value, path)
                else:
                    cur = cur[part]
                continue

            if not dataclasses.is_dataclass(cur) or part not in {f.name for f in dataclasses.fields(cur)}:
                raise ConfigurationError(f"unknown config key {path!r}")
            if last:
                setattr(cur, part, _coerce(getattr(cur, part), value, path))
            else:
                cur = getattr(cur, part)
