from __future__ import annotations

import json
from dataclasses import asdict, fields, is_dataclass
from typing import Any, Dict, Type, TypeVar

T = TypeVar("T")


def load_config(path: str) -> Dict[str, Any]:
    """Load a JSON or YAML config file into a dict."""
    if path.endswith(('.yaml', '.yml')):
        import yaml

        with open(path, 'r') as f:
            data = yaml.safe_load(f) or {}
    else:
        with open(path, 'r') as f:
            data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Config {path} must contain a mapping, got {type(data).__name__}")
    return data


def dump_config(obj: Any) -> Dict[str, Any]:
    """Convert dataclass or object to plain dict for logging/serialization."""
    if is_dataclass(obj):
        return asdict(obj)
    if isinstance(obj, dict):
        return obj
    return {k: getattr(obj, k) for k in dir(obj) if not k.startswith('_')}


def from_dict(cls: Type[T], data: Dict[str, Any]) -> T:
    """Build dataclass ``cls`` from ``data``; unknown keys are an error."""
    names = {f.name for f in fields(cls)}
    unknown = sorted(set(data) - names)
    if unknown:
        raise ValueError(f"Unknown {cls.__name__} keys: {unknown}")
    return cls(**data)
