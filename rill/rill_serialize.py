from __future__ import annotations

import json
import math
from fractions import Fraction
from typing import Any, Optional
import collections.abc

import yaml

from rill.rill_datatypes import StructInstance, to_number

# Struct name given to mappings read back from JSON/YAML.
RECORD_STRUCT = "Record"


# --------------------------
# Helpers
# --------------------------

def _to_builtin(obj: Any) -> Any:
    """Rill value -> plain Python data that json/yaml can dump."""
    if isinstance(obj, bool) or obj is None or isinstance(obj, str):
        return obj
    if isinstance(obj, Fraction):
        if obj.denominator == 1:
            return obj.numerator
        return float(obj)
    if isinstance(obj, StructInstance):
        return {k: _to_builtin(v) for k, v in obj.fields.items()}
    if isinstance(obj, list):
        return [_to_builtin(x) for x in obj]
    raise ValueError(f"cannot serialize value of type {type(obj).__name__}")


def _from_builtin(obj: Any) -> Any:
    """Plain Python data -> Rill value."""
    if isinstance(obj, bool) or obj is None or isinstance(obj, str):
        return obj
    if isinstance(obj, float) and not math.isfinite(obj):
        raise ValueError(f"cannot represent non-finite number {obj!r}")
    if isinstance(obj, (int, float)):
        return to_number(obj)
    if isinstance(obj, collections.abc.Mapping):
        return StructInstance(RECORD_STRUCT, {str(k): _from_builtin(v) for k, v in obj.items()})
    if isinstance(obj, list):
        return [_from_builtin(x) for x in obj]
    # Dates and other YAML scalars come back as text.
    return str(obj)


def detect_format(data_hint: Optional[str] = None) -> Optional[str]:
    """
    Returns 'json' or 'yaml' by sniffing the text; None when empty.
    """
    if data_hint is None:
        return None
    s = data_hint.lstrip()
    if not s:
        return None
    if s.startswith('{') or s.startswith('['):
        # Try JSON first; if it fails, YAML is a superset
        return 'json'
    return 'yaml'


# --------------------------
# Public API
# --------------------------

def deserialize(text: str, *, fmt: Optional[str] = None) -> Any:
    """
    Convert text to Rill values. Supported fmt: 'json', 'yaml'.
    If fmt is None the format is sniffed from the text.
    """
    f = (fmt or detect_format(text) or 'yaml').lower()
    if f == 'json':
        try:
            return _from_builtin(json.loads(text))
        except json.JSONDecodeError:
            # Declared JSON but content is YAML-like; YAML errors propagate
            return _from_builtin(yaml.safe_load(text))
    if f == 'yaml':
        return _from_builtin(yaml.safe_load(text))
    raise ValueError(f"Unsupported serialization format: {fmt!r}")


def serialize(value: Any, *, fmt: str, pretty: bool = True) -> str:
    """
    Convert a Rill value into JSON or YAML text.
    """
    f = (fmt or '').lower()
    built = _to_builtin(value)
    if f == 'json':
        return json.dumps(built, ensure_ascii=False, indent=2 if pretty else None)
    if f == 'yaml':
        return yaml.safe_dump(built, sort_keys=False)
    raise ValueError(f"Unsupported serialization format: {fmt!r}")


__all__ = [
    "deserialize",
    "serialize",
    "detect_format",
    "RECORD_STRUCT",
]
