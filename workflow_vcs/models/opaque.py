"""
Opaque Value Helpers
Parameters, credentials, settings and connections are untyped JSON maps.
Equality and copying for all of them is defined here and nowhere else.
"""
import copy
import json
from typing import Any, Dict, Optional, Union

OpaqueMap = Dict[str, Any]


def _normalize_numbers(value: Any) -> Any:
    # n8n returns 1 where a client may send 1.0; JSON treats them as the same number
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, dict):
        return {key: _normalize_numbers(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalize_numbers(item) for item in value]
    return value


def canonical_dumps(value: Any) -> str:
    """Serialize with sorted keys and no whitespace so equal values give equal strings."""
    return json.dumps(_normalize_numbers(value), sort_keys=True, separators=(",", ":"), default=str)


def deep_equal(left: Any, right: Any) -> bool:
    return canonical_dumps(left) == canonical_dumps(right)


def deep_copy(value: Any) -> Any:
    return copy.deepcopy(value)


def parse_json_safe(data: Union[str, OpaqueMap, None], field_name: str) -> Optional[OpaqueMap]:
    """
    Accept a JSON object either as a string or as an already-decoded dict.
    MCP clients send both.
    """
    if data is None or isinstance(data, dict):
        return data
    if not isinstance(data, str):
        raise ValueError(f"'{field_name}' must be a JSON object, got {type(data).__name__}")
    if not data.strip():
        return None
    try:
        parsed = json.loads(data)
    except json.JSONDecodeError as e:
        raise ValueError(
            f"Invalid JSON in '{field_name}': {e.msg} at line {e.lineno}, column {e.colno}"
        )
    if not isinstance(parsed, dict):
        raise ValueError(f"'{field_name}' must be a JSON object")
    return parsed
