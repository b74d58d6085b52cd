"""
Optional nested lookup over decoded JSON payloads.

Webhook payloads are untrusted and partially shaped. Every helper here treats a
missing key, a wrong container type or an out-of-range index as "absent" and
returns None instead of raising. Paths are dotted strings where numeric
segments index into lists: "entry.0.changes.0.value".
"""
import math
from typing import Any, Iterable, Mapping

_MISSING = object()


def _step(node: Any, segment: str) -> Any:
    if isinstance(node, Mapping):
        return node.get(segment, _MISSING)
    if isinstance(node, list) and segment.isdigit():
        index = int(segment)
        return node[index] if index < len(node) else _MISSING
    return _MISSING


def _walk(tree: Any, path: str) -> Any:
    node = tree
    for segment in path.split("."):
        node = _step(node, segment)
        if node is _MISSING:
            return _MISSING
    return node


def get_path(tree: Any, path: str, default: Any = None) -> Any:
    """Value at a dotted path, or `default` when any level is absent"""
    value = _walk(tree, path)
    if value is _MISSING or value is None:
        return default
    return value


def has_path(tree: Any, path: str) -> bool:
    """True when the path exists, even if its value is null"""
    return _walk(tree, path) is not _MISSING


def first_path(tree: Any, paths: Iterable[str]) -> Any:
    """First non-null value among ordered candidate paths"""
    for path in paths:
        value = get_path(tree, path)
        if value is not None:
            return value
    return None


def first_string(tree: Any, paths: Iterable[str]) -> str | None:
    """First string value among ordered candidate paths. Other types are skipped."""
    for path in paths:
        value = get_path(tree, path)
        if isinstance(value, str):
            return value
    return None


def first_id(tree: Any, paths: Iterable[str]) -> str | None:
    """
    First usable identifier among ordered candidate paths.

    Empty strings, zero and containers do not count as identifiers, numeric
    ids are returned as strings.
    """
    for path in paths:
        value = get_path(tree, path)
        if isinstance(value, bool) or not value:
            continue
        if isinstance(value, (str, int)):
            return str(value)
    return None


def first_int(tree: Any, paths: Iterable[str]) -> int | None:
    """First value among ordered candidate paths that coerces to an int"""
    for path in paths:
        value = to_int(get_path(tree, path))
        if value is not None:
            return value
    return None


def to_int(value: Any) -> int | None:
    """
    Integer coercion for numbers and numeric strings, None otherwise.

    Booleans are not numbers here. Fractions are truncated toward zero.
    """
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else None
    if isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
        return int(number) if math.isfinite(number) else None
    return None


def as_mapping(value: Any) -> dict[str, Any]:
    """The value if it is a JSON object, else an empty dict"""
    return value if isinstance(value, dict) else {}


def compact(mapping: Mapping[str, Any]) -> dict[str, Any]:
    """Drop keys whose value is None"""
    return {key: value for key, value in mapping.items() if value is not None}


def pick(source: Any, fields: Mapping[str, str]) -> dict[str, Any]:
    """
    Build {output_key: value} from {output_key: path} over `source`.

    Absent paths become None, so the result is meant to go through compact().
    """
    return {key: get_path(source, path) for key, path in fields.items()}
