from __future__ import annotations

"""Reference-path resolution over JSON-like documents.

Documents are plain JSON values: ``None``, ``bool``, ``int``, ``float``,
``str``, ``list`` and ``dict`` with string keys. Every helper in this module
is pure: updates return a new document and copy only the containers along
the written path, so a value handed to one branch can never observe writes
made by another.

Paths follow the JSONPath subset used by the Amazon States Language::

    $                 the whole document
    $.order.items[0]  dotted fields and list indexes
    $['key w/ dots']  quoted field names
    $.items[-1]       negative indexes count from the end

References starting with ``$$`` address the context object instead of the
document (see :func:`resolve_reference`).
"""

import math
import re
from functools import lru_cache
from typing import Any, Dict, Tuple, Union

from stateflow.errors import DataError, PathSyntaxError

PathSegment = Union[str, int]
PathSegments = Tuple[PathSegment, ...]

_FIELD = re.compile(r"[^.\[\]\s]+")
_INDEX = re.compile(r"\[\s*(-?\d+)\s*\]")
_QUOTED = re.compile(r"\[\s*(['\"])(.*?)\1\s*\]")

_MISSING = object()
_ABSENT = object()


@lru_cache(maxsize=1024)
def parse_path(path: str) -> PathSegments:
    """Split a reference path into field names and list indexes."""

    if not isinstance(path, str) or not path.startswith("$"):
        raise PathSyntaxError(f"Path {path!r} must start with '$'.")

    segments: list[PathSegment] = []
    position = 1
    while position < len(path):
        char = path[position]
        if char == ".":
            match = _FIELD.match(path, position + 1)
            if not match:
                raise PathSyntaxError(f"Path {path!r} has an empty field at offset {position}.")
            segments.append(match.group())
            position = match.end()
        elif char == "[":
            match = _INDEX.match(path, position)
            if match:
                segments.append(int(match.group(1)))
                position = match.end()
                continue
            match = _QUOTED.match(path, position)
            if not match:
                raise PathSyntaxError(f"Path {path!r} has a malformed subscript at offset {position}.")
            segments.append(match.group(2))
            position = match.end()
        else:
            raise PathSyntaxError(f"Path {path!r} has an unexpected {char!r} at offset {position}.")
    return tuple(segments)


def check_reference(reference: str) -> None:
    """Raise ``PathSyntaxError`` unless ``reference`` is a document or context path."""

    if isinstance(reference, str) and reference.startswith("$$"):
        parse_path(reference[1:])
    else:
        parse_path(reference)


def _step(node: Any, segment: PathSegment) -> tuple[bool, Any]:
    if isinstance(segment, str):
        if isinstance(node, dict) and segment in node:
            return True, node[segment]
        return False, None
    if isinstance(node, list) and -len(node) <= segment < len(node):
        return True, node[segment]
    return False, None


def get_value(document: Any, path: str, default: Any = _MISSING) -> Any:
    """Return the value at ``path``.

    A missing value raises ``DataError`` unless ``default`` is supplied.
    """

    node = document
    for segment in parse_path(path):
        found, node = _step(node, segment)
        if not found:
            if default is not _MISSING:
                return default
            raise DataError(f"Path {path!r} was not found in the document.")
    return node


def has_value(document: Any, path: str) -> bool:
    """Return True when ``path`` resolves inside ``document``."""

    return get_value(document, path, default=_ABSENT) is not _ABSENT


def set_value(document: Any, path: str, value: Any) -> Any:
    """Return a copy of ``document`` with ``value`` written at ``path``.

    Missing intermediate fields are created as objects. The input document is
    never modified.
    """

    return _assign(document, parse_path(path), 0, value, path)


def _assign(node: Any, segments: PathSegments, depth: int, value: Any, path: str) -> Any:
    if depth == len(segments):
        return value

    segment = segments[depth]
    if isinstance(segment, str):
        if node is None:
            node = {}
        if not isinstance(node, dict):
            raise DataError(
                f"Cannot write {path!r}: the parent of field {segment!r} is a "
                f"{type(node).__name__}, not an object."
            )
        updated = dict(node)
        updated[segment] = _assign(node.get(segment), segments, depth + 1, value, path)
        return updated

    if not isinstance(node, list) or not -len(node) <= segment < len(node):
        raise DataError(f"Cannot write {path!r}: index {segment} is out of range.")
    updated_list = list(node)
    updated_list[segment] = _assign(node[segment], segments, depth + 1, value, path)
    return updated_list


def merge(document: Any, patch: Any) -> Dict[str, Any]:
    """Shallow-merge two objects into a new object."""

    if not isinstance(document, dict) or not isinstance(patch, dict):
        raise DataError("Only objects can be merged.")
    return {**document, **patch}


def validate_document(value: Any, where: str = "$") -> Any:
    """Return ``value`` unchanged if it is a JSON value, else raise ``DataError``."""

    if value is None or isinstance(value, (bool, str, int)):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            raise DataError(f"Value at {where} is not a finite number.")
        return value
    if isinstance(value, list):
        for index, item in enumerate(value):
            validate_document(item, f"{where}[{index}]")
        return value
    if isinstance(value, dict):
        for key, item in value.items():
            if not isinstance(key, str):
                raise DataError(f"Object at {where} has a non-string key {key!r}.")
            validate_document(item, f"{where}.{key}")
        return value
    raise DataError(f"Value at {where} of type {type(value).__name__} is not a JSON value.")


def resolve_reference(reference: Any, data: Any, context: Any = None) -> Any:
    """Resolve a ``.$`` template value against the data or the context object."""

    if not isinstance(reference, str):
        raise DataError(f"Reference {reference!r} must be a path string.")
    if reference.startswith("$$"):
        if context is None:
            raise DataError(f"Context reference {reference!r} used without a context object.")
        return get_value(context, reference[1:])
    return get_value(data, reference)


def apply_parameters(template: Any, data: Any, context: Any = None) -> Any:
    """Render a payload template.

    Keys ending in ``.$`` take their value from the path they name; every
    other value is copied literally, recursing into nested objects and lists.
    """

    if isinstance(template, dict):
        rendered: Dict[str, Any] = {}
        for key, value in template.items():
            if key.endswith(".$"):
                rendered[key[:-2]] = resolve_reference(value, data, context)
            else:
                rendered[key] = apply_parameters(value, data, context)
        return rendered
    if isinstance(template, list):
        return [apply_parameters(item, data, context) for item in template]
    return template


def apply_input_path(document: Any, input_path: str | None) -> Any:
    """Select the state input; a null path yields an empty object."""

    if input_path is None:
        return {}
    return get_value(document, input_path)


def apply_output_path(document: Any, output_path: str | None) -> Any:
    """Select the state output; a null path yields an empty object."""

    if output_path is None:
        return {}
    return get_value(document, output_path)


def apply_result_path(document: Any, result: Any, result_path: str | None) -> Any:
    """Combine a state result with its raw input.

    A null path discards the result, ``$`` replaces the input, anything else
    writes the result into a copy of the input.
    """

    if result_path is None:
        return document
    if result_path == "$":
        return result
    return set_value(document, result_path, result)


__all__ = [
    "PathSegment",
    "PathSegments",
    "apply_input_path",
    "apply_output_path",
    "apply_parameters",
    "apply_result_path",
    "check_reference",
    "get_value",
    "has_value",
    "merge",
    "parse_path",
    "resolve_reference",
    "set_value",
    "validate_document",
]
