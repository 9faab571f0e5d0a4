"""Restricted JSONPath-like path syntax shared by extraction and writing.

Supported forms::

    $                whole document
    $.a.b            nested fields
    $.items[0].name  list index
    $['a key']       bracketed (quoted) field name
    a.b[1]           same as $.a.b[1]
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Tuple, Union

from ..errors import InvalidTargetError, MappingError, PathSyntaxError


class _Missing:
    """Sentinel for a path that resolves to nothing."""

    _instance = None

    def __new__(cls) -> "_Missing":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "MISSING"


MISSING: Any = _Missing()


@dataclass(frozen=True)
class Field:
    name: str


@dataclass(frozen=True)
class Index:
    position: int


PathStep = Union[Field, Index]


@lru_cache(maxsize=1024)
def parse_path(path: str) -> Tuple[PathStep, ...]:
    """Tokenize ``path`` into field/index steps. ``$`` yields no steps."""
    if not isinstance(path, str):
        raise PathSyntaxError(f"Path must be a string, got {type(path).__name__}")
    text = path.strip()
    if not text:
        raise PathSyntaxError("Path must not be empty")

    pos = 0
    if text.startswith("$"):
        pos = 1
        if pos < len(text) and text[pos] not in ".[":
            raise PathSyntaxError(f"Unexpected character after '$' in {path!r}")
    else:
        # bare paths behave as if prefixed with '$.'
        text = "$." + text
        pos = 1

    steps: list[PathStep] = []
    length = len(text)
    while pos < length:
        char = text[pos]
        if char == ".":
            pos += 1
            start = pos
            while pos < length and text[pos] not in ".[":
                pos += 1
            name = text[start:pos]
            if not name:
                raise PathSyntaxError(f"Empty field name in {path!r}")
            steps.append(Field(name))
        elif char == "[":
            end = text.find("]", pos)
            if end == -1:
                raise PathSyntaxError(f"Unclosed '[' in {path!r}")
            inner = text[pos + 1 : end].strip()
            if len(inner) >= 2 and inner[0] == inner[-1] and inner[0] in "'\"":
                steps.append(Field(inner[1:-1]))
            elif inner.isdigit():
                steps.append(Index(int(inner)))
            else:
                raise PathSyntaxError(
                    f"Bracket segment must be an index or quoted key in {path!r}"
                )
            pos = end + 1
        else:
            raise PathSyntaxError(f"Unexpected character {char!r} in {path!r}")
    return tuple(steps)


def get_path(document: Any, path: str) -> Any:
    """Return the value at ``path`` or ``MISSING`` when it does not resolve."""
    current = document
    for step in parse_path(path):
        if isinstance(step, Field):
            if isinstance(current, dict) and step.name in current:
                current = current[step.name]
            else:
                return MISSING
        else:
            if isinstance(current, list) and step.position < len(current):
                current = current[step.position]
            else:
                return MISSING
    return current


def set_path(document: Any, path: str, value: Any) -> None:
    """Write ``value`` at ``path``, creating intermediate containers.

    A field step creates a dict and an index step creates a list (padded with
    ``None``). The root itself cannot be replaced.
    """
    steps = parse_path(path)
    if not steps:
        raise InvalidTargetError("Cannot replace the whole output with target '$'")

    current = document
    for step, following in zip(steps, steps[1:]):
        child = _read_child(current, step, path)
        if not isinstance(child, (dict, list)):
            child = [] if isinstance(following, Index) else {}
            _write_child(current, step, child, path)
        current = child
    _write_child(current, steps[-1], value, path)


def _read_child(container: Any, step: PathStep, path: str) -> Any:
    if isinstance(step, Field):
        if not isinstance(container, dict):
            raise MappingError(f"Cannot set field {step.name!r} on non-object in {path!r}")
        return container.get(step.name)
    if not isinstance(container, list):
        raise MappingError(f"Cannot set index {step.position} on non-list in {path!r}")
    return container[step.position] if step.position < len(container) else None


def _write_child(container: Any, step: PathStep, value: Any, path: str) -> None:
    if isinstance(step, Field):
        if not isinstance(container, dict):
            raise MappingError(f"Cannot set field {step.name!r} on non-object in {path!r}")
        container[step.name] = value
        return
    if not isinstance(container, list):
        raise MappingError(f"Cannot set index {step.position} on non-list in {path!r}")
    if step.position >= len(container):
        container.extend([None] * (step.position + 1 - len(container)))
    container[step.position] = value
