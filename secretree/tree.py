"""The ordered document tree: branches, items, comments and path editing."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Iterable, Sequence

log = logging.getLogger(__name__)

DEFAULT_UNENCRYPTED_SUFFIX = "_unencrypted"
"""Keys ending with this suffix keep their values in cleartext by default."""


class SopsError(Exception):
    """Base class for errors raised while handling a document tree."""


class MacMismatchError(SopsError):
    """The computed MAC does not match the one stored in the document."""

    def __init__(self, message: str = "MAC mismatch") -> None:
        super().__init__(message)


class MetadataNotFoundError(SopsError):
    """The input is malformed and holds no sops metadata."""

    def __init__(self, message: str = "sops metadata not found") -> None:
        super().__init__(message)


class SopsKeyNotFound(SopsError, LookupError):
    """A path component does not exist in the tree."""

    def __init__(self, key: Any, message: str) -> None:
        super().__init__(message)
        self.key = key
        self.message = message

    def __str__(self) -> str:
        return self.message


@dataclass(frozen=True)
class Comment:
    """A comment in the tree, for formats that support comments."""

    value: str


@dataclass
class TreeItem:
    """A key/value pair inside a branch."""

    key: Any
    value: Any = None


def _is_index(component: Any) -> bool:
    return isinstance(component, int) and not isinstance(component, bool)


def equals(one: Any, other: Any) -> bool:
    """Compare two tree values structurally, taking value types into account."""
    if isinstance(one, TreeBranch):
        if not isinstance(other, TreeBranch) or len(one) != len(other):
            return False
        return all(
            equals(a.key, b.key) and equals(a.value, b.value) for a, b in zip(one, other)
        )
    if isinstance(one, list):
        if not isinstance(other, list) or isinstance(other, TreeBranch) or len(one) != len(other):
            return False
        return all(equals(a, b) for a, b in zip(one, other))
    if isinstance(one, Comment):
        return isinstance(other, Comment) and one.value == other.value
    return type(one) is type(other) and one == other


def _value_from_path_and_leaf(path: Sequence[Any], leaf: Any) -> Any:
    """Build the nested structure that holds ``leaf`` at ``path``."""
    value = leaf
    for component in reversed(path):
        if _is_index(component):
            value = [value]
        else:
            value = TreeBranch([TreeItem(component, value)])
    return value


def _set(node: Any, path: Sequence[Any], value: Any) -> tuple[Any, bool]:
    head, rest = path[0], path[1:]
    if isinstance(node, TreeBranch):
        for item in node:
            if equals(item.key, head):
                if not rest:
                    changed = not equals(item.value, value)
                    item.value = value
                else:
                    item.value, changed = _set(item.value, rest, value)
                return node, changed
        created = _value_from_path_and_leaf(path, value)
        if isinstance(created, TreeBranch) and created:
            node.append(created[0])
        return node, True
    if isinstance(node, list):
        if not _is_index(head):
            raise TypeError(f"Cannot index a list with {head!r}")
        if head < 0:
            raise IndexError(f"Index {head} out of bounds")
        if not rest:
            if head >= len(node):
                node.append(value)
                return node, True
            changed = not equals(node[head], value)
            node[head] = value
            return node, changed
        if head >= len(node):
            node.append(_value_from_path_and_leaf(rest, value))
            return node, True
        node[head], changed = _set(node[head], rest, value)
        return node, changed
    created = _value_from_path_and_leaf(path, value)
    return created, not equals(node, created)


def _unset(node: Any, path: Sequence[Any]) -> Any:
    head, rest = path[0], path[1:]
    if isinstance(node, TreeBranch):
        for position, item in enumerate(node):
            if equals(item.key, head):
                if not rest:
                    del node[position]
                else:
                    item.value = _unset(item.value, rest)
                return node
        raise SopsKeyNotFound(head, f"Key not found: {head}")
    if isinstance(node, list):
        if not _is_index(head):
            raise TypeError(f"Cannot index a list with {head!r}")
        if head < 0 or head >= len(node):
            raise SopsKeyNotFound(head, f"Index {head} out of bounds")
        if not rest:
            del node[head]
        else:
            node[head] = _unset(node[head], rest)
        return node
    raise TypeError(f"Unsupported type: {type(node).__name__} for item '{head}'")


class TreeBranch(list):
    """An ordered list of :class:`TreeItem` objects."""

    def set(self, path: Sequence[Any], value: Any) -> bool:
        """Set ``value`` at ``path``, creating what is missing; return whether anything changed."""
        if not path:
            raise ValueError("path must not be empty")
        _, changed = _set(self, list(path), value)
        return changed

    def unset(self, path: Sequence[Any]) -> None:
        """Remove the value at ``path``.

        Raises :class:`SopsKeyNotFound` for a missing key or index, and
        :class:`TypeError` when the path descends into a leaf.
        """
        if not path:
            raise ValueError("path must not be empty")
        _unset(self, list(path))

    def truncate(self, path: Sequence[Any]) -> Any:
        """Return the part of the tree found at ``path``."""
        log.info("Truncating tree (path=%s)", list(path))
        current: Any = self
        for component in path:
            if isinstance(component, str):
                if not isinstance(current, TreeBranch):
                    raise SopsError(f"component ['{component}'] not found")
                for item in current:
                    if equals(item.key, component):
                        current = item.value
                        break
                else:
                    raise SopsError(f"component ['{component}'] not found")
            elif _is_index(component):
                if not isinstance(current, (list, tuple)) or isinstance(current, TreeBranch):
                    raise SopsError(
                        f"component [{component}] is integer, but tree part is not a slice"
                    )
                if component < 0 or len(current) <= component:
                    raise SopsError(f"component [{component}] accesses out of bounds")
                current = current[component]
        return current

    def equals(self, other: Any) -> bool:
        """Compare this branch structurally with another one."""
        return equals(self, other)


def _format_float(value: float) -> str:
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    text = format(Decimal(repr(value)), "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


def _format_time(value: datetime) -> str:
    text = value.strftime("%Y-%m-%dT%H:%M:%S")
    if value.microsecond:
        text += "." + f"{value.microsecond:06d}".rstrip("0")
    offset = value.utcoffset()
    if offset is None or offset == timedelta(0):
        return text + "Z"
    sign = "+" if offset >= timedelta(0) else "-"
    minutes = abs(int(offset.total_seconds())) // 60
    return f"{text}{sign}{minutes // 60:02d}:{minutes % 60:02d}"


def to_bytes(value: Any) -> bytes:
    """Convert a leaf value to the bytes that the MAC is computed over."""
    if isinstance(value, str):
        return value.encode("utf-8")
    if isinstance(value, bool):
        return b"True" if value else b"False"
    if isinstance(value, int):
        return str(value).encode("ascii")
    if isinstance(value, float):
        return _format_float(value).encode("ascii")
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, datetime):
        return _format_time(value).encode("ascii")
    if isinstance(value, Comment):
        return to_bytes(value.value)
    raise TypeError(f"Could not convert unknown type {type(value).__name__} to bytes")


def emit_as_map(branches: Iterable[TreeBranch]) -> dict[str, Any]:
    """Flatten branches into nested dictionaries, dropping comments."""
    data: dict[str, Any] = {}
    for branch in branches:
        for item in branch:
            if isinstance(item.key, Comment):
                continue
            value = item.value
            data[item.key] = emit_as_map([value]) if isinstance(value, TreeBranch) else value
    return data