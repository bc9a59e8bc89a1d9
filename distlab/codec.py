"""Self-describing value encoding for RPC payloads and persisted state.

Values are written one per line as tagged JSON. Dataclass fields whose
names start with an underscore are treated as private: they are never
transmitted, and the codec reports them the first time it sees the type.
Decoding into a target that already holds non-default values is reported
as well, since such values are usually a sign of a reused reply object.
"""

from __future__ import annotations

import base64
import dataclasses
import inspect
import json
import logging
import re
import threading
import types
import typing
from enum import Enum
from typing import Any, BinaryIO

_log = logging.getLogger(__name__)

_lock = threading.Lock()
_error_count = 0
_checked: set = set()
_names_by_type: dict[type, str] = {}
_types_by_name: dict[str, type] = {}

_IDENTIFIER = re.compile(r"[A-Za-z_][A-Za-z0-9_]*(?:\.[A-Za-z_][A-Za-z0-9_]*)*")


def error_count() -> int:
    """Number of problems the codec has reported so far."""
    with _lock:
        return _error_count


def _bump() -> None:
    global _error_count
    with _lock:
        _error_count += 1


def _type_of(value: Any) -> type:
    return value if isinstance(value, type) else type(value)


def _type_name(cls: type) -> str:
    with _lock:
        name = _names_by_type.get(cls)
    return name if name is not None else f"{cls.__module__}.{cls.__qualname__}"


def _is_dataclass_instance(value: Any) -> bool:
    return dataclasses.is_dataclass(value) and not isinstance(value, type)


def _resolve_name(dotted: str, owner: type, namespace: dict[str, Any]) -> Any:
    head, *rest = dotted.split(".")
    if head == owner.__name__:
        found: Any = owner
    elif head in namespace:
        found = namespace[head]
    else:
        return None
    for part in rest:
        found = getattr(found, part, None)
        if found is None:
            return None
    return found


def _types_in_text(text: str, owner: type) -> list[type]:
    """Dataclasses and enums named in annotation text, looked up by name."""
    module = inspect.getmodule(owner)
    namespace = vars(module) if module is not None else {}
    found = []
    for dotted in _IDENTIFIER.findall(text):
        candidate = _resolve_name(dotted, owner, namespace)
        if isinstance(candidate, type) and (
            dataclasses.is_dataclass(candidate) or issubclass(candidate, Enum)
        ):
            if candidate not in found:
                found.append(candidate)
    return found


def _field_types(owner: type) -> dict[str, Any]:
    """The types the fields of dataclass ``owner`` refer to.

    Annotations kept as text are reduced to the dataclasses and enums
    they name; fields that name none of these are left out.
    """
    resolved: dict[str, Any] = {}
    for field in dataclasses.fields(owner):
        tp = field.type
        if isinstance(tp, str):
            named = _types_in_text(tp, owner)
            if named:
                resolved[field.name] = typing.Union[tuple(named)]
        else:
            resolved[field.name] = tp
    return resolved


def register(value: Any) -> None:
    """Make the type of ``value`` (or ``value`` itself, if a class) decodable by name."""
    cls = _type_of(value)
    register_name(f"{cls.__module__}.{cls.__qualname__}", value)


def register_name(name: str, value: Any) -> None:
    """Register the type of ``value`` under an explicit wire name."""
    cls = _type_of(value)
    if isinstance(value, type):
        _check_type(cls)
    else:
        _check_value(value)
    with _lock:
        known_name = _names_by_type.get(cls)
        known_type = _types_by_name.get(name)
        if known_name is not None and known_name != name:
            raise ValueError(f"type {cls.__qualname__} already registered as {known_name!r}")
        if known_type is not None and known_type is not cls:
            raise ValueError(f"name {name!r} already registered for {known_type.__qualname__}")
        _names_by_type[cls] = name
        _types_by_name[name] = cls


def _check_type(tp: Any) -> None:
    if typing.get_origin(tp) is not None:
        for arg in typing.get_args(tp):
            _check_type(arg)
        return
    if not (isinstance(tp, type) and dataclasses.is_dataclass(tp)):
        return
    with _lock:
        if tp in _checked:
            return
        _checked.add(tp)
    field_types = _field_types(tp)
    for field in dataclasses.fields(tp):
        if field.name.startswith("_"):
            _log.error(
                "codec error: private field %s of %s in RPC or persist/snapshot "
                "will not be transmitted",
                field.name,
                tp.__name__,
            )
            _bump()
        if field.name in field_types:
            _check_type(field_types[field.name])


def _check_value(value: Any) -> None:
    _check_type(type(value))
    if isinstance(value, dict):
        for key, item in value.items():
            _check_value(key)
            _check_value(item)
    elif isinstance(value, (list, tuple, set, frozenset)):
        for item in value:
            _check_value(item)
    elif _is_dataclass_instance(value):
        for field in dataclasses.fields(value):
            _check_value(getattr(value, field.name))


_ZEROS = ((bool, False), (int, 0), (float, 0.0), (str, ""))


def _check_default(value: Any, depth: int = 1, name: str = "") -> None:
    """Warn when a decode target already holds non-default values."""
    global _error_count
    if depth > 3 or value is None:
        return
    if _is_dataclass_instance(value):
        for field in dataclasses.fields(value):
            inner = f"{name}.{field.name}" if name else field.name
            _check_default(getattr(value, field.name), depth + 1, inner)
        return
    if isinstance(value, Enum):
        return
    for kind, zero in _ZEROS:
        if isinstance(value, kind):
            if value != zero:
                with _lock:
                    if _error_count < 1:
                        _log.warning(
                            "codec warning: decoding into a non-default variable/field %s "
                            "may not work",
                            name or type(value).__name__,
                        )
                    _error_count += 1
            return


def _to_tree(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, Enum):
        return {"e": _type_name(type(value)), "v": _to_tree(value.value)}
    if isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, (bytes, bytearray)):
        return {"b": base64.b64encode(bytes(value)).decode("ascii")}
    if isinstance(value, list):
        return {"l": [_to_tree(item) for item in value]}
    if isinstance(value, tuple):
        return {"t": [_to_tree(item) for item in value]}
    if isinstance(value, frozenset):
        return {"z": [_to_tree(item) for item in value]}
    if isinstance(value, set):
        return {"s": [_to_tree(item) for item in value]}
    if isinstance(value, dict):
        return {"d": [[_to_tree(k), _to_tree(v)] for k, v in value.items()]}
    if _is_dataclass_instance(value):
        return {
            "c": _type_name(type(value)),
            "f": {
                field.name: _to_tree(getattr(value, field.name))
                for field in dataclasses.fields(value)
                if not field.name.startswith("_")
            },
        }
    raise TypeError(f"cannot encode value of type {type(value).__name__}")


def _reachable(tp: Any, found: dict[str, type]) -> None:
    if typing.get_origin(tp) is not None:
        for arg in typing.get_args(tp):
            _reachable(arg, found)
        return
    if not isinstance(tp, type):
        return
    if not (dataclasses.is_dataclass(tp) or issubclass(tp, Enum)):
        return
    name = _type_name(tp)
    if name in found:
        return
    found[name] = tp
    if dataclasses.is_dataclass(tp):
        for inner in _field_types(tp).values():
            _reachable(inner, found)


def _lookup(name: str, known: dict[str, type]) -> type:
    cls = known.get(name)
    if cls is None:
        with _lock:
            cls = _types_by_name.get(name)
    if cls is None:
        raise ValueError(f"type {name!r} is not registered")
    return cls


def _build(cls: type, encoded: dict[str, Any], known: dict[str, type]) -> Any:
    values = {key: _from_tree(item, known) for key, item in encoded.items()}
    instance = cls.__new__(cls)
    for field in dataclasses.fields(cls):
        if field.name in values:
            item = values[field.name]
        elif field.default is not dataclasses.MISSING:
            item = field.default
        elif field.default_factory is not dataclasses.MISSING:
            item = field.default_factory()
        else:
            item = None
        object.__setattr__(instance, field.name, item)
    return instance


def _from_tree(tree: Any, known: dict[str, type]) -> Any:
    match tree:
        case None | bool() | int() | float() | str():
            return tree
        case {"b": str(data)}:
            return base64.b64decode(data)
        case {"l": list(items)}:
            return [_from_tree(item, known) for item in items]
        case {"t": list(items)}:
            return tuple(_from_tree(item, known) for item in items)
        case {"z": list(items)}:
            return frozenset(_from_tree(item, known) for item in items)
        case {"s": list(items)}:
            return {_from_tree(item, known) for item in items}
        case {"d": list(pairs)}:
            return {_from_tree(k, known): _from_tree(v, known) for k, v in pairs}
        case {"e": str(name), "v": raw}:
            return _lookup(name, known)(_from_tree(raw, known))
        case {"c": str(name), "f": dict(encoded)}:
            return _build(_lookup(name, known), encoded, known)
    raise ValueError(f"malformed encoded value: {tree!r}")


def _is_type_like(target: Any) -> bool:
    return isinstance(target, type) or typing.get_origin(target) is not None or target is Any


def _matches(value: Any, expected: Any) -> bool:
    if expected is None or expected is Any:
        return True
    origin = typing.get_origin(expected)
    if origin is typing.Union or origin is types.UnionType:
        return any(_matches(value, arg) for arg in typing.get_args(expected))
    cls = origin if origin is not None else expected
    if cls is type(None):
        return value is None
    if not isinstance(cls, type):
        return True
    if cls is float and isinstance(value, int) and not isinstance(value, bool):
        return True
    return isinstance(value, cls)


class LabEncoder:
    """Writes encoded values, one per line, to a binary stream."""

    def __init__(self, stream: BinaryIO) -> None:
        self._stream = stream

    def encode(self, value: Any) -> None:
        _check_value(value)
        line = json.dumps(_to_tree(value), separators=(",", ":"))
        self._stream.write(line.encode("utf-8") + b"\n")


class LabDecoder:
    """Reads values written by :class:`LabEncoder` from a binary stream."""

    def __init__(self, stream: BinaryIO) -> None:
        self._stream = stream

    def decode(self, target: Any = None) -> Any:
        """Read the next value.

        ``target`` is the expected type (a class or a typing alias) or an
        existing instance whose type is expected; an instance that already
        holds non-default values is reported.
        """
        if target is None:
            expected = None
        elif _is_type_like(target):
            expected = target
            _check_type(target)
        else:
            expected = type(target)
            _check_value(target)
            _check_default(target)

        line = self._stream.readline()
        if not line:
            raise EOFError("no more encoded values")
        known: dict[str, type] = {}
        if expected is not None:
            _reachable(expected, known)
        value = _from_tree(json.loads(line), known)
        if not _matches(value, expected):
            raise ValueError(f"cannot decode {type(value).__name__} into {expected!r}")
        return value