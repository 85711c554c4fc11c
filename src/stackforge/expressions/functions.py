#!/usr/bin/env python3
"""
STACKFORGE BUILTINS
-------------------
The fixed function set available to expressions. Every function receives
already-evaluated arguments and type-checks them itself.
"""

import math
import re
from typing import Any, Callable, Dict, List, Optional

from stackforge.core.errors import ExpressionTypeError, UnresolvedIdentifierError


def type_name(value: Any) -> str:
    """Human name of a value's tag, used in every type error."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "list"
    if isinstance(value, dict):
        return "map"
    return type(value).__name__


def is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def is_whole(value: Any) -> bool:
    """A finite number with no fractional part; inf and nan are not whole."""
    return is_number(value) and math.isfinite(value) and int(value) == value


def _require(fn: str, value: Any, *tags: str) -> Any:
    if type_name(value) not in tags:
        raise ExpressionTypeError(f"{fn}(): expected {' or '.join(tags)}, got {type_name(value)}")
    return value


def _whole(fn: str, value: Any) -> int:
    if not is_whole(_require(fn, value, "number")):
        raise ExpressionTypeError(f"{fn}(): expected a whole number, got {value}")
    return int(value)


def _arity(fn: str, args: List[Any], low: int, high: Optional[int] = None) -> None:
    high = low if high is None else high
    if not low <= len(args) <= high:
        raise ExpressionTypeError(f"{fn}(): wrong number of arguments ({len(args)})")


def to_string(value: Any) -> str:
    """String conversion used by templates and tostring()."""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if is_number(value):
        return str(int(value)) if isinstance(value, float) and value.is_integer() else str(value)
    if value is None:
        return ""
    raise ExpressionTypeError(f"cannot convert {type_name(value)} to string")


def _element(args):
    _arity("element", args, 2)
    items = _require("element", args[0], "list")
    index = _whole("element", args[1])
    if not items:
        raise ExpressionTypeError("element(): cannot index an empty list")
    # Wraps around like Terraform's element()
    return items[index % len(items)]


def _list(args):
    return list(args)


def _tolist(args):
    _arity("tolist", args, 1)
    value = _require("tolist", args[0], "list", "map")
    return list(value.values()) if isinstance(value, dict) else list(value)


def _length(args):
    _arity("length", args, 1)
    return len(_require("length", args[0], "list", "map", "string"))


def _concat(args):
    result = []
    for item in args:
        result.extend(_require("concat", item, "list"))
    return result


def _join(args):
    _arity("join", args, 2)
    separator = _require("join", args[0], "string")
    return separator.join(to_string(v) for v in _require("join", args[1], "list"))


def _split(args):
    _arity("split", args, 2)
    return _require("split", args[1], "string").split(_require("split", args[0], "string"))


def _lookup(args):
    _arity("lookup", args, 2, 3)
    mapping = _require("lookup", args[0], "map")
    key = _require("lookup", args[1], "string")
    if key in mapping:
        return mapping[key]
    if len(args) == 3:
        return args[2]
    raise ExpressionTypeError(f"lookup(): key {key!r} not found and no default given")


def _keys(args):
    _arity("keys", args, 1)
    return sorted(_require("keys", args[0], "map"))


def _values(args):
    _arity("values", args, 1)
    mapping = _require("values", args[0], "map")
    return [mapping[k] for k in sorted(mapping)]


_FORMAT_VERB = re.compile(r'%([%sdvf])')


def _format(args):
    if not args:
        raise ExpressionTypeError("format(): missing format string")
    spec = _require("format", args[0], "string")
    values = iter(args[1:])

    def substitute(match):
        verb = match.group(1)
        if verb == "%":
            return "%"
        try:
            value = next(values)
        except StopIteration:
            raise ExpressionTypeError(f"format(): not enough arguments for {spec!r}")
        if verb == "d":
            return str(_whole("format", value))
        if verb == "f":
            return f"{_require('format', value, 'number'):f}"
        return to_string(value)

    return _FORMAT_VERB.sub(substitute, spec)


def _upper(args):
    _arity("upper", args, 1)
    return _require("upper", args[0], "string").upper()


def _lower(args):
    _arity("lower", args, 1)
    return _require("lower", args[0], "string").lower()


def _tostring(args):
    _arity("tostring", args, 1)
    return to_string(args[0])


def _tonumber(args):
    _arity("tonumber", args, 1)
    value = args[0]
    if is_number(value):
        return value
    text = _require("tonumber", value, "string")
    try:
        return int(text)
    except ValueError:
        try:
            number = float(text)
        except ValueError:
            raise ExpressionTypeError(f"tonumber(): {text!r} is not a number")
    if not math.isfinite(number):
        raise ExpressionTypeError(f"tonumber(): {text!r} is not a finite number")
    return number


def _range(args):
    _arity("range", args, 1, 3)
    bounds = [_whole("range", a) for a in args]
    if len(bounds) == 3 and bounds[2] == 0:
        raise ExpressionTypeError("range(): step must not be zero")
    return list(range(*bounds))


def _contains(args):
    _arity("contains", args, 2)
    return args[1] in _require("contains", args[0], "list")


def _coalesce(args):
    for value in args:
        if value is not None and value != "":
            return value
    raise ExpressionTypeError("coalesce(): no non-null, non-empty argument")


BUILTINS: Dict[str, Callable[[List[Any]], Any]] = {
    "element": _element,
    "list": _list,
    "tolist": _tolist,
    "length": _length,
    "concat": _concat,
    "join": _join,
    "split": _split,
    "lookup": _lookup,
    "keys": _keys,
    "values": _values,
    "format": _format,
    "upper": _upper,
    "lower": _lower,
    "tostring": _tostring,
    "tonumber": _tonumber,
    "range": _range,
    "contains": _contains,
    "coalesce": _coalesce,
}


def call_builtin(name: str, args: List[Any]) -> Any:
    try:
        fn = BUILTINS[name]
    except KeyError:
        raise UnresolvedIdentifierError(f"unknown function {name!r}")
    try:
        return fn(args)
    except (ValueError, OverflowError, TypeError) as e:
        raise ExpressionTypeError(f"{name}(): {e}")
