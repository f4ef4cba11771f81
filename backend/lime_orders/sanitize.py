import re
from typing import Any, Callable, Dict, Mapping

from .errors import BadRequestError

OPERATOR_SENTINEL = "$"
# Directives that make the engine evaluate expressions or run code.
AGGREGATION_DIRECTIVES = frozenset({"$expr", "$function", "$where", "$accumulator"})
INVALID_QUERY_MESSAGE = "Invalid query."

_REGEX_METACHARACTERS = re.compile(r"[.*+?^${}()|[\]\\]")
_QUOTES = re.compile(r"['\"]")
_ESCAPED_CHARACTER = re.compile(r"\\(.)", re.DOTALL)
_BRACKET_KEY = re.compile(r"^([^\[\]]+)((?:\[[^\[\]]*\])+)$")
_BRACKET_PART = re.compile(r"\[([^\[\]]*)\]")


def escape_search(value: str) -> str:
    escaped = _REGEX_METACHARACTERS.sub(r"\\\g<0>", value)
    return _QUOTES.sub(r"\\\g<0>", escaped)


def unescape_value(value):
    if not isinstance(value, str):
        return value
    return _ESCAPED_CHARACTER.sub(r"\1", value)


def nest_query_params(args) -> Dict[str, Any]:
    """Expand ``filters[field]=value`` style keys into nested dictionaries.

    Repeated keys become lists, mirroring how query-string parsers on the
    client side encode object and array parameters.
    """
    nested: Dict[str, Any] = {}
    for key in args.keys():
        values = args.getlist(key) if hasattr(args, "getlist") else [args[key]]
        value = values[0] if len(values) == 1 else list(values)

        match = _BRACKET_KEY.match(key)
        if not match:
            nested[key] = value
            continue

        path = [match.group(1)] + _BRACKET_PART.findall(match.group(2))
        target = nested
        for part in path[:-1]:
            child = target.get(part)
            if not isinstance(child, dict):
                child = {}
                target[part] = child
            target = child
        target[path[-1]] = value
    return nested


def _walk(
    value,
    check_key: Callable[[str], None],
    transform_string: Callable[[str], Any],
):
    if isinstance(value, Mapping):
        sanitized: Dict[Any, Any] = {}
        for key, item in value.items():
            if isinstance(key, str):
                check_key(key)
            sanitized[key] = _walk(item, check_key, transform_string)
        return sanitized
    if isinstance(value, (list, tuple)):
        return [_walk(item, check_key, transform_string) for item in value]
    if isinstance(value, str):
        return transform_string(value)
    return value


def _reject_operator(value: str) -> None:
    if value.startswith(OPERATOR_SENTINEL):
        raise BadRequestError(INVALID_QUERY_MESSAGE)


def _escape_checked(value: str) -> str:
    _reject_operator(value)
    return escape_search(value)


def _keep_checked(value: str) -> str:
    _reject_operator(value)
    return value


def sanitize_query_params(params: Mapping) -> Dict[str, Any]:
    """Return an escaped copy of ``params``.

    Every string value is escaped for regular expressions and quotes, nested
    mappings and lists are handled at any depth. A key or string value that
    starts with the operator sentinel raises ``BadRequestError``.
    """
    return _walk(params or {}, _reject_operator, _escape_checked)


def reject_operators(payload):
    """Validate a request body without escaping it; returns a copy."""
    return _walk(payload, _reject_operator, _keep_checked)


def _reject_aggregation_key(key: str) -> None:
    if key in AGGREGATION_DIRECTIVES:
        raise BadRequestError(INVALID_QUERY_MESSAGE)
    _reject_operator(key)


def _reject_aggregation_value(value: str) -> str:
    if value in AGGREGATION_DIRECTIVES:
        raise BadRequestError(INVALID_QUERY_MESSAGE)
    _reject_operator(value)
    return value


def sanitize_aggregation_filters(expression):
    """Second validation pass for filters feeding an aggregation pipeline."""
    return _walk(expression, _reject_aggregation_key, _reject_aggregation_value)
