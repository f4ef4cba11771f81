import re

import pytest
from werkzeug.datastructures import MultiDict

from lime_orders.errors import BadRequestError
from lime_orders.sanitize import (
    escape_search,
    nest_query_params,
    reject_operators,
    sanitize_aggregation_filters,
    sanitize_query_params,
    unescape_value,
)


@pytest.mark.parametrize(
    "params",
    [
        {"search": "$ne"},
        {"status": "$gt"},
        {"$where": "1 == 1"},
        {"filters": {"$where": "sleep(100)"}},
        {"filters": {"nested": {"deeper": "$regex"}}},
        {"items": ["ok", "$in"]},
    ],
)
def test_query_sanitizer_rejects_operator_sentinel(params):
    with pytest.raises(BadRequestError):
        sanitize_query_params(params)


def test_query_sanitizer_escapes_regex_metacharacters():
    sanitized = sanitize_query_params({"search": "a.b*(c)|[d]"})

    assert sanitized["search"] == r"a\.b\*\(c\)\|\[d\]"
    assert re.fullmatch(sanitized["search"], "a.b*(c)|[d]")


def test_query_sanitizer_escapes_quotes():
    assert sanitize_query_params({"q": "O'Neil \"Lime\""})["q"] == "O\\'Neil \\\"Lime\\\""


def test_query_sanitizer_recurses_and_does_not_mutate_input():
    params = {"filters": {"title": "lime+", "range": {"from": "1.5"}}, "page": 2}

    sanitized = sanitize_query_params(params)

    assert sanitized == {"filters": {"title": r"lime\+", "range": {"from": r"1\.5"}}, "page": 2}
    assert params["filters"]["title"] == "lime+"


def test_sentinel_in_the_middle_is_escaped_not_rejected():
    assert sanitize_query_params({"search": "price$"})["search"] == r"price\$"


def test_unescape_reverses_escape():
    raw = r"a.b\c'd\"e(f)"
    assert unescape_value(escape_search(raw)) == raw


def test_nested_bracket_keys_reach_the_firewall():
    args = MultiDict([("filters[$where]", "1"), ("page", "1")])

    nested = nest_query_params(args)

    assert nested == {"filters": {"$where": "1"}, "page": "1"}
    with pytest.raises(BadRequestError):
        sanitize_query_params(nested)


def test_repeated_keys_become_lists():
    nested = nest_query_params(MultiDict([("status", "new"), ("status", "completed")]))
    assert nested == {"status": ["new", "completed"]}


def test_reject_operators_keeps_values_unescaped():
    body = {"address": "1 Lime St.", "items": ["a", "b"]}
    assert reject_operators(body) == body
    with pytest.raises(BadRequestError):
        reject_operators({"address": {"$gt": ""}})


@pytest.mark.parametrize(
    "expression",
    [
        {"$expr": {"$gt": ["$totalAmount", 0]}},
        {"totalAmount": {"$function": {"body": "return true"}}},
        {"status": {"nested": {"$where": "this.a"}}},
        {"customer": {"$accumulator": {}}},
        {"status": "$status"},
        {"$or": [{"status": "new"}]},
        {"products": [{"title": "$title"}]},
    ],
)
def test_aggregation_sanitizer_rejects_directives_and_operators(expression):
    with pytest.raises(BadRequestError):
        sanitize_aggregation_filters(expression)


def test_aggregation_sanitizer_passes_plain_expression():
    expression = {"status": "new", "totalAmount": {"from": 10, "to": 20}}
    assert sanitize_aggregation_filters(expression) == expression


@pytest.mark.parametrize("value", ["$where", ["$expr"], ("status", "$function")])
def test_aggregation_sanitizer_checks_bare_values(value):
    with pytest.raises(BadRequestError):
        sanitize_aggregation_filters(value)


def test_aggregation_sanitizer_passes_bare_literals():
    assert sanitize_aggregation_filters("new") == "new"
    assert sanitize_aggregation_filters(None) is None
