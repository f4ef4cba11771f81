import pytest

from lime_orders.pagination import (
    MAX_PAGE_SIZE,
    PageRequest,
    build_page,
    paginate_items,
    single_page,
)
from lime_orders.sanitize import sanitize_query_params


@pytest.mark.parametrize(
    "limit, expected",
    [
        (None, 10),
        ("5", 5),
        ("0", 1),
        ("-3", 1),
        ("11", 10),
        ("1000000", 10),
        ("abc", 10),
        ("7.9", 7),
    ],
)
def test_limit_is_clamped(limit, expected):
    params = {} if limit is None else {"limit": limit}
    page_request = PageRequest.from_params(sanitize_query_params(params))
    assert page_request.limit == expected
    assert 1 <= page_request.limit <= MAX_PAGE_SIZE


@pytest.mark.parametrize("page", ["0", "-1", "-100", "", "nope"])
def test_page_below_one_becomes_one(page):
    assert PageRequest.from_params({"page": page}).page == 1


def test_skip_follows_page_and_limit():
    assert PageRequest.from_params({"page": "3", "limit": "4"}).skip == 8


def test_in_memory_slice_matches_skip_and_limit():
    items = list(range(23))
    page_request = PageRequest(page=3, limit=10)

    page = paginate_items(items, page_request)

    assert page.items == items[page_request.skip : page_request.skip + page_request.limit]
    assert page.items == [20, 21, 22]
    assert page.total_items == 23
    assert page.total_pages == 3


def test_page_past_the_end_is_empty_but_counts_stay():
    page = paginate_items(list(range(5)), PageRequest(page=4, limit=2))
    assert page.items == []
    assert page.total_items == 5
    assert page.total_pages == 3


def test_envelope_shape():
    envelope = build_page(["a"], 11, PageRequest(page=2, limit=10)).to_dict("orders")
    assert envelope == {
        "orders": ["a"],
        "pagination": {"totalItems": 11, "totalPages": 2, "currentPage": 2, "pageSize": 10},
    }


def test_single_page():
    assert single_page({"id": "x"}).to_dict("customers")["pagination"] == {
        "totalItems": 1,
        "totalPages": 1,
        "currentPage": 1,
        "pageSize": 1,
    }
