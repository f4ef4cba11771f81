import pytest
from bson import ObjectId

from lime_orders.errors import BadRequestError
from lime_orders.identifiers import parse_object_id, parse_order_number


def test_order_number_accepts_plain_digits():
    assert parse_order_number("42") == 42
    assert parse_order_number(" 7 ") == 7
    assert parse_order_number(3) == 3


@pytest.mark.parametrize("value", ["+3", "-1", "1_000", "٣", "３", "3.0", "", None, True])
def test_order_number_rejects_signs_and_foreign_digits(value):
    with pytest.raises(BadRequestError):
        parse_order_number(value)


def test_object_id_parsing():
    identifier = ObjectId()
    assert parse_object_id(str(identifier)) == identifier
    assert parse_object_id(identifier) is identifier
    with pytest.raises(BadRequestError):
        parse_object_id("12345")
    with pytest.raises(BadRequestError):
        parse_object_id(12345)
