import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Union

from bson import ObjectId

from .filters import parse_number
from .sanitize import escape_search

Number = Union[int, float]


@dataclass(frozen=True)
class SearchTerm:
    text: str
    pattern: re.Pattern
    number: Optional[Number] = None


def parse_search_number(term: str) -> Optional[Number]:
    # Python accepts digit separators, the HTTP clients do not.
    if "_" in term:
        return None
    numeric = parse_number(term)
    if numeric is None:
        return None
    return int(numeric) if numeric.is_integer() else numeric


def compile_search(term) -> Optional[SearchTerm]:
    if not isinstance(term, str) or not term:
        return None
    return SearchTerm(
        text=term,
        pattern=re.compile(escape_search(term), re.IGNORECASE),
        number=parse_search_number(term),
    )


def matching_product_ids(db, search: SearchTerm) -> Set[ObjectId]:
    return {
        document["_id"]
        for document in db.products.find({"title": search.pattern}, {"_id": 1})
    }


def _referenced_ids(values: Iterable) -> List[ObjectId]:
    identifiers = []
    for value in values or []:
        if isinstance(value, Mapping):
            value = value.get("_id")
        if isinstance(value, ObjectId):
            identifiers.append(value)
    return identifiers


def matches_order(order: Mapping, product_ids: Set[ObjectId], search: SearchTerm) -> bool:
    matches_product = any(
        identifier in product_ids for identifier in _referenced_ids(order.get("products"))
    )
    matches_number = search.number is not None and order.get("orderNumber") == search.number
    return matches_product or matches_number


def pipeline_match(search: SearchTerm, products_field: str = "products") -> Dict[str, Any]:
    conditions: List[Dict[str, Any]] = [{f"{products_field}.title": search.pattern}]
    if search.number is not None:
        conditions.append({"orderNumber": search.number})
    return {"$match": {"$or": conditions}}


def customer_search_conditions(db, search: SearchTerm) -> List[Dict[str, Any]]:
    order_ids = [
        document["_id"]
        for document in db.orders.find({"deliveryAddress": search.pattern}, {"_id": 1})
    ]
    return [
        {"name": search.pattern},
        {"lastOrder": {"$in": order_ids}},
    ]
