import math
import re
from dataclasses import dataclass
from datetime import datetime, time, timezone
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

from .markup import clean_html
from .sanitize import reject_operators, unescape_value

ORDER_STATUSES = ("new", "delivering", "completed", "cancelled")
END_OF_DAY = time(23, 59, 59, 999000)
DEFAULT_SORT_FIELD = "createdAt"

_DATE_ONLY = re.compile(r"\d{4}-\d{2}-\d{2}")


@dataclass(frozen=True)
class RangeField:
    param: str
    field: str
    kind: str = "number"


ORDER_RANGE_FIELDS = (
    RangeField("totalAmount", "totalAmount"),
    RangeField("orderDate", "createdAt", "date"),
)
ORDER_EQUALITY_FIELDS = {"status": ORDER_STATUSES}

CUSTOMER_RANGE_FIELDS = (
    RangeField("registrationDate", "createdAt", "date"),
    RangeField("lastOrderDate", "lastOrderDate", "date"),
    RangeField("totalAmount", "totalAmount"),
    RangeField("orderCount", "orderCount"),
)


def parse_number(value) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        numeric = float(str(value).strip())
    except (TypeError, ValueError):
        return None
    if math.isfinite(numeric):
        return numeric
    return None


def parse_date(value, *, end_of_day: bool = False) -> Optional[datetime]:
    if not isinstance(value, str):
        return None
    candidate = value.strip()
    if not candidate:
        return None
    normalized = candidate.replace("Z", "+00:00")
    if _DATE_ONLY.fullmatch(candidate):
        normalized = f"{candidate}T00:00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError:
        return None
    # Stored timestamps are naive UTC.
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    if end_of_day:
        return datetime.combine(parsed.date(), END_OF_DAY)
    return parsed


def _parse_bound(range_field: RangeField, raw, *, upper: bool):
    value = unescape_value(raw)
    if range_field.kind == "date":
        return parse_date(value, end_of_day=upper)
    return parse_number(value)


def build_filter_expression(
    params: Mapping,
    ranges: Iterable[RangeField] = (),
    equalities: Optional[Mapping[str, Iterable[str]]] = None,
) -> Dict[str, Any]:
    """Translate listing parameters into a field-scoped filter expression.

    ``<param>From`` and ``<param>To`` are inclusive bounds; an upper date bound
    covers the whole calendar day. Equality parameters outside their allowed
    values are ignored.
    """
    params = params or {}
    expression: Dict[str, Any] = {}

    for range_field in ranges:
        bounds: Dict[str, Any] = {}
        lower = _parse_bound(range_field, params.get(f"{range_field.param}From"), upper=False)
        upper = _parse_bound(range_field, params.get(f"{range_field.param}To"), upper=True)
        if lower is not None:
            bounds["from"] = lower
        if upper is not None:
            bounds["to"] = upper
        if bounds:
            expression[range_field.field] = bounds

    for name, allowed in (equalities or {}).items():
        value = unescape_value(params.get(name))
        if not isinstance(value, str):
            continue
        candidate = value.strip()
        if candidate in allowed:
            expression[name] = candidate

    return expression


def compile_filter_expression(expression: Mapping) -> Dict[str, Any]:
    query: Dict[str, Any] = {}
    for field, value in (expression or {}).items():
        if isinstance(value, Mapping):
            condition: Dict[str, Any] = {}
            if "from" in value:
                condition["$gte"] = value["from"]
            if "to" in value:
                condition["$lte"] = value["to"]
            if condition:
                query[field] = condition
        else:
            query[field] = value
    return query


def build_sort(params: Mapping, default_field: str = DEFAULT_SORT_FIELD) -> Tuple[str, int]:
    params = params or {}
    raw_field = unescape_value(params.get("sortField"))
    field = clean_html(raw_field).strip() if isinstance(raw_field, str) else ""
    raw_order = unescape_value(params.get("sortOrder"))
    order = raw_order.strip().lower() if isinstance(raw_order, str) else "desc"
    field = reject_operators(field) or default_field
    return field, -1 if order == "desc" else 1
