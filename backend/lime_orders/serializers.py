from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from bson import ObjectId

from .markup import CUSTOMER_MARKUP_FIELDS, ORDER_MARKUP_FIELDS, sanitize_record
from .visibility import normalize_role


def to_plain(value):
    """Convert a stored document into JSON-ready builtins."""
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat() if value.tzinfo is not None else f"{value.isoformat()}Z"
    if isinstance(value, Mapping):
        return {str(key): to_plain(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_plain(item) for item in value]
    return value


def serialize_product(product_document) -> Optional[Dict[str, Any]]:
    if not product_document:
        return None
    if isinstance(product_document, ObjectId):
        return {"id": str(product_document)}
    return to_plain(
        {
            "id": product_document.get("_id"),
            "title": product_document.get("title", "") or "",
            "price": product_document.get("price"),
        }
    )


def _serialize_last_order(last_order):
    if isinstance(last_order, Mapping):
        return to_plain(
            {
                "id": last_order.get("_id"),
                "orderNumber": last_order.get("orderNumber"),
                "status": last_order.get("status"),
                "totalAmount": last_order.get("totalAmount"),
                "deliveryAddress": last_order.get("deliveryAddress"),
                "createdAt": last_order.get("createdAt"),
            }
        )
    return to_plain(last_order) if last_order else None


def serialize_customer(customer_document, include_last_order: bool = True) -> Optional[Dict[str, Any]]:
    if not customer_document:
        return None
    if isinstance(customer_document, ObjectId):
        return {"id": str(customer_document)}

    record = to_plain(
        {
            "id": customer_document.get("_id"),
            "name": customer_document.get("name"),
            "email": customer_document.get("email"),
            "phone": customer_document.get("phone"),
            "role": normalize_role(customer_document.get("role")),
            "totalAmount": customer_document.get("totalAmount", 0) or 0,
            "orderCount": customer_document.get("orderCount", 0) or 0,
            "lastOrderDate": customer_document.get("lastOrderDate"),
            "createdAt": customer_document.get("createdAt"),
        }
    )
    if include_last_order:
        record["lastOrder"] = _serialize_last_order(customer_document.get("lastOrder"))
        if record["lastOrder"] and isinstance(record["lastOrder"], dict):
            record["lastOrder"] = sanitize_record(record["lastOrder"], ("deliveryAddress",))
    return sanitize_record(record, CUSTOMER_MARKUP_FIELDS)


def serialize_order(order_document) -> Optional[Dict[str, Any]]:
    if not order_document:
        return None

    products: List[Dict[str, Any]] = []
    for product in order_document.get("products") or []:
        serialized = serialize_product(product)
        if serialized:
            products.append(serialized)

    record = to_plain(
        {
            "id": order_document.get("_id"),
            "orderNumber": order_document.get("orderNumber"),
            "status": order_document.get("status"),
            "totalAmount": order_document.get("totalAmount"),
            "payment": order_document.get("payment", "") or "",
            "deliveryAddress": order_document.get("deliveryAddress"),
            "comment": order_document.get("comment"),
            "email": order_document.get("email"),
            "phone": order_document.get("phone"),
            "createdAt": order_document.get("createdAt"),
            "updatedAt": order_document.get("updatedAt"),
        }
    )
    record["products"] = products
    record["customer"] = serialize_customer(
        order_document.get("customer"), include_last_order=False
    )
    return sanitize_record(record, ORDER_MARKUP_FIELDS)
