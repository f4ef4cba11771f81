import logging
import re
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping

from bson import ObjectId
from pymongo import ReturnDocument

from .audit import record_audit_log
from .errors import BadRequestError, ForbiddenError, NotFoundError
from .filters import (
    CUSTOMER_RANGE_FIELDS,
    build_filter_expression,
    build_sort,
    compile_filter_expression,
)
from .identifiers import parse_object_id
from .markup import clean_html
from .pagination import Page, PageRequest, build_page, single_page
from .sanitize import reject_operators, sanitize_query_params, unescape_value
from .search import compile_search, customer_search_conditions
from .serializers import serialize_customer
from .visibility import (
    ALLOWED_USER_ROLES,
    RequestContext,
    ensure_visible,
    normalize_email,
    require_admin,
)

logger = logging.getLogger(__name__)

CUSTOMER_NOT_FOUND = "Customer not found."
CUSTOMER_PROJECTION = {"password": 0}
EDITABLE_FIELDS = ("name", "email", "phone")

email_regex = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def populate_customers(db, documents: Iterable[Mapping]) -> List[Dict[str, Any]]:
    documents = [dict(document) for document in documents]
    order_ids = [
        document["lastOrder"]
        for document in documents
        if isinstance(document.get("lastOrder"), ObjectId)
    ]
    orders = {}
    if order_ids:
        orders = {
            order["_id"]: order for order in db.orders.find({"_id": {"$in": order_ids}})
        }
    for document in documents:
        last_order = document.get("lastOrder")
        if isinstance(last_order, ObjectId):
            document["lastOrder"] = orders.get(last_order)
    return documents


def serialize_customers(db, documents: Iterable[Mapping]) -> List[Dict[str, Any]]:
    return [serialize_customer(document) for document in populate_customers(db, documents)]


def _find_customer(db, customer_id: ObjectId) -> Dict:
    document = db.users.find_one({"_id": customer_id}, CUSTOMER_PROJECTION)
    if not document:
        raise NotFoundError(CUSTOMER_NOT_FOUND)
    return document


def list_customers(db, context: RequestContext, params: Mapping) -> Page:
    if not context.is_admin:
        document = _find_customer(db, context.user_id)
        return single_page(serialize_customers(db, [document])[0])

    safe_params = sanitize_query_params(params)
    page_request = PageRequest.from_params(safe_params)
    query = compile_filter_expression(
        build_filter_expression(safe_params, CUSTOMER_RANGE_FIELDS)
    )

    search = compile_search(unescape_value(safe_params.get("search")))
    if search is not None:
        query["$or"] = customer_search_conditions(db, search)

    field, direction = build_sort(safe_params)
    total = db.users.count_documents(query)
    cursor = (
        db.users.find(query, CUSTOMER_PROJECTION)
        .sort([(field, direction), ("_id", direction)])
        .skip(page_request.skip)
        .limit(page_request.limit)
    )
    return build_page(serialize_customers(db, cursor), total, page_request)


def get_customer(db, context: RequestContext, raw_customer_id) -> Dict:
    customer_id = parse_object_id(raw_customer_id, "Invalid customer identifier.")
    ensure_visible(context, customer_id, CUSTOMER_NOT_FOUND)
    return serialize_customers(db, [_find_customer(db, customer_id)])[0]


def _check_email_change(
    db, context: RequestContext, current: Mapping, email: str, default_admin_email: str
) -> None:
    if email == normalize_email(current.get("email")):
        return
    if not context.is_admin:
        raise ForbiddenError("Only administrators can change email addresses.")
    # The default admin address grants the admin role, so it never moves.
    if email == normalize_email(default_admin_email):
        raise BadRequestError("This email address is reserved.")
    if db.users.find_one({"email": email, "_id": {"$ne": current["_id"]}}, {"_id": 1}):
        raise BadRequestError("This email address is already in use.")


def _collect_updates(
    db,
    context: RequestContext,
    current: Mapping,
    payload: Mapping,
    default_admin_email: str = "",
) -> Dict[str, Any]:
    updates: Dict[str, Any] = {}
    for field in EDITABLE_FIELDS:
        if field not in payload:
            continue
        value = payload.get(field)
        if not isinstance(value, str):
            raise BadRequestError(f"{field.capitalize()} must be text.")
        updates[field] = clean_html(value.strip())

    if "email" in updates:
        updates["email"] = normalize_email(updates["email"])
        if not email_regex.match(updates["email"]):
            raise BadRequestError("Enter a valid email address.")
        _check_email_change(db, context, current, updates["email"], default_admin_email)

    if "role" in payload and context.is_admin:
        role = str(payload.get("role") or "").strip().lower()
        if role not in ALLOWED_USER_ROLES:
            raise BadRequestError("Role must be 'admin' or 'customer'.")
        updates["role"] = role
    return updates


def update_customer(
    db,
    context: RequestContext,
    raw_customer_id,
    payload,
    default_admin_email: str = "",
) -> Dict:
    customer_id = parse_object_id(raw_customer_id, "Invalid customer identifier.")
    ensure_visible(context, customer_id, CUSTOMER_NOT_FOUND)

    if not isinstance(payload, dict):
        raise BadRequestError("Customer details are required.")
    current = _find_customer(db, customer_id)
    updates = _collect_updates(
        db, context, current, reject_operators(payload), default_admin_email
    )
    if not updates:
        raise BadRequestError("Nothing to update.")

    updates["updatedAt"] = datetime.utcnow()
    updated = db.users.find_one_and_update(
        {"_id": customer_id},
        {"$set": updates},
        projection=CUSTOMER_PROJECTION,
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise NotFoundError(CUSTOMER_NOT_FOUND)

    record_audit_log(
        db,
        context,
        "Updated customer",
        {"customer_id": customer_id, "fields": ",".join(sorted(updates))},
    )
    return serialize_customers(db, [updated])[0]


def delete_customer(db, context: RequestContext, raw_customer_id) -> Dict:
    require_admin(context)
    customer_id = parse_object_id(raw_customer_id, "Invalid customer identifier.")
    document = _find_customer(db, customer_id)

    remaining_orders = db.orders.count_documents({"customer": customer_id})
    if remaining_orders:
        raise BadRequestError(
            f"Customer still has {remaining_orders} order(s); delete them first."
        )

    serialized = serialize_customers(db, [document])[0]
    db.users.delete_one({"_id": customer_id})

    record_audit_log(
        db,
        context,
        "Deleted customer",
        {"customer_id": customer_id, "email": document.get("email", "")},
    )
    logger.info("Customer %s deleted by %s", customer_id, context.user_id)
    return serialized
