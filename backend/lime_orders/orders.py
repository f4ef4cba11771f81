import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from bson import ObjectId
from pymongo import ReturnDocument

from .audit import record_audit_log
from .errors import BadRequestError, NotFoundError
from .filters import (
    ORDER_EQUALITY_FIELDS,
    ORDER_RANGE_FIELDS,
    ORDER_STATUSES,
    build_filter_expression,
    build_sort,
    compile_filter_expression,
)
from .identifiers import parse_object_id, parse_order_number
from .markup import clean_html
from .pagination import Page, PageRequest, build_page, paginate_items
from .sanitize import (
    reject_operators,
    sanitize_aggregation_filters,
    sanitize_query_params,
    unescape_value,
)
from .search import SearchTerm, compile_search, matches_order, matching_product_ids, pipeline_match
from .serializers import serialize_order
from .visibility import RequestContext, ensure_visible, require_admin, scope_order_filters

logger = logging.getLogger(__name__)

ORDER_NOT_FOUND = "Order not found."
CUSTOMER_PROJECTION = {"password": 0}
ORDER_NUMBER_COUNTER = "orderNumber"
# Lookup target used only for matching product titles in the admin pipeline.
PRODUCT_LOOKUP_FIELD = "productDocuments"

Sort = Tuple[str, int]


def next_order_number(db) -> int:
    counter = db.counters.find_one_and_update(
        {"_id": ORDER_NUMBER_COUNTER},
        {"$inc": {"seq": 1}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    return int(counter["seq"])


def populate_orders(db, documents: Iterable[Mapping]) -> List[Dict[str, Any]]:
    """Replace product and customer references with their documents.

    Orders coming out of the aggregation pipeline already carry their
    products and customer; plain ``find`` results are resolved here with one
    query per collection.
    """
    documents = [dict(document) for document in documents]

    missing_products = set()
    missing_customers = set()
    for document in documents:
        if PRODUCT_LOOKUP_FIELD not in document:
            missing_products.update(
                value for value in document.get("products") or [] if isinstance(value, ObjectId)
            )
        if isinstance(document.get("customer"), ObjectId):
            missing_customers.add(document["customer"])

    product_map: Dict[ObjectId, Dict] = {}
    if missing_products:
        for product in db.products.find({"_id": {"$in": list(missing_products)}}):
            product_map[product["_id"]] = product

    customer_map: Dict[ObjectId, Dict] = {}
    if missing_customers:
        for customer in db.users.find(
            {"_id": {"$in": list(missing_customers)}}, CUSTOMER_PROJECTION
        ):
            customer_map[customer["_id"]] = customer

    populated = []
    for document in documents:
        if PRODUCT_LOOKUP_FIELD in document:
            lookup = {
                product["_id"]: product
                for product in document.pop(PRODUCT_LOOKUP_FIELD) or []
            }
        else:
            lookup = product_map
        document["products"] = [
            lookup[value]
            for value in document.get("products") or []
            if isinstance(value, ObjectId) and value in lookup
        ]
        customer = document.get("customer")
        if isinstance(customer, ObjectId):
            document["customer"] = customer_map.get(customer)
        populated.append(document)
    return populated


def serialize_orders(db, documents: Iterable[Mapping]) -> List[Dict[str, Any]]:
    return [serialize_order(document) for document in populate_orders(db, documents)]


def refresh_customer_aggregates(db, customer_id) -> None:
    if not isinstance(customer_id, ObjectId):
        return
    orders = list(
        db.orders.find(
            {"customer": customer_id}, {"totalAmount": 1, "createdAt": 1}
        ).sort([("createdAt", -1), ("_id", -1)])
    )
    latest = orders[0] if orders else None
    db.users.update_one(
        {"_id": customer_id},
        {
            "$set": {
                "totalAmount": sum(order.get("totalAmount") or 0 for order in orders),
                "orderCount": len(orders),
                "lastOrder": latest["_id"] if latest else None,
                "lastOrderDate": latest.get("createdAt") if latest else None,
                "updatedAt": datetime.utcnow(),
            }
        },
    )


# --- Listing ---


def _list_scoped_orders(
    db,
    expression: Mapping,
    sort: Sort,
    search: Optional[SearchTerm],
    page_request: PageRequest,
) -> Page:
    query = compile_filter_expression(expression)
    field, direction = sort
    cursor = db.orders.find(query).sort([(field, direction), ("_id", direction)])

    if search is None:
        total = db.orders.count_documents(query)
        documents = list(cursor.skip(page_request.skip).limit(page_request.limit))
        return build_page(serialize_orders(db, documents), total, page_request)

    product_ids = matching_product_ids(db, search)
    matched = [document for document in cursor if matches_order(document, product_ids, search)]
    page = paginate_items(matched, page_request)
    page.items = serialize_orders(db, page.items)
    return page


def build_order_pipeline(
    expression: Mapping, search: Optional[SearchTerm]
) -> List[Dict[str, Any]]:
    safe_filters = sanitize_aggregation_filters(expression)
    pipeline: List[Dict[str, Any]] = [
        {"$match": compile_filter_expression(safe_filters)},
        {
            "$lookup": {
                "from": "products",
                "localField": "products",
                "foreignField": "_id",
                "as": PRODUCT_LOOKUP_FIELD,
            }
        },
        {
            "$lookup": {
                "from": "users",
                "localField": "customer",
                "foreignField": "_id",
                "as": "customer",
            }
        },
        {"$unwind": {"path": "$customer", "preserveNullAndEmptyArrays": True}},
    ]
    if search is not None:
        pipeline.append(pipeline_match(search, PRODUCT_LOOKUP_FIELD))
    return pipeline


def _aggregate_orders(
    db,
    expression: Mapping,
    sort: Sort,
    search: Optional[SearchTerm],
    page_request: PageRequest,
) -> Page:
    pipeline = build_order_pipeline(expression, search)
    field, direction = sort
    sort_stage = sanitize_aggregation_filters({field: direction, "_id": direction})

    counted = list(db.orders.aggregate(pipeline + [{"$count": "total"}]))
    total = counted[0]["total"] if counted else 0

    documents = db.orders.aggregate(
        pipeline
        + [
            {"$sort": sort_stage},
            {"$skip": page_request.skip},
            {"$limit": page_request.limit},
        ]
    )
    return build_page(serialize_orders(db, documents), total, page_request)


def list_orders(db, context: RequestContext, params: Mapping) -> Page:
    safe_params = sanitize_query_params(params)
    page_request = PageRequest.from_params(safe_params)
    expression = build_filter_expression(
        safe_params, ORDER_RANGE_FIELDS, ORDER_EQUALITY_FIELDS
    )
    sort = build_sort(safe_params)
    search = compile_search(unescape_value(safe_params.get("search")))

    if not context.is_admin:
        scoped = scope_order_filters(context, expression)
        return _list_scoped_orders(db, scoped, sort, search, page_request)
    return _aggregate_orders(db, expression, sort, search, page_request)


def list_my_orders(db, context: RequestContext, params: Mapping) -> Page:
    safe_params = sanitize_query_params(params)
    page_request = PageRequest.from_params(safe_params)
    search = compile_search(unescape_value(safe_params.get("search")))
    expression = {"customer": context.user_id}
    return _list_scoped_orders(db, expression, build_sort({}), search, page_request)


# --- Single orders ---


def get_order(db, context: RequestContext, raw_order_number, *, owner_only: bool = False) -> Dict:
    order_number = parse_order_number(raw_order_number)
    document = db.orders.find_one({"orderNumber": order_number})
    if not document:
        raise NotFoundError(ORDER_NOT_FOUND)
    ensure_visible(context, document.get("customer"), ORDER_NOT_FOUND, owner_only=owner_only)
    return serialize_orders(db, [document])[0]


def _required_text(payload: Mapping, field: str, message: str) -> str:
    value = payload.get(field)
    if not isinstance(value, str) or not value.strip():
        raise BadRequestError(message)
    return clean_html(value.strip())


def _validate_basket(db, items) -> Tuple[List[ObjectId], float]:
    if not isinstance(items, list) or not items:
        raise BadRequestError("Include at least one item to place the order.")

    product_ids: List[ObjectId] = []
    for item in items:
        if not isinstance(item, str) or not ObjectId.is_valid(item):
            raise BadRequestError("Invalid product identifiers.")
        product_ids.append(ObjectId(item))

    products = {
        document["_id"]: document
        for document in db.products.find({"_id": {"$in": list(set(product_ids))}})
    }

    basket_total = 0
    for product_id in product_ids:
        product = products.get(product_id)
        if not product:
            raise BadRequestError(f"Product {product_id} was not found.")
        if product.get("price") is None:
            raise BadRequestError(f"Product {product_id} is not for sale.")
        basket_total += product["price"]
    return product_ids, basket_total


def create_order(db, context: RequestContext, payload) -> Dict:
    if not isinstance(payload, dict):
        raise BadRequestError("Order details are required.")
    payload = reject_operators(payload)

    product_ids, basket_total = _validate_basket(db, payload.get("items"))

    total = payload.get("total")
    if isinstance(total, bool) or not isinstance(total, (int, float)) or total != basket_total:
        raise BadRequestError("Order total does not match the basket.")

    delivery_address = _required_text(payload, "address", "Delivery address is required.")
    phone = _required_text(payload, "phone", "Phone number is required.")
    email = _required_text(payload, "email", "Email is required.")
    comment = payload.get("comment")
    payment = payload.get("payment")

    now = datetime.utcnow()
    order_document = {
        "orderNumber": next_order_number(db),
        "status": ORDER_STATUSES[0],
        "totalAmount": total,
        "payment": clean_html(payment.strip()) if isinstance(payment, str) else "",
        "deliveryAddress": delivery_address,
        "comment": clean_html(comment.strip()) if isinstance(comment, str) else "",
        "email": email,
        "phone": phone,
        "customer": context.user_id,
        "products": product_ids,
        "createdAt": now,
        "updatedAt": now,
    }
    result = db.orders.insert_one(order_document)
    order_document["_id"] = result.inserted_id

    refresh_customer_aggregates(db, context.user_id)
    record_audit_log(
        db,
        context,
        "Placed order",
        {"order_number": order_document["orderNumber"], "total": total},
    )
    logger.info(
        "Order %s placed by %s", order_document["orderNumber"], context.user_id
    )
    return serialize_orders(db, [order_document])[0]


def update_order_status(db, context: RequestContext, raw_order_number, payload) -> Dict:
    require_admin(context)
    order_number = parse_order_number(raw_order_number)

    status = payload.get("status") if isinstance(payload, dict) else None
    if not isinstance(status, str) or status.strip() not in ORDER_STATUSES:
        raise BadRequestError(f"Status must be one of: {', '.join(ORDER_STATUSES)}.")
    status = status.strip()

    updated = db.orders.find_one_and_update(
        {"orderNumber": order_number},
        {"$set": {"status": status, "updatedAt": datetime.utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise NotFoundError(ORDER_NOT_FOUND)

    record_audit_log(
        db, context, "Updated order status", {"order_number": order_number, "status": status}
    )
    return serialize_orders(db, [updated])[0]


def delete_order(db, context: RequestContext, raw_order_id) -> Dict:
    require_admin(context)
    order_id = parse_object_id(raw_order_id, "Invalid order identifier.")

    deleted = db.orders.find_one_and_delete({"_id": order_id})
    if not deleted:
        raise NotFoundError(ORDER_NOT_FOUND)

    refresh_customer_aggregates(db, deleted.get("customer"))
    record_audit_log(
        db, context, "Deleted order", {"order_number": deleted.get("orderNumber")}
    )
    return serialize_orders(db, [deleted])[0]
