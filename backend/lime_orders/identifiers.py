from bson import ObjectId
from bson.errors import InvalidId

from .errors import BadRequestError


def parse_object_id(value, message: str = "Invalid identifier.") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    if not isinstance(value, str):
        raise BadRequestError(message)
    try:
        return ObjectId(value.strip())
    except (InvalidId, TypeError):
        raise BadRequestError(message)


def parse_order_number(value) -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    candidate = value.strip() if isinstance(value, str) else ""
    # ASCII digits only; int() also takes signs, underscores and other scripts.
    if not (candidate.isascii() and candidate.isdigit()):
        raise BadRequestError("Invalid order number.")
    return int(candidate)
