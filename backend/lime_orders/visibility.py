from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from bson import ObjectId

from .errors import ForbiddenError, NotFoundError

ROLE_ADMIN = "admin"
ROLE_CUSTOMER = "customer"
ALLOWED_USER_ROLES = {ROLE_ADMIN, ROLE_CUSTOMER}


def normalize_email(value: Optional[str]) -> str:
    return str(value or "").strip().lower()


def normalize_role(value: Optional[str]) -> str:
    normalized = str(value or "").strip().lower()
    return normalized if normalized in ALLOWED_USER_ROLES else ROLE_CUSTOMER


def get_user_role(user_document, default_admin_email: str = "") -> str:
    if not user_document:
        return ROLE_CUSTOMER

    email = normalize_email(user_document.get("email"))
    if email and email == normalize_email(default_admin_email):
        return ROLE_ADMIN

    return normalize_role(user_document.get("role"))


@dataclass(frozen=True)
class RequestContext:
    """Who is asking: populated once per request from the access token."""

    user_id: ObjectId
    role: str = ROLE_CUSTOMER
    email: str = ""

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    @classmethod
    def from_user(cls, user_document: Mapping, default_admin_email: str = "") -> "RequestContext":
        return cls(
            user_id=user_document["_id"],
            role=get_user_role(user_document, default_admin_email),
            email=normalize_email(user_document.get("email")),
        )


def _owner_identifier(owner) -> Optional[ObjectId]:
    if isinstance(owner, Mapping):
        owner = owner.get("_id")
    return owner if isinstance(owner, ObjectId) else None


def scope_order_filters(context: RequestContext, expression: Mapping) -> Dict[str, Any]:
    scoped = dict(expression or {})
    if not context.is_admin:
        scoped["customer"] = context.user_id
    return scoped


def ensure_visible(
    context: RequestContext,
    owner,
    message: str,
    *,
    owner_only: bool = False,
) -> None:
    # Records of other users are reported as missing, never as forbidden.
    if context.is_admin and not owner_only:
        return
    if _owner_identifier(owner) != context.user_id:
        raise NotFoundError(message)


def require_admin(context: RequestContext) -> None:
    if not context.is_admin:
        raise ForbiddenError("You need additional permissions to perform this action.")
