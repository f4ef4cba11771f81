import re
from typing import Any, Dict, Iterable, Mapping, Optional

from bleach import html5lib_shim
from bleach.sanitizer import Cleaner

ALLOWED_TAGS = frozenset({"p", "a"})
ALLOWED_ATTRIBUTES = {"a": ["href"]}
SAFE_LINK_REL = "noopener noreferrer nofollow"

ORDER_MARKUP_FIELDS = ("deliveryAddress", "comment", "email", "phone")
CUSTOMER_MARKUP_FIELDS = ("name", "email", "phone")

# Script and style bodies are dropped along with their tags.
_DROPPED_BLOCKS = re.compile(
    r"<(script|style)\b[^>]*>.*?</\1\s*>", re.IGNORECASE | re.DOTALL
)


class SafeLinkFilter(html5lib_shim.Filter):
    def __iter__(self):
        for token in super().__iter__():
            if token["type"] in ("StartTag", "EmptyTag") and token["name"] == "a":
                attributes = dict(token.get("data") or {})
                attributes[(None, "rel")] = SAFE_LINK_REL
                token["data"] = attributes
            yield token


def _build_cleaner() -> Cleaner:
    return Cleaner(
        tags=ALLOWED_TAGS,
        attributes=ALLOWED_ATTRIBUTES,
        strip=True,
        strip_comments=True,
        filters=[SafeLinkFilter],
    )


def clean_html(value: Optional[Any]) -> str:
    if value is None:
        return ""
    text = value if isinstance(value, str) else str(value)
    if not text:
        return ""
    text = _DROPPED_BLOCKS.sub("", text)
    return _build_cleaner().clean(text)


def sanitize_record(record: Mapping, fields: Iterable[str]) -> Dict[str, Any]:
    sanitized = dict(record or {})
    for field in fields:
        value = sanitized.get(field)
        sanitized[field] = clean_html(value) if value is not None else ""
    return sanitized
