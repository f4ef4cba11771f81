import logging
from datetime import datetime
from typing import Dict, Optional

from pymongo.errors import PyMongoError

from .visibility import RequestContext

logger = logging.getLogger(__name__)


def sanitize_metadata(metadata: Optional[Dict]) -> Dict[str, str]:
    if not isinstance(metadata, dict):
        return {}
    sanitized: Dict[str, str] = {}
    for key, value in metadata.items():
        if value is None:
            continue
        sanitized[str(key)] = str(value)
    return sanitized


def record_audit_log(
    db, context: Optional[RequestContext], action: str, metadata: Optional[Dict] = None
) -> None:
    if not action:
        return
    log_document = {
        "user_id": context.user_id if context else None,
        "user_email": context.email if context else None,
        "user_role": context.role if context else None,
        "action": action,
        "metadata": sanitize_metadata(metadata),
        "created_at": datetime.utcnow(),
    }
    try:
        db.audit_logs.insert_one(log_document)
    except PyMongoError as exc:
        logger.warning("Unable to record audit log: %s", exc)
