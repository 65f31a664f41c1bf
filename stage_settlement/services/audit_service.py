"""
Audit Service

Persists operator actions as OperationLog rows. log_operation only adds
the row to the session; the caller decides when to commit, so the
stage_settled entry lands in the same batch as the settlement itself.
"""
import logging
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from stage_settlement.orm.operation_log import OperationLog
from stage_settlement.utils.id_generator import generate_id

logger = logging.getLogger(__name__)


def log_operation(
    db: AsyncSession,
    action: str,
    user_email: Optional[str],
    project_id: Optional[str] = None,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    level: str = "info",
) -> OperationLog:
    entry = OperationLog(
        log_id=generate_id("operation_log"),
        project_id=project_id,
        user_email=user_email,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        level=level,
        details=details or {},
    )
    db.add(entry)
    logger.log(logging.WARNING if level == "warning" else logging.INFO,
               f"Operation {action} by {user_email} on {entity_type}:{entity_id}")
    return entry
