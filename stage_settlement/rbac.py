"""
stage_settlement/rbac.py
Role checks for settlement operations

Authentication is handled upstream; the operator identity arrives in the
X-Operator-Id header. Only manage-level roles may preview or settle:
    level 0: global admin
    level 1: project creator or active project teacher
"""
import logging
from typing import Optional

from fastapi import Depends, Header
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from stage_settlement.database import get_db
from stage_settlement.errors import ForbiddenError, ErrorCode
from stage_settlement.orm.project import Project, ProjectViewer, GlobalAdmin

logger = logging.getLogger(__name__)

MANAGE_ROLES = ("teacher",)


async def has_manage_permission(actor_id: str, project_id: str, db: AsyncSession) -> bool:
    """True if actor may manage settlement for the project."""
    if not actor_id:
        return False

    admin = await db.execute(select(GlobalAdmin).where(GlobalAdmin.user_email == actor_id))
    if admin.scalar_one_or_none() is not None:
        return True

    project = await db.execute(select(Project.created_by).where(Project.project_id == project_id))
    if project.scalar_one_or_none() == actor_id:
        return True

    viewer = await db.execute(
        select(ProjectViewer).where(
            ProjectViewer.project_id == project_id,
            ProjectViewer.user_email == actor_id,
            ProjectViewer.role.in_(MANAGE_ROLES),
            ProjectViewer.is_active.is_(True),
        )
    )
    return viewer.scalar_one_or_none() is not None


async def get_current_operator(x_operator_id: Optional[str] = Header(None)) -> str:
    """Operator identity supplied by the upstream auth layer."""
    if not x_operator_id:
        raise ForbiddenError("Operator identity required", code=ErrorCode.ACCESS_DENIED)
    return x_operator_id


async def require_manage_permission(
    project_id: str,
    operator: str = Depends(get_current_operator),
    db: AsyncSession = Depends(get_db)
) -> str:
    """Route dependency: operator must hold manage rights on project_id."""
    if not await has_manage_permission(operator, project_id, db):
        logger.warning(f"Manage access denied for {operator} on project {project_id}")
        raise ForbiddenError("Only admins and teachers can manage settlement")
    return operator
