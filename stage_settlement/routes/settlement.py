"""
stage_settlement/routes/settlement.py
Stage settlement endpoints

Thin wiring over settlement_service. Every endpoint requires manage rights
on the project except the settled-results read.
"""
import logging

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from stage_settlement.database import get_db
from stage_settlement.errors import error_for_code
from stage_settlement.rbac import get_current_operator, require_manage_permission
from stage_settlement.schemas.settlement import (
    ValidationReport, ScorePreview, SettlementResponse, SettledResults,
    ScoringConfigResponse, ScoringConfigUpdate,
)
from stage_settlement.services import settlement_service
from stage_settlement.services.pre_settlement_validator import validate_pre_settlement
from stage_settlement.services.scoring_config_service import (
    get_effective_scoring_config, update_project_scoring_config,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/projects/{project_id}", tags=["Stage Settlement"])


@router.get("/stages/{stage_id}/settlement/validation", response_model=ValidationReport)
async def get_settlement_validation(
    project_id: str,
    stage_id: str,
    operator: str = Depends(require_manage_permission),
    db: AsyncSession = Depends(get_db)
):
    """Run the pre-settlement checks without settling."""
    return await validate_pre_settlement(project_id, stage_id, db)


@router.get("/stages/{stage_id}/settlement/preview", response_model=ScorePreview)
async def preview_settlement(
    project_id: str,
    stage_id: str,
    operator: str = Depends(get_current_operator),
    db: AsyncSession = Depends(get_db)
):
    try:
        return await settlement_service.preview_scores(project_id, stage_id, operator, db)
    except settlement_service.SettlementError as e:
        raise error_for_code(e.code, e.message, e.details)


@router.post("/stages/{stage_id}/settlement", response_model=SettlementResponse)
async def settle_stage(
    project_id: str,
    stage_id: str,
    force: bool = Query(False, description="Settle despite failed validation checks"),
    operator: str = Depends(get_current_operator),
    db: AsyncSession = Depends(get_db)
):
    """
    Settle a stage.

    409 if another operator holds the lock or the stage is already settled,
    422 with the validation report if checks fail and force is not set.
    """
    outcome = await settlement_service.settle_stage(project_id, stage_id, operator, db, force=force)
    if not outcome.success:
        raise error_for_code(outcome.code, outcome.message, outcome.details)

    return {"success": True, "message": outcome.message, "data": outcome.data}


@router.get("/stages/{stage_id}/settlement", response_model=SettledResults)
async def get_settlement_results(
    project_id: str,
    stage_id: str,
    operator: str = Depends(get_current_operator),
    db: AsyncSession = Depends(get_db)
):
    try:
        return await settlement_service.get_settled_results(project_id, stage_id, db)
    except settlement_service.SettlementError as e:
        raise error_for_code(e.code, e.message, e.details)


@router.get("/scoring-config", response_model=ScoringConfigResponse)
async def get_scoring_config(
    project_id: str,
    operator: str = Depends(require_manage_permission),
    db: AsyncSession = Depends(get_db)
):
    config = await get_effective_scoring_config(project_id, db)
    return config.to_dict()


@router.put("/scoring-config", response_model=ScoringConfigResponse)
async def put_scoring_config(
    project_id: str,
    data: ScoringConfigUpdate,
    operator: str = Depends(require_manage_permission),
    db: AsyncSession = Depends(get_db)
):
    """Set or clear project-level scoring overrides."""
    changes = data.model_dump(exclude_unset=True)
    config = await update_project_scoring_config(project_id, changes, db)
    logger.info(f"{operator} updated scoring config for project {project_id}")
    return config.to_dict()
