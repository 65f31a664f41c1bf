"""
Scoring Configuration Service

Per-field fallback for scoring parameters:
    1. project column (nullable override)
    2. system setting row (system_settings, key "config:<field>")
    3. environment default (Settings.DEFAULT_*)
    4. static default
"""
import logging
import math
from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from stage_settlement.config.settings import settings
from stage_settlement.errors import BadRequestError, NotFoundError, ErrorCode
from stage_settlement.orm.project import Project, SystemSetting

logger = logging.getLogger(__name__)

WEIGHT_SUM_TOLERANCE = 0.001


@dataclass
class ScoringConfig:
    max_comment_selections: int = 3
    student_ranking_weight: float = 0.7
    teacher_ranking_weight: float = 0.3
    comment_reward_percentile: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


DEFAULT_SCORING_CONFIG = ScoringConfig()

# Field -> (system setting key, caster)
SYSTEM_SETTING_KEYS = {
    "max_comment_selections": ("config:max_comment_selections", int),
    "student_ranking_weight": ("config:student_ranking_weight", float),
    "teacher_ranking_weight": ("config:teacher_ranking_weight", float),
    "comment_reward_percentile": ("config:comment_reward_percentile", float),
}


def _env_defaults() -> Dict[str, Any]:
    return {
        "max_comment_selections": settings.DEFAULT_MAX_COMMENT_SELECTIONS,
        "student_ranking_weight": settings.DEFAULT_STUDENT_RANKING_WEIGHT,
        "teacher_ranking_weight": settings.DEFAULT_TEACHER_RANKING_WEIGHT,
        "comment_reward_percentile": settings.DEFAULT_COMMENT_REWARD_PERCENTILE,
    }


async def _load_system_settings(db: AsyncSession) -> Dict[str, Any]:
    keys = [key for key, _ in SYSTEM_SETTING_KEYS.values()]
    result = await db.execute(
        select(SystemSetting).where(SystemSetting.setting_key.in_(keys))
    )
    raw = {row.setting_key: row.setting_value for row in result.scalars().all()}

    values = {}
    for field_name, (key, caster) in SYSTEM_SETTING_KEYS.items():
        value = raw.get(key)
        if value is None or str(value).strip() == "":
            continue
        try:
            values[field_name] = caster(value)
        except ValueError:
            logger.warning(f"Ignoring malformed system setting {key}={value!r}")
    return values


async def get_system_scoring_defaults(db: AsyncSession) -> ScoringConfig:
    """System-level defaults, ignoring any project override."""
    system_values = await _load_system_settings(db)
    env_values = _env_defaults()

    merged = {}
    for field_name in SYSTEM_SETTING_KEYS:
        if field_name in system_values:
            merged[field_name] = system_values[field_name]
        elif env_values.get(field_name) is not None:
            merged[field_name] = env_values[field_name]
        else:
            merged[field_name] = getattr(DEFAULT_SCORING_CONFIG, field_name)
    return ScoringConfig(**merged)


async def get_effective_scoring_config(project_id: str, db: AsyncSession) -> ScoringConfig:
    """Effective scoring configuration for a project."""
    result = await db.execute(select(Project).where(Project.project_id == project_id))
    project = result.scalar_one_or_none()

    config = await get_system_scoring_defaults(db)

    if project is not None:
        for field_name in SYSTEM_SETTING_KEYS:
            override = getattr(project, field_name)
            if override is not None:
                setattr(config, field_name, override)

    return config


def calculate_comment_reward_limit(unique_authors: int, percentile: float, fallback_top_n: int) -> int:
    """
    Number of comment ranks eligible for rewards.

    >>> calculate_comment_reward_limit(10, 20, 3)
    2
    >>> calculate_comment_reward_limit(10, 0, 3)
    3
    """
    if percentile and percentile > 0:
        return max(1, math.ceil((percentile / 100) * unique_authors))
    return fallback_top_n


def validate_weights(student_weight: float, teacher_weight: float) -> bool:
    return abs(student_weight + teacher_weight - 1.0) <= WEIGHT_SUM_TOLERANCE


def validate_scoring_config(config: Dict[str, Any]) -> None:
    """
    Validate a partial scoring configuration.

    Raises:
        BadRequestError: if any supplied field is out of range
    """
    max_selections = config.get("max_comment_selections")
    student_weight = config.get("student_ranking_weight")
    teacher_weight = config.get("teacher_ranking_weight")
    percentile = config.get("comment_reward_percentile")

    if max_selections is not None and max_selections < 1:
        raise BadRequestError("max_comment_selections must be >= 1", code=ErrorCode.VALIDATION_ERROR)

    if student_weight is not None and not 0 <= student_weight <= 1:
        raise BadRequestError("student_ranking_weight must be between 0 and 1", code=ErrorCode.VALIDATION_ERROR)

    if teacher_weight is not None and not 0 <= teacher_weight <= 1:
        raise BadRequestError("teacher_ranking_weight must be between 0 and 1", code=ErrorCode.VALIDATION_ERROR)

    if student_weight is not None and teacher_weight is not None and not validate_weights(student_weight, teacher_weight):
        raise BadRequestError("Student and teacher weights must sum to 1.0", code=ErrorCode.VALIDATION_ERROR)

    if percentile is not None and not 0 <= percentile <= 100:
        raise BadRequestError("comment_reward_percentile must be between 0 and 100", code=ErrorCode.VALIDATION_ERROR)


async def update_project_scoring_config(
    project_id: str,
    changes: Dict[str, Optional[Any]],
    db: AsyncSession
) -> ScoringConfig:
    """
    Validate and store project-level overrides. A None value clears the
    override so the field falls back to system defaults again.
    """
    unknown = set(changes) - set(SYSTEM_SETTING_KEYS)
    if unknown:
        raise BadRequestError(f"Unknown scoring fields: {', '.join(sorted(unknown))}",
                              code=ErrorCode.VALIDATION_ERROR)

    validate_scoring_config(changes)

    result = await db.execute(select(Project).where(Project.project_id == project_id))
    project = result.scalar_one_or_none()
    if project is None:
        raise NotFoundError("Project", project_id)

    for field_name, value in changes.items():
        setattr(project, field_name, value)
    await db.commit()

    logger.info(f"Updated scoring config for project {project_id}: {changes}")
    return await get_effective_scoring_config(project_id, db)
