"""
stage_settlement/orm/stage.py
Scoring stage with derived status

Status is never stored. It is computed from the time-window columns and the
settling marker, in a fixed priority order. ``settling_time`` is the
compare-and-swap lock column: it is set only while a settlement runs.
"""
from datetime import datetime
from enum import Enum as PyEnum
from typing import Optional

from sqlalchemy import Column, Integer, String, DateTime, Float, ForeignKey

from stage_settlement.core.db_types import UniversalJSON
from stage_settlement.orm.base import Base


class StageStatus(str, PyEnum):
    PENDING = "pending"
    ACTIVE = "active"
    VOTING = "voting"
    SETTLING = "settling"
    COMPLETED = "completed"
    PAUSED = "paused"
    ARCHIVED = "archived"


class Stage(Base):
    __tablename__ = "stages"

    stage_id = Column(String(64), primary_key=True)
    project_id = Column(String(64), ForeignKey("projects.project_id", ondelete="CASCADE"), nullable=False, index=True)
    stage_name = Column(String(255), nullable=False)
    stage_order = Column(Integer, nullable=False, default=1)

    start_time = Column(DateTime, nullable=True)
    end_time = Column(DateTime, nullable=True)

    report_reward_pool = Column(Float, nullable=False, default=0)
    comment_reward_pool = Column(Float, nullable=False, default=0)

    # Lifecycle markers
    force_voting_time = Column(DateTime, nullable=True)
    paused_time = Column(DateTime, nullable=True)
    settling_time = Column(DateTime, nullable=True)
    settled_time = Column(DateTime, nullable=True)
    archived_time = Column(DateTime, nullable=True)

    # Written once, at settlement
    final_rankings = Column(UniversalJSON, nullable=True)
    scoring_results = Column(UniversalJSON, nullable=True)

    created_time = Column(DateTime, nullable=False, default=datetime.utcnow)

    def compute_status(self, now: Optional[datetime] = None) -> StageStatus:
        """Derive the stage status; the first matching rule wins."""
        now = now or datetime.utcnow()

        if self.archived_time is not None:
            return StageStatus.ARCHIVED
        if self.settled_time is not None:
            return StageStatus.COMPLETED
        if self.settling_time is not None:
            return StageStatus.SETTLING
        if self.paused_time is not None:
            return StageStatus.PAUSED
        if self.force_voting_time is not None:
            return StageStatus.VOTING
        if self.end_time is not None and now > self.end_time:
            return StageStatus.VOTING
        if self.start_time is not None and self.start_time <= now:
            return StageStatus.ACTIVE
        return StageStatus.PENDING
