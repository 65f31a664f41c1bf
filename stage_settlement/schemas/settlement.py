"""
Stage settlement request/response schemas
"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class CheckResult(BaseModel):
    passed: bool
    details: Dict[str, Any] = Field(default_factory=dict)


class ValidationReport(BaseModel):
    """Pre-settlement validator output. valid=False blocks settlement unless forced."""
    valid: bool
    checks: Dict[str, CheckResult]
    warnings: List[str] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)


class ParticipantShare(BaseModel):
    email: str
    percentage: float = Field(..., ge=0)
    points: float


class GroupPreview(BaseModel):
    group_id: str
    group_name: str
    rank: int
    weighted_score: float
    total_points: float
    participant_count: int
    participant_distribution: List[ParticipantShare] = Field(default_factory=list)


class ScorePreview(BaseModel):
    stage_id: str
    stage_name: str
    reward_pool: float
    scoring_config: Dict[str, Any]
    scoring_results: List[GroupPreview]
    total_votes: int
    preview_only: bool = True


class SettlementResult(BaseModel):
    """Returned by a successful settlement."""
    stage_id: str
    stage_name: str
    settlement_id: str
    final_rankings: Dict[str, int]
    scoring_results: Dict[str, float]
    weighted_scores: Dict[str, float]
    total_points_distributed: float
    participant_count: int
    settled_time: str
    group_names: Dict[str, str]
    group_members: Dict[str, List[str]] = Field(default_factory=dict)
    author_names: Optional[Dict[str, str]] = None
    comment_rankings: Optional[Dict[str, int]] = None
    comment_scores: Optional[Dict[str, float]] = None


class SettlementResponse(BaseModel):
    success: bool = True
    message: str
    data: SettlementResult


class SettlementSummary(BaseModel):
    settlement_id: str
    operator_email: str
    total_reward_distributed: float
    participant_count: int


class GroupDetail(BaseModel):
    group_id: str
    rank: int
    student_score: Optional[float] = None
    teacher_score: Optional[float] = None
    weighted_score: Optional[float] = None
    allocated_points: float
    member_emails: List[str] = Field(default_factory=list)
    member_points_distribution: Dict[str, float] = Field(default_factory=dict)


class CommentDetail(BaseModel):
    comment_id: str
    author_email: str
    rank: int
    allocated_points: float


class SettledResults(BaseModel):
    stage_id: str
    stage_name: str
    settled_time: str
    final_rankings: Dict[str, int]
    scoring_results: Dict[str, float]
    settlement: Optional[SettlementSummary] = None
    details: List[GroupDetail] = Field(default_factory=list)
    comment_details: List[CommentDetail] = Field(default_factory=list)


class ScoringConfigResponse(BaseModel):
    max_comment_selections: int
    student_ranking_weight: float
    teacher_ranking_weight: float
    comment_reward_percentile: float


class ScoringConfigUpdate(BaseModel):
    """Project-level overrides; omitted fields are left unchanged, null clears an override."""
    max_comment_selections: Optional[int] = Field(None, ge=1)
    student_ranking_weight: Optional[float] = Field(None, ge=0, le=1)
    teacher_ranking_weight: Optional[float] = Field(None, ge=0, le=1)
    comment_reward_percentile: Optional[float] = Field(None, ge=0, le=100)
