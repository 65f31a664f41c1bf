"""
stage_settlement/orm/settlement.py
Settlement records, per-item detail rows and point transactions

All rows here are written once, by the settlement batch, and are never
updated afterwards. Every Transaction carries the settlement_id of the
record that produced it so a settlement can be identified as a unit.
"""
from datetime import datetime

from sqlalchemy import Column, Integer, String, DateTime, Float, ForeignKey, Index

from stage_settlement.core.db_types import UniversalJSON
from stage_settlement.orm.base import Base


class SettlementRecord(Base):
    """
    One row per executed settlement.
    Status goes pending -> active within the commit batch.
    """
    __tablename__ = "settlement_records"

    settlement_id = Column(String(64), primary_key=True)
    project_id = Column(String(64), ForeignKey("projects.project_id", ondelete="CASCADE"), nullable=False, index=True)
    stage_id = Column(String(64), ForeignKey("stages.stage_id", ondelete="CASCADE"), nullable=False, index=True)
    settlement_type = Column(String(20), nullable=False, default="stage")
    operator_email = Column(String(255), nullable=False)
    settlement_time = Column(DateTime, nullable=False, default=datetime.utcnow)
    total_reward_distributed = Column(Float, nullable=False, default=0)
    participant_count = Column(Integer, nullable=False, default=0)
    status = Column(String(20), nullable=False, default="pending")

    # {"rankings", "scores", "weightedScores", "voteCount"}
    settlement_data = Column(UniversalJSON, nullable=True)


class GroupSettlementDetail(Base):
    __tablename__ = "group_settlement_details"

    detail_id = Column(String(64), primary_key=True)
    settlement_id = Column(String(64), ForeignKey("settlement_records.settlement_id", ondelete="CASCADE"), nullable=False, index=True)
    project_id = Column(String(64), nullable=False)
    stage_id = Column(String(64), nullable=False, index=True)
    group_id = Column(String(64), nullable=False)
    final_rank = Column(Integer, nullable=False)
    student_score = Column(Float, nullable=False, default=0)
    teacher_score = Column(Float, nullable=False, default=0)
    weighted_score = Column(Float, nullable=False, default=0)
    allocated_points = Column(Float, nullable=False, default=0)
    member_emails = Column(UniversalJSON, nullable=True)
    member_points_distribution = Column(UniversalJSON, nullable=True)
    created_time = Column(DateTime, nullable=False, default=datetime.utcnow)


class CommentSettlementDetail(Base):
    __tablename__ = "comment_settlement_details"

    detail_id = Column(String(64), primary_key=True)
    settlement_id = Column(String(64), ForeignKey("settlement_records.settlement_id", ondelete="CASCADE"), nullable=False, index=True)
    project_id = Column(String(64), nullable=False)
    stage_id = Column(String(64), nullable=False, index=True)
    comment_id = Column(String(64), nullable=False)
    author_email = Column(String(255), nullable=False)
    final_rank = Column(Integer, nullable=False)
    student_score = Column(Float, nullable=False, default=0)
    teacher_score = Column(Float, nullable=False, default=0)
    weighted_score = Column(Float, nullable=False, default=0)
    allocated_points = Column(Float, nullable=False, default=0)
    created_time = Column(DateTime, nullable=False, default=datetime.utcnow)


class Transaction(Base):
    """A single point grant to one user."""
    __tablename__ = "transactions"

    transaction_id = Column(String(64), primary_key=True)
    project_id = Column(String(64), nullable=False, index=True)
    stage_id = Column(String(64), nullable=False)
    settlement_id = Column(String(64), ForeignKey("settlement_records.settlement_id", ondelete="CASCADE"), nullable=False, index=True)
    user_email = Column(String(255), nullable=False, index=True)
    transaction_type = Column(String(32), nullable=False)
    amount = Column(Integer, nullable=False)
    source = Column(String(255), nullable=True)
    related_submission_id = Column(String(64), nullable=True)
    related_comment_id = Column(String(64), nullable=True)
    transaction_metadata = Column("metadata", UniversalJSON, nullable=True)
    created_time = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_transactions_project_user", "project_id", "user_email"),
    )
