"""
stage_settlement/orm/submission.py
Group submissions, comments and comment reactions
"""
from datetime import datetime

from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey, Text

from stage_settlement.core.db_types import UniversalJSON
from stage_settlement.orm.base import Base


class Submission(Base):
    """
    One group's deliverable for a stage.

    participation_proportions maps member e-mail to a fractional share.
    Shares need not sum to 1; only entries > 0 count as participants.
    """
    __tablename__ = "submissions"

    submission_id = Column(String(64), primary_key=True)
    project_id = Column(String(64), ForeignKey("projects.project_id", ondelete="CASCADE"), nullable=False, index=True)
    stage_id = Column(String(64), ForeignKey("stages.stage_id", ondelete="CASCADE"), nullable=False, index=True)
    group_id = Column(String(64), ForeignKey("groups.group_id", ondelete="CASCADE"), nullable=False, index=True)
    submitter_email = Column(String(255), nullable=True)
    content = Column(Text, nullable=True)
    participation_proportions = Column(UniversalJSON, nullable=True)
    status = Column(String(20), nullable=False, default="submitted")
    submit_time = Column(DateTime, nullable=False, default=datetime.utcnow)
    approved_time = Column(DateTime, nullable=True)

    def participants(self) -> dict:
        """Members with a positive share."""
        shares = self.participation_proportions or {}
        result = {}
        for email, share in shares.items():
            try:
                value = float(share)
            except (TypeError, ValueError):
                continue
            if value > 0:
                result[email] = value
        return result


class Comment(Base):
    __tablename__ = "comments"

    comment_id = Column(String(64), primary_key=True)
    project_id = Column(String(64), ForeignKey("projects.project_id", ondelete="CASCADE"), nullable=False, index=True)
    stage_id = Column(String(64), ForeignKey("stages.stage_id", ondelete="CASCADE"), nullable=False, index=True)
    author_email = Column(String(255), nullable=False, index=True)
    content = Column(Text, nullable=False, default="")
    mentioned_groups = Column(UniversalJSON, nullable=True)
    mentioned_users = Column(UniversalJSON, nullable=True)
    parent_comment_id = Column(String(64), nullable=True)
    created_time = Column(DateTime, nullable=False, default=datetime.utcnow)

    # Stamped by settlement
    is_awarded = Column(Boolean, nullable=False, default=False)
    award_rank = Column(Integer, nullable=True)

    def has_mentions(self) -> bool:
        return bool(self.mentioned_groups) or bool(self.mentioned_users)


class CommentReaction(Base):
    __tablename__ = "comment_reactions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    comment_id = Column(String(64), ForeignKey("comments.comment_id", ondelete="CASCADE"), nullable=False, index=True)
    user_email = Column(String(255), nullable=False)
    reaction_type = Column(String(20), nullable=False)
    created_time = Column(DateTime, nullable=False, default=datetime.utcnow)
