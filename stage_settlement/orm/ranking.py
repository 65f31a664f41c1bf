"""
stage_settlement/orm/ranking.py
Ranking ballots: group proposals with member votes, teacher rankings,
and personal comment ranking proposals.
"""
from datetime import datetime
from enum import Enum as PyEnum
from typing import Iterable

from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey

from stage_settlement.core.db_types import UniversalJSON
from stage_settlement.orm.base import Base


class ProposalStatus(str, PyEnum):
    PENDING = "pending"
    SETTLED = "settled"
    WITHDRAWN = "withdrawn"
    RESET = "reset"


class VotingResult(str, PyEnum):
    NO_VOTES = "no_votes"
    AGREE = "agree"
    DISAGREE = "disagree"
    TIE = "tie"


class RankingProposal(Base):
    """
    A group-authored ranking of all submissions in a stage.

    ranking_data is either a list of {"groupId", "rank"} objects or a
    {groupId: rank} mapping; both are normalized before scoring.
    """
    __tablename__ = "ranking_proposals"

    proposal_id = Column(String(64), primary_key=True)
    project_id = Column(String(64), ForeignKey("projects.project_id", ondelete="CASCADE"), nullable=False, index=True)
    stage_id = Column(String(64), ForeignKey("stages.stage_id", ondelete="CASCADE"), nullable=False, index=True)
    group_id = Column(String(64), ForeignKey("groups.group_id", ondelete="CASCADE"), nullable=False, index=True)
    proposer_email = Column(String(255), nullable=False)
    ranking_data = Column(UniversalJSON, nullable=False)
    created_time = Column(DateTime, nullable=False, default=datetime.utcnow)

    settle_time = Column(DateTime, nullable=True)
    withdrawn_time = Column(DateTime, nullable=True)
    reset_time = Column(DateTime, nullable=True)

    @property
    def status(self) -> ProposalStatus:
        if self.settle_time is not None:
            return ProposalStatus.SETTLED
        if self.withdrawn_time is not None:
            return ProposalStatus.WITHDRAWN
        if self.reset_time is not None:
            return ProposalStatus.RESET
        return ProposalStatus.PENDING


class ProposalVote(Base):
    """A group member's agree/disagree vote on a ranking proposal."""
    __tablename__ = "proposal_votes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    proposal_id = Column(String(64), ForeignKey("ranking_proposals.proposal_id", ondelete="CASCADE"), nullable=False, index=True)
    project_id = Column(String(64), nullable=False, index=True)
    voter_email = Column(String(255), nullable=False)
    agree = Column(Boolean, nullable=False)
    created_time = Column(DateTime, nullable=False, default=datetime.utcnow)


def compute_voting_result(votes: Iterable[ProposalVote]) -> VotingResult:
    """Majority outcome of a proposal's member votes."""
    agree = 0
    disagree = 0
    for vote in votes:
        if vote.agree:
            agree += 1
        else:
            disagree += 1

    if agree + disagree == 0:
        return VotingResult.NO_VOTES
    if agree > disagree:
        return VotingResult.AGREE
    if disagree > agree:
        return VotingResult.DISAGREE
    return VotingResult.TIE


class TeacherSubmissionRanking(Base):
    """
    One row per (teacher, submission) in a ranking batch.
    All rows of one batch share the same created_time.
    """
    __tablename__ = "teacher_submission_rankings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    project_id = Column(String(64), ForeignKey("projects.project_id", ondelete="CASCADE"), nullable=False, index=True)
    stage_id = Column(String(64), ForeignKey("stages.stage_id", ondelete="CASCADE"), nullable=False, index=True)
    teacher_email = Column(String(255), nullable=False, index=True)
    submission_id = Column(String(64), nullable=True)
    group_id = Column(String(64), nullable=False)
    rank = Column(Integer, nullable=False)
    created_time = Column(DateTime, nullable=False, default=datetime.utcnow)


class TeacherCommentRanking(Base):
    __tablename__ = "teacher_comment_rankings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    project_id = Column(String(64), ForeignKey("projects.project_id", ondelete="CASCADE"), nullable=False, index=True)
    stage_id = Column(String(64), ForeignKey("stages.stage_id", ondelete="CASCADE"), nullable=False, index=True)
    teacher_email = Column(String(255), nullable=False, index=True)
    comment_id = Column(String(64), nullable=False)
    rank = Column(Integer, nullable=False)
    created_time = Column(DateTime, nullable=False, default=datetime.utcnow)


class CommentRankingProposal(Base):
    """A student's personal ranking of comments; no group approval step."""
    __tablename__ = "comment_ranking_proposals"

    proposal_id = Column(String(64), primary_key=True)
    project_id = Column(String(64), ForeignKey("projects.project_id", ondelete="CASCADE"), nullable=False, index=True)
    stage_id = Column(String(64), ForeignKey("stages.stage_id", ondelete="CASCADE"), nullable=False, index=True)
    author_email = Column(String(255), nullable=False, index=True)
    ranking_data = Column(UniversalJSON, nullable=False)
    created_time = Column(DateTime, nullable=False, default=datetime.utcnow)
