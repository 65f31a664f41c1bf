"""
Ballot Repository

Read-only queries shared by the validator, the preview and the settlement
orchestrator. Every function takes the session last, like the rest of
the service layer.
"""
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from stage_settlement.orm.project import Group, GroupMember, ProjectViewer, User
from stage_settlement.orm.ranking import (
    RankingProposal, ProposalVote, ProposalStatus, VotingResult, compute_voting_result,
    TeacherSubmissionRanking, TeacherCommentRanking, CommentRankingProposal,
)
from stage_settlement.orm.submission import Submission, Comment, CommentReaction
from stage_settlement.services.vote_aggregator import (
    Ballot, aggregate_teacher_submission_rankings, aggregate_teacher_comment_rankings,
    ballots_from_proposals, latest_per_key,
)


@dataclass
class ProposalState:
    """A proposal together with its derived status and member votes."""
    proposal: RankingProposal
    status: ProposalStatus
    voting_result: VotingResult
    voters: Set[str] = field(default_factory=set)

    @property
    def group_id(self) -> str:
        return self.proposal.group_id

    @property
    def is_approved(self) -> bool:
        return self.status == ProposalStatus.PENDING and self.voting_result == VotingResult.AGREE


# =============================================================================
# Student report proposals
# =============================================================================

async def fetch_proposal_states(project_id: str, stage_id: str, db: AsyncSession) -> List[ProposalState]:
    proposals_result = await db.execute(
        select(RankingProposal)
        .where(RankingProposal.project_id == project_id, RankingProposal.stage_id == stage_id)
        .order_by(RankingProposal.created_time.desc())
    )
    proposals = list(proposals_result.scalars().all())
    if not proposals:
        return []

    votes_result = await db.execute(
        select(ProposalVote).where(ProposalVote.proposal_id.in_([p.proposal_id for p in proposals]))
    )
    votes_by_proposal: Dict[str, List[ProposalVote]] = {}
    for vote in votes_result.scalars().all():
        votes_by_proposal.setdefault(vote.proposal_id, []).append(vote)

    states = []
    for proposal in proposals:
        votes = votes_by_proposal.get(proposal.proposal_id, [])
        states.append(ProposalState(
            proposal=proposal,
            status=proposal.status,
            voting_result=compute_voting_result(votes),
            voters={v.voter_email for v in votes},
        ))
    return states


def latest_state_per_group(states: Iterable[ProposalState]) -> List[ProposalState]:
    return latest_per_key(states, key_of=lambda s: s.group_id, time_of=lambda s: s.proposal.created_time)


def approved_states(states: Iterable[ProposalState]) -> List[ProposalState]:
    """Latest approved (pending + agree) proposal per group."""
    return latest_state_per_group(s for s in states if s.is_approved)


async def fetch_student_report_ballots(project_id: str, stage_id: str, db: AsyncSession) -> List[Ballot]:
    states = approved_states(await fetch_proposal_states(project_id, stage_id, db))
    return ballots_from_proposals(
        [s.proposal for s in states],
        rater_of=lambda p: f"group_{p.group_id}",
    )


# =============================================================================
# Teacher rankings
# =============================================================================

async def fetch_teacher_report_ballots(project_id: str, stage_id: str, db: AsyncSession) -> List[Ballot]:
    result = await db.execute(
        select(TeacherSubmissionRanking)
        .where(TeacherSubmissionRanking.project_id == project_id,
               TeacherSubmissionRanking.stage_id == stage_id)
        .order_by(TeacherSubmissionRanking.teacher_email.asc(), TeacherSubmissionRanking.created_time.desc())
    )
    return aggregate_teacher_submission_rankings(result.scalars().all())


async def fetch_teacher_comment_ballots(project_id: str, stage_id: str, db: AsyncSession) -> List[Ballot]:
    result = await db.execute(
        select(TeacherCommentRanking)
        .where(TeacherCommentRanking.project_id == project_id,
               TeacherCommentRanking.stage_id == stage_id)
        .order_by(TeacherCommentRanking.teacher_email.asc(), TeacherCommentRanking.created_time.desc())
    )
    return aggregate_teacher_comment_rankings(result.scalars().all())


async def count_teacher_ranking_rows(project_id: str, stage_id: str, db: AsyncSession) -> int:
    result = await db.execute(
        select(func.count()).select_from(TeacherSubmissionRanking)
        .where(TeacherSubmissionRanking.project_id == project_id,
               TeacherSubmissionRanking.stage_id == stage_id)
    )
    return result.scalar() or 0


# =============================================================================
# Membership
# =============================================================================

async def fetch_active_member_emails(project_id: str, db: AsyncSession) -> Set[str]:
    result = await db.execute(
        select(GroupMember.user_email)
        .where(GroupMember.project_id == project_id, GroupMember.is_active.is_(True))
    )
    return set(result.scalars().all())


async def count_active_members(group_id: str, db: AsyncSession) -> int:
    result = await db.execute(
        select(func.count()).select_from(GroupMember)
        .where(GroupMember.group_id == group_id, GroupMember.is_active.is_(True))
    )
    return result.scalar() or 0


async def fetch_group_names(project_id: str, db: AsyncSession) -> Dict[str, str]:
    result = await db.execute(select(Group.group_id, Group.group_name).where(Group.project_id == project_id))
    return {row.group_id: row.group_name for row in result.all()}


async def fetch_active_teacher_count(project_id: str, db: AsyncSession) -> int:
    result = await db.execute(
        select(func.count(func.distinct(ProjectViewer.user_email)))
        .where(ProjectViewer.project_id == project_id,
               ProjectViewer.role == "teacher",
               ProjectViewer.is_active.is_(True))
    )
    return result.scalar() or 0


async def fetch_display_names(emails: Iterable[str], db: AsyncSession) -> Dict[str, str]:
    emails = list(set(emails))
    if not emails:
        return {}
    result = await db.execute(select(User).where(User.user_email.in_(emails)))
    names = {u.user_email: (u.display_name or u.user_email) for u in result.scalars().all()}
    return {email: names.get(email, email) for email in emails}


# =============================================================================
# Submissions
# =============================================================================

async def fetch_latest_approved_submissions(
    stage_id: str,
    db: AsyncSession,
    group_ids: Optional[Iterable[str]] = None
) -> Dict[str, Submission]:
    """Latest approved submission per group, keyed by group id."""
    query = select(Submission).where(
        Submission.stage_id == stage_id,
        Submission.approved_time.is_not(None),
    )
    if group_ids is not None:
        query = query.where(Submission.group_id.in_(list(group_ids)))
    result = await db.execute(query)

    latest = latest_per_key(result.scalars().all(), key_of=lambda s: s.group_id, time_of=lambda s: s.submit_time)
    return {s.group_id: s for s in latest}


# =============================================================================
# Comments
# =============================================================================

async def fetch_student_comment_ballots(project_id: str, stage_id: str, db: AsyncSession) -> List[Ballot]:
    """Latest comment ranking per author who is an active project member."""
    members = await fetch_active_member_emails(project_id, db)
    result = await db.execute(
        select(CommentRankingProposal)
        .where(CommentRankingProposal.project_id == project_id,
               CommentRankingProposal.stage_id == stage_id)
    )
    proposals = [p for p in result.scalars().all() if p.author_email in members]
    latest = latest_per_key(proposals, key_of=lambda p: p.author_email)
    return ballots_from_proposals(latest, rater_of=lambda p: p.author_email)


async def count_student_comment_rankings(project_id: str, stage_id: str, db: AsyncSession) -> int:
    members = await fetch_active_member_emails(project_id, db)
    result = await db.execute(
        select(CommentRankingProposal.author_email)
        .where(CommentRankingProposal.project_id == project_id,
               CommentRankingProposal.stage_id == stage_id)
    )
    return sum(1 for author in result.scalars().all() if author in members)


async def count_unique_comment_authors(project_id: str, stage_id: str, db: AsyncSession) -> int:
    """
    Distinct authors of top-level stage comments that mention a group or
    user, written by an active member and currently marked helpful.

    Reactions keep their history; only each user's latest reaction on a
    comment counts, so a user who switched away from helpful no longer
    qualifies the comment.
    """
    members = await fetch_active_member_emails(project_id, db)

    result = await db.execute(
        select(Comment)
        .where(Comment.project_id == project_id,
               Comment.stage_id == stage_id,
               Comment.parent_comment_id.is_(None))
    )
    candidates = [
        c for c in result.scalars().all()
        if c.has_mentions() and c.author_email in members
    ]
    if not candidates:
        return 0

    reactions = await db.execute(
        select(CommentReaction)
        .where(CommentReaction.comment_id.in_([c.comment_id for c in candidates]))
        .order_by(CommentReaction.created_time.asc(), CommentReaction.id.asc())
    )
    # (comment, user) -> latest reaction type; later rows overwrite earlier ones
    latest: Dict[tuple, str] = {}
    for reaction in reactions.scalars().all():
        latest[(reaction.comment_id, reaction.user_email)] = reaction.reaction_type
    helpful = {comment_id for (comment_id, _), kind in latest.items() if kind == "helpful"}

    return len({c.author_email for c in candidates if c.comment_id in helpful})


async def fetch_comments(comment_ids: Iterable[str], db: AsyncSession) -> Dict[str, Comment]:
    comment_ids = list(comment_ids)
    if not comment_ids:
        return {}
    result = await db.execute(select(Comment).where(Comment.comment_id.in_(comment_ids)))
    return {c.comment_id: c for c in result.scalars().all()}
