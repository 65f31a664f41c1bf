"""
Stage Settlement Service

Orchestrates a stage settlement:

    validate -> pre-check stage -> CAS lock -> compute -> build write set
             -> single commit -> detached best-effort notifications

Mutual exclusion is the conditional update on stages.settling_time; no
in-process lock is used, so several service instances may run at once.
Everything written by a settlement is added to one session and committed
once. Any failure after the lock rolls the session back and clears the
lock, so a stage is either fully settled or still in voting.
"""
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from stage_settlement.errors import ErrorCode
from stage_settlement.orm.ranking import RankingProposal
from stage_settlement.orm.settlement import (
    SettlementRecord, GroupSettlementDetail, CommentSettlementDetail, Transaction,
)
from stage_settlement.orm.stage import Stage, StageStatus
from stage_settlement.orm.submission import Comment
from stage_settlement.rbac import has_manage_permission
from stage_settlement.realtime.in_memory_push import get_push_adapter
from stage_settlement.realtime.push_adapter import PushAdapter
from stage_settlement.services import ballot_repository as repo
from stage_settlement.services.audit_service import log_operation
from stage_settlement.services.notification_service import build_transaction_notices, dispatch, notify_settlement
from stage_settlement.services.pre_settlement_validator import validate_pre_settlement
from stage_settlement.services.progress_emitter import ProgressEmitter
from stage_settlement.services.score_calculator import FLOAT_TOLERANCE, ScoreResult, compute, member_points
from stage_settlement.services.scoring_config_service import (
    ScoringConfig, calculate_comment_reward_limit, get_effective_scoring_config,
)
from stage_settlement.utils.id_generator import generate_id

logger = logging.getLogger(__name__)

CONTENT_PREVIEW_LENGTH = 50


# =============================================================================
# Errors and outcome
# =============================================================================

class SettlementError(Exception):
    """Base class; carries a machine-readable code and optional details."""
    code = ErrorCode.SYSTEM_ERROR

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.details = details
        if code is not None:
            self.code = code


class AccessDeniedError(SettlementError):
    code = ErrorCode.ACCESS_DENIED


class StageNotFoundError(SettlementError):
    code = ErrorCode.STAGE_NOT_FOUND


class ValidationFailedError(SettlementError):
    code = ErrorCode.VALIDATION_FAILED


class SettlementInProgressError(SettlementError):
    code = ErrorCode.SETTLEMENT_IN_PROGRESS


class StageAlreadySettledError(SettlementError):
    code = ErrorCode.STAGE_ALREADY_SETTLED


class InvalidStageStatusError(SettlementError):
    code = ErrorCode.INVALID_STAGE_STATUS


class InvalidRewardPoolError(SettlementError):
    code = ErrorCode.INVALID_REWARD_POOL


class NoVotesError(SettlementError):
    code = ErrorCode.NO_VOTES


class DistributionExceedsPoolError(SettlementError):
    code = ErrorCode.DISTRIBUTION_EXCEEDS_POOL


class StageNotSettledError(SettlementError):
    code = ErrorCode.STAGE_NOT_SETTLED


@dataclass
class SettlementOutcome:
    success: bool
    code: Optional[str] = None
    message: str = ""
    data: Dict[str, Any] = field(default_factory=dict)
    details: Optional[Dict[str, Any]] = None

    @classmethod
    def ok(cls, data: Dict[str, Any]) -> "SettlementOutcome":
        return cls(success=True, message="Stage settled successfully", data=data)

    @classmethod
    def failure(cls, error: SettlementError) -> "SettlementOutcome":
        return cls(success=False, code=error.code, message=error.message, details=error.details)


@dataclass
class _ReportWrites:
    participants_by_group: Dict[str, Dict[str, float]] = field(default_factory=dict)
    group_members: Dict[str, List[str]] = field(default_factory=dict)


# =============================================================================
# Shared helpers
# =============================================================================

async def _get_stage(project_id: str, stage_id: str, db: AsyncSession) -> Stage:
    result = await db.execute(
        select(Stage).where(Stage.stage_id == stage_id, Stage.project_id == project_id)
        .execution_options(populate_existing=True)
    )
    stage = result.scalar_one_or_none()
    if stage is None:
        raise StageNotFoundError("Stage not found")
    return stage


async def _require_manage(operator_id: str, project_id: str, db: AsyncSession, action: str) -> None:
    if not await has_manage_permission(operator_id, project_id, db):
        logger.warning(f"{operator_id} denied {action} on project {project_id}")
        raise AccessDeniedError(f"Only admins and teachers can {action}")


async def _compute_report_track(
    project_id: str,
    stage_id: str,
    reward_pool: float,
    config: ScoringConfig,
    db: AsyncSession
):
    teacher_votes = await repo.fetch_teacher_report_ballots(project_id, stage_id, db)
    student_votes = await repo.fetch_student_report_ballots(project_id, stage_id, db)
    result = compute(
        teacher_votes,
        student_votes,
        reward_pool,
        student_weight=config.student_ranking_weight,
        teacher_weight=config.teacher_ranking_weight,
    )
    return teacher_votes, student_votes, result


# =============================================================================
# Lock primitives
# =============================================================================

async def acquire_settlement_lock(stage_id: str, lock_time: datetime, db: AsyncSession) -> bool:
    """
    Compare-and-swap: set settling_time only if the stage is neither being
    settled nor already settled. Commits immediately.
    """
    result = await db.execute(
        update(Stage)
        .where(Stage.stage_id == stage_id,
               Stage.settling_time.is_(None),
               Stage.settled_time.is_(None))
        .values(settling_time=lock_time)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount == 1


async def release_settlement_lock(stage_id: str, lock_time: datetime, db: AsyncSession) -> bool:
    """Clear our own lock; a no-op if the stage got settled or relocked."""
    result = await db.execute(
        update(Stage)
        .where(Stage.stage_id == stage_id,
               Stage.settling_time == lock_time,
               Stage.settled_time.is_(None))
        .values(settling_time=None)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount == 1


async def _rollback_and_release(stage_id: str, lock_time: datetime, db: AsyncSession) -> None:
    await db.rollback()
    try:
        released = await release_settlement_lock(stage_id, lock_time, db)
    except Exception:
        logger.critical(f"Failed to release settlement lock for stage {stage_id}", exc_info=True)
        raise
    if released:
        logger.info(f"Rollback: stage {stage_id} returned to voting")


# =============================================================================
# Preview
# =============================================================================

async def preview_scores(project_id: str, stage_id: str, operator_id: str, db: AsyncSession) -> Dict[str, Any]:
    """Same computation as settlement, no writes."""
    await _require_manage(operator_id, project_id, db, "preview scores")
    stage = await _get_stage(project_id, stage_id, db)

    config = await get_effective_scoring_config(project_id, db)
    reward_pool = stage.report_reward_pool or 0
    teacher_votes, student_votes, result = await _compute_report_track(
        project_id, stage_id, reward_pool, config, db
    )
    if not teacher_votes and not student_votes:
        raise NoVotesError("No votes submitted yet")

    submissions = await repo.fetch_latest_approved_submissions(stage_id, db, group_ids=result.scores.keys())
    group_names = await repo.fetch_group_names(project_id, db)

    scoring_results = []
    for group_id in result.sorted_items():
        points = result.scores.get(group_id, 0)
        submission = submissions.get(group_id)
        participants = submission.participants() if submission else {}
        scoring_results.append({
            "group_id": group_id,
            "group_name": group_names.get(group_id, f"Group {group_id}"),
            "rank": result.rankings[group_id],
            "weighted_score": result.weighted_scores[group_id],
            "total_points": points,
            "participant_count": len(participants),
            "participant_distribution": [
                {"email": email, "percentage": share, "points": member_points(points, share)}
                for email, share in participants.items()
            ],
        })

    return {
        "stage_id": stage_id,
        "stage_name": stage.stage_name,
        "reward_pool": reward_pool,
        "scoring_config": config.to_dict(),
        "scoring_results": scoring_results,
        "total_votes": len(teacher_votes) + len(student_votes),
        "preview_only": True,
    }


# =============================================================================
# Settlement
# =============================================================================

async def settle_stage(
    project_id: str,
    stage_id: str,
    operator_id: str,
    db: AsyncSession,
    force: bool = False,
    push: Optional[PushAdapter] = None
) -> SettlementOutcome:
    """
    Settle a stage. Never raises; every failure is reported as an outcome
    with one of the settlement error codes.
    """
    push = push or get_push_adapter()
    try:
        data = await _settle(project_id, stage_id, operator_id, db, force, push)
        return SettlementOutcome.ok(data)
    except SettlementError as e:
        logger.info(f"Settlement of stage {stage_id} refused: {e.code} {e.message}")
        return SettlementOutcome.failure(e)
    except Exception as e:
        logger.exception(f"Settle stage {stage_id} failed")
        await db.rollback()
        return SettlementOutcome.failure(SettlementError(f"Failed to settle stage: {e}"))


async def _settle(
    project_id: str,
    stage_id: str,
    operator_id: str,
    db: AsyncSession,
    force: bool,
    push: PushAdapter
) -> Dict[str, Any]:
    await _require_manage(operator_id, project_id, db, "settle stages")

    stage = await _get_stage(project_id, stage_id, db)

    progress = ProgressEmitter(push, operator_id, project_id, stage_id)
    progress.emit("initializing")

    validation = await validate_pre_settlement(project_id, stage_id, db)
    if not validation["valid"] and not force:
        raise ValidationFailedError(
            "Pre-settlement validation failed",
            details={"validation": validation, "requires_confirmation": True},
        )
    if force and (validation["warnings"] or validation["errors"]):
        logger.warning(f"{operator_id} forced settlement of stage {stage_id} past "
                       f"{len(validation['errors'])} error(s) and {len(validation['warnings'])} warning(s)")
        log_operation(
            db, "settlement_warning_bypass", operator_id, project_id,
            entity_type="stage", entity_id=stage_id, level="warning",
            details={
                "warnings": validation["warnings"],
                "errors": validation["errors"],
                "validation_details": validation["checks"],
            },
        )
        await db.commit()

    # Pre-checks before taking the lock
    status = stage.compute_status()
    if status != StageStatus.VOTING:
        if status == StageStatus.SETTLING:
            raise SettlementInProgressError(
                "Another operator is currently settling this stage. Please retry in a few moments.")
        if status == StageStatus.COMPLETED:
            raise StageAlreadySettledError("This stage has already been settled.")
        raise InvalidStageStatusError(f"Stage must be in voting status to settle (current: {status.value})")

    reward_pool = stage.report_reward_pool or 0
    if reward_pool <= 0:
        raise InvalidRewardPoolError(
            f"Stage reward pool must be greater than 0 (current: {reward_pool})")

    teacher_rows = await repo.count_teacher_ranking_rows(project_id, stage_id, db)
    states = await repo.fetch_proposal_states(project_id, stage_id, db)
    approved_groups = len(repo.approved_states(states))
    total_vote_count = teacher_rows + approved_groups
    if total_vote_count == 0:
        raise NoVotesError(
            "Cannot settle stage with no votes. At least one teacher vote or approved student proposal is required.")

    lock_time = datetime.utcnow()
    if not await acquire_settlement_lock(stage_id, lock_time, db):
        await db.refresh(stage)
        if stage.settled_time is not None:
            raise StageAlreadySettledError("This stage has already been settled.")
        raise SettlementInProgressError(
            "Another operator is currently settling this stage. Please retry in a few moments.")
    logger.info(f"Settlement lock acquired on stage {stage_id} by {operator_id}")

    try:
        outcome = await _compute_and_commit(
            stage, operator_id, lock_time, total_vote_count, progress, db
        )
    except SettlementError:
        await _rollback_and_release(stage_id, lock_time, db)
        raise
    except Exception as e:
        logger.error(f"Settlement of stage {stage_id} rolled back: {e}", exc_info=True)
        await _rollback_and_release(stage_id, lock_time, db)
        raise SettlementError(f"Failed to settle stage: {e}") from e

    # Committed: only detached, best-effort delivery remains
    notices = outcome.pop("_notices")
    try:
        member_emails = await repo.fetch_active_member_emails(project_id, db)
        dispatch(
            notify_settlement(
                push,
                project_id=project_id,
                stage_id=stage_id,
                stage_name=outcome["stage_name"],
                settlement_id=outcome["settlement_id"],
                transaction_notices=notices,
                member_emails=member_emails,
            ),
            name=f"settlement-notices-{outcome['settlement_id']}",
        )
    except Exception:
        logger.warning(f"Post-settlement notifications failed for stage {stage_id}", exc_info=True)
    progress.emit("completed")

    return outcome


async def _compute_and_commit(
    stage: Stage,
    operator_id: str,
    lock_time: datetime,
    total_vote_count: int,
    progress: ProgressEmitter,
    db: AsyncSession
) -> Dict[str, Any]:
    project_id = stage.project_id
    stage_id = stage.stage_id
    stage_name = stage.stage_name
    reward_pool = stage.report_reward_pool or 0
    comment_pool = stage.comment_reward_pool or 0

    progress.emit("lock_acquired")

    config = await get_effective_scoring_config(project_id, db)
    logger.info(f"Using scoring config for project {project_id}: {config.to_dict()}")

    teacher_votes, student_votes, report = await _compute_report_track(
        project_id, stage_id, reward_pool, config, db
    )
    progress.emit(
        "votes_calculated",
        f"{len(teacher_votes)} teacher and {len(student_votes)} student ballots over {len(report.rankings)} groups",
    )

    total_distributed = report.total_distributed()
    participant_count = len(report.scores)
    if total_distributed > reward_pool + FLOAT_TOLERANCE:
        raise DistributionExceedsPoolError(
            f"Total reward distribution ({total_distributed:.2f}) exceeds reward pool ({reward_pool:.2f})")

    now = datetime.utcnow()
    settlement_id = generate_id("settlement")

    db.add(SettlementRecord(
        settlement_id=settlement_id,
        project_id=project_id,
        stage_id=stage_id,
        settlement_type="stage",
        operator_email=operator_id,
        settlement_time=now,
        total_reward_distributed=total_distributed,
        participant_count=participant_count,
        status="pending",
        settlement_data={
            "rankings": report.rankings,
            "scores": report.scores,
            "weightedScores": report.weighted_scores,
            "voteCount": total_vote_count,
        },
    ))

    progress.emit("distributing_report_rewards")
    writes = await _add_report_rows(stage, settlement_id, report, now, db)

    comment = ScoreResult()
    comment_awards: List[Dict[str, Any]] = []
    if comment_pool > 0:
        progress.emit("distributing_comment_rewards")
        comment = await _compute_comment_track(project_id, stage_id, comment_pool, config, db)
        comment_total = comment.total_distributed()
        if comment_total > comment_pool + FLOAT_TOLERANCE:
            raise DistributionExceedsPoolError(
                f"Total comment reward distribution ({comment_total:.2f}) exceeds comment pool ({comment_pool:.2f})",
                code=ErrorCode.COMMENT_DISTRIBUTION_EXCEEDS_POOL,
            )
        comment_awards = await _add_comment_rows(stage, settlement_id, comment, now, db)

    stage_result = await db.execute(
        update(Stage)
        .where(Stage.stage_id == stage_id, Stage.settling_time == lock_time)
        .values(
            settling_time=None,
            settled_time=now,
            final_rankings=report.rankings,
            scoring_results=report.scores,
        )
        .execution_options(synchronize_session=False)
    )
    if stage_result.rowcount != 1:
        raise SettlementError("Settlement lock was lost before commit")

    await _mark_settlement_active(settlement_id, db)
    await _mark_proposals_settled(project_id, stage_id, now, db)

    log_operation(
        db, "stage_settled", operator_id, project_id,
        entity_type="stage", entity_id=stage_id,
        details={
            "settlement_id": settlement_id,
            "total_reward_distributed": total_distributed,
            "participant_count": participant_count,
        },
    )

    group_names = await repo.fetch_group_names(project_id, db)
    author_names = await _comment_author_names(comment.rankings.keys(), db)

    await db.commit()
    logger.info(f"Stage {stage_id} settled: {settlement_id}, {total_distributed} points to {participant_count} groups")

    return {
        "stage_id": stage_id,
        "stage_name": stage_name,
        "settlement_id": settlement_id,
        "final_rankings": report.rankings,
        "scoring_results": report.scores,
        "weighted_scores": report.weighted_scores,
        "total_points_distributed": total_distributed,
        "participant_count": participant_count,
        "settled_time": now.isoformat(),
        "group_names": {g: group_names.get(g, g) for g in report.rankings},
        "group_members": writes.group_members,
        "author_names": author_names or None,
        "comment_rankings": comment.rankings or None,
        "comment_scores": comment.scores or None,
        "_notices": build_transaction_notices(
            stage_name, project_id, stage_id,
            writes.participants_by_group, report.scores, report.rankings, comment_awards,
        ),
    }


async def _add_report_rows(
    stage: Stage,
    settlement_id: str,
    report: ScoreResult,
    now: datetime,
    db: AsyncSession
) -> _ReportWrites:
    """Detail row per group and one transaction per participant."""
    writes = _ReportWrites()
    if not report.scores:
        return writes

    submissions = await repo.fetch_latest_approved_submissions(stage.stage_id, db, group_ids=report.scores.keys())
    group_names = await repo.fetch_group_names(stage.project_id, db)

    for group_id in report.sorted_items():
        points = report.scores.get(group_id, 0)
        submission = submissions.get(group_id)
        participants = submission.participants() if submission else {}
        if not participants:
            logger.warning(f"Group {group_id} has no participants, skipping point distribution")
            continue

        group_name = group_names.get(group_id, f"Group {group_id}")
        distribution = {email: member_points(points, share) for email, share in participants.items()}
        writes.participants_by_group[group_id] = participants
        writes.group_members[group_id] = list(participants)

        detail_id = generate_id("group_detail")
        db.add(GroupSettlementDetail(
            detail_id=detail_id,
            settlement_id=settlement_id,
            project_id=stage.project_id,
            stage_id=stage.stage_id,
            group_id=group_id,
            final_rank=report.rankings[group_id],
            student_score=report.student_scores.get(group_id, 0),
            teacher_score=report.teacher_scores.get(group_id, 0),
            weighted_score=report.weighted_scores.get(group_id, 0),
            allocated_points=points,
            member_emails=list(participants),
            member_points_distribution=distribution,
            created_time=now,
        ))

        for email, share in participants.items():
            db.add(Transaction(
                transaction_id=generate_id("transaction"),
                project_id=stage.project_id,
                stage_id=stage.stage_id,
                settlement_id=settlement_id,
                user_email=email,
                transaction_type="stage_settlement",
                amount=math.ceil(distribution[email]),
                source=f"Stage settlement reward - {group_name} ({round(share * 100)}% participation)",
                related_submission_id=submission.submission_id,
                transaction_metadata={
                    "group_id": group_id,
                    "group_name": group_name,
                    "rank": report.rankings[group_id],
                    "participation_percentage": share,
                    "settlement_detail_id": detail_id,
                    "original_amount": distribution[email],
                },
                created_time=now,
            ))

    return writes


async def _compute_comment_track(
    project_id: str,
    stage_id: str,
    comment_pool: float,
    config: ScoringConfig,
    db: AsyncSession
) -> ScoreResult:
    teacher_votes = await repo.fetch_teacher_comment_ballots(project_id, stage_id, db)
    student_votes = await repo.fetch_student_comment_ballots(project_id, stage_id, db)
    unique_authors = await repo.count_unique_comment_authors(project_id, stage_id, db)

    top_n = calculate_comment_reward_limit(
        unique_authors, config.comment_reward_percentile, config.max_comment_selections
    )
    logger.info(f"Comment reward: {unique_authors} unique authors, "
                f"percentile={config.comment_reward_percentile}%, top_n={top_n}")

    return compute(
        teacher_votes,
        student_votes,
        comment_pool,
        student_weight=config.student_ranking_weight,
        teacher_weight=config.teacher_ranking_weight,
        top_n=top_n,
    )


async def _add_comment_rows(
    stage: Stage,
    settlement_id: str,
    comment: ScoreResult,
    now: datetime,
    db: AsyncSession
) -> List[Dict[str, Any]]:
    """Detail, transaction and award stamp for every comment with points > 0."""
    awarded_ids = [c for c in comment.sorted_items() if comment.scores.get(c, 0) > 0]
    comments = await repo.fetch_comments(awarded_ids, db)

    awards = []
    for comment_id in awarded_ids:
        row = comments.get(comment_id)
        if row is None:
            logger.warning(f"Comment {comment_id} not found, skipping")
            continue

        points = comment.scores[comment_id]
        rank = comment.rankings[comment_id]
        preview = (row.content or "")[:CONTENT_PREVIEW_LENGTH]
        detail_id = generate_id("comment_detail")

        db.add(CommentSettlementDetail(
            detail_id=detail_id,
            settlement_id=settlement_id,
            project_id=stage.project_id,
            stage_id=stage.stage_id,
            comment_id=comment_id,
            author_email=row.author_email,
            final_rank=rank,
            student_score=comment.student_scores.get(comment_id, 0),
            teacher_score=comment.teacher_scores.get(comment_id, 0),
            weighted_score=comment.weighted_scores.get(comment_id, 0),
            allocated_points=points,
            created_time=now,
        ))

        await db.execute(
            update(Comment)
            .where(Comment.comment_id == comment_id)
            .values(is_awarded=True, award_rank=rank)
            .execution_options(synchronize_session=False)
        )

        db.add(Transaction(
            transaction_id=generate_id("transaction"),
            project_id=stage.project_id,
            stage_id=stage.stage_id,
            settlement_id=settlement_id,
            user_email=row.author_email,
            transaction_type="comment_settlement",
            amount=math.ceil(points),
            source=f'Comment reward - rank {rank}: "{preview}..."',
            related_comment_id=comment_id,
            transaction_metadata={
                "comment_id": comment_id,
                "rank": rank,
                "content_preview": preview,
                "settlement_detail_id": detail_id,
                "original_amount": points,
            },
            created_time=now,
        ))

        awards.append({"comment_id": comment_id, "author_email": row.author_email, "points": points, "rank": rank})

    return awards


async def _mark_settlement_active(settlement_id: str, db: AsyncSession) -> None:
    await db.flush()
    await db.execute(
        update(SettlementRecord)
        .where(SettlementRecord.settlement_id == settlement_id, SettlementRecord.status == "pending")
        .values(status="active")
        .execution_options(synchronize_session=False)
    )


async def _mark_proposals_settled(project_id: str, stage_id: str, now: datetime, db: AsyncSession) -> None:
    await db.execute(
        update(RankingProposal)
        .where(RankingProposal.project_id == project_id,
               RankingProposal.stage_id == stage_id,
               RankingProposal.settle_time.is_(None))
        .values(settle_time=now)
        .execution_options(synchronize_session=False)
    )


async def _comment_author_names(comment_ids, db: AsyncSession) -> Dict[str, str]:
    """comment id -> "Display Name(email)" for result display."""
    comments = await repo.fetch_comments(comment_ids, db)
    names = await repo.fetch_display_names((c.author_email for c in comments.values()), db)

    labels = {}
    for comment_id in comment_ids:
        row = comments.get(comment_id)
        if row is None:
            labels[comment_id] = comment_id
        else:
            labels[comment_id] = f"{names.get(row.author_email, row.author_email)}({row.author_email})"
    return labels


# =============================================================================
# Results
# =============================================================================

async def get_settled_results(project_id: str, stage_id: str, db: AsyncSession) -> Dict[str, Any]:
    """Persisted rankings, scores and detail rows of a completed stage."""
    stage = await _get_stage(project_id, stage_id, db)
    if stage.compute_status() != StageStatus.COMPLETED or stage.scoring_results is None:
        raise StageNotSettledError("Stage has not been settled yet")

    record_result = await db.execute(
        select(SettlementRecord)
        .where(SettlementRecord.stage_id == stage_id, SettlementRecord.status == "active")
        .order_by(SettlementRecord.settlement_time.desc())
        .limit(1)
    )
    record = record_result.scalar_one_or_none()

    details = []
    comment_details = []
    if record is not None:
        group_rows = await db.execute(
            select(GroupSettlementDetail)
            .where(GroupSettlementDetail.settlement_id == record.settlement_id)
            .order_by(GroupSettlementDetail.final_rank.asc())
        )
        details = [
            {
                "group_id": d.group_id,
                "rank": d.final_rank,
                "student_score": d.student_score,
                "teacher_score": d.teacher_score,
                "weighted_score": d.weighted_score,
                "allocated_points": d.allocated_points,
                "member_emails": d.member_emails or [],
                "member_points_distribution": d.member_points_distribution or {},
            }
            for d in group_rows.scalars().all()
        ]
        comment_rows = await db.execute(
            select(CommentSettlementDetail)
            .where(CommentSettlementDetail.settlement_id == record.settlement_id)
            .order_by(CommentSettlementDetail.final_rank.asc())
        )
        comment_details = [
            {
                "comment_id": d.comment_id,
                "author_email": d.author_email,
                "rank": d.final_rank,
                "allocated_points": d.allocated_points,
            }
            for d in comment_rows.scalars().all()
        ]

    return {
        "stage_id": stage_id,
        "stage_name": stage.stage_name,
        "settled_time": stage.settled_time.isoformat(),
        "final_rankings": stage.final_rankings or {},
        "scoring_results": stage.scoring_results or {},
        "settlement": {
            "settlement_id": record.settlement_id,
            "operator_email": record.operator_email,
            "total_reward_distributed": record.total_reward_distributed,
            "participant_count": record.participant_count,
        } if record else None,
        "details": details,
        "comment_details": comment_details,
    }
