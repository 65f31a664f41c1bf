"""
Pre-Settlement Validator

Read-only checks over a stage's voting state. Two checks are fatal
(they set valid=False); the other four only add warnings.

Result shape:
    {
        "valid": bool,
        "checks": {name: {"passed": bool, "details": {...}}, ...},
        "warnings": [str, ...],
        "errors": [str, ...],
    }
"""
import logging
from typing import Any, Dict

from sqlalchemy import select, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from stage_settlement.orm.ranking import (
    ProposalStatus, VotingResult, TeacherSubmissionRanking, TeacherCommentRanking,
)
from stage_settlement.services import ballot_repository as repo
from stage_settlement.services.vote_aggregator import normalize_rankings

logger = logging.getLogger(__name__)

CHECK_NAMES = (
    "all_groups_voted",
    "all_proposals_approved",
    "has_comment_rankings",
    "has_teacher_submission_rankings",
    "has_teacher_comment_rankings",
    "all_groups_ranked",
)


def _check(passed: bool, details: Dict[str, Any]) -> Dict[str, Any]:
    return {"passed": passed, "details": details}


async def validate_pre_settlement(project_id: str, stage_id: str, db: AsyncSession) -> Dict[str, Any]:
    """Run all six checks and return the structured report."""
    result = {
        "valid": True,
        "checks": {name: _check(True, {}) for name in CHECK_NAMES},
        "warnings": [],
        "errors": [],
    }
    checks = result["checks"]

    try:
        states = await repo.fetch_proposal_states(project_id, stage_id, db)

        checks["all_groups_voted"] = await check_all_groups_voted(project_id, states, db)
        if not checks["all_groups_voted"]["passed"]:
            result["valid"] = False
            result["errors"].append("Some groups have not finished voting on their ranking proposal")

        checks["all_proposals_approved"] = await check_all_proposals_approved(project_id, states, db)
        if not checks["all_proposals_approved"]["passed"]:
            result["valid"] = False
            result["errors"].append("Some groups' latest ranking proposal has not been approved")

        checks["has_comment_rankings"] = await check_comment_rankings(project_id, stage_id, db)
        if not checks["has_comment_rankings"]["passed"]:
            result["warnings"].append("No comment rankings: the comment reward pool will not be distributed")

        checks["has_teacher_submission_rankings"] = await check_teacher_rankings(
            project_id, stage_id, TeacherSubmissionRanking, db
        )
        if not checks["has_teacher_submission_rankings"]["passed"]:
            result["warnings"].append("No teacher report rankings: report rewards will follow student rankings only")

        checks["has_teacher_comment_rankings"] = await check_teacher_rankings(
            project_id, stage_id, TeacherCommentRanking, db
        )
        if not checks["has_teacher_comment_rankings"]["passed"]:
            result["warnings"].append("No teacher comment rankings: comment rewards will follow student rankings only")

        ranked = await check_all_groups_ranked(project_id, stage_id, states, db)
        checks["all_groups_ranked"] = ranked
        if not ranked["passed"]:
            worst_rank = ranked["details"]["total_groups"] + 1
            if ranked["details"]["unranked_by_students"]:
                result["warnings"].append(
                    "These groups received no student ranking: "
                    f"{', '.join(ranked['details']['unranked_by_students'])}. "
                    f"They will be treated as last place (rank {worst_rank})."
                )
            if ranked["details"]["unranked_by_teachers"]:
                result["warnings"].append(
                    "These groups received no teacher ranking: "
                    f"{', '.join(ranked['details']['unranked_by_teachers'])}. "
                    f"Their teacher rank will use the worst value (rank {worst_rank})."
                )

    except SQLAlchemyError as e:
        logger.exception(f"Pre-settlement validation failed for stage {stage_id}")
        result["valid"] = False
        result["errors"].append(f"Validation could not be completed: {e}")

    return result


async def check_all_groups_voted(project_id: str, states, db: AsyncSession) -> Dict[str, Any]:
    """Every group with an approved proposal must have all active members voting on it."""
    group_names = await repo.fetch_group_names(project_id, db)
    approved = repo.approved_states(states)

    statuses = []
    for state in approved:
        total_members = await repo.count_active_members(state.group_id, db)
        voted_members = len(state.voters)
        passed = voted_members >= total_members
        statuses.append({
            "group_id": state.group_id,
            "group_name": group_names.get(state.group_id),
            "passed": passed,
            "reason": "complete" if passed else "incomplete_votes",
            "total_members": total_members,
            "voted_members": voted_members,
        })

    complete = sum(1 for s in statuses if s["passed"])
    missing = [s for s in statuses if not s["passed"]]

    return _check(
        len(approved) > 0 and complete == len(approved),
        {
            "total_groups": len(group_names),
            "groups_with_approved_proposals": len(approved),
            "groups_with_all_members_voted": complete,
            "missing_groups": missing,
        },
    )


async def check_all_proposals_approved(project_id: str, states, db: AsyncSession) -> Dict[str, Any]:
    """Only the latest proposal per group counts; it must be pending + agree."""
    group_names = await repo.fetch_group_names(project_id, db)
    latest = repo.latest_state_per_group(states)

    reset_counts: Dict[str, int] = {}
    for state in states:
        if state.status == ProposalStatus.RESET:
            reset_counts[state.group_id] = reset_counts.get(state.group_id, 0) + 1

    def count(predicate) -> int:
        return sum(1 for s in latest if predicate(s))

    unsettled = [
        {
            "group_id": s.group_id,
            "group_name": group_names.get(s.group_id),
            "status": s.status.value,
            "voting_result": s.voting_result.value,
            "proposal_id": s.proposal.proposal_id,
            "reset_count": reset_counts.get(s.group_id, 0),
        }
        for s in latest if not s.is_approved
    ]

    agreed = count(lambda s: s.is_approved)
    ties = [s for s in latest if s.voting_result == VotingResult.TIE]

    return _check(
        len(latest) > 0 and agreed == len(latest),
        {
            "total_proposals": len(latest),
            "settled_proposals": count(lambda s: s.status == ProposalStatus.SETTLED),
            "agreed_proposals": agreed,
            "disagreed_proposals": count(lambda s: s.voting_result == VotingResult.DISAGREE),
            "tie_proposals": len(ties),
            "tie_proposals_can_reset": sum(1 for s in ties if reset_counts.get(s.group_id, 0) == 0),
            "tie_proposals_used_reset": sum(1 for s in ties if reset_counts.get(s.group_id, 0) > 0),
            "pending_proposals": count(lambda s: s.status == ProposalStatus.PENDING),
            "withdrawn_proposals": count(lambda s: s.status == ProposalStatus.WITHDRAWN),
            "reset_proposals": count(lambda s: s.status == ProposalStatus.RESET),
            "unsettled_proposals": unsettled,
        },
    )


async def check_comment_rankings(project_id: str, stage_id: str, db: AsyncSession) -> Dict[str, Any]:
    student_count = await repo.count_student_comment_rankings(project_id, stage_id, db)
    teacher_result = await db.execute(
        select(func.count()).select_from(TeacherCommentRanking)
        .where(TeacherCommentRanking.project_id == project_id,
               TeacherCommentRanking.stage_id == stage_id)
    )
    teacher_count = teacher_result.scalar() or 0

    return _check(
        student_count + teacher_count > 0,
        {
            "student_comment_rankings": student_count,
            "teacher_comment_rankings": teacher_count,
            "total_comment_rankings": student_count + teacher_count,
        },
    )


async def check_teacher_rankings(project_id: str, stage_id: str, model, db: AsyncSession) -> Dict[str, Any]:
    """Shared by the teacher submission and teacher comment checks."""
    total_teachers = await repo.fetch_active_teacher_count(project_id, db)
    result = await db.execute(
        select(func.count(func.distinct(model.teacher_email)), func.count())
        .where(model.project_id == project_id, model.stage_id == stage_id)
    )
    teachers_who_ranked, total_rankings = result.one()

    return _check(
        (teachers_who_ranked or 0) > 0,
        {
            "teachers_who_ranked": teachers_who_ranked or 0,
            "total_teachers": total_teachers,
            "total_rankings": total_rankings or 0,
        },
    )


async def check_all_groups_ranked(project_id: str, stage_id: str, states, db: AsyncSession) -> Dict[str, Any]:
    """Every group with an approved submission needs a student and a teacher ranking."""
    submissions = await repo.fetch_latest_approved_submissions(stage_id, db)
    if not submissions:
        return _check(True, {
            "total_groups": 0,
            "all_groups_ranked_by_students": True,
            "all_groups_ranked_by_teachers": True,
            "unranked_by_students": [],
            "unranked_by_teachers": [],
        })

    group_names = await repo.fetch_group_names(project_id, db)

    student_ranked = set()
    for state in repo.approved_states(states):
        student_ranked.update(normalize_rankings(state.proposal.ranking_data))

    teacher_result = await db.execute(
        select(TeacherSubmissionRanking.group_id)
        .where(TeacherSubmissionRanking.project_id == project_id,
               TeacherSubmissionRanking.stage_id == stage_id)
        .distinct()
    )
    teacher_ranked = set(teacher_result.scalars().all())

    unranked_by_students = []
    unranked_by_teachers = []
    for group_id in sorted(submissions):
        name = group_names.get(group_id) or group_id
        if group_id not in student_ranked:
            unranked_by_students.append(name)
        if group_id not in teacher_ranked:
            unranked_by_teachers.append(name)

    return _check(
        not unranked_by_students and not unranked_by_teachers,
        {
            "total_groups": len(submissions),
            "all_groups_ranked_by_students": not unranked_by_students,
            "all_groups_ranked_by_teachers": not unranked_by_teachers,
            "unranked_by_students": unranked_by_students,
            "unranked_by_teachers": unranked_by_teachers,
            "student_ranked_count": len(student_ranked & set(submissions)),
            "teacher_ranked_count": len(teacher_ranked & set(submissions)),
        },
    )
