"""
Shared fixtures: one file-backed SQLite database per test (so concurrent
sessions see the same data), a session factory, an in-memory push adapter
and seed builders for a stage in voting.
"""
import os
from datetime import datetime, timedelta
from types import SimpleNamespace

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from stage_settlement.orm import (
    Base, Project, User, Group, GroupMember, ProjectViewer, Stage, Submission,
    Comment, CommentReaction, RankingProposal, ProposalVote,
    TeacherSubmissionRanking, TeacherCommentRanking,
)
from stage_settlement.realtime.in_memory_push import InMemoryPushAdapter
from stage_settlement.services.notification_service import wait_for_pending

PROJECT_ID = "proj_1"
STAGE_ID = "stg_1"
TEACHER = "teacher@example.edu"
GROUP_IDS = ("grp_1", "grp_2", "grp_3")


def member_emails(group_id: str):
    suffix = group_id.split("_")[-1]
    return (f"a{suffix}@example.edu", f"b{suffix}@example.edu")


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'settlement.db'}",
        connect_args={"timeout": 30.0},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def push():
    return InMemoryPushAdapter()


@pytest_asyncio.fixture(autouse=True)
async def settle_detached_notifications():
    """Detached pushes must not outlive the test's event loop."""
    yield
    await wait_for_pending(timeout=5)


@pytest.fixture
def seed_stage(db):
    """
    Build a project with three two-member groups and a stage in voting.

    Defaults reproduce the reference scenario: every group proposes
    grp_1 > grp_2 > grp_3 (both members agree) and the teacher ranks
    grp_2 > grp_1 > grp_3. Participation is 60/40 in every group.
    """
    async def _seed(
        report_pool: float = 100.0,
        comment_pool: float = 0.0,
        student_ranking=None,
        teacher_ranking=None,
        proposals: bool = True,
        votes=None,
        stage_times=None,
    ):
        now = datetime.utcnow()
        student_ranking = student_ranking if student_ranking is not None else {"grp_1": 1, "grp_2": 2, "grp_3": 3}
        teacher_ranking = teacher_ranking if teacher_ranking is not None else {"grp_1": 2, "grp_2": 1, "grp_3": 3}
        votes = votes or {}

        db.add(Project(project_id=PROJECT_ID, project_name="Capstone", created_by=TEACHER))
        db.add(ProjectViewer(project_id=PROJECT_ID, user_email=TEACHER, role="teacher", is_active=True))
        db.add(User(user_email=TEACHER, display_name="Prof. Chen"))

        times = stage_times if stage_times is not None else {"force_voting_time": now - timedelta(hours=1)}
        db.add(Stage(
            stage_id=STAGE_ID,
            project_id=PROJECT_ID,
            stage_name="Midterm Report",
            report_reward_pool=report_pool,
            comment_reward_pool=comment_pool,
            start_time=now - timedelta(days=7),
            end_time=now + timedelta(days=7),
            **times,
        ))

        for index, group_id in enumerate(GROUP_IDS, start=1):
            first, second = member_emails(group_id)
            db.add(Group(group_id=group_id, project_id=PROJECT_ID, group_name=f"Team {index}"))
            for email in (first, second):
                db.add(GroupMember(project_id=PROJECT_ID, group_id=group_id, user_email=email, is_active=True))
                db.add(User(user_email=email, display_name=email.split("@")[0].upper()))

            db.add(Submission(
                submission_id=f"sub_{index}",
                project_id=PROJECT_ID,
                stage_id=STAGE_ID,
                group_id=group_id,
                submitter_email=first,
                participation_proportions={first: 0.6, second: 0.4},
                submit_time=now - timedelta(days=2),
                approved_time=now - timedelta(days=1),
            ))

            if proposals:
                proposal_id = f"prop_{index}"
                db.add(RankingProposal(
                    proposal_id=proposal_id,
                    project_id=PROJECT_ID,
                    stage_id=STAGE_ID,
                    group_id=group_id,
                    proposer_email=first,
                    ranking_data=[{"groupId": g, "rank": r} for g, r in student_ranking.items()],
                    created_time=now - timedelta(hours=3),
                ))
                for email, agree in votes.get(group_id, {first: True, second: True}).items():
                    db.add(ProposalVote(proposal_id=proposal_id, project_id=PROJECT_ID,
                                        voter_email=email, agree=agree))

        batch_time = now - timedelta(hours=2)
        for group_id, rank in teacher_ranking.items():
            db.add(TeacherSubmissionRanking(
                project_id=PROJECT_ID,
                stage_id=STAGE_ID,
                teacher_email=TEACHER,
                group_id=group_id,
                rank=rank,
                created_time=batch_time,
            ))

        await db.commit()
        return SimpleNamespace(project_id=PROJECT_ID, stage_id=STAGE_ID, teacher=TEACHER, groups=GROUP_IDS)

    return _seed


@pytest.fixture
def seed_comments(db):
    """
    Add top-level comments that mention a group, each marked helpful once,
    and one teacher comment ranking ordering them as given.
    """
    async def _seed(authors):
        now = datetime.utcnow()
        comment_ids = []
        for index, author in enumerate(authors, start=1):
            comment_id = f"cmt_{index}"
            comment_ids.append(comment_id)
            db.add(Comment(
                comment_id=comment_id,
                project_id=PROJECT_ID,
                stage_id=STAGE_ID,
                author_email=author,
                content=f"Detailed feedback number {index} on the methodology section of the report",
                mentioned_groups=["grp_1"],
            ))
            db.add(CommentReaction(comment_id=comment_id, user_email=TEACHER, reaction_type="helpful"))
            db.add(TeacherCommentRanking(
                project_id=PROJECT_ID,
                stage_id=STAGE_ID,
                teacher_email=TEACHER,
                comment_id=comment_id,
                rank=index,
                created_time=now - timedelta(hours=1),
            ))
        await db.commit()
        return comment_ids

    return _seed
