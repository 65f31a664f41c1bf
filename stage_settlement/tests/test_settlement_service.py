"""
Stage Settlement Orchestrator Test Suite

Success path, every refusal code, atomic rollback under an injected
failure, and lock contention between concurrent settlements.
"""
import asyncio
from datetime import datetime, timedelta

import pytest
from sqlalchemy import func, select

from stage_settlement.errors import ErrorCode
from stage_settlement.orm import (
    Comment, CommentSettlementDetail, GroupSettlementDetail, OperationLog,
    RankingProposal, SettlementRecord, Stage, StageStatus, Submission, Transaction,
)
from stage_settlement.services import settlement_service
from stage_settlement.services.score_calculator import ScoreResult
from stage_settlement.services.settlement_service import (
    acquire_settlement_lock, get_settled_results, preview_scores,
    release_settlement_lock, settle_stage, SettlementError,
)


async def count_rows(session, model) -> int:
    result = await session.execute(select(func.count()).select_from(model))
    return result.scalar()


async def load_stage(session, stage_id) -> Stage:
    return await session.get(Stage, stage_id)


# =============================================================================
# Success path
# =============================================================================

class TestSettleSuccess:

    @pytest.mark.asyncio
    async def test_reference_scenario(self, db, session_factory, seed_stage, push):
        ctx = await seed_stage()

        outcome = await settle_stage(ctx.project_id, ctx.stage_id, ctx.teacher, db, push=push)

        assert outcome.success, outcome.message
        data = outcome.data
        assert data["settlement_id"].startswith("settle_")
        assert data["final_rankings"] == {"grp_1": 1, "grp_2": 2, "grp_3": 3}
        assert data["scoring_results"] == {"grp_1": 50, "grp_2": 33, "grp_3": 17}
        assert data["total_points_distributed"] == 100
        assert data["participant_count"] == 3
        assert data["group_names"] == {"grp_1": "Team 1", "grp_2": "Team 2", "grp_3": "Team 3"}
        assert data["comment_rankings"] is None

        async with session_factory() as check:
            stage = await load_stage(check, ctx.stage_id)
            assert stage.compute_status() == StageStatus.COMPLETED
            assert stage.settling_time is None
            assert stage.final_rankings == data["final_rankings"]

            record = (await check.execute(select(SettlementRecord))).scalar_one()
            assert record.status == "active"
            assert record.settlement_data["voteCount"] == 6

            assert await count_rows(check, GroupSettlementDetail) == 3
            assert await count_rows(check, Transaction) == 6

            proposals = (await check.execute(select(RankingProposal))).scalars().all()
            assert all(p.settle_time is not None for p in proposals)

            log = (await check.execute(
                select(OperationLog).where(OperationLog.action == "stage_settled")
            )).scalar_one()
            assert log.details["settlement_id"] == data["settlement_id"]

    @pytest.mark.asyncio
    async def test_participant_transactions_round_up(self, db, session_factory, seed_stage, push):
        ctx = await seed_stage()

        outcome = await settle_stage(ctx.project_id, ctx.stage_id, ctx.teacher, db, push=push)
        assert outcome.success

        async with session_factory() as check:
            rows = (await check.execute(select(Transaction))).scalars().all()
            amounts = {t.user_email: t.amount for t in rows}

            # grp_2 holds 33 points: 19.8 and 13.2 are both rounded up
            assert amounts["a2@example.edu"] == 20
            assert amounts["b2@example.edu"] == 14
            assert amounts["a1@example.edu"] == 30
            assert amounts["b1@example.edu"] == 20

            txn = next(t for t in rows if t.user_email == "a2@example.edu")
            assert txn.transaction_type == "stage_settlement"
            assert txn.related_submission_id == "sub_2"
            assert txn.transaction_metadata["original_amount"] == 19.8
            assert txn.transaction_metadata["rank"] == 2
            assert "60%" in txn.source

            detail = (await check.execute(
                select(GroupSettlementDetail).where(GroupSettlementDetail.group_id == "grp_2")
            )).scalar_one()
            assert detail.member_points_distribution == {"a2@example.edu": 19.8, "b2@example.edu": 13.2}
            assert detail.weighted_score == pytest.approx(1.7)
            assert detail.student_score == pytest.approx(1.4)
            assert detail.teacher_score == pytest.approx(0.3)

    @pytest.mark.asyncio
    async def test_comment_track_top_n(self, db, session_factory, seed_stage, seed_comments, push):
        ctx = await seed_stage(comment_pool=30)
        authors = ["a1@example.edu", "b1@example.edu", "a2@example.edu", "b2@example.edu", "a3@example.edu"]
        comment_ids = await seed_comments(authors)

        outcome = await settle_stage(ctx.project_id, ctx.stage_id, ctx.teacher, db, force=True, push=push)

        assert outcome.success, outcome.message
        data = outcome.data
        assert data["comment_rankings"] == {c: i for i, c in enumerate(comment_ids, start=1)}
        assert data["comment_scores"]["cmt_1"] == 15
        assert data["comment_scores"]["cmt_2"] == 10
        assert data["comment_scores"]["cmt_3"] == 5
        assert data["comment_scores"]["cmt_4"] == 0
        assert data["comment_scores"]["cmt_5"] == 0
        assert data["author_names"]["cmt_1"] == "A1(a1@example.edu)"

        async with session_factory() as check:
            assert await count_rows(check, CommentSettlementDetail) == 3

            comments = {c.comment_id: c for c in (await check.execute(select(Comment))).scalars().all()}
            assert comments["cmt_1"].is_awarded and comments["cmt_1"].award_rank == 1
            assert comments["cmt_3"].is_awarded and comments["cmt_3"].award_rank == 3
            assert not comments["cmt_4"].is_awarded
            assert comments["cmt_4"].award_rank is None

            rewards = (await check.execute(
                select(Transaction).where(Transaction.transaction_type == "comment_settlement")
            )).scalars().all()
            assert sorted(t.amount for t in rewards) == [5, 10, 15]
            assert all(t.transaction_metadata["content_preview"] for t in rewards)

    @pytest.mark.asyncio
    async def test_group_without_participants_skipped(self, db, session_factory, seed_stage, push):
        ctx = await seed_stage()
        submission = await db.get(Submission, "sub_3")
        submission.participation_proportions = {"a3@example.edu": 0, "b3@example.edu": 0}
        await db.commit()

        outcome = await settle_stage(ctx.project_id, ctx.stage_id, ctx.teacher, db, push=push)

        assert outcome.success
        assert outcome.data["participant_count"] == 3
        async with session_factory() as check:
            assert await count_rows(check, GroupSettlementDetail) == 2
            assert await count_rows(check, Transaction) == 4


# =============================================================================
# Refusals
# =============================================================================

class TestSettleRefusals:

    @pytest.mark.asyncio
    async def test_access_denied(self, db, seed_stage, push):
        ctx = await seed_stage()
        outcome = await settle_stage(ctx.project_id, ctx.stage_id, "a1@example.edu", db, push=push)
        assert not outcome.success
        assert outcome.code == ErrorCode.ACCESS_DENIED

    @pytest.mark.asyncio
    async def test_stage_not_found(self, db, seed_stage, push):
        ctx = await seed_stage()
        outcome = await settle_stage(ctx.project_id, "stg_missing", ctx.teacher, db, push=push)
        assert outcome.code == ErrorCode.STAGE_NOT_FOUND

    @pytest.mark.asyncio
    async def test_validation_failure_returns_report(self, db, session_factory, seed_stage, push):
        ctx = await seed_stage(votes={"grp_1": {"a1@example.edu": False, "b1@example.edu": False}})

        outcome = await settle_stage(ctx.project_id, ctx.stage_id, ctx.teacher, db, push=push)

        assert outcome.code == ErrorCode.VALIDATION_FAILED
        assert outcome.details["requires_confirmation"] is True
        assert outcome.details["validation"]["valid"] is False
        async with session_factory() as check:
            assert await count_rows(check, SettlementRecord) == 0
            assert (await load_stage(check, ctx.stage_id)).compute_status() == StageStatus.VOTING

    @pytest.mark.asyncio
    async def test_force_overrides_validation_and_is_audited(self, db, session_factory, seed_stage, push):
        ctx = await seed_stage(votes={"grp_1": {"a1@example.edu": False, "b1@example.edu": False}})

        outcome = await settle_stage(ctx.project_id, ctx.stage_id, ctx.teacher, db, force=True, push=push)

        assert outcome.success
        # grp_1's proposal was rejected, so only two student ballots count
        assert outcome.data["final_rankings"]["grp_1"] == 1
        async with session_factory() as check:
            bypass = (await check.execute(
                select(OperationLog).where(OperationLog.action == "settlement_warning_bypass")
            )).scalar_one()
            assert bypass.level == "warning"
            assert bypass.details["errors"]

    @pytest.mark.asyncio
    async def test_lock_already_held(self, db, seed_stage, push):
        ctx = await seed_stage(stage_times={
            "force_voting_time": datetime.utcnow() - timedelta(hours=1),
            "settling_time": datetime.utcnow(),
        })
        outcome = await settle_stage(ctx.project_id, ctx.stage_id, ctx.teacher, db, force=True, push=push)
        assert outcome.code == ErrorCode.SETTLEMENT_IN_PROGRESS

    @pytest.mark.asyncio
    async def test_already_settled(self, db, seed_stage, push):
        ctx = await seed_stage()
        first = await settle_stage(ctx.project_id, ctx.stage_id, ctx.teacher, db, push=push)
        assert first.success

        again = await settle_stage(ctx.project_id, ctx.stage_id, ctx.teacher, db, push=push)
        assert again.code == ErrorCode.VALIDATION_FAILED

        forced = await settle_stage(ctx.project_id, ctx.stage_id, ctx.teacher, db, force=True, push=push)
        assert forced.code == ErrorCode.STAGE_ALREADY_SETTLED

    @pytest.mark.asyncio
    async def test_stage_not_in_voting(self, db, seed_stage, push):
        ctx = await seed_stage(stage_times={})
        outcome = await settle_stage(ctx.project_id, ctx.stage_id, ctx.teacher, db, force=True, push=push)
        assert outcome.code == ErrorCode.INVALID_STAGE_STATUS
        assert "active" in outcome.message

    @pytest.mark.asyncio
    async def test_empty_reward_pool(self, db, seed_stage, push):
        ctx = await seed_stage(report_pool=0)
        outcome = await settle_stage(ctx.project_id, ctx.stage_id, ctx.teacher, db, push=push)
        assert outcome.code == ErrorCode.INVALID_REWARD_POOL

    @pytest.mark.asyncio
    async def test_no_votes(self, db, seed_stage, push):
        ctx = await seed_stage(proposals=False, teacher_ranking={})
        outcome = await settle_stage(ctx.project_id, ctx.stage_id, ctx.teacher, db, force=True, push=push)
        assert outcome.code == ErrorCode.NO_VOTES

    @pytest.mark.asyncio
    async def test_distribution_exceeding_pool_releases_lock(self, db, session_factory, seed_stage, push, monkeypatch):
        ctx = await seed_stage()

        def inflated(*args, **kwargs):
            return ScoreResult(rankings={"grp_1": 1}, scores={"grp_1": 150}, weighted_scores={"grp_1": 1.0})

        monkeypatch.setattr(settlement_service, "compute", inflated)

        outcome = await settle_stage(ctx.project_id, ctx.stage_id, ctx.teacher, db, push=push)

        assert outcome.code == ErrorCode.DISTRIBUTION_EXCEEDS_POOL
        async with session_factory() as check:
            stage = await load_stage(check, ctx.stage_id)
            assert stage.settling_time is None
            assert stage.compute_status() == StageStatus.VOTING
            assert await count_rows(check, SettlementRecord) == 0


# =============================================================================
# Atomicity
# =============================================================================

class TestAtomicity:

    @pytest.mark.asyncio
    async def test_failure_mid_batch_leaves_no_rows(self, db, session_factory, seed_stage, push, monkeypatch):
        ctx = await seed_stage()

        async def broken(*args, **kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr(settlement_service, "_mark_proposals_settled", broken)

        outcome = await settle_stage(ctx.project_id, ctx.stage_id, ctx.teacher, db, push=push)

        assert not outcome.success
        assert outcome.code == ErrorCode.SYSTEM_ERROR
        assert "disk full" in outcome.message

        async with session_factory() as check:
            for model in (SettlementRecord, GroupSettlementDetail, CommentSettlementDetail, Transaction):
                assert await count_rows(check, model) == 0
            stage = await load_stage(check, ctx.stage_id)
            assert stage.compute_status() == StageStatus.VOTING
            assert stage.settled_time is None
            assert stage.final_rankings is None
            stamped = await check.execute(
                select(func.count()).select_from(RankingProposal).where(RankingProposal.settle_time.is_not(None))
            )
            assert stamped.scalar() == 0

        # stage can be settled once the fault is gone
        monkeypatch.undo()
        retry = await settle_stage(ctx.project_id, ctx.stage_id, ctx.teacher, db, push=push)
        assert retry.success


# =============================================================================
# Lock contention
# =============================================================================

class TestLocking:

    @pytest.mark.asyncio
    async def test_lock_is_compare_and_swap(self, db, seed_stage):
        ctx = await seed_stage()
        first = datetime.utcnow()
        second = first + timedelta(seconds=1)

        assert await acquire_settlement_lock(ctx.stage_id, first, db) is True
        assert await acquire_settlement_lock(ctx.stage_id, second, db) is False

        # only the holder's timestamp releases it
        assert await release_settlement_lock(ctx.stage_id, second, db) is False
        assert await release_settlement_lock(ctx.stage_id, first, db) is True
        assert await acquire_settlement_lock(ctx.stage_id, second, db) is True

    @pytest.mark.asyncio
    async def test_concurrent_settlements_single_winner(self, session_factory, seed_stage, push):
        ctx = await seed_stage()

        async def attempt():
            async with session_factory() as session:
                return await settle_stage(ctx.project_id, ctx.stage_id, ctx.teacher, session, force=True, push=push)

        results = await asyncio.gather(attempt(), attempt())

        winners = [r for r in results if r.success]
        losers = [r for r in results if not r.success]
        assert len(winners) == 1
        assert len(losers) == 1
        assert losers[0].code in (ErrorCode.SETTLEMENT_IN_PROGRESS, ErrorCode.STAGE_ALREADY_SETTLED)

        async with session_factory() as check:
            assert await count_rows(check, SettlementRecord) == 1
            assert await count_rows(check, GroupSettlementDetail) == 3
            assert await count_rows(check, Transaction) == 6


# =============================================================================
# Preview and results
# =============================================================================

class TestPreviewAndResults:

    @pytest.mark.asyncio
    async def test_preview_writes_nothing(self, db, session_factory, seed_stage):
        ctx = await seed_stage()

        preview = await preview_scores(ctx.project_id, ctx.stage_id, ctx.teacher, db)

        assert preview["preview_only"] is True
        assert preview["total_votes"] == 4
        assert [g["group_id"] for g in preview["scoring_results"]] == ["grp_1", "grp_2", "grp_3"]
        first = preview["scoring_results"][0]
        assert first["total_points"] == 50
        assert first["participant_distribution"][0] == {"email": "a1@example.edu", "percentage": 0.6, "points": 30.0}

        async with session_factory() as check:
            assert await count_rows(check, SettlementRecord) == 0
            assert (await load_stage(check, ctx.stage_id)).settling_time is None

    @pytest.mark.asyncio
    async def test_preview_without_votes(self, db, seed_stage):
        ctx = await seed_stage(proposals=False, teacher_ranking={})
        with pytest.raises(SettlementError) as exc_info:
            await preview_scores(ctx.project_id, ctx.stage_id, ctx.teacher, db)
        assert exc_info.value.code == ErrorCode.NO_VOTES

    @pytest.mark.asyncio
    async def test_preview_requires_manage_rights(self, db, seed_stage):
        ctx = await seed_stage()
        with pytest.raises(SettlementError) as exc_info:
            await preview_scores(ctx.project_id, ctx.stage_id, "b2@example.edu", db)
        assert exc_info.value.code == ErrorCode.ACCESS_DENIED

    @pytest.mark.asyncio
    async def test_settled_results(self, db, session_factory, seed_stage, push):
        ctx = await seed_stage()
        outcome = await settle_stage(ctx.project_id, ctx.stage_id, ctx.teacher, db, push=push)

        async with session_factory() as check:
            results = await get_settled_results(ctx.project_id, ctx.stage_id, check)

        assert results["settlement"]["settlement_id"] == outcome.data["settlement_id"]
        assert results["settlement"]["operator_email"] == ctx.teacher
        assert [d["rank"] for d in results["details"]] == [1, 2, 3]
        assert results["scoring_results"] == {"grp_1": 50, "grp_2": 33, "grp_3": 17}

    @pytest.mark.asyncio
    async def test_results_before_settlement(self, db, seed_stage):
        ctx = await seed_stage()
        with pytest.raises(SettlementError) as exc_info:
            await get_settled_results(ctx.project_id, ctx.stage_id, db)
        assert exc_info.value.code == ErrorCode.STAGE_NOT_SETTLED
