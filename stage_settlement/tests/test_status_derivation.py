"""
Derived status tests for stages and ranking proposals.
"""
from datetime import datetime, timedelta

import pytest

from stage_settlement.orm.ranking import (
    ProposalStatus, ProposalVote, RankingProposal, VotingResult, compute_voting_result,
)
from stage_settlement.orm.stage import Stage, StageStatus

NOW = datetime(2026, 5, 4, 12, 0, 0)
HOUR = timedelta(hours=1)


def make_stage(**times):
    return Stage(stage_id="stg_x", project_id="proj_x", stage_name="Final", **times)


# =============================================================================
# Stage.compute_status
# =============================================================================

class TestStageStatus:

    def test_pending_before_start(self):
        stage = make_stage(start_time=NOW + HOUR, end_time=NOW + 2 * HOUR)
        assert stage.compute_status(NOW) == StageStatus.PENDING

    def test_active_inside_window(self):
        stage = make_stage(start_time=NOW - HOUR, end_time=NOW + HOUR)
        assert stage.compute_status(NOW) == StageStatus.ACTIVE

    def test_voting_after_end(self):
        stage = make_stage(start_time=NOW - 2 * HOUR, end_time=NOW - HOUR)
        assert stage.compute_status(NOW) == StageStatus.VOTING

    def test_forced_voting_inside_window(self):
        stage = make_stage(start_time=NOW - HOUR, end_time=NOW + HOUR, force_voting_time=NOW)
        assert stage.compute_status(NOW) == StageStatus.VOTING

    @pytest.mark.parametrize("marker,expected", [
        ("paused_time", StageStatus.PAUSED),
        ("settling_time", StageStatus.SETTLING),
        ("settled_time", StageStatus.COMPLETED),
        ("archived_time", StageStatus.ARCHIVED),
    ])
    def test_markers_override_voting(self, marker, expected):
        stage = make_stage(end_time=NOW - HOUR, force_voting_time=NOW, **{marker: NOW})
        assert stage.compute_status(NOW) == expected

    def test_settled_wins_over_settling(self):
        stage = make_stage(settling_time=NOW, settled_time=NOW)
        assert stage.compute_status(NOW) == StageStatus.COMPLETED


# =============================================================================
# Proposal status and voting result
# =============================================================================

class TestProposalStatus:

    def test_pending_by_default(self):
        assert RankingProposal().status == ProposalStatus.PENDING

    def test_settled_wins(self):
        proposal = RankingProposal(settle_time=NOW, withdrawn_time=NOW, reset_time=NOW)
        assert proposal.status == ProposalStatus.SETTLED

    def test_withdrawn_before_reset(self):
        assert RankingProposal(withdrawn_time=NOW, reset_time=NOW).status == ProposalStatus.WITHDRAWN
        assert RankingProposal(reset_time=NOW).status == ProposalStatus.RESET


@pytest.mark.parametrize("agrees,expected", [
    ([], VotingResult.NO_VOTES),
    ([True, True, False], VotingResult.AGREE),
    ([False, False, True], VotingResult.DISAGREE),
    ([True, False], VotingResult.TIE),
])
def test_voting_result(agrees, expected):
    votes = [ProposalVote(agree=a) for a in agrees]
    assert compute_voting_result(votes) == expected
