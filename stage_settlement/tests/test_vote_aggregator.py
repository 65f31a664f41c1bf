"""
Vote Aggregator Test Suite
"""
from datetime import datetime, timedelta
from types import SimpleNamespace

from stage_settlement.services.vote_aggregator import (
    aggregate_teacher_submission_rankings, aggregate_teacher_comment_rankings,
    ballots_from_proposals, latest_per_key, normalize_rankings,
)

T0 = datetime(2026, 3, 1, 9, 0, 0)


def row(teacher, item, rank, minutes, kind="group_id"):
    return SimpleNamespace(teacher_email=teacher, rank=rank, created_time=T0 + timedelta(minutes=minutes),
                           **{kind: item})


# =============================================================================
# normalize_rankings
# =============================================================================

class TestNormalizeRankings:

    def test_list_payload(self):
        payload = [{"groupId": "g1", "rank": 1}, {"groupId": "g2", "rank": 2}]
        assert normalize_rankings(payload) == {"g1": 1, "g2": 2}

    def test_mapping_payload(self):
        assert normalize_rankings({"g1": 2, "g2": 1}) == {"g1": 2, "g2": 1}

    def test_alternate_id_keys(self):
        payload = [{"commentId": "c1", "rank": 1}, {"targetId": "c2", "rank": 2}]
        assert normalize_rankings(payload) == {"c1": 1, "c2": 2}

    def test_invalid_entries_skipped(self):
        payload = [
            {"groupId": "g1", "rank": 1},
            {"groupId": "g2", "rank": "first"},
            {"rank": 3},
            {"groupId": "someone@example.edu", "rank": 4},
            {"groupId": "g5", "rank": True},
            "garbage",
        ]
        assert normalize_rankings(payload) == {"g1": 1}

    def test_fractional_ranks_skipped(self):
        payload = [{"groupId": "g1", "rank": 1.7}, {"groupId": "g2", "rank": 2.0}]
        assert normalize_rankings(payload) == {"g2": 2}
        assert normalize_rankings({"g1": 2.5, "g2": 1.0, "g3": 3}) == {"g2": 1, "g3": 3}

    def test_empty_and_unsupported(self):
        assert normalize_rankings(None) == {}
        assert normalize_rankings([]) == {}
        assert normalize_rankings("g1,g2") == {}


# =============================================================================
# Teacher batch aggregation
# =============================================================================

class TestTeacherBatches:

    def test_only_latest_batch_per_teacher(self):
        rows = [
            row("t1@x", "g1", 1, 0), row("t1@x", "g2", 2, 0),
            row("t1@x", "g1", 2, 30), row("t1@x", "g2", 1, 30),
        ]
        ballots = aggregate_teacher_submission_rankings(rows)
        assert len(ballots) == 1
        assert ballots[0].rankings == {"g1": 2, "g2": 1}

    def test_batches_never_mixed_across_timestamps(self):
        # older batch ranked g3; newer batch did not
        rows = [
            row("t1@x", "g3", 3, 0),
            row("t1@x", "g1", 1, 10), row("t1@x", "g2", 2, 10),
        ]
        ballots = aggregate_teacher_submission_rankings(rows)
        assert ballots[0].rankings == {"g1": 1, "g2": 2}

    def test_one_ballot_per_teacher_sorted(self):
        rows = [row("zed@x", "c1", 1, 0, "comment_id"), row("amy@x", "c1", 2, 5, "comment_id")]
        ballots = aggregate_teacher_comment_rankings(reversed(rows))
        assert [b.rater_id for b in ballots] == ["amy@x", "zed@x"]
        assert ballots[0].rankings == {"c1": 2}


# =============================================================================
# Proposals
# =============================================================================

def test_latest_per_key_picks_newest():
    rows = [
        SimpleNamespace(key="a", created_time=T0, value=1),
        SimpleNamespace(key="a", created_time=T0 + timedelta(hours=1), value=2),
        SimpleNamespace(key="b", created_time=T0, value=3),
    ]
    latest = latest_per_key(rows, key_of=lambda r: r.key)
    assert [r.value for r in latest] == [2, 3]


def test_ballots_from_proposals_drops_empty():
    proposals = [
        SimpleNamespace(proposal_id="p1", group_id="g1", ranking_data={"g1": 1, "g2": 2}),
        SimpleNamespace(proposal_id="p2", group_id="g2", ranking_data=[]),
    ]
    ballots = ballots_from_proposals(proposals, rater_of=lambda p: f"group_{p.group_id}")
    assert len(ballots) == 1
    assert ballots[0].to_dict() == {"rater_id": "group_g1", "rankings": {"g1": 1, "g2": 2}}
