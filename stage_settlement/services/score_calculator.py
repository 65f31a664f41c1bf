"""
Rank/Score Calculator

Pure weighted-rank aggregation and tie-aware point distribution.

    weighted = studentMean * studentWeight + teacherMean * teacherWeight

Lower weighted score = better. Items a track never ranked get that track's
worst rank (item count + 1). Ranks use standard competition ranking with a
0.01 tie tolerance. Points follow the occupied-rank method: sorted position
k of N is worth (N - k); tied items share the average weight of the block
they occupy. The last scored item absorbs rounding so the distributed total
equals the pool exactly.
"""
import logging
import math
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from stage_settlement.services.vote_aggregator import Ballot

logger = logging.getLogger(__name__)

FLOAT_TOLERANCE = 0.01


@dataclass
class ScoreResult:
    rankings: Dict[str, int] = field(default_factory=dict)
    scores: Dict[str, float] = field(default_factory=dict)
    weighted_scores: Dict[str, float] = field(default_factory=dict)
    student_scores: Dict[str, float] = field(default_factory=dict)
    teacher_scores: Dict[str, float] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.rankings

    def total_distributed(self) -> float:
        return sum(self.scores.values())

    def sorted_items(self) -> List[str]:
        """Item ids ordered by rank, then weighted score."""
        return sorted(self.rankings, key=lambda i: (self.rankings[i], self.weighted_scores.get(i, 0)))


def round_half_up(value: float) -> int:
    """Nearest integer with .5 rounded towards +infinity."""
    return int(math.floor(value + 0.5))


def member_points(points: float, share: float) -> float:
    """A participant's share of group points, to two decimals."""
    return math.floor(points * share * 100 + 0.5) / 100


def _collect_items(*tracks: Iterable[Ballot]) -> List[str]:
    seen = {}
    for ballots in tracks:
        for ballot in ballots:
            for item_id in ballot.rankings:
                seen.setdefault(item_id, None)
    return list(seen)


def _mean_ranks(items: List[str], ballots: Iterable[Ballot], worst_rank: int, track: str) -> Dict[str, float]:
    sums = {item_id: 0.0 for item_id in items}
    counts = {item_id: 0 for item_id in items}
    for ballot in ballots:
        for item_id, rank in ballot.rankings.items():
            if item_id in sums:
                sums[item_id] += rank
                counts[item_id] += 1

    means = {}
    for item_id in items:
        if counts[item_id] > 0:
            means[item_id] = sums[item_id] / counts[item_id]
        else:
            logger.warning(f"Item {item_id} received no {track} rankings, assigning worst rank {worst_rank}")
            means[item_id] = float(worst_rank)
    return means


def assign_competition_ranks(sorted_items: List[str], scores: Dict[str, float]) -> Dict[str, int]:
    """Standard competition ranking ("1224") over pre-sorted items."""
    rankings = {}
    for position, item_id in enumerate(sorted_items):
        if position > 0:
            previous = sorted_items[position - 1]
            if abs(scores[previous] - scores[item_id]) < FLOAT_TOLERANCE:
                rankings[item_id] = rankings[previous]
                continue
        rankings[item_id] = position + 1
    return rankings


def occupied_rank_weights(items_to_score: List[str], rankings: Dict[str, int]) -> Dict[str, float]:
    """Per-item weights; tied items split their occupied positions evenly."""
    rank_groups: Dict[int, List[str]] = {}
    for item_id in items_to_score:
        rank_groups.setdefault(rankings[item_id], []).append(item_id)

    total_items = len(items_to_score)
    position = 0
    weights = {}
    for rank in sorted(rank_groups):
        tied = rank_groups[rank]
        block_weight = sum(total_items - (position + offset) for offset in range(len(tied)))
        for item_id in tied:
            weights[item_id] = block_weight / len(tied)
        position += len(tied)
    return weights


def distribute_points(items_to_score: List[str], weights: Dict[str, float], total_points: float) -> Dict[str, float]:
    """Proportional split; the last item takes the remainder."""
    scores = {}
    if not items_to_score:
        return scores

    total_weight = sum(weights[item_id] for item_id in items_to_score)
    distributed = 0
    last_index = len(items_to_score) - 1

    for index, item_id in enumerate(items_to_score):
        if index == last_index:
            scores[item_id] = total_points - distributed
            break
        if total_weight > 0:
            points = round_half_up(total_points * weights[item_id] / total_weight)
        else:
            points = round_half_up(total_points / len(items_to_score))
        scores[item_id] = points
        distributed += points

    return scores


def compute(
    teacher_votes: List[Ballot],
    student_votes: List[Ballot],
    total_points: float,
    student_weight: float = 0.7,
    teacher_weight: float = 0.3,
    top_n: Optional[int] = None,
) -> ScoreResult:
    """
    Compute final ranks, points and sub-scores for every ranked item.

    With top_n, only items ranked <= top_n receive points; the rest get 0
    but keep their rank. An empty vote set yields an empty result.
    """
    items = _collect_items(teacher_votes, student_votes)
    if not items:
        return ScoreResult()

    worst_rank = len(items) + 1
    student_means = _mean_ranks(items, student_votes, worst_rank, "student")
    teacher_means = _mean_ranks(items, teacher_votes, worst_rank, "teacher")

    weighted = {
        item_id: student_means[item_id] * student_weight + teacher_means[item_id] * teacher_weight
        for item_id in items
    }

    sorted_items = sorted(items, key=lambda item_id: weighted[item_id])
    rankings = assign_competition_ranks(sorted_items, weighted)

    result = ScoreResult(
        rankings=rankings,
        weighted_scores=weighted,
        student_scores={i: student_means[i] * student_weight for i in items},
        teacher_scores={i: teacher_means[i] * teacher_weight for i in items},
    )

    if top_n:
        items_to_score = [i for i in sorted_items if rankings[i] <= top_n]
    else:
        items_to_score = sorted_items

    weights = occupied_rank_weights(items_to_score, rankings)
    result.scores = distribute_points(items_to_score, weights, total_points)

    if top_n:
        for item_id in items:
            result.scores.setdefault(item_id, 0)

    return result
