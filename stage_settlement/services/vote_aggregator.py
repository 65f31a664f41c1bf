"""
Vote Aggregator

Collapses raw ranking rows into one ballot per rater. A rater may have cast
several historical batches; only the rows sharing the rater's most recent
batch timestamp are kept, so ranks are never mixed across batches.

Ranking payloads stored as JSON arrive either as a list of
{"groupId" | "commentId" | "targetId": ..., "rank": ...} objects or as a
{itemId: rank} mapping; normalize_rankings folds both into {itemId: rank}.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)

ID_KEYS = ("groupId", "commentId", "targetId")


@dataclass
class Ballot:
    """One rater's effective ranking: item id -> integer rank."""
    rater_id: str
    rankings: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"rater_id": self.rater_id, "rankings": dict(self.rankings)}


def _is_rank(value: Any) -> bool:
    # bool is an int subclass but never a rank; fractional ranks are rejected
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return float(value).is_integer()


def normalize_rankings(payload: Any) -> Dict[str, int]:
    """
    Normalize a stored ranking payload into {itemId: rank}.

    Entries without an id, with a rank that is not a whole number (2.0 is
    accepted, 1.7 is not), or whose id looks like an e-mail address are
    skipped.
    """
    if not payload:
        return {}

    if isinstance(payload, dict):
        result = {}
        for item_id, rank in payload.items():
            if _is_rank(rank):
                result[str(item_id)] = int(rank)
            else:
                logger.warning(f"Skipping ranking entry {item_id!r}: rank {rank!r} is not a whole number")
        return result

    if not isinstance(payload, list):
        logger.warning(f"Unsupported ranking payload type {type(payload).__name__}")
        return {}

    result = {}
    for index, entry in enumerate(payload):
        if not isinstance(entry, dict):
            logger.warning(f"Skipping ranking entry at index {index}: not an object")
            continue

        item_id = None
        for key in ID_KEYS:
            if entry.get(key):
                item_id = str(entry[key])
                break
        rank = entry.get("rank")

        if item_id is None or not _is_rank(rank):
            logger.warning(f"Skipping invalid ranking entry at index {index}: {entry}")
            continue
        if "@" in item_id:
            logger.error(f"Invalid item id at index {index}: {item_id!r} looks like an e-mail address")
            continue

        result[item_id] = int(rank)

    return result


def aggregate_latest_batches(
    rows: Iterable[Any],
    rater_of: Callable[[Any], str],
    item_of: Callable[[Any], str],
    rank_of: Callable[[Any], int],
    time_of: Callable[[Any], Any],
) -> List[Ballot]:
    """
    Group rows by rater and keep only each rater's latest batch.

    Rows may arrive in any order. Raters are returned sorted by id so the
    output is deterministic.
    """
    latest_time: Dict[str, Any] = {}
    by_rater: Dict[str, List[Any]] = {}

    for row in rows:
        rater = rater_of(row)
        by_rater.setdefault(rater, []).append(row)
        created = time_of(row)
        if rater not in latest_time or created > latest_time[rater]:
            latest_time[rater] = created

    ballots = []
    for rater in sorted(by_rater):
        newest = latest_time[rater]
        rankings = {}
        for row in by_rater[rater]:
            if time_of(row) != newest:
                continue
            rankings[str(item_of(row))] = int(rank_of(row))
        ballots.append(Ballot(rater_id=rater, rankings=rankings))

    return ballots


def aggregate_teacher_submission_rankings(rows: Iterable[Any]) -> List[Ballot]:
    """Teacher report ballots keyed by group id."""
    return aggregate_latest_batches(
        rows,
        rater_of=lambda r: r.teacher_email,
        item_of=lambda r: r.group_id,
        rank_of=lambda r: r.rank,
        time_of=lambda r: r.created_time,
    )


def aggregate_teacher_comment_rankings(rows: Iterable[Any]) -> List[Ballot]:
    """Teacher comment ballots keyed by comment id."""
    return aggregate_latest_batches(
        rows,
        rater_of=lambda r: r.teacher_email,
        item_of=lambda r: r.comment_id,
        rank_of=lambda r: r.rank,
        time_of=lambda r: r.created_time,
    )


def latest_per_key(rows: Iterable[Any], key_of: Callable[[Any], str],
                   time_of: Optional[Callable[[Any], Any]] = None) -> List[Any]:
    """Keep the most recent row per key (e.g. latest proposal per group)."""
    time_of = time_of or (lambda r: r.created_time)
    latest: Dict[str, Any] = {}
    for row in rows:
        key = key_of(row)
        if key not in latest or time_of(row) > time_of(latest[key]):
            latest[key] = row
    return [latest[k] for k in sorted(latest)]


def ballots_from_proposals(proposals: Iterable[Any], rater_of: Callable[[Any], str]) -> List[Ballot]:
    """Turn already-filtered proposal rows into ballots, dropping empty ones."""
    ballots = []
    for proposal in proposals:
        rankings = normalize_rankings(proposal.ranking_data)
        if not rankings:
            logger.warning(f"Proposal {getattr(proposal, 'proposal_id', '?')} has no usable rankings")
            continue
        ballots.append(Ballot(rater_id=rater_of(proposal), rankings=rankings))
    return ballots
