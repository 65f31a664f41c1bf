"""
Settlement Notification Service

Post-commit, best-effort notices. Every push is bounded by
NOTIFICATION_TIMEOUT_SECONDS and any failure is logged and dropped:
a committed settlement is never affected by delivery problems.

Delivery runs in detached tasks (see dispatch); the settlement that
schedules them never waits on the push gateway. Detached tasks are
tracked so shutdown and tests can wait for them.
"""
import asyncio
import logging
import math
from typing import Any, Awaitable, Dict, Iterable, List, Optional, Set

from stage_settlement.config.settings import settings
from stage_settlement.realtime.push_adapter import PushAdapter
from stage_settlement.services.score_calculator import member_points

logger = logging.getLogger(__name__)

_pending: Set[asyncio.Task] = set()


def _on_done(task: asyncio.Task) -> None:
    _pending.discard(task)
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.error(f"Detached notification task {task.get_name()} failed: {error!r}")


def dispatch(coro: Awaitable[Any], name: Optional[str] = None) -> asyncio.Task:
    """Run coro in a detached task and keep a reference until it finishes."""
    task = asyncio.create_task(coro, name=name)
    _pending.add(task)
    task.add_done_callback(_on_done)
    return task


async def wait_for_pending(timeout: Optional[float] = None) -> None:
    """Wait for detached notification tasks; stragglers are cancelled after timeout."""
    while True:
        tasks = [t for t in _pending if not t.done()]
        if not tasks:
            return
        _, not_done = await asyncio.wait(tasks, timeout=timeout)
        if not_done:
            logger.warning(f"Cancelling {len(not_done)} undelivered notification task(s)")
            for task in not_done:
                task.cancel()
            await asyncio.wait(not_done)
            return


async def deliver(push: PushAdapter, user_id: str, message: Dict[str, Any]) -> bool:
    """Send one message; True on success, False if it failed or timed out."""
    try:
        await asyncio.wait_for(push.send(user_id, message), timeout=settings.NOTIFICATION_TIMEOUT_SECONDS)
        return True
    except asyncio.TimeoutError:
        logger.warning(f"Push to {user_id} timed out after {settings.NOTIFICATION_TIMEOUT_SECONDS}s "
                       f"(type={message.get('type')})")
    except Exception as e:
        logger.warning(f"Push to {user_id} failed (type={message.get('type')}): {e}")
    return False


def build_transaction_notices(
    stage_name: str,
    project_id: str,
    stage_id: str,
    group_participants: Dict[str, Dict[str, float]],
    group_points: Dict[str, float],
    group_ranks: Dict[str, int],
    comment_awards: Iterable[Dict[str, Any]],
) -> List[Dict[str, Any]]:
    """One transaction_received notice per report participant and rewarded comment author."""
    notices = []
    for group_id, participants in group_participants.items():
        points = group_points.get(group_id, 0)
        for email, share in participants.items():
            notices.append({
                "user_id": email,
                "message": {
                    "type": "transaction_received",
                    "project_id": project_id,
                    "stage_id": stage_id,
                    "amount": math.ceil(member_points(points, share)),
                    "source": f"{stage_name} report reward",
                    "rank": group_ranks.get(group_id),
                },
            })

    for award in comment_awards:
        notices.append({
            "user_id": award["author_email"],
            "message": {
                "type": "transaction_received",
                "project_id": project_id,
                "stage_id": stage_id,
                "amount": math.ceil(award["points"]),
                "source": f"{stage_name} comment reward",
                "rank": award["rank"],
                "comment_id": award["comment_id"],
            },
        })
    return notices


async def notify_settlement(
    push: PushAdapter,
    project_id: str,
    stage_id: str,
    stage_name: str,
    settlement_id: str,
    transaction_notices: List[Dict[str, Any]],
    member_emails: Iterable[str],
) -> Dict[str, int]:
    """
    Send transaction_received and stage_settled notices.

    Each round of pushes runs concurrently, so the total wait is bounded by
    two timeouts whatever the number of recipients. Transaction notices go
    out before stage_settled. Returns delivery counters; never raises.
    """
    if not settings.FEATURE_SETTLEMENT_NOTIFICATIONS:
        logger.info(f"Settlement notifications disabled; skipping stage {stage_id}")
        return {"sent": 0, "failed": 0}

    transaction_results = await asyncio.gather(
        *(deliver(push, notice["user_id"], notice["message"]) for notice in transaction_notices)
    )

    settled_message = {
        "type": "stage_settled",
        "project_id": project_id,
        "stage_id": stage_id,
        "stage_name": stage_name,
        "settlement_id": settlement_id,
    }
    settled_results = await asyncio.gather(
        *(deliver(push, email, settled_message) for email in sorted(set(member_emails)))
    )

    results = list(transaction_results) + list(settled_results)
    sent = sum(1 for delivered in results if delivered)
    failed = len(results) - sent

    if failed:
        logger.warning(f"Settlement {settlement_id}: {failed} notification(s) not delivered")
    logger.info(f"Settlement {settlement_id}: {sent} notification(s) delivered")
    return {"sent": sent, "failed": failed}
