"""
Settlement Progress Emitter

Fire-and-forget milestone reporting to the operator who started the
settlement. emit() schedules the push in a detached task and returns at
once, so a slow push gateway never lengthens the time the settlement
lock is held. Pushes from one emitter are chained so the operator sees
milestones in order. Failures are swallowed by notification_service.deliver.
"""
import asyncio
import logging
from typing import Any, Dict, Optional

from stage_settlement.realtime.push_adapter import PushAdapter
from stage_settlement.services.notification_service import deliver, dispatch

logger = logging.getLogger(__name__)

# step -> (percent, default message)
MILESTONES = {
    "initializing": (0, "Starting settlement"),
    "lock_acquired": (10, "Settlement lock acquired"),
    "votes_calculated": (30, "Votes aggregated and scores calculated"),
    "distributing_report_rewards": (60, "Distributing report rewards"),
    "distributing_comment_rewards": (80, "Distributing comment rewards"),
    "completed": (100, "Settlement completed"),
}


class ProgressEmitter:
    """Pushes settlement_progress messages to a single operator."""

    def __init__(self, push: PushAdapter, operator_id: str, project_id: str, stage_id: str):
        self.push = push
        self.operator_id = operator_id
        self.project_id = project_id
        self.stage_id = stage_id
        self._last: Optional[asyncio.Task] = None

    def emit(self, step: str, message: Optional[str] = None) -> asyncio.Task:
        """Schedule a milestone push; awaiting the returned task yields whether it was delivered."""
        percent, default_message = MILESTONES[step]
        payload = {
            "type": "settlement_progress",
            "project_id": self.project_id,
            "stage_id": self.stage_id,
            "step": step,
            "progress": percent,
            "message": message or default_message,
        }
        self._last = dispatch(
            self._send_after(self._last, step, payload),
            name=f"settlement-progress-{self.stage_id}-{step}",
        )
        return self._last

    async def _send_after(self, previous: Optional[asyncio.Task], step: str, payload: Dict[str, Any]) -> bool:
        if previous is not None:
            await asyncio.wait([previous])
        delivered = await deliver(self.push, self.operator_id, payload)
        if not delivered:
            logger.warning(f"Progress '{step}' for stage {self.stage_id} was not delivered")
        return delivered
