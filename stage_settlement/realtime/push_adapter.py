"""
Notification Push Adapter Interface

Abstract base class for user-addressed push delivery. Delivery is
best effort: callers bound every send with a timeout and never let a
push failure affect the operation that produced it.
"""
import abc
import json
from typing import Any, Dict


class PushAdapter(abc.ABC):
    """
    Abstract base class for push adapters.

    Messages are plain dicts with at least a "type" key. Serialization is
    deterministic (sort_keys=True) so identical payloads compare equal.
    """

    @abc.abstractmethod
    async def send(self, user_id: str, message: Dict[str, Any]) -> None:
        """
        Deliver message to one user.

        Args:
            user_id: Recipient (user e-mail)
            message: Payload with a "type" key
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def close(self) -> None:
        """Close adapter connections."""
        raise NotImplementedError

    def _serialize_message(self, message: Dict[str, Any]) -> str:
        return json.dumps(message, sort_keys=True, separators=(',', ':'), default=str)

    def validate_message(self, message: Dict[str, Any]) -> bool:
        """
        Raises:
            ValueError: If the message has no "type"
        """
        if "type" not in message:
            raise ValueError("Push message missing required field: type")
        return True
