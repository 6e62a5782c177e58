"""
Background usage queue with a dedicated event loop.

Ledger writes are handed off here so the metered request never waits on the
database.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, Literal, Optional

from tierguard.core.queues import BackgroundQueue

if TYPE_CHECKING:
    from .usage_recorder import UsageRecorder

logger = logging.getLogger(__name__)


@dataclass
class UsageEvent:
    """Usage event to be recorded."""

    event_type: Literal["usage", "tokens"]
    user_id: str
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    # Action fields
    operation: Optional[str] = None
    amount: int = 1
    metadata: Optional[Dict[str, Any]] = None

    # Token fields
    tokens: int = 0
    estimated_cost: float = 0.0

    # Recorder to write through (default: module singleton)
    recorder: Optional["UsageRecorder"] = field(default=None, repr=False)


class UsageQueue(BackgroundQueue[UsageEvent]):
    """Usage queue processed on its own thread and event loop."""

    def _get_queue_name(self) -> str:
        return "usage-queue"

    async def _process_event(self, event: UsageEvent) -> None:
        recorder = event.recorder
        if recorder is None:
            from .usage_recorder import get_usage_recorder
            recorder = get_usage_recorder()

        if event.event_type == "usage":
            await recorder.record(
                user_id=event.user_id,
                operation=event.operation or "unknown",
                amount=event.amount,
                metadata=event.metadata,
            )
        elif event.event_type == "tokens":
            await recorder.track_token_usage(
                user_id=event.user_id,
                tokens=event.tokens,
                estimated_cost=event.estimated_cost,
            )


def get_usage_queue() -> UsageQueue:
    """Get singleton usage queue instance."""
    return UsageQueue.get_instance()


def enqueue_token_usage(user_id: str, tokens: int, estimated_cost: float = 0.0) -> None:
    """Convenience function to enqueue a token usage event."""
    get_usage_queue().enqueue(UsageEvent(
        event_type="tokens",
        user_id=user_id,
        tokens=tokens,
        estimated_cost=estimated_cost,
    ))


__all__ = [
    "UsageEvent",
    "UsageQueue",
    "get_usage_queue",
    "enqueue_token_usage",
]
