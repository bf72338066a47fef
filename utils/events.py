"""
In-process domain events for the challenge workflow.

Completion of a participation is announced as a ``ParticipationCompleted``
event; the leaderboard subscribes to it instead of being called directly.
Handlers run synchronously inside the publishing request, so a failing
handler fails the operation that published the event.

A publisher that needs its handlers' writes to land together with its own
passes its Firestore write batch on the event. Handlers stage their writes
on that batch and the publisher commits it once, so either everything is
written or nothing is.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
import logging

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ParticipationCompleted:
    challenge_id: str
    user_id: str
    participation_id: str
    score: float
    completed_at: datetime
    source: str  # 'progress' or 'verification'
    batch: object = field(default=None, compare=False, repr=False)


class EventBus:
    """Minimal synchronous publish/subscribe keyed by event class."""

    def __init__(self):
        self._handlers = defaultdict(list)

    def subscribe(self, event_type, handler):
        self._handlers[event_type].append(handler)

    def publish(self, event):
        handlers = self._handlers.get(type(event), [])
        logger.info(f"Publishing {type(event).__name__} to {len(handlers)} handler(s)")
        for handler in handlers:
            handler(event)
