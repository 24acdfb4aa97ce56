"""
Delivery bookkeeping for one consumer group.

Every event a partition worker hands to its handler gets a ``DeliveryTracker``
that walks the state machine

    PENDING -> PROCESSING -> ACKED
                          -> RETRY_SCHEDULED -> PROCESSING
                          -> DEAD_LETTERED

``DeliveryCoordinator`` owns the trackers of in-flight events and decides,
from the retry policy, whether a failed attempt is retried or dead-lettered.
"""
import enum
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Union
from uuid import UUID

from base_domains.errors import InvalidTransition


class DeliveryState(str, enum.Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    ACKED = "ACKED"
    RETRY_SCHEDULED = "RETRY_SCHEDULED"
    DEAD_LETTERED = "DEAD_LETTERED"


_TRANSITIONS = {
    DeliveryState.PENDING: {DeliveryState.PROCESSING},
    DeliveryState.PROCESSING: {
        DeliveryState.ACKED,
        DeliveryState.RETRY_SCHEDULED,
        DeliveryState.DEAD_LETTERED,
    },
    DeliveryState.RETRY_SCHEDULED: {DeliveryState.PROCESSING},
    DeliveryState.ACKED: set(),
    DeliveryState.DEAD_LETTERED: set(),
}

TERMINAL_STATES = frozenset({DeliveryState.ACKED, DeliveryState.DEAD_LETTERED})


@dataclass(frozen=True)
class Ack:
    pass


@dataclass(frozen=True)
class Nack:
    retryable: bool
    reason: str = ""


HandlerResult = Union[Ack, Nack]


@dataclass(frozen=True)
class Backoff:
    """Exponential backoff: base, 2*base, 4*base, ... capped at ``cap``."""

    base: float = 0.5
    cap: float = 30.0

    def delay(self, attempt: int) -> float:
        if attempt < 1:
            return 0.0
        # avoid float overflow for very large attempt counts
        exponent = min(attempt - 1, 64)
        return min(self.cap, self.base * (2 ** exponent))


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    backoff: Backoff = field(default_factory=Backoff)

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def should_retry(self, attempts: int) -> bool:
        return attempts < self.max_attempts


@dataclass
class DeliveryTracker:
    consumer_group: str
    event_id: UUID
    state: DeliveryState = DeliveryState.PENDING
    attempts: int = 0
    last_error: Optional[str] = None
    next_attempt_at: Optional[float] = None

    def _move(self, target: DeliveryState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise InvalidTransition(
                f"{self.consumer_group}/{self.event_id}: {self.state.value} -> {target.value}"
            )
        self.state = target

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def start(self) -> None:
        self._move(DeliveryState.PROCESSING)
        self.attempts += 1
        self.next_attempt_at = None

    def ack(self) -> None:
        self._move(DeliveryState.ACKED)

    def schedule_retry(self, delay: float, error: str) -> None:
        self._move(DeliveryState.RETRY_SCHEDULED)
        self.last_error = error
        self.next_attempt_at = time.monotonic() + delay

    def dead_letter(self, error: str) -> None:
        self._move(DeliveryState.DEAD_LETTERED)
        self.last_error = error

    def as_dict(self) -> dict:
        return {
            "consumer_group": self.consumer_group,
            "event_id": str(self.event_id),
            "state": self.state.value,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "retry_in": (
                max(0.0, self.next_attempt_at - time.monotonic())
                if self.next_attempt_at is not None else None
            ),
        }


@dataclass(frozen=True)
class Decision:
    retry: bool
    delay: float = 0.0


class DeliveryCoordinator:
    def __init__(self, consumer_group: str, policy: RetryPolicy):
        self.consumer_group = consumer_group
        self.policy = policy
        self._inflight: Dict[UUID, DeliveryTracker] = {}

    def track(self, event_id: UUID) -> DeliveryTracker:
        tracker = self._inflight.get(event_id)
        if tracker is None or tracker.terminal:
            tracker = DeliveryTracker(self.consumer_group, event_id)
            self._inflight[event_id] = tracker
        return tracker

    def on_failure(self, tracker: DeliveryTracker, nack: Nack) -> Decision:
        if nack.retryable and self.policy.should_retry(tracker.attempts):
            delay = self.policy.backoff.delay(tracker.attempts)
            tracker.schedule_retry(delay, nack.reason)
            return Decision(retry=True, delay=delay)
        tracker.dead_letter(nack.reason)
        return Decision(retry=False)

    def release(self, event_id: UUID) -> None:
        self._inflight.pop(event_id, None)

    def inflight(self) -> List[DeliveryTracker]:
        return list(self._inflight.values())
