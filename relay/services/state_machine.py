from enum import Enum
from typing import Union


class DeliveryState(str, Enum):
    RECEIVED = "received"
    PROCESSING = "processing"
    ACKED = "acked"
    RETRIED = "retried"
    DEAD_LETTERED = "dead_lettered"


class ConversationStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    CLOSED = "closed"


class FailedMessageStatus(str, Enum):
    PENDING_RETRY = "pending_retry"
    FAILED = "failed"
    RESOLVED = "resolved"


State = Union[DeliveryState, ConversationStatus, FailedMessageStatus]

VALID_TRANSITIONS = {
    DeliveryState.RECEIVED: [DeliveryState.PROCESSING],
    DeliveryState.PROCESSING: [DeliveryState.ACKED, DeliveryState.RETRIED, DeliveryState.DEAD_LETTERED],
    # a retried row is redelivered later and goes through processing again
    DeliveryState.RETRIED: [DeliveryState.PROCESSING],
    ConversationStatus.ACTIVE: [ConversationStatus.EXPIRED, ConversationStatus.CLOSED],
    FailedMessageStatus.PENDING_RETRY: [
        FailedMessageStatus.PENDING_RETRY,
        FailedMessageStatus.FAILED,
        FailedMessageStatus.RESOLVED,
    ],
    FailedMessageStatus.FAILED: [FailedMessageStatus.PENDING_RETRY],
}

# outbox_messages.status written for each terminal delivery state
OUTBOX_STATUS_FOR = {
    DeliveryState.ACKED: "SENT",
    DeliveryState.RETRIED: "PENDING",
    DeliveryState.DEAD_LETTERED: "DEAD",
}


class InvalidTransitionError(Exception):
    def __init__(self, from_state: State, to_state: State):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid transition: {from_state.value} -> {to_state.value}")


def can_transition(from_state: State, to_state: State) -> bool:
    """Check if transition is valid."""
    allowed = VALID_TRANSITIONS.get(from_state, [])
    return to_state in allowed


def transition(from_state: State, to_state: State) -> State:
    """Perform state transition. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_state, to_state):
        raise InvalidTransitionError(from_state, to_state)
    return to_state


def expire_conversation(current: ConversationStatus) -> ConversationStatus:
    return transition(current, ConversationStatus.EXPIRED)


def resolve_failure(current: FailedMessageStatus) -> FailedMessageStatus:
    """A later successful send resolves the failure record."""
    return transition(current, FailedMessageStatus.RESOLVED)


def schedule_manual_retry(current: FailedMessageStatus) -> FailedMessageStatus:
    return transition(current, FailedMessageStatus.PENDING_RETRY)
