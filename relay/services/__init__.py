from relay.services.state_machine import (
    ConversationStatus,
    DeliveryState,
    FailedMessageStatus,
    InvalidTransitionError,
    can_transition,
    transition,
)

__all__ = [
    "ConversationStatus",
    "DeliveryState",
    "FailedMessageStatus",
    "InvalidTransitionError",
    "can_transition",
    "transition",
]
