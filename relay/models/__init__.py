from relay.models.conversation import Conversation
from relay.models.customer import Customer
from relay.models.failed_message import FailedMessage
from relay.models.message import Message
from relay.models.notification import Notification
from relay.models.operator import Operator
from relay.models.outbox_message import OutboxMessage
from relay.models.referral import Referral

__all__ = [
    "Operator",
    "Customer",
    "Conversation",
    "Message",
    "OutboxMessage",
    "FailedMessage",
    "Notification",
    "Referral",
]
