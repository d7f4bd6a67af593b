"""Re-export all models so Base.metadata sees them."""

from fulfillment.db.models.allocation import OPEN_ALLOCATION_STATUSES, Allocation
from fulfillment.db.models.dead_letter import DeadLetter
from fulfillment.db.models.outbox_event import OutboxEvent
from fulfillment.db.models.payment import Payment
from fulfillment.db.models.processed_event import ProcessedEvent
from fulfillment.db.models.purchase import Purchase
from fulfillment.db.models.session import TutoringSession

__all__ = [
    "Allocation",
    "DeadLetter",
    "OPEN_ALLOCATION_STATUSES",
    "OutboxEvent",
    "Payment",
    "ProcessedEvent",
    "Purchase",
    "TutoringSession",
]
