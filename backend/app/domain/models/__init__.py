from app.domain.models.dead_letter_entry import DeadLetterEntry
from app.domain.models.domain_event import DomainEvent
from app.domain.models.inbound_event import InboundEvent
from app.domain.models.outbound_delivery import OutboundDelivery
from app.domain.models.outbound_subscription import OutboundSubscription
from app.domain.models.plan import Plan
from app.domain.models.platform_product import PlatformProduct
from app.domain.models.profile import Profile

__all__ = [
    "Plan",
    "PlatformProduct",
    "Profile",
    "InboundEvent",
    "DomainEvent",
    "OutboundSubscription",
    "OutboundDelivery",
    "DeadLetterEntry",
]
