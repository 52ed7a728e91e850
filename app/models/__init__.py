"""ORM models package."""
from .alert import Alert
from .audit import AuditLog
from .base import Base
from .booking import Booking, BookingStatus, SETTLED_BOOKING_STATUSES
from .location import Box, Location
from .notification import Notification
from .payment import Payment, PaymentStatus
from .psp_webhook import PSPWebhookEvent
from .scheduler_lock import SchedulerLock
from .user import User, UserRole

__all__ = [
    "Alert",
    "AuditLog",
    "Base",
    "Booking",
    "BookingStatus",
    "SETTLED_BOOKING_STATUSES",
    "Box",
    "Location",
    "Notification",
    "Payment",
    "PaymentStatus",
    "PSPWebhookEvent",
    "SchedulerLock",
    "User",
    "UserRole",
]
