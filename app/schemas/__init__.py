"""Schema package exports."""
from .booking import BookingRead, BookingSummary
from .payment import PaymentRead, PaymentStateRead, ProcessSuccessRequest, ProcessSuccessResponse

__all__ = [
    "BookingRead",
    "BookingSummary",
    "PaymentRead",
    "PaymentStateRead",
    "ProcessSuccessRequest",
    "ProcessSuccessResponse",
]
