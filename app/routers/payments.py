"""Client-facing payment confirmation and polling endpoints."""
from fastapi import APIRouter, Body, Depends, HTTPException, status
from sqlalchemy.orm import Session

from app.db import get_db
from app.schemas.booking import BookingRead, BookingSummary
from app.schemas.payment import PaymentRead, PaymentStateRead, ProcessSuccessRequest, ProcessSuccessResponse
from app.security import optional_session
from app.services import payment_processing
from app.services.identity import SessionIdentity
from app.services.psp_stripe import StripeClient
from app.utils.errors import error_response

router = APIRouter(prefix="/payments", tags=["payments"])


def get_stripe_client() -> StripeClient:
    try:
        return StripeClient.from_env()
    except RuntimeError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=error_response("STRIPE_NOT_CONFIGURED", str(exc)),
        )


@router.post(
    "/{payment_intent_id}/process-success",
    response_model=ProcessSuccessResponse,
    status_code=status.HTTP_200_OK,
)
def process_success(
    payment_intent_id: str,
    payload: ProcessSuccessRequest | None = Body(default=None),
    db: Session = Depends(get_db),
    session: SessionIdentity | None = Depends(optional_session),
    gateway: StripeClient = Depends(get_stripe_client),
) -> ProcessSuccessResponse:
    """Confirm a checkout from the client right after payment and return its booking."""

    result = payment_processing.process_payment_success(
        db,
        payment_intent_id,
        session=session,
        provided_email=payload.customer_email if payload else None,
        source="client_confirm",
        gateway=gateway,
    )
    return ProcessSuccessResponse(
        booking=BookingRead.model_validate(result.booking),
        created=result.created,
        message="Booking confirmed." if result.created else "Booking was already confirmed.",
    )


@router.get("/{payment_intent_id}", response_model=PaymentStateRead)
def get_payment_state(
    payment_intent_id: str,
    db: Session = Depends(get_db),
    gateway: StripeClient = Depends(get_stripe_client),
) -> PaymentStateRead:
    """Read-only payment and booking state for the client polling loop."""

    state = payment_processing.get_payment_state(db, payment_intent_id, gateway=gateway)
    payment, booking = state["payment"], state["booking"]
    return PaymentStateRead(
        payment_intent_id=payment_intent_id,
        gateway_status=state["gateway_status"],
        payment=PaymentRead.model_validate(payment) if payment is not None else None,
        booking=BookingSummary.model_validate(booking) if booking is not None else None,
        booking_exists=state["booking_exists"],
        next_action=state["next_action"],
    )
