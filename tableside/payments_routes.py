import logging
from typing import Annotated
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import RedirectResponse
from sqlmodel import Session

from . import models, orders_service, payments_service, security
from .db import get_session
from .errors import InvalidInput, TablesideError, Unauthenticated
from .fanout import Fanout, get_fanout
from .payment_provider import PaymentProvider, PaymentProviderError, get_payment_provider
from .security import Identity, RoleChecker
from .settings import settings

logger = logging.getLogger(__name__)

router = APIRouter()

SIGNATURE_HEADER = "Stripe-Signature"


def _status_page(**params) -> RedirectResponse:
    url = f"{settings.client_url.rstrip('/')}/payment/status?{urlencode(params)}"
    return RedirectResponse(url, status_code=303)


@router.post("/create")
def create_payment(
    payment_data: models.PaymentCreate,
    identity: Annotated[Identity, Depends(security.get_identity)],
    provider: Annotated[PaymentProvider, Depends(get_payment_provider)],
    session: Session = Depends(get_session),
) -> dict:
    """Start a payment for an order; returns the provider page to redirect to."""
    order = orders_service.get_order_or_404(session, payment_data.order_id)
    orders_service.ensure_can_read(order, identity)
    return payments_service.create_payment(
        session, provider, payment_data.order_id, payment_data.customer_info
    )


@router.get("/status/{order_id}")
def check_payment_status(
    order_id: int,
    identity: Annotated[Identity, Depends(security.get_identity)],
    session: Session = Depends(get_session),
) -> dict:
    return payments_service.check_payment_status(session, order_id, identity)


@router.get("/callback")
def payment_callback(
    session_id: str,
    provider: Annotated[PaymentProvider, Depends(get_payment_provider)],
    fanout: Annotated[Fanout, Depends(get_fanout)],
    session: Session = Depends(get_session),
):
    """
    Provider redirect after checkout.

    The outcome is read back from the provider, never from the query string,
    and then the customer is sent on to the frontend status page.
    """
    try:
        outcome = provider.fetch_outcome(session_id)
        if outcome is None:
            payment = payments_service.find_payment_by_transaction(session, session_id)
        else:
            payment = payments_service.reconcile(session, fanout, session_id, outcome)
    except (TablesideError, PaymentProviderError) as e:
        logger.warning(f"Payment callback failed for {session_id}: {e}")
        return _status_page(error="payment_failed")

    return _status_page(orderId=payment.order_id, status=payment.status.value)


@router.post("/webhook")
async def payment_webhook(
    request: Request,
    provider: Annotated[PaymentProvider, Depends(get_payment_provider)],
    fanout: Annotated[Fanout, Depends(get_fanout)],
    session: Session = Depends(get_session),
) -> dict:
    """Server-to-server notification from the provider; must carry a valid signature."""
    payload = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER)

    if not provider.verify_signature(payload, signature):
        client_host = request.client.host if request.client else "unknown"
        logger.warning(f"Rejected payment webhook with invalid signature from {client_host}")
        raise Unauthenticated("Invalid webhook signature")

    try:
        outcome = provider.parse_event(payload)
    except ValueError:
        raise InvalidInput("Malformed webhook payload")
    if outcome is None:
        return {"received": True}

    await run_in_threadpool(
        payments_service.reconcile, session, fanout, outcome.transaction_id, outcome.success
    )
    return {"received": True}


@router.get("/{payment_id}")
def get_payment_details(
    payment_id: int,
    current_user: Annotated[models.User, Depends(RoleChecker(models.Role.admin))],
    session: Session = Depends(get_session),
) -> dict:
    return payments_service.get_payment(session, payment_id)
