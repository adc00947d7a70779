"""
Payment Service

Creates payment attempts for orders and applies provider outcomes
(redirect callbacks and signed webhooks) back onto payments and orders.
"""
import logging
from datetime import datetime, timedelta

from sqlalchemy import and_, or_
from sqlmodel import Session, select

from .errors import InvalidState, NotFound, ProviderError
from .fanout import Fanout
from .models import (
    CustomerInfo,
    Order,
    OrderStatus,
    Payment,
    PaymentRecordStatus,
    PaymentStatus,
    utcnow,
)
from .orders_service import ensure_can_read, get_order_or_404, order_snapshot
from .payment_provider import PaymentProvider, PaymentProviderError
from .security import Identity
from .settings import settings

logger = logging.getLogger(__name__)

# A payment blocks new attempts while it sits at the provider in one of these states
ACTIVE_STATUSES = (PaymentRecordStatus.created, PaymentRecordStatus.authorized)


def payment_status_payload(payment: Payment, order: Order) -> dict:
    return {
        "order_id": order.id,
        "payment_id": payment.id,
        "status": payment.status.value,
        "payment_status": order.payment_status.value,
        "amount_cents": payment.amount_cents,
    }


def find_active_payment(session: Session, order_id: int, now: datetime | None = None) -> Payment | None:
    """
    A payment that should block a new attempt: one that reached the provider,
    or one whose provider call may still be running.
    """
    in_flight_since = (now or utcnow()) - timedelta(seconds=settings.payment_provider_timeout_seconds)
    return session.exec(
        select(Payment).where(
            Payment.order_id == order_id,
            Payment.status.in_(ACTIVE_STATUSES),
            or_(
                Payment.provider_payment_id.is_not(None),
                and_(
                    Payment.provider_error.is_(None),
                    Payment.created_at >= in_flight_since,
                ),
            ),
        )
    ).first()


def create_payment(
    session: Session,
    provider: PaymentProvider,
    order_id: int,
    customer_info: CustomerInfo | None = None,
) -> dict:
    # Row lock on the order serialises the check and insert (Postgres)
    order = session.exec(select(Order).where(Order.id == order_id).with_for_update()).first()
    if order is None:
        raise NotFound("Order not found")
    if order.status == OrderStatus.cancelled:
        raise InvalidState("Cannot pay for a cancelled order")
    if order.payment_status != PaymentStatus.pending:
        raise InvalidState("Payment already processed for this order")
    if find_active_payment(session, order.id) is not None:
        raise InvalidState("A payment is already in progress for this order")

    payment = Payment(
        order_id=order.id,
        amount_cents=order.total_cents,
        currency=settings.stripe_currency,
        provider=provider.name,
        customer_email=customer_info.email if customer_info else None,
    )
    session.add(payment)
    session.flush()
    payment_id, amount_cents = payment.id, payment.amount_cents
    # Releases the order lock; the new row blocks other attempts while the provider call runs
    session.commit()

    try:
        checkout = provider.initiate(order_id, amount_cents, customer_info)
    except PaymentProviderError as e:
        payment.provider_error = str(e)[:500]
        payment.updated_at = utcnow()
        session.add(payment)
        session.commit()
        logger.error(f"Payment provider failed for order #{order_id} (payment #{payment_id}): {e}")
        raise ProviderError("Failed to create payment, please try again") from e

    payment.provider_payment_id = checkout.transaction_id
    payment.updated_at = utcnow()
    session.add(payment)
    session.commit()
    logger.info(f"Payment #{payment_id} created for order #{order_id} ({checkout.transaction_id})")

    return {"payment_url": checkout.redirect_url, "payment_id": payment_id}


def find_payment_by_transaction(session: Session, provider_transaction_id: str) -> Payment:
    payment = session.exec(
        select(Payment)
        .where(Payment.provider_payment_id == provider_transaction_id)
        .with_for_update()
    ).first()
    if payment is None:
        raise NotFound("Payment not found")
    return payment


def reconcile(
    session: Session,
    fanout: Fanout,
    provider_transaction_id: str,
    success: bool,
) -> Payment:
    """
    Apply a provider outcome to the payment and its order.

    Setting a value that is already set is a no-op, so callbacks and webhooks
    for the same transaction can arrive in any order and any number of times.
    """
    try:
        payment = find_payment_by_transaction(session, provider_transaction_id)
    except NotFound:
        logger.warning(f"Reconciliation for unknown transaction {provider_transaction_id}")
        raise

    order = session.get(Order, payment.order_id)
    target = PaymentRecordStatus.captured if success else PaymentRecordStatus.failed

    if payment.status == target:
        logger.info(f"Payment #{payment.id} already {target.value}; nothing to do")
        return payment
    if payment.status == PaymentRecordStatus.captured:
        logger.warning(f"Ignoring failure outcome for captured payment #{payment.id}")
        return payment

    payment.status = target
    payment.updated_at = utcnow()
    session.add(payment)
    if success:
        order.payment_status = PaymentStatus.completed
        session.add(order)
    session.commit()
    session.refresh(payment)
    session.refresh(order)
    logger.info(f"Payment #{payment.id} for order #{order.id} reconciled as {target.value}")

    fanout.payment_status_updated(order.table_id, payment_status_payload(payment, order))
    return payment


def check_payment_status(session: Session, order_id: int, identity: Identity) -> dict:
    order = get_order_or_404(session, order_id)
    ensure_can_read(order, identity)

    payment = session.exec(
        select(Payment)
        .where(Payment.order_id == order.id)
        .order_by(Payment.created_at.desc(), Payment.id.desc())
    ).first()
    if payment is None:
        raise NotFound("Payment not found")

    return {
        **payment_status_payload(payment, order),
        "order_status": order.status.value,
    }


def get_payment(session: Session, payment_id: int) -> dict:
    payment = session.get(Payment, payment_id)
    if payment is None:
        raise NotFound("Payment not found")
    order = session.get(Order, payment.order_id)
    return {
        "id": payment.id,
        "amount_cents": payment.amount_cents,
        "currency": payment.currency,
        "provider": payment.provider,
        "provider_payment_id": payment.provider_payment_id,
        "status": payment.status.value,
        "provider_error": payment.provider_error,
        "customer_email": payment.customer_email,
        "receipt_url": payment.receipt_url,
        "created_at": payment.created_at.isoformat(),
        "updated_at": payment.updated_at.isoformat(),
        "order": order_snapshot(session, order),
    }
