"""
Order Service

Order lifecycle operations:
- Order creation from a cart, with catalog price snapshots
- Role-gated status transitions (rules live in order_states)
- Customer/admin cancellation
- Scoped reads for staff, customer sessions and public receipts

Each write commits first and only then touches table occupancy and publishes
to the realtime fan-out.
"""
import logging
from datetime import datetime, timedelta

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from . import order_states
from .errors import Forbidden, InvalidInput, InvalidState, NotFound, Unavailable
from .fanout import Fanout
from .models import (
    MenuItem,
    Order,
    OrderItem,
    OrderLineCreate,
    OrderStatus,
    Role,
    Table,
    as_utc,
    utcnow,
)
from .security import Identity
from .settings import settings

logger = logging.getLogger(__name__)

MAX_INSTRUCTIONS_LENGTH = 200


def _iso(value: datetime | None) -> str | None:
    return as_utc(value).isoformat() if value else None


def find_table(session: Session, table_id: int) -> Table:
    table = session.get(Table, table_id)
    if table is None:
        raise NotFound(f"Table not found with id of {table_id}")
    return table


def find_menu_item(session: Session, menu_item_id: int) -> MenuItem:
    item = session.get(MenuItem, menu_item_id)
    if item is None:
        raise NotFound(f"Menu item not found with id of {menu_item_id}")
    return item


def get_order_or_404(session: Session, order_id: int) -> Order:
    order = session.get(Order, order_id)
    if order is None:
        raise NotFound(f"Order not found with id of {order_id}")
    return order


def set_table_occupied(session: Session, table_id: int, occupied: bool) -> None:
    """
    Flip table occupancy after an order change has been committed.

    A failure here is logged and left for staff to fix by hand; the order
    change that triggered it stands.
    """
    try:
        table = session.get(Table, table_id)
        if table is None:
            logger.warning(f"Table {table_id} vanished before occupancy update")
            return
        if table.is_occupied != occupied:
            table.is_occupied = occupied
            session.add(table)
            session.commit()
    except SQLAlchemyError as e:
        session.rollback()
        logger.error(f"Failed to set table {table_id} occupied={occupied}: {e}", exc_info=True)


def order_snapshot(session: Session, order: Order) -> dict:
    """Full current state of an order, with lines expanded for display."""
    table = session.get(Table, order.table_id)
    items = []
    for line in order.items:
        menu_item = session.get(MenuItem, line.menu_item_id)
        items.append({
            "id": line.id,
            "menu_item_id": line.menu_item_id,
            "name": line.menu_item_name,
            "description": menu_item.description if menu_item else None,
            "image_url": menu_item.image_url if menu_item else None,
            "quantity": line.quantity,
            "price_cents": line.price_cents,
            "line_total_cents": line.price_cents * line.quantity,
            "special_instructions": line.special_instructions,
        })
    return {
        "id": order.id,
        "table_id": order.table_id,
        "table_number": table.table_number if table else None,
        "status": order.status.value,
        "payment_status": order.payment_status.value,
        "total_cents": order.total_cents,
        "notes": order.notes,
        "created_at": _iso(order.created_at),
        "prepared_at": _iso(order.prepared_at),
        "ready_at": _iso(order.ready_at),
        "delivered_at": _iso(order.delivered_at),
        "cancelled_at": _iso(order.cancelled_at),
        "cancelled_by": order.cancelled_by.value if order.cancelled_by else None,
        "items": items,
    }


def create_order(
    session: Session,
    fanout: Fanout,
    table_id: int,
    lines: list[OrderLineCreate],
    session_id: str | None,
    notes: str | None = None,
) -> dict:
    table = find_table(session, table_id)

    if not lines:
        raise InvalidInput("Order must have at least one item")

    order_items = []
    for line in lines:
        if line.quantity < 1:
            raise InvalidInput("Quantity must be at least 1")
        if line.special_instructions and len(line.special_instructions) > MAX_INSTRUCTIONS_LENGTH:
            raise InvalidInput(
                f"Special instructions cannot be more than {MAX_INSTRUCTIONS_LENGTH} characters"
            )

        menu_item = find_menu_item(session, line.menu_item_id)
        if not menu_item.is_available:
            raise Unavailable(f"Menu item {menu_item.name} is not available")

        order_items.append(OrderItem(
            menu_item_id=menu_item.id,
            menu_item_name=menu_item.name,
            quantity=line.quantity,
            price_cents=menu_item.price_cents,
            special_instructions=line.special_instructions,
        ))

    order = Order(
        table_id=table.id,
        customer_session_id=session_id,
        notes=notes,
        total_cents=sum(item.price_cents * item.quantity for item in order_items),
        items=order_items,
    )
    session.add(order)
    session.commit()
    session.refresh(order)
    logger.info(f"Order #{order.id} placed at table {table.table_number} ({order.total_cents} cents)")

    set_table_occupied(session, table.id, True)

    snapshot = order_snapshot(session, order)
    fanout.order_created(snapshot)
    return snapshot


def _write_status(
    session: Session,
    order: Order,
    target: OrderStatus,
    now: datetime,
    **extra,
) -> None:
    """
    Move `order` to `target` only if nobody else changed it since it was read.

    The UPDATE is conditional on the status and version that were loaded;
    losing that race is reported as InvalidState.
    """
    values = {"status": target, "version": order.version + 1, **extra}
    stamp = order_states.STATUS_TIMESTAMPS.get(target)
    if stamp:
        values[stamp] = now

    result = session.exec(
        update(Order)
        .where(
            Order.id == order.id,
            Order.status == order.status,
            Order.version == order.version,
        )
        .values(**values)
    )
    if result.rowcount != 1:
        session.rollback()
        raise InvalidState("Order was changed by someone else; reload and try again")
    session.commit()
    session.refresh(order)


def update_status(
    session: Session,
    fanout: Fanout,
    order_id: int,
    new_status: OrderStatus,
    acting_role: Role,
    now: datetime | None = None,
) -> dict:
    order_states.authorize_transition(acting_role, new_status)
    order = get_order_or_404(session, order_id)
    order_states.check_transition(order.status, new_status)

    previous = order.status
    extra = {}
    if new_status == OrderStatus.cancelled:
        extra["cancelled_by"] = acting_role
    _write_status(session, order, new_status, now or utcnow(), **extra)
    logger.info(f"Order #{order.id} status {previous.value} -> {new_status.value} by {acting_role.value}")

    if new_status in order_states.FREES_TABLE:
        set_table_occupied(session, order.table_id, False)

    snapshot = order_snapshot(session, order)
    fanout.order_status_updated(snapshot)
    return snapshot


def cancel_order(
    session: Session,
    fanout: Fanout,
    order_id: int,
    acting_role: Role,
    session_id: str | None,
    now: datetime | None = None,
) -> dict:
    now = now or utcnow()
    order = get_order_or_404(session, order_id)

    if order.status != OrderStatus.placed:
        raise InvalidState("Only placed orders can be cancelled")

    if acting_role != Role.admin:
        if session_id is None or order.customer_session_id != session_id:
            raise Forbidden("Not authorized to cancel this order")
        window = timedelta(minutes=settings.customer_cancel_window_minutes)
        if now - as_utc(order.created_at) > window:
            raise Forbidden("Cancellation time has expired. Please contact staff.")

    cancelled_by = Role.admin if acting_role == Role.admin else Role.customer
    _write_status(session, order, OrderStatus.cancelled, now, cancelled_by=cancelled_by)
    logger.info(f"Order #{order.id} cancelled by {cancelled_by.value}")

    set_table_occupied(session, order.table_id, False)

    snapshot = order_snapshot(session, order)
    fanout.order_status_updated(snapshot)
    return snapshot


def ensure_can_read(order: Order, identity: Identity) -> None:
    if identity.is_staff:
        return
    if identity.session_id is None or order.customer_session_id != identity.session_id:
        raise Forbidden("Not authorized to access this order")


def get_order(session: Session, order_id: int, identity: Identity) -> dict:
    order = get_order_or_404(session, order_id)
    ensure_can_read(order, identity)
    return order_snapshot(session, order)


def list_orders(session: Session, identity: Identity) -> list[dict]:
    statement = select(Order)
    if identity.is_staff:
        statuses = order_states.ROLE_LIST_FILTERS.get(identity.role)
        if statuses:
            statement = statement.where(Order.status.in_(list(statuses)))
    else:
        statement = statement.where(Order.customer_session_id == identity.session_id)

    orders = session.exec(statement.order_by(Order.created_at.desc(), Order.id.desc())).all()
    return [order_snapshot(session, order) for order in orders]


def list_table_orders(session: Session, table_id: int, identity: Identity) -> list[dict]:
    """Active orders at a table; customers only see their own."""
    find_table(session, table_id)
    statement = select(Order).where(
        Order.table_id == table_id,
        Order.status.not_in(list(order_states.TERMINAL_STATUSES)),
    )
    if not identity.is_staff:
        statement = statement.where(Order.customer_session_id == identity.session_id)

    orders = session.exec(statement.order_by(Order.created_at.desc(), Order.id.desc())).all()
    return [order_snapshot(session, order) for order in orders]


def get_order_receipt(session: Session, order_id: int, now: datetime | None = None) -> dict:
    """
    Public lookup by id for receipts and QR status pages.

    Only an age limit applies; this is not an authorization check.
    """
    order = get_order_or_404(session, order_id)
    max_age = timedelta(hours=settings.public_order_access_hours)
    if (now or utcnow()) - as_utc(order.created_at) > max_age:
        raise Forbidden("Order access expired")
    return order_snapshot(session, order)
