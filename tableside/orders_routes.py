from typing import Annotated

from fastapi import APIRouter, Depends, status
from sqlmodel import Session

from . import models, orders_service, security
from .db import get_session
from .fanout import Fanout, get_fanout
from .security import Identity

router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
def create_order(
    order_data: models.OrderCreate,
    identity: Annotated[Identity, Depends(security.get_identity)],
    fanout: Annotated[Fanout, Depends(get_fanout)],
    session: Session = Depends(get_session),
) -> dict:
    """Place an order for a table (customers via QR code, or staff on their behalf)."""
    # Staff-entered orders are not bound to a browser session
    session_id = None if identity.is_staff else identity.session_id
    return orders_service.create_order(
        session,
        fanout,
        table_id=order_data.table_id,
        lines=order_data.items,
        session_id=session_id,
        notes=order_data.notes,
    )


@router.get("")
def list_orders(
    identity: Annotated[Identity, Depends(security.get_identity)],
    session: Session = Depends(get_session),
) -> list[dict]:
    """Kitchen sees placed/preparing, runners see ready, admin sees all, customers their own."""
    return orders_service.list_orders(session, identity)


@router.get("/public/{order_id}")
def get_order_public(order_id: int, session: Session = Depends(get_session)) -> dict:
    """Receipt lookup by id, available for a limited time after the order was placed."""
    return orders_service.get_order_receipt(session, order_id)


@router.get("/{order_id}")
def get_order(
    order_id: int,
    identity: Annotated[Identity, Depends(security.get_identity)],
    session: Session = Depends(get_session),
) -> dict:
    return orders_service.get_order(session, order_id, identity)


@router.put("/{order_id}/status")
def update_order_status(
    order_id: int,
    status_update: models.OrderStatusUpdate,
    current_user: Annotated[models.User, Depends(security.get_current_user)],
    fanout: Annotated[Fanout, Depends(get_fanout)],
    session: Session = Depends(get_session),
) -> dict:
    """Staff status change; also the target of socket-initiated updates from the bridge."""
    return orders_service.update_status(
        session, fanout, order_id, status_update.status, current_user.role
    )


@router.put("/{order_id}/cancel")
def cancel_order(
    order_id: int,
    identity: Annotated[Identity, Depends(security.get_identity)],
    fanout: Annotated[Fanout, Depends(get_fanout)],
    session: Session = Depends(get_session),
) -> dict:
    """Admin at any time, or the ordering customer within the cancellation window."""
    return orders_service.cancel_order(
        session, fanout, order_id, identity.role, identity.session_id
    )
