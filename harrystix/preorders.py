"""Pre-order lifecycle: the only code that changes a reservation's status.

Every transition is a compare-and-set on the current status, evaluated by
the store at write time. A caller that loses a race gets InvalidState and
the record is left as the winner wrote it.
"""
from __future__ import annotations
import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

import structlog

from .errors import Conflict, Forbidden, InvalidInput, InvalidState, NotFound
from .helpers import line_total, local_now, week_bounds_ts
from .model.types import (
    CANCELLABLE_STATUSES, MILESTONES, PreOrder, PreOrderStatus, Ticket,
    UserProfile,
)
from .notify import Notifier, send_quietly
from .payments import PaymentAdapter

logger = structlog.get_logger(__name__)

S = PreOrderStatus


async def _transition(
    store, pre_order_id: str, from_statuses: Iterable[PreOrderStatus],
    to_status: PreOrderStatus, now: datetime, *, action: str,
    extra: Optional[Dict[str, Any]] = None, user_id: Optional[str] = None,
) -> PreOrder:
    ts = now.timestamp()
    # only the milestone of the new status stays set
    values: Dict[str, Any] = {col: None for col in MILESTONES.values()}
    if to_status in MILESTONES:
        values[MILESTONES[to_status]] = ts
    values.update(status=to_status, updated_at=ts)
    values.update(extra or {})

    updated = await store.update_guarded(
        pre_order_id, tuple(from_statuses), values, user_id=user_id
    )
    if updated is not None:
        return updated

    current = await store.get_pre_order(pre_order_id)
    if current is None or (user_id is not None and current.user_id != user_id):
        raise NotFound("Pre-order not found")
    raise InvalidState(
        f"Cannot {action} a pre-order that is {current.status.value}"
    )


# ----------------------------
# Member actions
# ----------------------------
async def get_weekly_reservation(
    store, user_id: str, reference: Optional[datetime] = None
) -> Optional[PreOrder]:
    start, end = week_bounds_ts(reference or local_now())
    return await store.find_active_in_range(user_id, start, end)


async def list_reservations(store, user_id: str) -> List[PreOrder]:
    return await store.list_pre_orders(user_id=user_id)


async def ensure_gateway_customer(
    store, gateway: PaymentAdapter, user: UserProfile
) -> str:
    if user.gateway_customer_id:
        return user.gateway_customer_id
    customer_id = await gateway.create_customer(
        email=user.email, name=user.name, metadata={"user_id": user.id}
    )
    await store.set_gateway_customer(user.id, customer_id)
    logger.info("gateway_customer_created", user_id=user.id)
    return customer_id


async def create_reservation(
    store, user_id: str, event_id: str, quantity: Any,
    payment_method_id: Optional[str] = None, *,
    gateway: Optional[PaymentAdapter] = None,
    now: Optional[datetime] = None,
) -> PreOrder:
    now = now or local_now()

    user = await store.get_user_profile(user_id)
    if user is None or not user.is_member:
        raise Forbidden("Only Harry's Club members can place pre-orders")

    if isinstance(quantity, bool) or not isinstance(quantity, int) \
            or quantity < 1:
        raise InvalidInput("Quantity must be a whole number of at least 1")

    event = await store.get_event(event_id)
    if event is None:
        raise NotFound("Event not found")
    if not event.pre_order_open:
        raise InvalidInput("Event is not available for pre-order")

    if await get_weekly_reservation(store, user_id, now) is not None:
        raise Conflict("You already have a pre-order this week")

    customer_id = user.gateway_customer_id
    if payment_method_id and gateway is not None:
        customer_id = await ensure_gateway_customer(store, gateway, user)
        await gateway.attach_payment_method(payment_method_id, customer_id)

    ts = now.timestamp()
    pre_order = PreOrder(
        id=str(uuid.uuid4()),
        user_id=user_id,
        event_id=event_id,
        quantity=quantity,
        total_price=line_total(event.member_price, quantity),
        status=S.PENDING,
        payment_method_id=payment_method_id or None,
        gateway_customer_id=customer_id if payment_method_id else None,
        created_at=ts,
        updated_at=ts,
    )
    created = await store.create_pre_order(pre_order)
    logger.info(
        "pre_order_created",
        pre_order_id=created.id,
        user_id=user_id,
        event_id=event_id,
        quantity=quantity,
        total_price=created.total_price,
        has_payment_method=bool(created.payment_method_id),
    )
    return created


async def cancel_reservation(
    store, pre_order_id: str, requesting_user_id: str,
    now: Optional[datetime] = None,
) -> PreOrder:
    cancelled = await _transition(
        store, pre_order_id, CANCELLABLE_STATUSES, S.CANCELLED,
        now or local_now(), action="cancel", user_id=requesting_user_id,
    )
    logger.info("pre_order_cancelled", pre_order_id=pre_order_id)
    return cancelled


# ----------------------------
# Admin actions
# ----------------------------
async def approve(
    store, pre_order_id: str, now: Optional[datetime] = None, *,
    extra: Optional[Dict[str, Any]] = None,
) -> PreOrder:
    approved = await _transition(
        store, pre_order_id, (S.PENDING,), S.APPROVED, now or local_now(),
        action="approve", extra=extra,
    )
    logger.info("pre_order_approved", pre_order_id=pre_order_id)
    return approved


async def reject(
    store, pre_order_id: str, now: Optional[datetime] = None, *,
    extra: Optional[Dict[str, Any]] = None,
) -> PreOrder:
    # no separate "rejected" status: rejection is a failure
    rejected = await _transition(
        store, pre_order_id, (S.PENDING,), S.FAILED, now or local_now(),
        action="reject", extra=extra,
    )
    logger.info("pre_order_rejected", pre_order_id=pre_order_id)
    return rejected


async def admin_cancel(
    store, pre_order_id: str, now: Optional[datetime] = None, *,
    extra: Optional[Dict[str, Any]] = None,
) -> PreOrder:
    return await _transition(
        store, pre_order_id, CANCELLABLE_STATUSES, S.CANCELLED,
        now or local_now(), action="cancel", extra=extra,
    )


PAYMENT_FIELDS_LOCKED = \
    "Payment details can only change while pending or approved"


def _payment_fields(payment_method_id: Optional[str],
                    gateway_customer_id: Optional[str]) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    if payment_method_id is not None:
        values["payment_method_id"] = payment_method_id
    if gateway_customer_id is not None:
        values["gateway_customer_id"] = gateway_customer_id
    return values


async def attach_payment_method(
    store, pre_order_id: str, *, payment_method_id: Optional[str] = None,
    gateway_customer_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> PreOrder:
    values = _payment_fields(payment_method_id, gateway_customer_id)
    values["updated_at"] = (now or local_now()).timestamp()
    updated = await store.update_guarded(
        pre_order_id, CANCELLABLE_STATUSES, values
    )
    if updated is not None:
        return updated
    current = await store.get_pre_order(pre_order_id)
    if current is None:
        raise NotFound("Pre-order not found")
    raise InvalidState(PAYMENT_FIELDS_LOCKED)


ADMIN_STATUS_ACTIONS = {
    "approved": approve,
    "failed": reject,
    "rejected": reject,
    "cancelled": admin_cancel,
}


async def apply_admin_update(
    store, pre_order_id: str, payload: Dict[str, Any], *,
    notifier: Optional[Notifier] = None, now: Optional[datetime] = None,
) -> PreOrder:
    """Payment fields and the status change land together or not at all."""
    now = now or local_now()
    status = payload.get("status")
    fields = _payment_fields(payload.get("payment_method_id"),
                             payload.get("gateway_customer_id"))

    if status is not None and status != "paid" \
            and status not in ADMIN_STATUS_ACTIONS:
        raise InvalidInput(f"Unsupported status: {status}")

    if status == "paid":
        if fields:
            # paid needs processing, payment fields need pending/approved
            if await store.get_pre_order(pre_order_id) is None:
                raise NotFound("Pre-order not found")
            raise InvalidState(PAYMENT_FIELDS_LOCKED)
        result = await complete_payment(
            store, pre_order_id, notifier=notifier, now=now
        )
    elif status is not None:
        result = await ADMIN_STATUS_ACTIONS[status](
            store, pre_order_id, now, extra=fields
        )
    elif fields:
        result = await attach_payment_method(
            store, pre_order_id, now=now, **fields
        )
    else:
        result = None

    if result is None:
        result = await store.get_pre_order(pre_order_id)
        if result is None:
            raise NotFound("Pre-order not found")
    return result


async def list_all_reservations(store) -> List[Dict[str, Any]]:
    items = []
    events: Dict[str, Any] = {}
    users: Dict[str, Any] = {}
    for p in await store.list_pre_orders():
        if p.event_id not in events:
            events[p.event_id] = await store.get_event(p.event_id)
        if p.user_id not in users:
            users[p.user_id] = await store.get_user_profile(p.user_id)
        event, user = events[p.event_id], users[p.user_id]
        item = p.to_dict()
        item["event"] = event.summary() if event else None
        item["user"] = user.summary() if user else None
        items.append(item)
    return items


# ----------------------------
# Fulfillment and gateway confirmation
# ----------------------------
async def mark_processing(
    store, pre_order_id: str, intent_id: str,
    now: Optional[datetime] = None,
) -> PreOrder:
    return await _transition(
        store, pre_order_id, (S.APPROVED,), S.PROCESSING, now or local_now(),
        action="charge", extra={"gateway_payment_intent_id": intent_id},
    )


async def mark_failed(
    store, pre_order_id: str, from_statuses: Iterable[PreOrderStatus],
    now: Optional[datetime] = None,
) -> PreOrder:
    return await _transition(
        store, pre_order_id, from_statuses, S.FAILED, now or local_now(),
        action="fail",
    )


async def confirm_paid(
    store, pre_order_id: str, now: Optional[datetime] = None
) -> Optional[PreOrder]:
    """processing -> paid. None when it was already paid (replay)."""
    try:
        return await _transition(
            store, pre_order_id, (S.PROCESSING,), S.PAID, now or local_now(),
            action="confirm payment for",
        )
    except InvalidState:
        current = await store.get_pre_order(pre_order_id)
        if current is not None and current.status == S.PAID:
            return None
        raise


async def complete_payment(
    store, pre_order_id: str, *, notifier: Optional[Notifier] = None,
    now: Optional[datetime] = None,
) -> Optional[PreOrder]:
    now = now or local_now()
    paid = await confirm_paid(store, pre_order_id, now)
    if paid is None:
        logger.info("pre_order_already_paid", pre_order_id=pre_order_id)
        return None

    ticket = await store.create_ticket(Ticket(
        id=str(uuid.uuid4()),
        event_id=paid.event_id,
        user_id=paid.user_id,
        pre_order_id=paid.id,
        quantity=paid.quantity,
        total_price=paid.total_price,
        confirmation_code=f"HTX-{uuid.uuid4().hex[:6].upper()}",
        created_at=now.timestamp(),
    ))
    logger.info(
        "pre_order_paid",
        pre_order_id=paid.id,
        confirmation_code=ticket.confirmation_code,
    )

    if notifier is not None:
        user = await store.get_user_profile(paid.user_id)
        if user is not None:
            await send_quietly(
                notifier.pre_order_paid(user, paid, ticket),
                kind="pre_order_paid", pre_order_id=paid.id,
            )
    return paid


async def fail_payment(
    store, pre_order_id: str, *, notifier: Optional[Notifier] = None,
    now: Optional[datetime] = None,
) -> Optional[PreOrder]:
    """Gateway reported the submitted charge as failed."""
    try:
        failed = await mark_failed(
            store, pre_order_id, (S.PROCESSING,), now
        )
    except InvalidState:
        current = await store.get_pre_order(pre_order_id)
        if current is not None and current.status == S.FAILED:
            return None
        raise
    logger.warning("pre_order_payment_failed", pre_order_id=pre_order_id)
    if notifier is not None:
        user = await store.get_user_profile(failed.user_id)
        if user is not None:
            await send_quietly(
                notifier.pre_order_failed(user, failed),
                kind="pre_order_failed", pre_order_id=failed.id,
            )
    return failed
