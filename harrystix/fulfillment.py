"""Weekly pre-order fulfillment.

At the weekly trigger every approved reservation is charged off-session
with its saved card. A successful submission only moves the reservation to
`processing`; `paid` waits for the gateway's confirmation webhook.
"""
from __future__ import annotations
import os
from datetime import datetime
from typing import List, Optional, Sequence, TypedDict

import structlog

from .errors import GatewayError, InvalidState
from .helpers import local_now, to_minor_units
from .model.types import PreOrder, PreOrderStatus
from .payments import PaymentAdapter
from . import preorders

logger = structlog.get_logger(__name__)

# Python weekday(): Monday=0, so Tuesday=1
FULFILLMENT_WEEKDAY = int(os.getenv("FULFILLMENT_WEEKDAY", "1"))
FULFILLMENT_HOUR = int(os.getenv("FULFILLMENT_HOUR", "19"))
PAYMENT_CURRENCY = os.getenv("PAYMENT_CURRENCY", "gbp").lower()

S = PreOrderStatus


class _OutcomeBase(TypedDict):
    pre_order_id: str
    status: str


class FulfillmentOutcome(_OutcomeBase, total=False):
    gateway_payment_intent_id: str
    error: str


def is_fulfillment_window(
    now: datetime, weekday: int = FULFILLMENT_WEEKDAY,
    hour: int = FULFILLMENT_HOUR,
) -> bool:
    return now.weekday() == weekday and now.hour == hour


def window_key(now: datetime) -> str:
    return f"{now.date().isoformat()}T{now.hour:02d}"


def _failed(pre_order_id: str, error: str) -> FulfillmentOutcome:
    return {"pre_order_id": pre_order_id, "status": S.FAILED.value,
            "error": error}


async def _fail_quietly(store, pre_order_id: str, now: datetime) -> None:
    try:
        await preorders.mark_failed(store, pre_order_id, (S.APPROVED,), now)
    except InvalidState:
        # moved on (e.g. cancelled) while we were charging
        logger.warning("pre_order_fail_skipped", pre_order_id=pre_order_id)


async def charge_reservation(
    store, gateway: PaymentAdapter, pre_order: PreOrder,
    now: Optional[datetime] = None, currency: str = PAYMENT_CURRENCY,
) -> FulfillmentOutcome:
    """Charge one approved reservation. Never raises on gateway failure."""
    now = now or local_now()
    log = logger.bind(pre_order_id=pre_order.id)

    if not pre_order.payment_method_id or not pre_order.gateway_customer_id:
        log.error("pre_order_missing_payment_info")
        await _fail_quietly(store, pre_order.id, now)
        return _failed(pre_order.id, "Missing payment information")

    try:
        charge = await gateway.charge_off_session(
            customer_id=pre_order.gateway_customer_id,
            payment_method_id=pre_order.payment_method_id,
            amount_minor_units=to_minor_units(pre_order.total_price),
            currency=currency,
            metadata={
                "pre_order_id": pre_order.id,
                "event_id": pre_order.event_id,
                "user_id": pre_order.user_id,
            },
            idempotency_key=f"pre-order-{pre_order.id}",
        )
    except GatewayError as e:
        log.warning("pre_order_charge_failed", code=e.code, error=e.message)
        await _fail_quietly(store, pre_order.id, now)
        return _failed(pre_order.id, e.message)

    intent_id = charge["intent_id"]
    try:
        await preorders.mark_processing(store, pre_order.id, intent_id, now)
    except InvalidState as e:
        # charge went through but the record moved meanwhile
        log.error("pre_order_charged_after_state_change",
                  gateway_payment_intent_id=intent_id, error=e.detail)
        current = await store.get_pre_order(pre_order.id)
        return {
            "pre_order_id": pre_order.id,
            "status": current.status.value if current else S.FAILED.value,
            "gateway_payment_intent_id": intent_id,
            "error": e.detail,
        }

    log.info("pre_order_payment_initiated",
             gateway_payment_intent_id=intent_id)
    return {
        "pre_order_id": pre_order.id,
        "status": S.PROCESSING.value,
        "gateway_payment_intent_id": intent_id,
    }


async def _charge_isolated(store, gateway, pre_order, now):
    try:
        return await charge_reservation(store, gateway, pre_order, now)
    except Exception as e:
        # one broken item must not abort the batch
        logger.exception("pre_order_fulfillment_error",
                         pre_order_id=pre_order.id)
        try:
            await _fail_quietly(store, pre_order.id, now)
        except Exception:
            logger.exception("pre_order_fail_write_error",
                             pre_order_id=pre_order.id)
        return _failed(pre_order.id, str(e))


async def run_fulfillment(
    store, gateway: PaymentAdapter, now: Optional[datetime] = None
) -> List[FulfillmentOutcome]:
    now = now or local_now()
    approved = await store.list_pre_orders(status=S.APPROVED)
    logger.info("weekly_fulfillment_started", count=len(approved))

    results: List[FulfillmentOutcome] = []
    for pre_order in approved:
        results.append(await _charge_isolated(store, gateway, pre_order, now))

    logger.info(
        "weekly_fulfillment_completed",
        count=len(results),
        processing=sum(r["status"] == S.PROCESSING.value for r in results),
        failed=sum(r["status"] == S.FAILED.value for r in results),
    )
    return results


async def fulfill_selected(
    store, gateway: PaymentAdapter, pre_order_ids: Sequence[str],
    now: Optional[datetime] = None,
) -> List[FulfillmentOutcome]:
    """Admin "approve & charge now": no window check."""
    now = now or local_now()
    results: List[FulfillmentOutcome] = []
    for pre_order_id in pre_order_ids:
        pre_order = await store.get_pre_order(pre_order_id)
        if pre_order is None or pre_order.status not in (S.PENDING,
                                                         S.APPROVED):
            results.append(_failed(pre_order_id, "Invalid pre-order"))
            continue
        if pre_order.status == S.PENDING:
            try:
                pre_order = await preorders.approve(store, pre_order_id, now)
            except InvalidState:
                results.append(_failed(pre_order_id, "Invalid pre-order"))
                continue
        results.append(await _charge_isolated(store, gateway, pre_order, now))
    return results


async def scheduled_fulfillment(
    store, gateway: PaymentAdapter, gate, now: Optional[datetime] = None
) -> Optional[List[FulfillmentOutcome]]:
    """Tick entry point. None outside the weekly window."""
    now = now or local_now()
    if not is_fulfillment_window(now):
        logger.debug("scheduled_fulfillment_skipped", now=now.isoformat())
        return None
    if not await gate.claim(window_key(now)):
        logger.debug("scheduled_fulfillment_already_ran",
                     window=window_key(now))
        return []
    return await run_fulfillment(store, gateway, now)
