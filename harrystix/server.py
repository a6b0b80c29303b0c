from __future__ import annotations

import asyncio
import os
from datetime import datetime
from typing import Callable, Optional

import httpx
import redis.asyncio as redis
import structlog

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import ORJSONResponse
from starlette.middleware.sessions import SessionMiddleware

from .logs import configure_logging
from .errors import GatewayError, InvalidState, NotFound, PreOrderError
from .helpers import ct_equal, local_now
from .infra.sql import make_async_engine
from .model.store import PreOrderStore, new_store, BACKEND as STORE_BACKEND
from .model.store._postgres import create_schema
from .model.rungate import new_run_gate
from .model.types import UserProfile
from .notify import LogNotifier, Notifier
from .payments import MockPay, PaymentAdapter, new_adapter
from .seed import bootstrap_demo_data
from . import fulfillment
from . import preorders

configure_logging()
logger = structlog.get_logger(__name__)

# ----------------------------
# Config & Constants
# ----------------------------
MOCK_WEBHOOK_URL = os.environ.get(
    "MOCK_WEBHOOK_URL",
    "http://localhost:8000/payments/webhook"
)
DATABASE_URL = os.environ.get("DATABASE_URL", None)
REDIS_URL = os.environ.get("REDIS_URL", None)

if STORE_BACKEND == "pg" and DATABASE_URL is None:
    raise RuntimeError("STORE_BACKEND=pg needs DATABASE_URL")

SESSION_SECRET = os.environ.get("SESSION_SECRET", "dev-secret-change-me")
CRON_SECRET = os.environ.get("CRON_SECRET", "dev-cron-secret")
DEMO_MODE = os.environ.get("DEMO_MODE", "0") == "1"
FULFILLMENT_TICKER = os.environ.get("FULFILLMENT_TICKER", "0") == "1"
FULFILLMENT_TICK_SECONDS = float(
    os.environ.get("FULFILLMENT_TICK_SECONDS", "60")
)

engine = SessionAsync = gated = None
if STORE_BACKEND == "pg":
    engine, SessionAsync, gated = make_async_engine(DATABASE_URL)

app = FastAPI(
    title="Harry's Tix",
    default_response_class=ORJSONResponse,
)
app.add_middleware(SessionMiddleware, secret_key=SESSION_SECRET)


@app.exception_handler(PreOrderError)
async def _pre_order_error(request: Request, exc: PreOrderError):
    return ORJSONResponse(
        status_code=exc.status_code, content={"detail": exc.detail}
    )


# ----------------------------
# Dependencies
# ----------------------------
def get_store(request: Request) -> PreOrderStore:
    return request.app.state.store


def get_gateway(request: Request) -> PaymentAdapter:
    return request.app.state.gateway


def get_notifier(request: Request) -> Notifier:
    return request.app.state.notifier


def get_run_gate(request: Request):
    return request.app.state.run_gate


def get_clock() -> Callable[[], datetime]:
    return local_now


async def current_user(
    request: Request, store: PreOrderStore = Depends(get_store)
) -> UserProfile:
    # the session itself is issued by the auth layer
    user_id = request.session.get("user_id")
    if not user_id:
        raise HTTPException(401, detail="not signed in")
    user = await store.get_user_profile(user_id)
    if user is None:
        raise HTTPException(401, detail="user not found")
    return user


def require_admin(user: UserProfile = Depends(current_user)) -> UserProfile:
    if not user.is_admin:
        raise HTTPException(403, detail="Admin access required")
    return user


# ---
# startup / shutdown
# ---
@app.on_event("startup")
async def _say_hello():
    logger.info(
        "harrystix_starting",
        store_backend=STORE_BACKEND,
        run_gate="redis" if REDIS_URL else "memory",
        demo_mode=DEMO_MODE,
        ticker=FULFILLMENT_TICKER,
    )


@app.on_event("startup")
async def _store_init():
    if STORE_BACKEND == "pg":
        async with engine.begin() as conn:
            await create_schema(conn)
    app.state.store = new_store(sessions=SessionAsync, gated=gated)
    app.state.gateway = new_adapter()
    app.state.notifier = LogNotifier()
    if DEMO_MODE:
        await bootstrap_demo_data(app.state.store)


@app.on_event("startup")
async def _http_client_start():
    app.state.http = httpx.AsyncClient(timeout=5.0)


@app.on_event("startup")
async def _redis_start():
    app.state.redis = None
    if REDIS_URL:
        app.state.redis = redis.from_url(
            REDIS_URL,
            decode_responses=True,
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
            retry_on_timeout=True,
        )
    app.state.run_gate = new_run_gate(app.state.redis)


async def _ticker_loop():
    while True:
        try:
            results = await fulfillment.scheduled_fulfillment(
                app.state.store, app.state.gateway, app.state.run_gate
            )
            if results:
                logger.info("fulfillment_tick_ran", results=results)
        except Exception:
            logger.exception("fulfillment_tick_error")
        await asyncio.sleep(FULFILLMENT_TICK_SECONDS)


@app.on_event("startup")
async def _ticker_start():
    app.state.ticker = None
    if FULFILLMENT_TICKER:
        app.state.ticker = asyncio.create_task(_ticker_loop())


@app.on_event("shutdown")
async def _ticker_stop():
    task = getattr(app.state, "ticker", None)
    if task is not None:
        task.cancel()
        app.state.ticker = None


@app.on_event("shutdown")
async def _http_client_stop():
    http = getattr(app.state, "http", None)
    if http is not None:
        await http.aclose()
        app.state.http = None


@app.on_event("shutdown")
async def _redis_stop():
    r = getattr(app.state, "redis", None)
    if r is not None:
        await r.close()
        app.state.redis = None


@app.on_event("shutdown")
async def _engine_stop():
    if engine is not None:
        await engine.dispose()


# ----------------------------
# Events (read-only)
# ----------------------------
@app.get("/api/events/{event_id}")
async def get_event(event_id: str,
                    store: PreOrderStore = Depends(get_store)):
    event = await store.get_event(event_id)
    if event is None:
        raise HTTPException(404, detail="Event not found")
    return event.summary()


# ----------------------------
# API: member pre-orders
# ----------------------------
@app.get("/api/pre-orders")
async def list_pre_orders(
    user: UserProfile = Depends(current_user),
    store: PreOrderStore = Depends(get_store),
):
    return [p.to_dict() for p in await preorders.list_reservations(
        store, user.id
    )]


@app.get("/api/pre-orders/weekly")
async def weekly_pre_order(
    user: UserProfile = Depends(current_user),
    store: PreOrderStore = Depends(get_store),
    clock: Callable[[], datetime] = Depends(get_clock),
):
    p = await preorders.get_weekly_reservation(store, user.id, clock())
    return p.to_dict() if p else None


@app.post("/api/pre-orders")
async def create_pre_order(
    payload: dict,
    user: UserProfile = Depends(current_user),
    store: PreOrderStore = Depends(get_store),
    gateway: PaymentAdapter = Depends(get_gateway),
    clock: Callable[[], datetime] = Depends(get_clock),
):
    event_id = payload.get("event_id")
    if not event_id:
        raise HTTPException(400, detail="event_id is required")
    p = await preorders.create_reservation(
        store,
        user.id,
        event_id,
        payload.get("quantity"),
        payload.get("payment_method_id") or None,
        gateway=gateway,
        now=clock(),
    )
    return p.to_dict()


@app.delete("/api/pre-orders/{pre_order_id}")
async def cancel_pre_order(
    pre_order_id: str,
    user: UserProfile = Depends(current_user),
    store: PreOrderStore = Depends(get_store),
    clock: Callable[[], datetime] = Depends(get_clock),
):
    try:
        p = await preorders.cancel_reservation(
            store, pre_order_id, user.id, clock()
        )
    except (NotFound, InvalidState):
        raise HTTPException(
            404, detail="Pre-order not found or cannot be cancelled"
        )
    return p.to_dict()


@app.post("/api/create-setup-intent")
async def create_setup_intent(
    user: UserProfile = Depends(current_user),
    store: PreOrderStore = Depends(get_store),
    gateway: PaymentAdapter = Depends(get_gateway),
):
    customer_id = await preorders.ensure_gateway_customer(
        store, gateway, user
    )
    return await gateway.create_setup_intent(customer_id)


# ----------------------------
# API: admin
# ----------------------------
@app.get("/api/admin/pre-orders")
async def admin_list_pre_orders(
    _: UserProfile = Depends(require_admin),
    store: PreOrderStore = Depends(get_store),
):
    return await preorders.list_all_reservations(store)


@app.patch("/api/admin/pre-orders/{pre_order_id}")
async def admin_update_pre_order(
    pre_order_id: str,
    payload: dict,
    _: UserProfile = Depends(require_admin),
    store: PreOrderStore = Depends(get_store),
    notifier: Notifier = Depends(get_notifier),
    clock: Callable[[], datetime] = Depends(get_clock),
):
    p = await preorders.apply_admin_update(
        store, pre_order_id, payload, notifier=notifier, now=clock()
    )
    return p.to_dict()


@app.post("/api/admin/fulfill-pre-orders")
async def admin_fulfill_pre_orders(
    payload: dict,
    _: UserProfile = Depends(require_admin),
    store: PreOrderStore = Depends(get_store),
    gateway: PaymentAdapter = Depends(get_gateway),
    clock: Callable[[], datetime] = Depends(get_clock),
):
    ids = payload.get("pre_order_ids")
    if not isinstance(ids, list) or not ids:
        raise HTTPException(400, detail="No pre-orders specified")
    results = await fulfillment.fulfill_selected(
        store, gateway, [str(i) for i in ids], clock()
    )
    return {"results": results}


@app.post("/api/admin/process-weekly-pre-orders")
async def admin_process_weekly(
    admin: UserProfile = Depends(require_admin),
    store: PreOrderStore = Depends(get_store),
    gateway: PaymentAdapter = Depends(get_gateway),
    clock: Callable[[], datetime] = Depends(get_clock),
):
    logger.info("weekly_fulfillment_manual_trigger", admin_id=admin.id)
    results = await fulfillment.run_fulfillment(store, gateway, clock())
    return {
        "success": True,
        "message": "Weekly pre-order processing completed",
        "results": results,
    }


# ----------------------------
# Scheduled trigger (external cron)
# ----------------------------
@app.post("/api/cron/fulfillment-tick")
async def cron_fulfillment_tick(
    request: Request,
    store: PreOrderStore = Depends(get_store),
    gateway: PaymentAdapter = Depends(get_gateway),
    gate=Depends(get_run_gate),
    clock: Callable[[], datetime] = Depends(get_clock),
):
    secret = request.headers.get("x-cron-secret") or ""
    if not ct_equal(secret, CRON_SECRET):
        raise HTTPException(403, detail="bad cron secret")
    results = await fulfillment.scheduled_fulfillment(
        store, gateway, gate, clock()
    )
    return {"ran": results is not None, "results": results or []}


# ----------------------------
# Webhook endpoint (shared for Mock/Stripe)
# ----------------------------
@app.post("/payments/webhook")
async def payments_webhook(
    request: Request,
    store: PreOrderStore = Depends(get_store),
    gateway: PaymentAdapter = Depends(get_gateway),
    notifier: Notifier = Depends(get_notifier),
    clock: Callable[[], datetime] = Depends(get_clock),
):
    payload = await request.body()
    headers = dict(request.headers)

    try:
        event = gateway.verify_webhook(payload, headers)
    except GatewayError as e:
        logger.warning("webhook_rejected", error=e.message)
        raise HTTPException(400, detail=f"Webhook Error: {e.message}")

    kind = gateway.event_kind(event)  # succeeded | failed | other
    pre_order_id, intent_id = gateway.event_ids(event)
    if kind not in ("succeeded", "failed") or not pre_order_id:
        logger.info("webhook_ignored", event_type=event.get("type"),
                    gateway_payment_intent_id=intent_id)
        return {"received": True, "ignored": True}

    try:
        if kind == "succeeded":
            p = await preorders.complete_payment(
                store, pre_order_id, notifier=notifier, now=clock()
            )
        else:
            p = await preorders.fail_payment(
                store, pre_order_id, notifier=notifier, now=clock()
            )
    except (NotFound, InvalidState) as e:
        # answering 2xx stops the gateway from redelivering forever
        logger.error("webhook_unexpected_state", pre_order_id=pre_order_id,
                     kind=kind, error=e.detail)
        return {"received": True, "ignored": True}

    return {"received": True, "idempotent": p is None}


# ----------------------------
# MockPay: emit a webhook for a submitted charge
# ----------------------------
@app.post("/mockpay/{intent_id}/emit")
async def mockpay_emit(
    intent_id: str,
    payload: dict,
    gateway: PaymentAdapter = Depends(get_gateway),
):
    if not isinstance(gateway, MockPay):
        raise HTTPException(404, detail="mock provider disabled")
    kind = payload.get("kind")
    if kind not in {"succeeded", "failed"}:
        raise HTTPException(400, detail="invalid kind")
    charge = next(
        (c for c in gateway.charges if c["intent_id"] == intent_id), None
    )
    if charge is None:
        raise HTTPException(404, detail="payment intent not found")

    body, headers = gateway.build_event(kind, intent_id, charge["metadata"])
    client_http: httpx.AsyncClient = app.state.http
    delivered = True
    try:
        await client_http.post(MOCK_WEBHOOK_URL, content=body, headers=headers)
    except httpx.HTTPError as e:
        # dev tool only: the caller can emit again
        logger.warning("mock_webhook_delivery_failed", error=str(e))
        delivered = False
    return {"ok": True, "delivered": delivered}


# ----------------------------
# Demo login (DEMO_MODE only)
# ----------------------------
@app.post("/api/demo/login")
async def demo_login(
    request: Request,
    payload: dict,
    store: PreOrderStore = Depends(get_store),
):
    if not DEMO_MODE:
        raise HTTPException(404, detail="Not Found")
    user: Optional[UserProfile] = await store.get_user_profile(
        str(payload.get("user_id") or "")
    )
    if user is None:
        raise HTTPException(404, detail="user not found")
    request.session["user_id"] = user.id
    return user.to_dict()
