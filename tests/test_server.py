from datetime import datetime, timezone

import pytest

from harrystix import server
from harrystix.model.types import PreOrderStatus as S

from conftest import ADMIN, EVENT, GUEST, MEMBER, NOW, OTHER_MEMBER

IN_WINDOW = datetime(2026, 10, 20, 19, 10, tzinfo=timezone.utc)


def _at(when):
    server.app.dependency_overrides[server.get_clock] = \
        lambda: (lambda: when)


async def _create(client, **extra):
    body = {"event_id": EVENT.id, "quantity": 2}
    body.update(extra)
    return await client.post("/api/pre-orders", json=body)


async def test_requires_sign_in(client):
    r = await client.get("/api/pre-orders")
    assert r.status_code == 401


async def test_member_creates_and_lists(client, login_as):
    login_as(MEMBER)
    r = await _create(client)
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "pending"
    assert body["total_price"] == "24.00"
    assert body["created_at"] == NOW.isoformat()

    listed = (await client.get("/api/pre-orders")).json()
    assert [p["id"] for p in listed] == [body["id"]]
    weekly = (await client.get("/api/pre-orders/weekly")).json()
    assert weekly["id"] == body["id"]


async def test_weekly_is_null_when_none(client, login_as):
    login_as(OTHER_MEMBER)
    r = await client.get("/api/pre-orders/weekly")
    assert r.status_code == 200
    assert r.json() is None


@pytest.mark.parametrize("user,body,status", [
    (GUEST, {"event_id": EVENT.id, "quantity": 1}, 403),
    (MEMBER, {"event_id": EVENT.id, "quantity": 0}, 400),
    (MEMBER, {"event_id": EVENT.id}, 400),
    (MEMBER, {"quantity": 1}, 400),
    (MEMBER, {"event_id": "nope", "quantity": 1}, 404),
])
async def test_create_errors(client, login_as, user, body, status):
    login_as(user)
    r = await client.post("/api/pre-orders", json=body)
    assert r.status_code == status
    assert r.json()["detail"]


async def test_second_in_week_is_rejected(client, login_as):
    login_as(MEMBER)
    assert (await _create(client)).status_code == 200
    r = await _create(client, quantity=1)
    assert r.status_code == 400
    assert "already" in r.json()["detail"]


async def test_create_with_card_attaches_it(client, login_as, gateway):
    login_as(MEMBER)
    body = (await _create(client, payment_method_id="pm_card_visa")).json()
    assert body["payment_method_id"] == "pm_card_visa"
    assert gateway.attached["pm_card_visa"] == body["gateway_customer_id"]


async def test_setup_intent(client, login_as, gateway):
    login_as(MEMBER)
    r = await client.post("/api/create-setup-intent")
    assert r.status_code == 200
    assert "_secret_" in r.json()["client_secret"]
    assert len(gateway.customers) == 1


async def test_cancel_own_and_not_others(client, login_as):
    login_as(MEMBER)
    pid = (await _create(client)).json()["id"]

    login_as(OTHER_MEMBER)
    r = await client.delete(f"/api/pre-orders/{pid}")
    assert r.status_code == 404

    login_as(MEMBER)
    r = await client.delete(f"/api/pre-orders/{pid}")
    assert r.status_code == 200
    assert r.json()["status"] == "cancelled"

    r = await client.delete(f"/api/pre-orders/{pid}")
    assert r.status_code == 404


async def test_admin_routes_need_admin(client, login_as):
    login_as(MEMBER)
    assert (await client.get("/api/admin/pre-orders")).status_code == 403
    r = await client.post("/api/admin/fulfill-pre-orders",
                          json={"pre_order_ids": ["x"]})
    assert r.status_code == 403
    r = await client.post("/api/admin/process-weekly-pre-orders")
    assert r.status_code == 403


async def test_admin_approve_and_list(client, login_as, memory_store):
    login_as(MEMBER)
    pid = (await _create(client)).json()["id"]

    login_as(ADMIN)
    r = await client.patch(f"/api/admin/pre-orders/{pid}",
                           json={"status": "approved"})
    assert r.status_code == 200
    assert r.json()["status"] == "approved"

    r = await client.patch(f"/api/admin/pre-orders/{pid}",
                           json={"status": "approved"})
    assert r.status_code == 400

    items = (await client.get("/api/admin/pre-orders")).json()
    assert items[0]["user"] == {"name": "Ada", "email": "ada@example.com"}
    assert items[0]["event"]["title"] == EVENT.title
    assert (await memory_store.get_pre_order(pid)).status == S.APPROVED


async def test_admin_patch_rejected_changes_nothing(client, login_as,
                                                    memory_store):
    login_as(MEMBER)
    pid = (await _create(client)).json()["id"]

    login_as(ADMIN)
    r = await client.patch(f"/api/admin/pre-orders/{pid}",
                           json={"payment_method_id": "pm_new",
                                 "gateway_customer_id": "cus_new",
                                 "status": "paid"})
    assert r.status_code == 400
    stored = await memory_store.get_pre_order(pid)
    assert stored.status == S.PENDING
    assert stored.payment_method_id is None
    assert stored.gateway_customer_id is None


async def test_admin_fulfill_requires_ids(client, login_as):
    login_as(ADMIN)
    r = await client.post("/api/admin/fulfill-pre-orders",
                          json={"pre_order_ids": []})
    assert r.status_code == 400


async def test_charge_then_webhook_marks_paid(client, login_as, gateway,
                                              memory_store):
    login_as(MEMBER)
    pid = (await _create(client, payment_method_id="pm_card_visa")).json()["id"]

    login_as(ADMIN)
    r = await client.post("/api/admin/fulfill-pre-orders",
                          json={"pre_order_ids": [pid]})
    result = r.json()["results"][0]
    assert result["status"] == "processing"
    intent_id = result["gateway_payment_intent_id"]

    r = await client.post(f"/mockpay/{intent_id}/emit",
                          json={"kind": "succeeded"})
    assert r.json() == {"ok": True, "delivered": True}

    stored = await memory_store.get_pre_order(pid)
    assert stored.status == S.PAID
    assert stored.paid_at == NOW.timestamp()
    ticket = await memory_store.get_ticket_for_pre_order(pid)
    assert ticket.quantity == 2


async def test_webhook_failure_and_replay(client, login_as, gateway,
                                          memory_store):
    login_as(MEMBER)
    pid = (await _create(client, payment_method_id="pm_card_visa")).json()["id"]
    login_as(ADMIN)
    r = await client.post("/api/admin/fulfill-pre-orders",
                          json={"pre_order_ids": [pid]})
    intent_id = r.json()["results"][0]["gateway_payment_intent_id"]

    payload, headers = gateway.build_event("failed", intent_id,
                                           {"pre_order_id": pid})
    r = await client.post("/payments/webhook", content=payload,
                          headers=headers)
    assert r.json() == {"received": True, "idempotent": False}
    assert (await memory_store.get_pre_order(pid)).status == S.FAILED

    r = await client.post("/payments/webhook", content=payload,
                          headers=headers)
    assert r.json() == {"received": True, "idempotent": True}

    # a late success for a failed pre-order is acknowledged, not applied
    payload, headers = gateway.build_event("succeeded", intent_id,
                                           {"pre_order_id": pid})
    r = await client.post("/payments/webhook", content=payload,
                          headers=headers)
    assert r.status_code == 200
    assert r.json()["ignored"] is True
    assert (await memory_store.get_pre_order(pid)).status == S.FAILED


async def test_webhook_bad_signature(client, gateway):
    payload, headers = gateway.build_event("succeeded", "mock_pi_x",
                                           {"pre_order_id": "p"})
    headers["x-mockpay-signature"] = "nope"
    r = await client.post("/payments/webhook", content=payload,
                          headers=headers)
    assert r.status_code == 400


async def test_webhook_ignores_unrelated_events(client, gateway):
    payload = b'{"type": "customer.created", "data": {"object": {}}}'
    headers = {"x-mockpay-signature": gateway.sign(payload)}
    r = await client.post("/payments/webhook", content=payload,
                          headers=headers)
    assert r.json() == {"received": True, "ignored": True}


async def test_emit_unknown_intent(client):
    r = await client.post("/mockpay/mock_pi_missing/emit",
                          json={"kind": "succeeded"})
    assert r.status_code == 404


async def test_manual_weekly_run(client, login_as, gateway):
    login_as(MEMBER)
    pid = (await _create(client, payment_method_id="pm_card_visa")).json()["id"]
    login_as(ADMIN)
    await client.patch(f"/api/admin/pre-orders/{pid}",
                       json={"status": "approved"})

    r = await client.post("/api/admin/process-weekly-pre-orders")
    body = r.json()
    assert body["success"] is True
    assert [x["pre_order_id"] for x in body["results"]] == [pid]
    assert gateway.charges[0]["amount"] == 2400


class TestCronTick:

    async def test_needs_secret(self, client):
        r = await client.post("/api/cron/fulfillment-tick",
                              headers={"x-cron-secret": "wrong"})
        assert r.status_code == 403

    async def test_outside_window(self, client):
        r = await client.post("/api/cron/fulfillment-tick",
                              headers={"x-cron-secret": server.CRON_SECRET})
        assert r.json() == {"ran": False, "results": []}

    async def test_inside_window_runs_once(self, client, login_as, gateway):
        login_as(MEMBER)
        pid = (await _create(
            client, payment_method_id="pm_card_visa")).json()["id"]
        login_as(ADMIN)
        await client.patch(f"/api/admin/pre-orders/{pid}",
                           json={"status": "approved"})

        _at(IN_WINDOW)
        headers = {"x-cron-secret": server.CRON_SECRET}
        first = (await client.post("/api/cron/fulfillment-tick",
                                   headers=headers)).json()
        second = (await client.post("/api/cron/fulfillment-tick",
                                    headers=headers)).json()

        assert first["ran"] is True
        assert first["results"][0]["status"] == "processing"
        assert second == {"ran": True, "results": []}
        assert len(gateway.charges) == 1


async def test_event_lookup(client):
    r = await client.get(f"/api/events/{EVENT.id}")
    assert r.json()["member_price"] == "12.00"
    assert (await client.get("/api/events/nope")).status_code == 404


async def test_cron_invoker_posts_tick(client):
    from harrystix import cron

    out = await cron.tick(client, "http://test/", server.CRON_SECRET)
    assert out == {"ran": False, "results": []}
