"""
Tests for backend/shieldtrade/routers/dca_router.py

Runs the endpoints through the ASGI app with an injected engine:
- Order create/list/get with derived figures
- Lifecycle transitions and their error codes
- Pending buys: list, confirm (incl. double confirm), cancel
"""

import pytest

OWNER = "OwnerWallet1111111111111111111111111111111"
ASSET = "TokenMint111111111111111111111111111111111"


def _order_body(**kwargs):
    body = {
        "owner": OWNER,
        "asset": ASSET,
        "asset_symbol": "TKN",
        "total_amount": 1.0,
        "number_of_buys": 4,
        "interval_minutes": 60,
        "exit_strategy": "hodl1",
    }
    body.update(kwargs)
    return body


async def _create(api_client, **kwargs):
    resp = await api_client.post("/api/dca/orders", json=_order_body(**kwargs))
    assert resp.status_code == 201
    return resp.json()


class TestOrderEndpoints:
    @pytest.mark.asyncio
    async def test_create_order(self, api_client):
        """Happy path: a new order is active with its first buy due now"""
        order = await _create(api_client)

        assert order["status"] == "active"
        assert order["current_buy"] == 0
        assert order["next_buy_at"] is not None
        assert order["total_spent"] == 0.0
        assert order["remaining_budget"] == 1.0
        assert order["progress_percent"] == 0.0

    @pytest.mark.asyncio
    async def test_create_rejects_out_of_range_buys(self, api_client):
        resp = await api_client.post("/api/dca/orders", json=_order_body(number_of_buys=1))
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_create_rejects_unknown_exit_strategy(self, api_client):
        """Failure: domain validation surfaces as 400 through the AppError handler"""
        resp = await api_client.post("/api/dca/orders", json=_order_body(exit_strategy="moonshot"))
        assert resp.status_code == 400
        assert "moonshot" in resp.json()["detail"]

    @pytest.mark.asyncio
    async def test_list_and_get(self, api_client):
        created = await _create(api_client)
        await _create(api_client, owner="SomeoneElse")

        resp = await api_client.get("/api/dca/orders", params={"owner": OWNER})
        assert resp.status_code == 200
        assert [o["id"] for o in resp.json()] == [created["id"]]

        resp = await api_client.get(f"/api/dca/orders/{created['id']}")
        assert resp.status_code == 200
        assert resp.json()["asset"] == ASSET

    @pytest.mark.asyncio
    async def test_get_unknown_order(self, api_client):
        resp = await api_client.get("/api/dca/orders/missing")
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_pause_resume_cancel(self, api_client):
        order = await _create(api_client)
        order_id = order["id"]

        resp = await api_client.post(f"/api/dca/orders/{order_id}/pause")
        assert resp.json()["status"] == "paused"

        resp = await api_client.post(f"/api/dca/orders/{order_id}/resume")
        assert resp.json()["status"] == "active"

        resp = await api_client.post(f"/api/dca/orders/{order_id}/cancel")
        assert resp.json()["status"] == "cancelled"

        # Cancelled is terminal
        resp = await api_client.post(f"/api/dca/orders/{order_id}/resume")
        assert resp.status_code == 409

    @pytest.mark.asyncio
    async def test_statistics(self, api_client):
        await _create(api_client)
        resp = await api_client.get("/api/dca/statistics")
        assert resp.status_code == 200
        assert resp.json()["active"] == 1


class TestPendingBuyEndpoints:
    @pytest.mark.asyncio
    async def test_staged_buy_listed_and_confirmed(self, api_client, trading_engine):
        order = await _create(api_client)
        db_order = await trading_engine.ctx.orders.get_order(order["id"])
        await trading_engine.buy_executor.process_order(db_order)

        resp = await api_client.get("/api/dca/pending-buys", params={"owner": OWNER})
        pending = resp.json()
        assert len(pending) == 1
        assert pending[0]["buy_number"] == 1
        assert pending[0]["sol_amount"] == pytest.approx(0.25)

        confirm = {"signature": "owner-sig", "token_amount": 250.0, "sol_amount": 0.25}
        resp = await api_client.post(f"/api/dca/pending-buys/{order['id']}/1/confirm", json=confirm)
        assert resp.status_code == 200
        assert resp.json()["signature"] == "owner-sig"

        resp = await api_client.get(f"/api/dca/orders/{order['id']}")
        body = resp.json()
        assert body["current_buy"] == 1
        assert body["executed_buys"][0]["signature"] == "owner-sig"
        assert body["total_spent"] == pytest.approx(0.25)

        # Second confirmation of the same buy is refused
        resp = await api_client.post(f"/api/dca/pending-buys/{order['id']}/1/confirm", json=confirm)
        assert resp.status_code == 409

    @pytest.mark.asyncio
    async def test_cancel_pending_buy(self, api_client, trading_engine):
        order = await _create(api_client)
        db_order = await trading_engine.ctx.orders.get_order(order["id"])
        await trading_engine.buy_executor.process_order(db_order)

        resp = await api_client.delete(f"/api/dca/pending-buys/{order['id']}/1")
        assert resp.status_code == 200

        resp = await api_client.delete(f"/api/dca/pending-buys/{order['id']}/1")
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_confirm_rejects_non_positive_amounts(self, api_client):
        confirm = {"signature": "sig", "token_amount": 0, "sol_amount": 0.25}
        resp = await api_client.post("/api/dca/pending-buys/any/1/confirm", json=confirm)
        assert resp.status_code == 422
