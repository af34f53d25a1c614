"""HTTP tests for order, wallet and referral routes."""
import pytest
from httpx import AsyncClient
from sqlmodel.ext.asyncio.session import AsyncSession

from models import TransactionType
from services.wallet import WalletLedger


def _auth(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def _order_body(product_id: int, quantity: int = 1, variant_id=None, **extra) -> dict:
    body = {
        "items": [{"product_id": product_id, "variant_id": variant_id, "quantity": quantity}],
        "shipping": {"name": "Asha Patil", "address": "12 MG Road, Pune", "phone": "9800000000"},
    }
    body.update(extra)
    return body


# ---------------------------------------------------------------------------
# Auth guards
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
@pytest.mark.parametrize("method,path", [
    ("get", "/api/orders"),
    ("post", "/api/orders"),
    ("get", "/api/wallet"),
    ("get", "/api/wallet/transactions"),
    ("get", "/api/referrals/code"),
    ("get", "/api/wallet/stats"),
])
async def test_customer_routes_401_without_auth(client: AsyncClient, method, path):
    resp = await getattr(client, method)(path)
    assert resp.status_code == 401
    assert resp.json()["error"] == "AuthenticationError"


@pytest.mark.asyncio
async def test_unknown_token_is_rejected(client: AsyncClient):
    resp = await client.get("/api/wallet", headers=_auth("not-a-real-token"))
    assert resp.status_code == 401


@pytest.mark.asyncio
@pytest.mark.parametrize("method,path", [
    ("get", "/api/admin/orders"),
    ("post", "/api/admin/orders/1/ship"),
    ("post", "/api/admin/orders/1/paid"),
    ("post", "/api/admin/rewards/backfill"),
])
async def test_admin_routes_403_for_customers(client: AsyncClient, customer_and_token, method, path):
    _, token = customer_and_token
    resp = await getattr(client, method)(path, headers=_auth(token))
    assert resp.status_code == 403


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_place_order(client: AsyncClient, customer_and_token, rice):
    _, token = customer_and_token
    resp = await client.post("/api/orders", json=_order_body(rice.id, 2, total_amount=500), headers=_auth(token))

    assert resp.status_code == 201
    order = resp.json()["order"]
    assert order["status"] == "Pending"
    assert order["subtotal"] == 500
    assert order["shipping_fee"] == 0
    assert order["items"][0]["unit_price"] == 250
    # Pending orders never expose the code
    assert "delivery_otp" not in order
    assert resp.headers["X-Request-ID"]


@pytest.mark.asyncio
async def test_place_order_errors_are_structured(client: AsyncClient, customer_and_token, saree):
    product, _, blue = saree
    product_id, blue_id = product.id, blue.id
    _, token = customer_and_token

    resp = await client.post("/api/orders", json=_order_body(product_id, 3, blue_id), headers=_auth(token))
    assert resp.status_code == 409
    data = resp.json()
    assert data["error"] == "InsufficientStockError"
    assert data["detail"]["available"] == 2

    resp = await client.post("/api/orders", json=_order_body(product_id, 1), headers=_auth(token))
    assert resp.status_code == 400
    assert resp.json()["detail"]["product_id"] == product_id

    resp = await client.post("/api/orders", json=_order_body(product_id, 0, blue_id), headers=_auth(token))
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_customers_only_see_their_own_orders(client: AsyncClient, customer_and_token, friend_and_token, rice):
    _, token = customer_and_token
    _, other_token = friend_and_token

    resp = await client.post("/api/orders", json=_order_body(rice.id), headers=_auth(token))
    order_id = resp.json()["order"]["id"]

    resp = await client.get(f"/api/orders/{order_id}", headers=_auth(other_token))
    assert resp.status_code == 404
    resp = await client.post(f"/api/orders/{order_id}/cancel", headers=_auth(other_token))
    assert resp.status_code == 404

    resp = await client.get("/api/orders", headers=_auth(token))
    assert [o["id"] for o in resp.json()["orders"]] == [order_id]

    resp = await client.post(f"/api/orders/{order_id}/cancel", headers=_auth(token))
    assert resp.status_code == 200
    assert resp.json()["order"]["status"] == "Cancelled"


@pytest.mark.asyncio
async def test_admin_fulfillment_flow(client: AsyncClient, customer_and_token, admin_and_token, saree):
    product, red, _ = saree
    product_id, red_id = product.id, red.id
    _, token = customer_and_token
    _, admin_token = admin_and_token

    resp = await client.post(
        "/api/orders", json=_order_body(product_id, 2, red_id, total_amount=600), headers=_auth(token)
    )
    order_id = resp.json()["order"]["id"]

    # Can't deliver before shipping
    resp = await client.post(f"/api/admin/orders/{order_id}/deliver", json={"otp": "123456"}, headers=_auth(admin_token))
    assert resp.status_code == 409
    assert resp.json()["error"] == "InvalidTransitionError"

    resp = await client.post(f"/api/admin/orders/{order_id}/ship", headers=_auth(admin_token))
    assert resp.status_code == 200
    assert resp.json()["order"]["status"] == "Shipped"

    # The customer sees the code once the order is out for delivery; the admin view doesn't carry it
    resp = await client.get(f"/api/orders/{order_id}", headers=_auth(token))
    code = resp.json()["order"]["delivery_otp"]
    assert len(code) == 6
    resp = await client.get(f"/api/orders/{order_id}", headers=_auth(admin_token))
    assert "delivery_otp" not in resp.json()["order"]

    resp = await client.post(f"/api/admin/orders/{order_id}/deliver", json={"otp": "000000"}, headers=_auth(admin_token))
    assert resp.status_code == 400
    assert resp.json()["detail"] == {"requires_otp": True, "attempts_remaining": 2}

    resp = await client.post(f"/api/admin/orders/{order_id}/deliver", json={"otp": "abc"}, headers=_auth(admin_token))
    assert resp.status_code == 400
    assert resp.json()["error"] == "OtpBadFormatError"

    # Non-ASCII digits are a format error, not a 500 or a counted attempt
    resp = await client.post(f"/api/admin/orders/{order_id}/deliver", json={"otp": "٤٨٢٩١٣"}, headers=_auth(admin_token))
    assert resp.status_code == 400
    assert resp.json()["error"] == "OtpBadFormatError"

    resp = await client.post(f"/api/admin/orders/{order_id}/deliver", json={"otp": code}, headers=_auth(admin_token))
    assert resp.status_code == 200
    assert resp.json()["order"]["status"] == "Delivered"

    resp = await client.get("/api/wallet", headers=_auth(token))
    wallet = resp.json()
    assert wallet["balance"] == 30
    assert wallet["recent_transactions"][0]["transaction_type"] == TransactionType.ORDER_REWARD

    resp = await client.get("/api/admin/orders?status=Delivered", headers=_auth(admin_token))
    assert [o["id"] for o in resp.json()["orders"]] == [order_id]


@pytest.mark.asyncio
async def test_three_wrong_codes_return_429(client: AsyncClient, customer_and_token, admin_and_token, rice):
    _, token = customer_and_token
    _, admin_token = admin_and_token

    resp = await client.post("/api/orders", json=_order_body(rice.id), headers=_auth(token))
    order_id = resp.json()["order"]["id"]
    await client.post(f"/api/admin/orders/{order_id}/ship", headers=_auth(admin_token))

    statuses = []
    for _ in range(4):
        resp = await client.post(
            f"/api/admin/orders/{order_id}/deliver",
            json={"otp": "000000"},
            headers={**_auth(admin_token), "X-Forwarded-For": "203.0.113.9, 10.0.0.1"},
        )
        statuses.append(resp.status_code)

    assert statuses == [400, 400, 429, 429]
    assert resp.json()["detail"]["lockout_minutes"] == 30


@pytest.mark.asyncio
async def test_mark_paid_and_backfill(client: AsyncClient, customer_and_token, admin_and_token, rice):
    _, token = customer_and_token
    _, admin_token = admin_and_token

    resp = await client.post(
        "/api/orders",
        json=_order_body(rice.id, payment_method="UPI", upi_transaction_id="UPI55501"),
        headers=_auth(token),
    )
    order = resp.json()["order"]
    assert order["payment_status"] == "UnderReview"

    resp = await client.post(f"/api/admin/orders/{order['id']}/paid", headers=_auth(admin_token))
    assert resp.json()["order"]["payment_status"] == "Paid"

    resp = await client.post("/api/admin/rewards/backfill", headers=_auth(admin_token))
    assert resp.status_code == 200
    assert resp.json() == {"total_orders": 0, "processed": 0, "skipped": 0, "errors": 0}


# ---------------------------------------------------------------------------
# Wallet
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_wallet_starts_empty(client: AsyncClient, customer_and_token):
    _, token = customer_and_token
    resp = await client.get("/api/wallet", headers=_auth(token))
    assert resp.status_code == 200
    data = resp.json()
    assert data["balance"] == 0
    assert data["recent_transactions"] == []


@pytest.mark.asyncio
async def test_calculate_discount_and_redeem(client: AsyncClient, session: AsyncSession, customer_and_token):
    user, token = customer_and_token
    await WalletLedger(session).credit(user.id, 250, TransactionType.MANUAL_ADJUSTMENT, "Opening balance")
    await session.commit()

    resp = await client.post(
        "/api/wallet/calculate-discount", json={"order_value": 500, "coins": 250}, headers=_auth(token)
    )
    data = resp.json()
    assert data["balance"] == 250
    assert data["validation"] == {"valid": True, "discount_amount": 50, "final_amount": 450, "errors": []}
    assert data["suggestions"]["optimal"]["coins"] == 250
    assert data["reward_preview"]["coins_awarded"] == 25

    resp = await client.post(
        "/api/wallet/redeem", json={"order_value": 500, "coins": 300}, headers=_auth(token)
    )
    assert resp.status_code == 400
    assert resp.json()["error"] == "RedemptionRuleViolation"

    resp = await client.post(
        "/api/wallet/redeem", json={"order_value": 500, "coins": 250}, headers=_auth(token)
    )
    assert resp.status_code == 200
    assert resp.json()["new_balance"] == 0

    resp = await client.get("/api/wallet/transactions?type=CoinRedemption", headers=_auth(token))
    page = resp.json()
    assert page["pagination"]["total"] == 1
    assert page["transactions"][0]["amount"] == -250



@pytest.mark.asyncio
async def test_redeem_against_an_order_updates_it_and_is_owner_only(
    client: AsyncClient, session: AsyncSession, customer_and_token, friend_and_token, rice
):
    owner, token = customer_and_token
    friend, friend_token = friend_and_token
    ledger = WalletLedger(session)
    await ledger.credit(owner.id, 100, TransactionType.MANUAL_ADJUSTMENT, "Opening balance")
    await ledger.credit(friend.id, 100, TransactionType.MANUAL_ADJUSTMENT, "Opening balance")
    await session.commit()

    resp = await client.post("/api/orders", json=_order_body(rice.id), headers=_auth(token))
    order_id = resp.json()["order"]["id"]

    # Someone else's order is invisible, and their coins stay put
    resp = await client.post(
        "/api/wallet/redeem", json={"order_value": 250, "coins": 25, "order_id": order_id}, headers=_auth(friend_token)
    )
    assert resp.status_code == 404
    resp = await client.get("/api/wallet", headers=_auth(friend_token))
    assert resp.json()["balance"] == 100

    # Priced from the stored subtotal (₹250), not the submitted value
    resp = await client.post(
        "/api/wallet/redeem", json={"order_value": 5000, "coins": 25, "order_id": order_id}, headers=_auth(token)
    )
    assert resp.status_code == 200
    assert resp.json() == {"coins_redeemed": 25, "discount_amount": 5, "final_amount": 345, "new_balance": 75}

    resp = await client.get(f"/api/orders/{order_id}", headers=_auth(token))
    order = resp.json()["order"]
    assert (order["coin_discount"], order["coins_redeemed"], order["total_amount"]) == (5, 25, 345)

    resp = await client.post(
        "/api/wallet/redeem", json={"coins": 5, "order_id": order_id}, headers=_auth(token)
    )
    assert resp.status_code == 409
    assert resp.json()["error"] == "DuplicateTransactionError"

    # Cancelling refunds what was redeemed on the order
    resp = await client.post(f"/api/orders/{order_id}/cancel", headers=_auth(token))
    assert resp.status_code == 200
    resp = await client.get("/api/wallet", headers=_auth(token))
    assert resp.json()["balance"] == 100


@pytest.mark.asyncio
async def test_redeem_rejects_orders_past_pending(
    client: AsyncClient, session: AsyncSession, customer_and_token, admin_and_token, rice
):
    user, token = customer_and_token
    _, admin_token = admin_and_token
    await WalletLedger(session).credit(user.id, 100, TransactionType.MANUAL_ADJUSTMENT, "Opening balance")
    await session.commit()

    resp = await client.post("/api/orders", json=_order_body(rice.id), headers=_auth(token))
    order_id = resp.json()["order"]["id"]
    await client.post(f"/api/admin/orders/{order_id}/ship", headers=_auth(admin_token))

    resp = await client.post("/api/wallet/redeem", json={"coins": 25, "order_id": order_id}, headers=_auth(token))
    assert resp.status_code == 409
    assert resp.json()["error"] == "ConflictError"
    resp = await client.get("/api/wallet", headers=_auth(token))
    assert resp.json()["balance"] == 100


@pytest.mark.asyncio
async def test_redeem_without_order_needs_order_value(client: AsyncClient, session: AsyncSession, customer_and_token):
    user, token = customer_and_token
    await WalletLedger(session).credit(user.id, 100, TransactionType.MANUAL_ADJUSTMENT, "Opening balance")
    await session.commit()

    resp = await client.post("/api/wallet/redeem", json={"coins": 25}, headers=_auth(token))
    assert resp.status_code == 400
    assert resp.json()["error"] == "ValidationError"


@pytest.mark.asyncio
async def test_wallet_stats(client: AsyncClient, session: AsyncSession, customer_and_token):
    user, token = customer_and_token
    ledger = WalletLedger(session)
    await ledger.credit(user.id, 30, TransactionType.ORDER_REWARD, "Order reward")
    await ledger.debit(user.id, 10, TransactionType.COIN_REDEMPTION, "Redeemed")
    await session.commit()

    resp = await client.get("/api/wallet/stats?timeframe=7", headers=_auth(token))
    assert resp.status_code == 200
    stats = resp.json()
    assert stats["timeframe"] == "7 days"
    assert [(e["transaction_type"], e["total_earned"]) for e in stats["earnings_by_type"]] == [
        (TransactionType.ORDER_REWARD, 30)
    ]
    assert sum(m["total_earned"] for m in stats["monthly_trend"]) == 30

    resp = await client.get("/api/wallet/stats?timeframe=0", headers=_auth(token))
    assert resp.status_code == 400

@pytest.mark.asyncio
async def test_admin_adjustment(client: AsyncClient, customer_and_token, admin_and_token):
    user, token = customer_and_token
    user_id = user.id
    _, admin_token = admin_and_token

    resp = await client.post(
        "/api/admin/wallet/adjust",
        json={"user_id": user_id, "amount": 40, "reason": "Damaged parcel"},
        headers=_auth(admin_token),
    )
    assert resp.json() == {"user_id": user_id, "balance": 40}

    resp = await client.post(
        "/api/admin/wallet/adjust",
        json={"user_id": user_id, "amount": -50, "reason": "Reversal"},
        headers=_auth(admin_token),
    )
    assert resp.status_code == 400
    assert resp.json()["error"] == "InsufficientBalanceError"

    resp = await client.post(
        "/api/admin/wallet/adjust",
        json={"user_id": user_id, "amount": 5, "reason": "Goodwill"},
        headers=_auth(token),
    )
    assert resp.status_code == 403


# ---------------------------------------------------------------------------
# Referrals
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_referral_flow(client: AsyncClient, customer_and_token, friend_and_token):
    _, token = customer_and_token
    resp = await client.get("/api/referrals/code", headers=_auth(token))
    code = resp.json()["referral_code"]
    assert resp.json()["referral_link"].endswith(f"?ref={code}")

    resp = await client.post(
        "/api/referrals/visits",
        json={"referral_code": code, "device_fingerprint": "fp-abc", "source": "whatsapp"},
    )
    assert resp.status_code == 201
    visit_id = resp.json()["visit_id"]
    assert resp.json()["is_unique_device"] is True

    resp = await client.post(f"/api/referrals/visits/{visit_id}/end", json={})
    assert resp.status_code == 200
    # Ended immediately: too short to count
    assert resp.json()["is_valid_visit"] is False
    assert resp.json()["coins_awarded"] == 0

    resp = await client.post(f"/api/referrals/visits/{visit_id}/end", json={})
    assert resp.status_code == 409

    resp = await client.post(
        "/api/referrals/visits", json={"referral_code": "INDIRANOPE00", "device_fingerprint": "fp-abc"}
    )
    assert resp.status_code == 404

    _, friend_token = friend_and_token
    resp = await client.post("/api/referrals/register", json={"referral_code": code}, headers=_auth(friend_token))
    assert resp.status_code == 200
    assert resp.json()["status"] == "attributed"
    assert resp.json()["referrer_balance"] == 20

    resp = await client.post("/api/referrals/register", json={"referral_code": code}, headers=_auth(token))
    assert resp.status_code == 400

    resp = await client.get("/api/referrals/stats", headers=_auth(token))
    stats = resp.json()["stats"]
    assert stats["total_visits"] == 1
    assert stats["total_referrals"] == 1
    assert stats["total_referral_earnings"] == 20


@pytest.mark.asyncio
async def test_referral_code_validation_and_leaderboard(client: AsyncClient, customer_and_token, friend_and_token):
    referrer, token = customer_and_token
    _, friend_token = friend_and_token
    resp = await client.get("/api/referrals/code", headers=_auth(token))
    code = resp.json()["referral_code"]

    # No account yet at sign-up, so no auth header
    resp = await client.post("/api/referrals/validate", json={"referral_code": code.lower()})
    assert resp.status_code == 200
    assert resp.json()["referrer"]["id"] == referrer.id
    resp = await client.post("/api/referrals/validate", json={"referral_code": "INDIRANOPE00"})
    assert resp.status_code == 404
    resp = await client.post("/api/referrals/validate", json={})
    assert resp.status_code == 400

    resp = await client.get("/api/referrals/leaderboard")
    assert resp.status_code == 401
    resp = await client.get("/api/referrals/leaderboard", headers=_auth(friend_token))
    assert resp.json() == {"leaderboard": [], "timeframe": "all", "total": 0}

    await client.post("/api/referrals/register", json={"referral_code": code}, headers=_auth(friend_token))
    resp = await client.get("/api/referrals/leaderboard?timeframe=7d", headers=_auth(friend_token))
    entry = resp.json()["leaderboard"][0]
    assert (entry["user_id"], entry["successful_referrals"], entry["coins_earned"]) == (referrer.id, 1, 20)
    assert "email" not in entry

    resp = await client.get("/api/referrals/leaderboard?timeframe=1y", headers=_auth(friend_token))
    assert resp.status_code == 400


# ---------------------------------------------------------------------------
# Operational endpoints
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_health(client: AsyncClient):
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "healthy"


@pytest.mark.asyncio
async def test_metrics_exposes_order_counters(client: AsyncClient, customer_and_token, rice):
    _, token = customer_and_token
    await client.post("/api/orders", json=_order_body(rice.id), headers=_auth(token))

    resp = await client.get("/metrics")
    assert resp.status_code == 200
    assert "order_transitions_total" in resp.text
    assert "http_requests_total" in resp.text
