import asyncio

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from jose import jwt
from sqlalchemy.future import select

from config import settings
from database import get_db
from main import app
from models.user import User
from routers.deps import ensure_user
from services.session_token import SESSION_TOKEN_TYPE, create_session_token, decode_session_token


USER_ID = "user-1"
AUTH_HEADER = {"Authorization": f"Bearer {create_session_token(USER_ID, 'user-1@example.com')['token']}"}
INTERNAL_HEADER = {"x-internal-token": settings.INTERNAL_API_TOKEN}


@pytest_asyncio.fixture
async def api_client(session_maker, clock):
    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.state.clock = clock
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.state.clock = None
    app.dependency_overrides.pop(get_db, None)


@pytest.mark.asyncio
async def test_session_issues_new_user_credits_once(api_client):
    response = await api_client.post(
        "/auth/session",
        json={"email": "new@example.com", "user_id": "new-user"},
        headers=INTERNAL_HEADER,
    )
    assert response.status_code == 200
    payload = response.json()
    assert payload["user_id"] == "new-user"
    assert payload["new_user_credits"] == 10

    headers = {"Authorization": f"Bearer {payload['session_token']}"}
    balance = await api_client.get("/billing/credits", headers=headers)
    assert balance.status_code == 200
    assert balance.json()["left_credits"] == 10
    assert balance.json()["is_pro"] is True
    assert balance.json()["is_recharged"] is False

    again = await api_client.post("/auth/session", json={"email": "new@example.com"}, headers=INTERNAL_HEADER)
    assert again.status_code == 200
    assert again.json()["user_id"] == "new-user"
    assert again.json()["new_user_credits"] == 0


@pytest.mark.asyncio
async def test_internal_endpoints_require_token(api_client):
    assert (await api_client.post("/auth/session", json={"email": "x@example.com"})).status_code == 401
    assert (await api_client.post("/internal/monthly-reset")).status_code == 401
    grant = await api_client.post(
        "/billing/grant",
        json={"user_id": USER_ID, "amount": 5},
        headers={"x-internal-token": "wrong"},
    )
    assert grant.status_code == 401


@pytest.mark.asyncio
async def test_user_scope_is_enforced(api_client):
    response = await api_client.get("/billing/credits", params={"user_id": "user-2"}, headers=AUTH_HEADER)
    assert response.status_code == 403
    assert (await api_client.get("/billing/credits")).status_code == 401


@pytest.mark.asyncio
async def test_grant_consume_and_ledger_history(api_client):
    grant = await api_client.post(
        "/billing/grant",
        json={"user_id": USER_ID, "amount": 5, "kind": "permanent_credit"},
        headers=INTERNAL_HEADER,
    )
    assert grant.status_code == 200
    assert grant.json()["balance_after"] == 5

    short = await api_client.post("/billing/consume", json={"amount": 8}, headers=AUTH_HEADER)
    assert short.status_code == 402
    assert short.json()["detail"]["required"] == 8
    assert short.json()["detail"]["available"] == 5

    spend = await api_client.post("/billing/consume", json={"amount": 3, "reason": "render"}, headers=AUTH_HEADER)
    assert spend.status_code == 200
    assert spend.json()["balance_after"] == 2

    history = await api_client.get("/billing/ledger", headers=AUTH_HEADER)
    assert history.status_code == 200
    assert [item["amount"] for item in history.json()["items"]] == [-3, 5]

    invalid = await api_client.post("/billing/consume", json={"amount": 0}, headers=AUTH_HEADER)
    assert invalid.status_code == 422


@pytest.mark.asyncio
async def test_free_tier_generation_flow(api_client):
    check = await api_client.post("/entitlements/check", json={"style": "anime"}, headers=AUTH_HEADER)
    assert check.status_code == 200
    assert check.json()["allowed"] is True
    assert check.json()["remaining"] == 1

    complete = await api_client.post("/generations/complete", json={"style": "anime"}, headers=AUTH_HEADER)
    assert complete.status_code == 200
    assert complete.json()["usage_recorded"] is False

    denied = await api_client.post("/entitlements/check", json={"style": "anime"}, headers=AUTH_HEADER)
    assert denied.status_code == 200
    assert denied.json()["allowed"] is False
    assert denied.json()["code"] == "daily_limit_reached"
    assert denied.json()["suggested_upgrade"] == "trial"


@pytest.mark.asyncio
async def test_authorize_with_charge_requires_credits(api_client):
    response = await api_client.post(
        "/generations/authorize",
        json={"style": "anime", "charge_credits": True},
        headers=AUTH_HEADER,
    )
    assert response.status_code == 402

    await api_client.post(
        "/billing/grant",
        json={"user_id": USER_ID, "amount": 2, "kind": "system_add"},
        headers=INTERNAL_HEADER,
    )
    charged = await api_client.post(
        "/generations/authorize",
        json={"style": "anime", "charge_credits": True},
        headers=AUTH_HEADER,
    )
    assert charged.status_code == 200
    assert charged.json()["decision"]["allowed"] is True
    assert charged.json()["charged"] == settings.GENERATION_CREDIT_COST
    assert charged.json()["transaction_id"]


@pytest.mark.asyncio
async def test_subscription_lifecycle_endpoints(api_client):
    plans = await api_client.get("/subscription/plans")
    assert [plan["plan_id"] for plan in plans.json()["plans"]] == ["trial", "pro", "ultra"]

    created = await api_client.post(
        "/subscription",
        json={"user_id": USER_ID, "plan_id": "pro", "interval": "monthly"},
        headers=INTERNAL_HEADER,
    )
    assert created.status_code == 200
    assert created.json()["subscription"]["status"] == "active"

    duplicate = await api_client.post(
        "/subscription",
        json={"user_id": USER_ID, "plan_id": "ultra", "interval": "monthly"},
        headers=INTERNAL_HEADER,
    )
    assert duplicate.status_code == 409

    status = await api_client.get("/subscription", headers=AUTH_HEADER)
    assert status.json()["current_plan"]["plan_id"] == "pro"
    assert status.json()["current_plan"]["is_active"] is True

    authorize = await api_client.post("/generations/authorize", json={"quality": "uhd"}, headers=AUTH_HEADER)
    assert authorize.json()["decision"]["allowed"] is True
    assert authorize.json()["decision"]["remaining"] == 50

    complete = await api_client.post("/generations/complete", json={"quality": "uhd"}, headers=AUTH_HEADER)
    assert complete.json()["usage_recorded"] is True
    status = await api_client.get("/subscription", headers=AUTH_HEADER)
    assert status.json()["usage"]["used_this_month"] == 1

    cancelled = await api_client.delete("/subscription", headers=AUTH_HEADER)
    assert cancelled.status_code == 200
    assert cancelled.json()["subscription"]["status"] == "cancelled"
    assert (await api_client.delete("/subscription", headers=AUTH_HEADER)).status_code == 404


@pytest.mark.asyncio
async def test_order_paid_webhook_is_idempotent(api_client):
    order = await api_client.post(
        "/internal/orders",
        json={"user_id": USER_ID, "credits": 40, "order_id": "ord-http", "amount_cents": 399},
        headers=INTERNAL_HEADER,
    )
    assert order.status_code == 200
    assert order.json()["status"] == "created"

    first = await api_client.post("/webhooks/order-paid", json={"order_id": "ord-http"}, headers=INTERNAL_HEADER)
    second = await api_client.post("/webhooks/order-paid", json={"order_id": "ord-http"}, headers=INTERNAL_HEADER)
    assert first.json()["reconciled"] is True
    assert second.json()["reconciled"] is False

    reconcile = await api_client.post("/internal/order-reconcile/ord-http", headers=INTERNAL_HEADER)
    assert reconcile.json()["reconciled"] is False

    balance = await api_client.get("/billing/credits", headers=AUTH_HEADER)
    assert balance.json()["left_credits"] == 40
    assert balance.json()["is_recharged"] is True

    missing = await api_client.post("/webhooks/order-paid", json={"order_id": "nope"}, headers=INTERNAL_HEADER)
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_monthly_reset_endpoint_is_guarded(api_client):
    first = await api_client.post("/internal/monthly-reset", headers=INTERNAL_HEADER)
    second = await api_client.post("/internal/monthly-reset", headers=INTERNAL_HEADER)
    assert first.status_code == 200
    assert first.json()["skipped"] is False
    assert second.json()["skipped"] is True

    status = await api_client.get("/internal/monthly-reset", headers=INTERNAL_HEADER)
    assert status.json()["should_run_now"] is False

    sweep = await api_client.post("/internal/bonus-expiry", headers=INTERNAL_HEADER)
    assert sweep.json() == {"bonus_entries_expired": 0}


@pytest.mark.asyncio
async def test_liveness_endpoint(api_client):
    response = await api_client.get("/health/live")
    assert response.json() == {"alive": True}


@pytest.mark.asyncio
async def test_order_paid_webhook_enqueues_when_queue_enabled(api_client, monkeypatch):
    from routers import webhooks

    class FakeJob:
        id = "reconcile:ord-queued"

    enqueued = []

    def fake_enqueue(order_id):
        enqueued.append(order_id)
        return FakeJob()

    monkeypatch.setattr(settings, "RECONCILE_QUEUE_ENABLED", True)
    monkeypatch.setattr(webhooks, "enqueue_order_reconcile_job", fake_enqueue)

    await api_client.post(
        "/internal/orders",
        json={"user_id": USER_ID, "credits": 15, "order_id": "ord-queued"},
        headers=INTERNAL_HEADER,
    )
    response = await api_client.post("/webhooks/order-paid", json={"order_id": "ord-queued"}, headers=INTERNAL_HEADER)

    assert response.status_code == 200
    assert response.json()["queued"] is True
    assert response.json()["status"] == "paid"
    assert response.json()["job_id"] == "reconcile:ord-queued"
    assert enqueued == ["ord-queued"]

    balance = await api_client.get("/billing/credits", headers=AUTH_HEADER)
    assert balance.json()["left_credits"] == 0

    def broken_enqueue(order_id):
        raise ConnectionError("redis down")

    monkeypatch.setattr(webhooks, "enqueue_order_reconcile_job", broken_enqueue)
    unavailable = await api_client.post("/webhooks/order-paid", json={"order_id": "ord-queued"}, headers=INTERNAL_HEADER)
    assert unavailable.status_code == 503


@pytest.mark.asyncio
async def test_reconcile_job_grants_paid_order(session_maker, clock, monkeypatch):
    from models.order import OrderStatus
    from services import job_queue
    from services.reconciliation import create_order

    async with session_maker() as setup:
        order = await create_order(setup, USER_ID, 12, order_id="ord-job")
        order.status = OrderStatus.PAID.value
        await setup.commit()

    monkeypatch.setattr(job_queue, "async_session_maker", session_maker)

    assert await job_queue.process_order_reconcile_job_async("ord-job") is True
    assert await job_queue.process_order_reconcile_job_async("ord-job") is False


@pytest.mark.asyncio
async def test_concurrent_first_requests_create_one_user(session_maker):
    async def first_request():
        async with session_maker() as session:
            user = await ensure_user(session, "brand-new")
            return user.id

    assert await asyncio.gather(first_request(), first_request()) == ["brand-new", "brand-new"]
    async with session_maker() as check:
        rows = (await check.execute(select(User).where(User.id == "brand-new"))).scalars().all()
    assert len(rows) == 1
    assert rows[0].email == "brand-new@local.invalid"


def test_session_token_claims_and_type_check():
    issued = create_session_token(USER_ID, "user-1@example.com", expires_hours=2)
    claims = decode_session_token(issued["token"])
    assert claims.user_id == USER_ID
    assert claims.email == "user-1@example.com"
    assert claims.expires_at == issued["expires_at"]

    foreign = jwt.encode(
        {"sub": USER_ID, "type": f"not-{SESSION_TOKEN_TYPE}"},
        settings.JWT_SECRET,
        algorithm=settings.JWT_ALGORITHM,
    )
    with pytest.raises(ValueError):
        decode_session_token(foreign)
    with pytest.raises(ValueError):
        decode_session_token("garbage")
