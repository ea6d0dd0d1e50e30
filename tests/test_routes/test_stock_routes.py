# tests/test_routes/test_stock_routes.py
import pytest


@pytest.mark.asyncio
async def test_apply_delta(client, make_product):
    product = await make_product(stock=5)

    response = await client.post(
        "/stock/apply-delta",
        json={"product_id": product.id, "delta": 3, "reason": "Receiving", "change_type": "ENTRY"},
    )

    assert response.status_code == 200
    assert response.json() == {"product_id": product.id, "new_stock": 8, "old_stock": 5, "duplicate": False}


@pytest.mark.asyncio
async def test_apply_delta_requires_reason(client, make_product):
    product = await make_product(stock=5)

    response = await client.post("/stock/apply-delta", json={"product_id": product.id, "delta": 3, "reason": ""})

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_apply_delta_insufficient_stock_is_409(client, make_product):
    product = await make_product(stock=1)

    response = await client.post(
        "/stock/apply-delta",
        json={"product_id": product.id, "delta": -2, "reason": "Damaged", "change_type": "DAMAGED"},
    )

    assert response.status_code == 409
    assert response.json()["error_code"] == "INSUFFICIENT_STOCK"


@pytest.mark.asyncio
async def test_apply_delta_sign_mismatch_is_422(client, make_product):
    product = await make_product(stock=1)

    response = await client.post(
        "/stock/apply-delta",
        json={"product_id": product.id, "delta": 2, "reason": "Oops", "change_type": "SALE"},
    )

    assert response.status_code == 422
    assert response.json()["error_code"] == "VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_apply_delta_unknown_product_is_404(client):
    response = await client.post("/stock/apply-delta", json={"product_id": 999, "delta": 1, "reason": "Receiving"})

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_apply_delta_locked_product_is_423(client, make_product, lock_manager):
    product = await make_product(stock=5)
    await lock_manager.acquire(product.id, "other-worker")

    response = await client.post(
        "/stock/apply-delta", json={"product_id": product.id, "delta": -1, "reason": "Recount"}
    )

    assert response.status_code == 423
    assert response.json()["error_code"] == "LOCK_CONTENTION"


@pytest.mark.asyncio
async def test_apply_batch(client, make_product):
    first = await make_product(stock=5)
    second = await make_product(stock=5)

    response = await client.post(
        "/stock/apply-batch",
        json={"deltas": [
            {"product_id": first.id, "delta": -1, "change_type": "SALE", "reason": "Counter sale"},
            {"product_id": second.id, "delta": 2, "change_type": "ENTRY", "reason": "Receiving"},
            {"product_id": 999, "delta": 1, "change_type": "ENTRY", "reason": "Receiving"},
        ]},
    )

    assert response.status_code == 200
    results = response.json()["results"]
    assert [r["new_stock"] for r in results[:2]] == [4, 7]
    assert results[2]["not_found"] is True


@pytest.mark.asyncio
async def test_history_status_and_verify(client, make_product, stock_engine):
    product = await make_product(stock=5)
    await stock_engine.apply_delta(product.id, -2, "Counter sale", "SALE")

    history = await client.get(f"/stock/history/{product.id}", params={"limit": 1})
    assert history.status_code == 200
    assert len(history.json()) == 1
    assert history.json()[0]["type"] == "SALE"

    status = await client.get(f"/stock/status/{product.id}")
    assert status.json()["current_stock"] == 3
    assert status.json()["is_locked"] is False

    report = await client.get(f"/stock/verify/{product.id}")
    assert report.json()["consistent"] is True
    assert report.json()["entries"] == 2


@pytest.mark.asyncio
async def test_history_unknown_product_is_404(client):
    response = await client.get("/stock/history/999")

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_manual_lock_sweep(client, lock_manager):
    await lock_manager.acquire(1, "dead", ttl_seconds=-1)
    await lock_manager.acquire(2, "alive")

    response = await client.post("/stock/locks/sweep")

    assert response.json() == {"removed": 1}


@pytest.mark.asyncio
async def test_health(client):
    assert (await client.get("/health")).json()["status"] == "healthy"

    db = await client.get("/health/db")
    assert db.json()["database"] == "connected"
