from __future__ import annotations

import pytest

from concierge.tests.utils.seed import seed_subscription


def _headers(customer_id: int) -> dict[str, str]:
    return {"X-Customer-Id": str(customer_id)}


@pytest.mark.asyncio
async def test_affiliate_program_flow(client, processor) -> None:
    created = await client.post("/v1/affiliates", json={"name": "Ada Lovelace"}, headers=_headers(1001))
    assert created.status_code == 200
    code = created.json()["data"]["affiliate_code"]
    assert code.startswith("ADALOV")
    assert created.json()["data"]["commission_rate"] == "30.00"

    duplicate = await client.post("/v1/affiliates", json={"name": "Ada"}, headers=_headers(1001))
    assert duplicate.status_code == 400
    assert duplicate.json()["error"]["code"] == "AFFILIATE_ERROR"

    click = await client.post(
        "/v1/affiliates/track-click",
        json={"affiliate_code": code},
        headers={"User-Agent": "pytest-browser"},
    )
    assert click.json()["data"] == {"success": True}

    link = await client.post(
        "/v1/affiliates/link-referral",
        json={"affiliate_code": code, "email": "friend@example.com"},
        headers=_headers(1002),
    )
    assert link.json()["data"] == {"success": True}

    await seed_subscription(processor, customer_id=1002, tier="starter")

    stats = await client.get("/v1/affiliates/stats", headers=_headers(1001))
    assert stats.json()["data"] == {
        "total_referrals": 1,
        "signed_up_referrals": 1,
        "subscribed_referrals": 1,
        "conversion_rate": "100.0",
    }

    commissions = await client.get("/v1/affiliates/commissions", headers=_headers(1001))
    amounts = sorted(item["amount"] for item in commissions.json()["data"])
    assert amounts == ["14.70", "75.00"]

    referrals = await client.get("/v1/affiliates/referrals", headers=_headers(1001))
    assert referrals.json()["data"][0]["status"] == "subscribed"
    assert referrals.json()["data"][0]["referred_email"] == "friend@example.com"

    me = await client.get("/v1/affiliates/me", headers=_headers(1001))
    assert me.json()["data"]["total_earnings"] == "89.70"


@pytest.mark.asyncio
async def test_payment_info_update(client) -> None:
    await client.post("/v1/affiliates", json={"name": "Grace"}, headers=_headers(1003))

    updated = await client.put(
        "/v1/affiliates/me/payment-info",
        json={"paypal_email": "grace@example.com"},
        headers=_headers(1003),
    )
    assert updated.status_code == 200
    assert updated.json()["data"]["paypal_email"] == "grace@example.com"


@pytest.mark.asyncio
async def test_non_affiliate_views(client) -> None:
    me = await client.get("/v1/affiliates/me", headers=_headers(1004))
    assert me.json()["data"] is None

    stats = await client.get("/v1/affiliates/stats", headers=_headers(1004))
    assert stats.json()["data"] is None

    commissions = await client.get("/v1/affiliates/commissions", headers=_headers(1004))
    assert commissions.status_code == 404
    assert commissions.json()["error"]["code"] == "AFFILIATE_NOT_FOUND"


@pytest.mark.asyncio
async def test_unknown_code_click_is_not_found(client) -> None:
    response = await client.post("/v1/affiliates/track-click", json={"affiliate_code": "MISSING1"})
    assert response.status_code == 404
    assert response.json()["error"]["message"] == "Invalid affiliate code."
