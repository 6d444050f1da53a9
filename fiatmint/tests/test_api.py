"""
API Tests.

End-to-end request handling: authentication, role guards, the payment
webhook and the member, staff and admin surfaces.
"""

import json
from datetime import timedelta
from decimal import Decimal

import pytest

from fiatmint.app.core.config import settings
from fiatmint.app.core.jwt import create_access_token
from fiatmint.app.db.session import utcnow
from fiatmint.app.integrations.blockchain import BlockchainTimeout
from fiatmint.app.integrations.payment_gateway import sign_webhook_payload
from fiatmint.app.models.user import User
from fiatmint.tests.conftest import WALLET, OTHER_WALLET

WEBHOOK_SECRET = "whsec_test_secret"


def _checkout_event(order_id, amount_total=5000, currency="eur", event_type="checkout.session.completed"):
    return json.dumps({
        "id": "evt_1",
        "type": event_type,
        "data": {
            "object": {
                "id": "cs_test_1",
                "amount_total": amount_total,
                "currency": currency,
                "client_reference_id": order_id,
                "metadata": {"order_id": order_id},
            }
        },
    }).encode()


@pytest.fixture
def webhook_secret(mocker):
    mocker.patch.object(settings, "payment_webhook_secret", WEBHOOK_SECRET)
    return WEBHOOK_SECRET


async def _post_webhook(client, payload, secret=WEBHOOK_SECRET):
    return await client.post(
        "/v1/payments/webhook",
        content=payload,
        headers={"Stripe-Signature": sign_webhook_payload(payload, secret), "Content-Type": "application/json"},
    )


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert "X-Correlation-ID" in response.headers


@pytest.mark.asyncio
async def test_correlation_id_is_echoed(client):
    response = await client.get("/health", headers={"X-Correlation-ID": "abc-123"})

    assert response.headers["X-Correlation-ID"] == "abc-123"


# Authentication and roles

@pytest.mark.asyncio
async def test_missing_token_is_rejected(client):
    response = await client.get("/v1/payments/orders")

    assert response.status_code in (401, 403)


@pytest.mark.asyncio
async def test_invalid_token_is_401(client):
    response = await client.get("/v1/payments/orders", headers={"Authorization": "Bearer not-a-jwt"})

    assert response.status_code == 401
    assert response.json()["error_code"] == "ERR_UNAUTHORIZED"


@pytest.mark.asyncio
async def test_expired_token_is_401(client):
    token = create_access_token({"user_id": "user-1", "roles": ["MEMBER"]}, expires_delta=timedelta(minutes=-5))

    response = await client.get("/v1/payments/orders", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 401


@pytest.mark.asyncio
async def test_token_without_user_id_is_401(client):
    token = create_access_token({"sub": "someone", "roles": ["ADMIN"]})

    response = await client.get("/v1/payments/orders", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 401


@pytest.mark.asyncio
async def test_member_cannot_use_admin_routes(client, auth):
    response = await client.get("/v1/admin/mints/unresolved", headers=auth("user-1"))

    assert response.status_code == 403
    assert response.json()["error_code"] == "ERR_FORBIDDEN"


@pytest.mark.asyncio
async def test_roles_are_case_insensitive(client, auth):
    response = await client.get("/v1/admin/mints/unresolved", headers=auth("admin-1", roles=("admin",), wallet_address=None))

    assert response.status_code == 200
    assert response.json() == []


@pytest.mark.asyncio
async def test_first_request_creates_local_user(client, auth, blockchain):
    blockchain.balances[WALLET] = Decimal("12.5")

    response = await client.get("/v1/tokens/balance", headers=auth("new-user"))

    assert response.status_code == 200
    body = response.json()
    assert body["address"] == WALLET
    assert Decimal(body["balance"]) == Decimal("12.5")


@pytest.mark.asyncio
async def test_balance_without_wallet(client, auth):
    response = await client.get("/v1/tokens/balance", headers=auth("walletless", wallet_address=None))

    assert response.status_code == 422
    assert response.json()["error_code"] == "ERR_WALLET_001"


@pytest.mark.asyncio
async def test_token_info_is_public(client, blockchain):
    blockchain.minted.append((WALLET, Decimal("1000"), "0x01"))

    response = await client.get("/v1/tokens/info")

    assert response.status_code == 200
    body = response.json()
    assert (body["name"], body["symbol"], body["decimals"]) == ("Fan Token", "FAN", 18)
    assert Decimal(body["total_supply"]) == Decimal("1000")


@pytest.mark.asyncio
async def test_transfer_between_members(client, auth, db_session, member, blockchain):
    db_session.add(User(id="user-2", email="friend@example.com", wallet_address=OTHER_WALLET))
    await db_session.commit()
    blockchain.balances[WALLET] = Decimal("50")

    response = await client.post(
        "/v1/tokens/transfer", json={"to_user_id": "user-2", "amount": "20"}, headers=auth()
    )

    assert response.status_code == 200
    body = response.json()
    assert body["to_address"] == OTHER_WALLET
    assert Decimal(body["amount"]) == Decimal("20")
    assert blockchain.balances[OTHER_WALLET] == Decimal("20")

    overdraw = await client.post(
        "/v1/tokens/transfer", json={"to_user_id": "user-2", "amount": "31"}, headers=auth()
    )
    assert overdraw.status_code == 409
    assert overdraw.json()["error_code"] == "ERR_BALANCE_001"


@pytest.mark.asyncio
async def test_transfer_to_self_is_422(client, auth, member, blockchain):
    blockchain.balances[WALLET] = Decimal("50")

    response = await client.post(
        "/v1/tokens/transfer", json={"to_user_id": "user-1", "amount": "1"}, headers=auth()
    )

    assert response.status_code == 422
    assert blockchain.transfers == []


@pytest.mark.asyncio
async def test_transfer_requires_positive_amount(client, auth, member):
    response = await client.post(
        "/v1/tokens/transfer", json={"to_user_id": "user-2", "amount": "0"}, headers=auth()
    )

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_transfer_outcome_unknown_is_409(client, auth, db_session, member, blockchain):
    db_session.add(User(id="user-2", email="friend@example.com", wallet_address=OTHER_WALLET))
    await db_session.commit()
    blockchain.balances[WALLET] = Decimal("50")
    blockchain.fail_with = BlockchainTimeout("No receipt")

    response = await client.post(
        "/v1/tokens/transfer", json={"to_user_id": "user-2", "amount": "5"}, headers=auth()
    )

    assert response.status_code == 409
    assert response.json()["error_code"] == "ERR_TRANSFER_AMBIGUOUS"



# Checkout and webhook

@pytest.mark.asyncio
async def test_products_and_checkout(client, auth, member, product, gateway):
    products = (await client.get("/v1/payments/products")).json()
    assert [p["name"] for p in products] == ["Starter Pack"]

    response = await client.post("/v1/payments/checkout", json={"product_id": product.id}, headers=auth())

    assert response.status_code == 200
    body = response.json()
    assert body["checkout_url"] == f"https://checkout.test/{body['order_id']}"
    assert len(gateway.sessions) == 1

    orders = (await client.get("/v1/payments/orders", headers=auth())).json()
    assert orders["total"] == 1
    assert orders["orders"][0]["status"] == "pending"


@pytest.mark.asyncio
async def test_checkout_gateway_down_is_502(client, auth, member, product, gateway):
    gateway.fail = True

    response = await client.post("/v1/payments/checkout", json={"product_id": product.id}, headers=auth())

    assert response.status_code == 502
    assert response.json()["error_code"] == "ERR_EXTERNAL_001"


@pytest.mark.asyncio
async def test_webhook_settles_then_replays(client, auth, pending_order, webhook_secret):
    payload = _checkout_event(pending_order.id)

    first = await _post_webhook(client, payload)
    second = await _post_webhook(client, payload)

    assert first.status_code == 200
    assert first.json() == {"received": True, "status": "settled", "order_id": pending_order.id}
    assert second.json()["status"] == "replayed"

    entries = (await client.get(f"/v1/transparency/ledger/reference/{pending_order.id}")).json()
    assert len(entries) == 1
    assert entries[0]["kind"] == "payment"
    assert Decimal(entries[0]["amount"]) == Decimal("50")


@pytest.mark.asyncio
async def test_webhook_bad_signature_is_400(client, pending_order, webhook_secret):
    payload = _checkout_event(pending_order.id)

    response = await _post_webhook(client, payload, secret="whsec_wrong")

    assert response.status_code == 400
    assert response.json()["error_code"] == "ERR_WEBHOOK_001"


@pytest.mark.asyncio
async def test_webhook_without_signature_is_400(client, pending_order, webhook_secret):
    response = await client.post("/v1/payments/webhook", content=_checkout_event(pending_order.id))

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_webhook_unknown_order_is_discarded(client, webhook_secret):
    response = await _post_webhook(client, _checkout_event("missing-order"))

    assert response.status_code == 200
    assert response.json()["status"] == "discarded"


@pytest.mark.asyncio
async def test_webhook_foreign_currency_is_discarded(client, pending_order, webhook_secret):
    response = await _post_webhook(client, _checkout_event(pending_order.id, currency="usd"))

    assert response.json()["status"] == "discarded"


@pytest.mark.asyncio
async def test_webhook_other_events_are_ignored(client, webhook_secret):
    response = await _post_webhook(client, _checkout_event("x", event_type="payment_intent.created"))

    assert response.status_code == 200
    assert response.json()["status"] == "ignored"


@pytest.mark.asyncio
async def test_paid_order_is_minted_by_admin_dispatch(client, auth, pending_order, webhook_secret, blockchain):
    await _post_webhook(client, _checkout_event(pending_order.id))
    admin = auth("admin-1", roles=("ADMIN",), wallet_address=None)

    report = (await client.post("/v1/admin/outbox/dispatch", headers=admin)).json()

    assert report == {"dispatched": 1, "retried": 0, "pending": 0}
    assert blockchain.balances[WALLET] == Decimal("100")

    order = (await client.get(f"/v1/payments/orders/{pending_order.id}", headers=auth())).json()
    assert order["status"] == "completed"
    assert order["mint"]["tx_hash"] == blockchain.minted[0][2]

    mints = (await client.get("/v1/tokens/mints", headers=auth())).json()
    assert mints["total"] == 1


@pytest.mark.asyncio
async def test_other_users_order_is_404(client, auth, pending_order):
    response = await client.get(f"/v1/payments/orders/{pending_order.id}", headers=auth("user-2"))

    assert response.status_code == 404


# Admin mint and reconciliation

@pytest.mark.asyncio
async def test_admin_mint_and_reconcile(client, auth, member, blockchain):
    admin = auth("admin-1", roles=("ADMIN",), wallet_address=None)

    minted = await client.post("/v1/tokens/admin/mint", json={"user_id": member.id, "token_amount": "25"}, headers=admin)
    assert minted.status_code == 200
    assert blockchain.balances[WALLET] == Decimal("25")

    blockchain.fail_with = BlockchainTimeout("no receipt")
    stuck = await client.post("/v1/tokens/admin/mint", json={"user_id": member.id, "token_amount": "5"}, headers=admin)
    assert stuck.status_code == 409
    assert stuck.json()["error_code"] == "ERR_MINT_AMBIGUOUS"
    order_id = stuck.json()["details"]["order_id"]

    unresolved = (await client.get("/v1/admin/mints/unresolved", headers=admin)).json()
    assert [u["order_id"] for u in unresolved] == [order_id]

    resolved = await client.post(f"/v1/admin/mints/{order_id}/reconcile", json={}, headers=admin)
    assert resolved.status_code == 200
    assert resolved.json()["status"] == "failed"

    again = await client.post(f"/v1/admin/mints/{order_id}/reconcile", json={}, headers=admin)
    assert again.status_code == 409

    trail = (await client.get("/v1/transparency/audit-trail", headers=admin)).json()
    assert {log["action"] for log in trail["logs"]} == {"ADMIN_MINT", "MINT_RECONCILED"}


@pytest.mark.asyncio
async def test_admin_mint_rejects_non_positive_amount(client, auth, member):
    admin = auth("admin-1", roles=("ADMIN",), wallet_address=None)

    response = await client.post("/v1/tokens/admin/mint", json={"user_id": member.id, "token_amount": "0"}, headers=admin)

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_reconcile_unknown_order_is_404(client, auth):
    admin = auth("admin-1", roles=("ADMIN",), wallet_address=None)

    response = await client.post("/v1/admin/mints/missing/reconcile", json={}, headers=admin)

    assert response.status_code == 404


# Perks

@pytest.mark.asyncio
async def test_perk_claim_and_single_redemption(client, auth, member, blockchain):
    admin = auth("admin-1", roles=("ADMIN",), wallet_address=None)
    staff = auth("staff-1", roles=("STAFF",), wallet_address=None)
    blockchain.balances[WALLET] = Decimal("40")

    created = await client.post(
        "/v1/perks",
        json={"name": "Signed Poster", "token_cost": "40", "perk_type": "physical", "metadata": {"edition": 1}},
        headers=admin,
    )
    assert created.status_code == 201
    perk_id = created.json()["id"]
    assert created.json()["metadata"] == {"edition": 1}

    claim = await client.post(f"/v1/perks/{perk_id}/claim", headers=auth())
    assert claim.status_code == 201
    claim_body = claim.json()

    by_code = await client.get(f"/v1/perks/claims/by-code/{claim_body['qr_code']}", headers=staff)
    assert by_code.json()["id"] == claim_body["id"]

    member_redeem = await client.post(f"/v1/perks/claims/{claim_body['id']}/redeem", headers=auth())
    assert member_redeem.status_code == 403

    first = await client.post(f"/v1/perks/claims/{claim_body['id']}/redeem", headers=staff)
    second = await client.post(f"/v1/perks/claims/{claim_body['id']}/redeem", headers=staff)

    assert first.status_code == 200
    assert first.json()["redeemed_by"] == "staff-1"
    assert second.status_code == 409
    assert second.json()["error_code"] == "ERR_PERK_REDEEMED"

    mine = (await client.get("/v1/perks/claims/mine", headers=auth())).json()
    assert [c["id"] for c in mine] == [claim_body["id"]]

    removal = await client.delete(f"/v1/perks/{perk_id}", headers=admin)
    assert removal.status_code == 409


@pytest.mark.asyncio
async def test_perk_claim_insufficient_balance(client, auth, member, perk, blockchain):
    blockchain.balances[WALLET] = Decimal("1")

    response = await client.post(f"/v1/perks/{perk.id}/claim", headers=auth())

    assert response.status_code == 409
    assert response.json()["error_code"] == "ERR_BALANCE_001"


@pytest.mark.asyncio
async def test_inactive_perks_are_admin_only(client, auth, perk):
    admin = auth("admin-1", roles=("ADMIN",), wallet_address=None)
    await client.post(f"/v1/perks/{perk.id}/deactivate", headers=admin)

    assert (await client.get("/v1/perks", headers=auth())).json() == []
    assert (await client.get("/v1/perks?include_inactive=true", headers=auth())).status_code == 403
    listed = (await client.get("/v1/perks?include_inactive=true", headers=admin)).json()
    assert [p["active"] for p in listed] == [False]


@pytest.mark.asyncio
async def test_claim_debit_endpoint(client, auth, member, perk, blockchain):
    admin = auth("admin-1", roles=("ADMIN",), wallet_address=None)
    blockchain.balances[WALLET] = Decimal("30")
    claim_id = (await client.post(f"/v1/perks/{perk.id}/claim", headers=auth())).json()["id"]

    first = await client.post(f"/v1/perks/claims/{claim_id}/debit", json={"tx_hash": "0x" + "bb" * 32}, headers=admin)
    second = await client.post(f"/v1/perks/claims/{claim_id}/debit", json={"tx_hash": "0x" + "bb" * 32}, headers=admin)

    assert first.status_code == 200
    assert second.json()["replayed"] is True
    assert second.json()["ledger_entry_id"] == first.json()["ledger_entry_id"]


# Votes

@pytest.mark.asyncio
async def test_vote_lifecycle(client, auth, blockchain):
    admin = auth("admin-1", roles=("ADMIN",), wallet_address=None)
    blockchain.balances[WALLET] = Decimal("5")
    now = utcnow()

    created = await client.post(
        "/v1/votes",
        json={
            "title": "Next merch drop",
            "start_at": (now - timedelta(hours=1)).isoformat(),
            "end_at": (now + timedelta(days=1)).isoformat(),
            "options": ["Hoodie", "Cap"],
        },
        headers=admin,
    )
    assert created.status_code == 201
    vote = created.json()
    assert vote["status"] == "active"
    options = {o["label"]: o["id"] for o in vote["options"]}

    voters = ["v1", "v2", "v3", "v4"]
    choices = ["Hoodie", "Hoodie", "Hoodie", "Cap"]
    for voter, choice in zip(voters, choices):
        response = await client.post(
            f"/v1/votes/{vote['id']}/ballots", json={"option_id": options[choice]}, headers=auth(voter)
        )
        assert response.status_code == 201

    duplicate = await client.post(
        f"/v1/votes/{vote['id']}/ballots", json={"option_id": options["Cap"]}, headers=auth("v1")
    )
    assert duplicate.status_code == 409
    assert duplicate.json()["error_code"] == "ERR_VOTE_DUPLICATE"

    results = (await client.get(f"/v1/votes/{vote['id']}/results", headers=auth())).json()
    assert results["total_votes"] == 4
    assert [(r["label"], r["votes"], r["percentage"]) for r in results["results"]] == [
        ("Hoodie", 3, 75.0),
        ("Cap", 1, 25.0),
    ]

    removal = await client.delete(f"/v1/votes/options/{options['Cap']}", headers=admin)
    assert removal.status_code == 409


@pytest.mark.asyncio
async def test_ballot_requires_token_holder(client, auth, open_vote, blockchain):
    url = f"/v1/votes/{open_vote['vote_id']}/ballots"

    empty = await client.post(url, json={"option_id": open_vote["a"]}, headers=auth("holder"))
    assert empty.status_code == 409
    assert empty.json()["error_code"] == "ERR_BALANCE_001"

    walletless = await client.post(url, json={"option_id": open_vote["a"]}, headers=auth("nobody", wallet_address=None))
    assert walletless.status_code == 422
    assert walletless.json()["error_code"] == "ERR_WALLET_001"

    blockchain.balances[WALLET] = Decimal("0.5")
    cast = await client.post(url, json={"option_id": open_vote["a"]}, headers=auth("holder"))
    assert cast.status_code == 201


@pytest.mark.asyncio
async def test_vote_creation_requires_two_options(client, auth):
    admin = auth("admin-1", roles=("ADMIN",), wallet_address=None)
    now = utcnow()

    response = await client.post(
        "/v1/votes",
        json={
            "title": "Lonely",
            "start_at": now.isoformat(),
            "end_at": (now + timedelta(days=1)).isoformat(),
            "options": ["Only"],
        },
        headers=admin,
    )

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_vote_creation_accepts_naive_start_with_aware_end(client, auth):
    admin = auth("admin-1", roles=("ADMIN",), wallet_address=None)
    now = utcnow()

    response = await client.post(
        "/v1/votes",
        json={
            "title": "Mixed clocks",
            "start_at": (now - timedelta(hours=1)).replace(tzinfo=None).isoformat(),
            "end_at": (now + timedelta(days=1)).isoformat(),
            "options": ["a", "b"],
        },
        headers=admin,
    )

    assert response.status_code == 201
    assert response.json()["status"] == "active"


@pytest.mark.asyncio
async def test_member_cannot_create_vote(client, auth):
    now = utcnow()

    response = await client.post(
        "/v1/votes",
        json={"title": "x", "start_at": now.isoformat(), "end_at": (now + timedelta(days=1)).isoformat(), "options": ["a", "b"]},
        headers=auth(),
    )

    assert response.status_code == 403


# Transparency

@pytest.mark.asyncio
async def test_transparency_is_public(client, pending_order, webhook_secret):
    await _post_webhook(client, _checkout_event(pending_order.id))

    summary = (await client.get("/v1/transparency/summary")).json()
    assert Decimal(summary["eur"]["total_in"]) == Decimal("50")

    stats = (await client.get("/v1/transparency/stats")).json()
    assert stats["total_transactions"] == 1

    ledger = (await client.get("/v1/transparency/ledger?currency=EUR")).json()
    assert ledger["total"] == 1

    by_kind = (await client.get("/v1/transparency/ledger/kind/payment")).json()
    assert by_kind["kind"] == "payment"

    export = await client.get("/v1/transparency/export")
    assert export.status_code == 200
    assert export.headers["content-type"].startswith("text/csv")
    assert "attachment" in export.headers["content-disposition"]
    assert export.text.splitlines()[0] == "ID,Kind,Reference ID,Direction,Amount,Currency,Metadata,Created At"


@pytest.mark.asyncio
async def test_transparency_rejects_inverted_range(client):
    now = utcnow()
    params = {"start_date": now.isoformat(), "end_date": (now - timedelta(days=1)).isoformat()}

    response = await client.get("/v1/transparency/summary", params=params)

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_transparency_accepts_naive_and_aware_bounds(client):
    params = {"start_date": "2026-01-01T00:00:00", "end_date": "2026-02-01T00:00:00Z"}

    response = await client.get("/v1/transparency/summary", params=params)

    assert response.status_code == 200
    assert response.json()["total_entries"] == 0


@pytest.mark.asyncio
async def test_transparency_rejects_inverted_mixed_bounds(client):
    params = {"start_date": "2026-03-01T00:00:00", "end_date": "2026-02-01T00:00:00Z"}

    response = await client.get("/v1/transparency/summary", params=params)

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_audit_trail_is_admin_only(client, auth):
    response = await client.get("/v1/transparency/audit-trail", headers=auth())

    assert response.status_code == 403
