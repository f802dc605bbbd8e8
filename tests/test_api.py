"""HTTP surface: auth, error mapping and callback acknowledgement."""

import pytest
from fastapi.testclient import TestClient

from paylink.common.errors import ProviderRejected
from paylink.services.api.app import TokenBucket, create_app
from paylink.services.gateways.schemas import Outcome

API = {"x-api-key": "test-key"}
MERCHANT = {**API, "x-merchant-id": "m-1"}
ADMIN = {**API, "x-roles": "admin"}


class FakeRedis:
    """Just enough of the hash commands for the token bucket."""

    def __init__(self):
        self.hashes = {}

    def hmget(self, key, *fields):
        stored = self.hashes.get(key, {})
        return [stored.get(field) for field in fields]

    def hset(self, key, mapping):
        self.hashes.setdefault(key, {}).update({k: str(v) for k, v in mapping.items()})

    def expire(self, key, seconds):
        return True


@pytest.fixture
def limiter():
    return TokenBucket(FakeRedis(), limit_per_minute=2)


@pytest.fixture
def client(session_factory, ledger, webhooks, reconciliation, limiter):
    return TestClient(create_app(session_factory, ledger, webhooks, reconciliation, rate_limiter=limiter))


def test_health(client):
    assert client.get("/health").json() == {"ok": True}


def test_merchant_checkout_requires_key_and_ownership(client, make_link):
    link_id = make_link()

    assert client.post(f"/merchants/m-1/links/{link_id}/checkout").status_code == 401
    assert client.post(f"/merchants/m-1/links/{link_id}/checkout", headers={**API, "x-merchant-id": "m-9"}).status_code == 403

    resp = client.post(f"/merchants/m-1/links/{link_id}/checkout", headers=MERCHANT, json={"customer_name": "Sara T"})

    assert resp.status_code == 200
    body = resp.json()
    assert body["transaction"]["status"] == "processing"
    assert body["checkout_url"].endswith(body["transaction"]["reference"])


def test_public_checkout_rate_limited_per_link(client, make_link):
    link_id = make_link(link_type="reusable")

    codes = [client.post(f"/public/links/{link_id}/checkout").status_code for _ in range(3)]

    assert codes == [200, 200, 429]
    assert client.post(f"/public/links/{make_link(link_type='reusable')}/checkout").status_code == 200


def test_checkout_provider_error_returns_failed_transaction(client, make_link, adapters):
    adapters["santimpay"].initialize_error = ProviderRejected("SantimPay payment initialization failed")

    resp = client.post(f"/public/links/{make_link()}/checkout")

    assert resp.status_code == 502
    assert resp.json()["transaction"]["status"] == "failed"
    assert resp.json()["error"] == "SantimPay payment initialization failed"


def test_domain_errors_map_to_status_codes(client, make_link):
    assert client.post(f"/public/links/{make_link(status='disabled')}/checkout").status_code == 409
    resp = client.get("/transactions/INT-20260101-000000000000", headers=ADMIN)
    assert resp.status_code == 404
    assert resp.json()["code"] == "not_found"


def test_webhook_ack_and_malformed(client, ledger, make_link):
    reference = ledger.open_transaction(None, make_link(gateway="chapa")).transaction.reference

    ok = client.post("/webhooks/chapa", json={"tx_ref": reference, "status": "success"})
    dup = client.post("/webhooks/chapa", json={"tx_ref": reference, "status": "success"})

    assert ok.status_code == 200 and ok.json()["accepted"] is True
    assert dup.json()["duplicate"] is True
    assert ledger.get_transaction(reference).status == "success"
    assert client.post("/webhooks/chapa", json={"status": "success"}).status_code == 400
    assert client.post("/webhooks/chapa", content=b"not json", headers={"content-type": "application/json"}).status_code == 400


def test_redirect_style_callback(client, ledger, make_link):
    reference = ledger.open_transaction(None, make_link(gateway="chapa")).transaction.reference

    resp = client.get("/webhooks/chapa", params={"tx_ref": reference, "status": "failed"})

    assert resp.status_code == 200
    assert ledger.get_transaction(reference).status == "failed"


def test_reconciliation_endpoints_require_admin(client, ledger, make_link, adapters):
    reference = ledger.open_transaction(None, make_link()).transaction.reference

    assert client.get(f"/reconciliation/{reference}", headers=MERCHANT).status_code == 403
    assert client.post(f"/reconciliation/{reference}/sync", headers=ADMIN).status_code == 422

    adapters["santimpay"].set_status(reference, Outcome.SUCCESS)
    diagnostic = client.get(f"/reconciliation/{reference}", headers=ADMIN).json()
    assert (diagnostic["status"], diagnostic["outcome"]) == ("processing", "success")

    synced = client.post(f"/reconciliation/{reference}/sync", headers=ADMIN)
    assert synced.status_code == 200
    assert synced.json()["status"] == "success"


def test_reconciliation_run_stuck_and_batch(client, ledger, make_link):
    reference = ledger.open_transaction(None, make_link()).transaction.reference

    assert client.post("/reconciliation/run", headers=ADMIN).json()["errors"] == 0
    assert client.get("/reconciliation/stuck", headers=ADMIN, params={"hours": 1}).json()["total"] == 0
    batch = client.post("/reconciliation/batch", headers=ADMIN, json={"references": [reference]})
    assert batch.json()["total"] == 1
    too_many = client.post("/reconciliation/batch", headers=ADMIN, json={"references": [reference] * 51})
    assert too_many.status_code == 400


def test_connect_and_disconnect_gateway(client, merchant):
    put = client.put("/merchants/m-1/gateways/chapa", headers=MERCHANT, json={"secret": "CHASECK_TEST-abc"})

    assert put.status_code == 200
    assert "CHASECK" not in put.text
    assert client.put("/merchants/m-1/gateways/paypal", headers=MERCHANT, json={"secret": "x"}).status_code == 404
    assert client.delete("/merchants/m-1/gateways/chapa", headers=MERCHANT).status_code == 200
    assert client.delete("/merchants/m-1/gateways/chapa", headers=MERCHANT).status_code == 404


def test_transaction_visible_to_owner_only(client, ledger, make_link):
    reference = ledger.open_transaction(None, make_link()).transaction.reference

    assert client.get(f"/transactions/{reference}", headers=MERCHANT).json()["reference"] == reference
    assert client.get(f"/transactions/{reference}", headers={**API, "x-merchant-id": "m-9"}).status_code == 403
