from decimal import Decimal

import pytest

from lpg_backend.exceptions import ConcurrencyConflictError, InvalidRequestError, NotFoundError
from lpg_backend.ledger import to_money
from lpg_backend.reconciliation import check_balances, repair_balance


def _auth(user_id: int) -> dict:
    return {"X-User-Id": str(user_id)}


def test_drifted_balance_is_reported_and_repaired(client, seed, tenant) -> None:
    tenant_id = tenant["tenant_id"]
    customer_id = seed.customer(tenant_id, "Customer X", balance="5000")
    for amount in ("2000", "2000", "500"):
        seed.posting(tenant_id, customer_id, amount)
    headers = _auth(tenant["admin"])

    report = client.get("/api/v1/finance/reconciliation", headers=headers).json()["data"]
    assert report["total_checked"] == 1
    assert report["total_discrepancies"] == 1
    discrepancy = report["discrepancies"][0]
    assert discrepancy["customer_id"] == customer_id
    assert discrepancy["customer_name"] == "Customer X"
    assert discrepancy["system_balance"] == "5000.00"
    assert discrepancy["real_balance"] == "4500.00"
    assert discrepancy["variance"] == "500.00"

    repaired = client.post(
        f"/api/v1/finance/reconciliation/{customer_id}:repair",
        json={"correct_balance": discrepancy["real_balance"], "expected_version": discrepancy["version"]},
        headers=headers,
    )
    assert repaired.status_code == 200
    body = repaired.json()
    assert body["data"]["current_balance"] == "4500.00"
    assert body["meta"]["invalidate"] == ["/admin/finance/reconciliation", "/admin/customers"]

    rescan = client.get("/api/v1/finance/reconciliation", headers=headers).json()["data"]
    assert rescan["total_discrepancies"] == 0
    assert rescan["discrepancies"] == []


def test_customer_without_postings(client, seed, tenant) -> None:
    tenant_id = tenant["tenant_id"]
    seed.customer(tenant_id, "Never Billed", balance="0")
    cached_only = seed.customer(tenant_id, "Cached Only", balance="-300")

    report = client.get("/api/v1/finance/reconciliation", headers=_auth(tenant["admin"])).json()["data"]
    assert report["total_checked"] == 2
    assert [d["customer_id"] for d in report["discrepancies"]] == [cached_only]
    assert report["discrepancies"][0]["real_balance"] == "0.00"
    assert report["discrepancies"][0]["variance"] == "-300.00"


def test_credits_count_with_their_sign(client, seed, tenant) -> None:
    tenant_id = tenant["tenant_id"]
    customer_id = seed.customer(tenant_id, "Settled", balance="1000")
    seed.posting(tenant_id, customer_id, "3000")
    seed.posting(tenant_id, customer_id, "-2000", category="payment_received")

    report = client.get("/api/v1/finance/reconciliation", headers=_auth(tenant["admin"])).json()["data"]
    assert report["total_discrepancies"] == 0


def test_tolerance_boundary(db_session, seed, tenant) -> None:
    tenant_id = tenant["tenant_id"]
    customer_id = seed.customer(tenant_id, "Penny", balance="100.01")
    seed.posting(tenant_id, customer_id, "100")

    assert check_balances(db_session, tenant_id).total_discrepancies == 0
    strict = check_balances(db_session, tenant_id, tolerance=Decimal("0"))
    assert strict.total_discrepancies == 1
    assert strict.discrepancies[0].variance == Decimal("0.01")


def test_other_tenants_are_not_scanned(db_session, seed, tenant) -> None:
    other = seed.tenant("Other Gas")
    seed.customer(other, "Foreign", balance="999")

    report = check_balances(db_session, tenant["tenant_id"])
    assert report.total_checked == 0
    assert report.total_discrepancies == 0


def test_repair_rejects_stale_version(client, seed, tenant) -> None:
    customer_id = seed.customer(tenant["tenant_id"], "Busy", balance="700")
    seed.posting(tenant["tenant_id"], customer_id, "500")
    headers = _auth(tenant["admin"])

    scanned = client.get("/api/v1/finance/reconciliation", headers=headers).json()["data"]["discrepancies"][0]
    client.patch(f"/api/v1/customers/{customer_id}", json={"phone": "0345"}, headers=headers)

    stale = client.post(
        f"/api/v1/finance/reconciliation/{customer_id}:repair",
        json={"correct_balance": scanned["real_balance"], "expected_version": scanned["version"]},
        headers=headers,
    )
    assert stale.status_code == 409
    assert stale.json()["code"] == "CONCURRENT_UPDATE"
    assert seed.balance(customer_id) == Decimal("700.00")

    unconditional = client.post(
        f"/api/v1/finance/reconciliation/{customer_id}:repair",
        json={"correct_balance": scanned["real_balance"]},
        headers=headers,
    )
    assert unconditional.status_code == 200
    assert seed.balance(customer_id) == Decimal("500.00")


def test_repair_is_tenant_scoped(db_session, seed, tenant) -> None:
    other = seed.tenant("Other Gas")
    foreign = seed.customer(other, "Foreign", balance="10")

    with pytest.raises(NotFoundError):
        repair_balance(db_session, tenant["tenant_id"], foreign, "0")
    assert seed.balance(foreign) == Decimal("10.00")


def test_repair_bumps_version(db_session, seed, tenant) -> None:
    customer_id = seed.customer(tenant["tenant_id"], "Versioned", balance="10")

    customer = repair_balance(db_session, tenant["tenant_id"], customer_id, "0", expected_version=1)
    assert customer.version_id == 2
    with pytest.raises(ConcurrencyConflictError):
        repair_balance(db_session, tenant["tenant_id"], customer_id, "5", expected_version=1)


def test_reconciliation_requires_admin(client, tenant) -> None:
    assert client.get("/api/v1/finance/reconciliation").status_code == 401
    assert client.get("/api/v1/finance/reconciliation", headers=_auth(tenant["driver"])).status_code == 403
    assert client.get("/api/v1/finance/reconciliation", headers=_auth(tenant["cashier"])).status_code == 403


def test_repair_unknown_customer(client, tenant) -> None:
    resp = client.post(
        "/api/v1/finance/reconciliation/4242:repair",
        json={"correct_balance": "0"},
        headers=_auth(tenant["admin"]),
    )
    assert resp.status_code == 404
    assert resp.json()["detail"] == "Customer not found or access denied"


def test_repair_balance_beyond_money_precision(client, seed, tenant) -> None:
    customer_id = seed.customer(tenant["tenant_id"], "Customer X", balance="5000")

    for balance in ("1e30", "0.001"):
        resp = client.post(
            f"/api/v1/finance/reconciliation/{customer_id}:repair",
            json={"correct_balance": balance},
            headers=_auth(tenant["admin"]),
        )
        assert resp.status_code == 422
    assert seed.balance(customer_id) == Decimal("5000.00")


def test_to_money_refuses_unrepresentable_values() -> None:
    assert to_money("4500") == Decimal("4500.00")
    for value in ("1e30", "abc"):
        with pytest.raises(InvalidRequestError, match="Invalid amount"):
            to_money(value)
