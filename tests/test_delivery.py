import io
from decimal import Decimal

from fastapi import UploadFile

from lpg_backend import procedures
from lpg_backend.inventory import CustomerHolder, DriverHolder
from lpg_backend.main import _proof, _proof_warnings
from lpg_backend.models import CashBookEntry, CustomerLedger, Order


def _auth(user_id: int) -> dict:
    return {"X-User-Id": str(user_id)}


def _warehouse_stock(seed, tenant, *serials):
    for serial in serials:
        seed.cylinder(tenant["tenant_id"], serial, status="full")


def _place_order(client, tenant, customer_id, quantity=2, unit_price="3200", driver_id=None, **extra):
    resp = client.post(
        "/api/v1/orders",
        json={
            "customer_id": customer_id,
            "driver_id": driver_id if driver_id is not None else tenant["driver"],
            "quantity": quantity,
            "unit_price": unit_price,
            **extra,
        },
        headers=_auth(tenant["admin"]),
    )
    assert resp.status_code == 200, resp.text
    return resp.json()["data"]


def _complete(client, driver_id, order_id, files=None, **form):
    data = {"received_amount": "0", "payment_method": "cash", **form}
    return client.post(
        f"/api/v1/driver/orders/{order_id}:complete",
        data=data,
        files=files,
        headers=_auth(driver_id),
    )


def _must_not_run(*args, **kwargs):
    raise AssertionError("delivery procedure must not run")


def test_empty_truck_is_refused(client, seed, tenant, monkeypatch) -> None:
    customer_id = seed.customer(tenant["tenant_id"], "Hotel Mehran")
    order_id = seed.order(tenant["tenant_id"], customer_id, tenant["driver"], quantity=2, total="6400")
    monkeypatch.setattr(procedures, "complete_order_transaction", _must_not_run)

    resp = _complete(client, tenant["driver"], order_id)
    assert resp.status_code == 400
    assert resp.json() == {
        "detail": "No cylinders found on truck! Cannot complete delivery.",
        "code": "NO_STOCK",
    }


def test_short_truck_is_refused(client, seed, tenant, monkeypatch) -> None:
    tenant_id = tenant["tenant_id"]
    customer_id = seed.customer(tenant_id, "Hotel Mehran")
    order_id = seed.order(tenant_id, customer_id, tenant["driver"], quantity=2, total="6400")
    seed.cylinder(tenant_id, "T1", holder=DriverHolder(tenant["driver"]))
    seed.cylinder(tenant_id, "T2", status="empty", holder=DriverHolder(tenant["driver"]))
    monkeypatch.setattr(procedures, "complete_order_transaction", _must_not_run)

    resp = _complete(client, tenant["driver"], order_id)
    assert resp.status_code == 400
    assert resp.json() == {
        "detail": "Insufficient stock! You have 1, but order needs 2.",
        "code": "INSUFFICIENT_STOCK",
    }
    assert seed.get(Order, order_id).status == "assigned"


def test_cash_delivery_moves_money_and_cylinders(client, seed, tenant, storage) -> None:
    tenant_id = tenant["tenant_id"]
    driver = tenant["driver"]
    customer_id = seed.customer(tenant_id, "Hotel Mehran")
    _warehouse_stock(seed, tenant, "W1", "W2", "W3")
    seed.cylinder(tenant_id, "E1", status="at_customer", holder=CustomerHolder(customer_id))

    order = _place_order(client, tenant, customer_id)
    assert order["status"] == "assigned"
    assert order["total_amount"] == "6400.00"
    state = seed.cylinder_state(tenant_id)
    assert state["W1"] == ("full", "driver", driver)
    assert state["W2"] == ("full", "driver", driver)
    assert state["W3"] == ("full", "warehouse", None)

    trip = client.post("/api/v1/driver/trip:start", json={}, headers=_auth(driver))
    assert trip.json()["data"] == {"started": 1}
    route = client.get("/api/v1/driver/orders", headers=_auth(driver)).json()["data"]
    assert [(o["order_id"], o["status"]) for o in route] == [(order["order_id"], "on_trip")]

    resp = _complete(
        client,
        driver,
        order["order_id"],
        files={"proof": ("receipt.jpg", b"\xff\xd8jpeg", "image/jpeg")},
        received_amount="3000",
        payment_method="cash",
        returned_serials="E1",
        notes="gate 2",
    )
    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["data"]["success"] is True
    assert body["data"]["delivered"] == 2
    assert body["data"]["returned"] == 1
    assert body["data"]["proof_url"] == f"http://storage.test/lpg-receipts/{tenant_id}/deliveries/receipt.jpg"
    assert body["meta"]["warnings"] == []
    assert "/driver" in body["meta"]["invalidate"]

    assert seed.balance(customer_id) == Decimal("3400.00")
    assert seed.wallet(driver) == Decimal("3000.00")
    state = seed.cylinder_state(tenant_id)
    assert state["W1"] == ("at_customer", "customer", customer_id)
    assert state["W2"] == ("at_customer", "customer", customer_id)
    assert state["E1"] == ("empty", "driver", driver)

    postings = seed.rows(CustomerLedger, customer_id=customer_id)
    assert [(p.category, Decimal(str(p.amount))) for p in postings] == [
        ("order_delivery", Decimal("6400")),
        ("payment_received", Decimal("-3000")),
    ]
    # cash stays in the driver's wallet until handover
    assert seed.rows(CashBookEntry) == []

    delivered = seed.get(Order, order["order_id"])
    assert delivered.status == "delivered"
    assert delivered.empties_returned == 1
    assert delivered.notes == "gate 2"

    report = client.get("/api/v1/finance/reconciliation", headers=_auth(tenant["admin"])).json()["data"]
    assert report["total_discrepancies"] == 0

    stats = client.get("/api/v1/driver/stats", headers=_auth(driver)).json()["data"]
    assert stats["wallet_balance"] == "3000.00"
    assert stats["full_cylinders"] == 0
    assert stats["empty_cylinders"] == 1
    assert stats["active_orders"] == 0
    assert stats["delivered_today"] == 1

    completed = client.get("/api/v1/driver/orders/completed", headers=_auth(driver)).json()["data"]
    assert [o["order_id"] for o in completed] == [order["order_id"]]

    again = _complete(client, driver, order["order_id"])
    assert again.status_code == 409
    assert again.json()["detail"] == "Order is already delivered"


def test_proof_upload_failure_does_not_block_delivery(client, seed, tenant, storage) -> None:
    customer_id = seed.customer(tenant["tenant_id"], "Hotel Mehran")
    _warehouse_stock(seed, tenant, "W1")
    order = _place_order(client, tenant, customer_id, quantity=1, unit_price="3200")
    storage.fail = True

    resp = _complete(
        client,
        tenant["driver"],
        order["order_id"],
        files={"proof": ("receipt.jpg", b"jpeg", "image/jpeg")},
        received_amount="3200",
    )
    assert resp.status_code == 200
    assert resp.json()["data"]["proof_url"] is None
    assert resp.json()["meta"]["warnings"] == ["proof image could not be stored"]
    assert seed.balance(customer_id) == Decimal("0.00")


def test_nameless_upload_raises_no_warning() -> None:
    blank = UploadFile(file=io.BytesIO(b""), filename="")
    assert _proof(blank) is None
    assert _proof_warnings(_proof(blank), None) == []

    receipt = ("receipt.jpg", b"jpeg", "image/jpeg")
    assert _proof_warnings(receipt, None) == ["proof image could not be stored"]
    assert _proof_warnings(receipt, "http://storage.test/receipt.jpg") == []


def test_received_amount_beyond_money_precision(client, seed, tenant) -> None:
    customer_id = seed.customer(tenant["tenant_id"], "Hotel Mehran")
    _warehouse_stock(seed, tenant, "W1")
    order = _place_order(client, tenant, customer_id, quantity=1)

    resp = _complete(client, tenant["driver"], order["order_id"], received_amount="1e30")
    assert resp.status_code == 422
    assert seed.get(Order, order["order_id"]).status == "assigned"
    assert seed.rows(CustomerLedger, customer_id=customer_id) == []


def test_returned_cylinder_must_belong_to_customer(client, seed, tenant) -> None:
    tenant_id = tenant["tenant_id"]
    customer_id = seed.customer(tenant_id, "Hotel Mehran")
    neighbour = seed.customer(tenant_id, "Neighbour")
    seed.cylinder(tenant_id, "N1", status="at_customer", holder=CustomerHolder(neighbour))
    _warehouse_stock(seed, tenant, "W1")
    order = _place_order(client, tenant, customer_id, quantity=1)

    resp = _complete(client, tenant["driver"], order["order_id"], returned_serials="N1")
    assert resp.status_code == 409
    assert resp.json() == {
        "detail": "Returned cylinders not held by this customer: N1",
        "code": "PROCEDURE_FAILED",
    }
    state = seed.cylinder_state(tenant_id)
    assert state["W1"] == ("full", "driver", tenant["driver"])
    assert state["N1"] == ("at_customer", "customer", neighbour)
    assert seed.balance(customer_id) == Decimal("0.00")
    assert seed.get(Order, order["order_id"]).status == "assigned"


def test_bank_payment_waits_for_verification(client, seed, tenant) -> None:
    tenant_id = tenant["tenant_id"]
    customer_id = seed.customer(tenant_id, "Hotel Mehran")
    _warehouse_stock(seed, tenant, "W1", "W2")
    order = _place_order(client, tenant, customer_id)

    resp = _complete(
        client,
        tenant["driver"],
        order["order_id"],
        files={"proof": ("slip.png", b"png", "image/png")},
        received_amount="6400",
        payment_method="bank",
    )
    assert resp.status_code == 200
    assert seed.balance(customer_id) == Decimal("6400.00")
    assert seed.wallet(tenant["driver"]) == Decimal("0.00")

    pending = client.get("/api/v1/payments/pending", headers=_auth(tenant["cashier"])).json()["data"]
    assert len(pending) == 1
    entry = pending[0]
    assert entry["status"] == "pending_verification"
    assert entry["payment_method"] == "bank"
    assert entry["amount"] == "6400.00"
    assert entry["proof_url"].endswith("/deliveries/slip.png")

    assert client.post(f"/api/v1/payments/{entry['entry_id']}:verify", headers=_auth(tenant["cashier"])).status_code == 403

    verified = client.post(f"/api/v1/payments/{entry['entry_id']}:verify", headers=_auth(tenant["admin"]))
    assert verified.status_code == 200
    assert verified.json()["data"]["status"] == "completed"
    assert verified.json()["data"]["verified_by"] == tenant["admin"]
    assert seed.balance(customer_id) == Decimal("0.00")

    again = client.post(f"/api/v1/payments/{entry['entry_id']}:verify", headers=_auth(tenant["admin"]))
    assert again.status_code == 409
    assert again.json()["code"] == "ALREADY_PROCESSED"

    report = client.get("/api/v1/finance/reconciliation", headers=_auth(tenant["admin"])).json()["data"]
    assert report["total_discrepancies"] == 0


def test_rejected_bank_payment_leaves_debt(client, seed, tenant) -> None:
    customer_id = seed.customer(tenant["tenant_id"], "Hotel Mehran")
    _warehouse_stock(seed, tenant, "W1")
    order = _place_order(client, tenant, customer_id, quantity=1, unit_price="3200")
    _complete(
        client,
        tenant["driver"],
        order["order_id"],
        files={"proof": ("slip.png", b"png", "image/png")},
        received_amount="3200",
        payment_method="cheque",
    )
    entry_id = seed.rows(CashBookEntry)[0].id

    rejected = client.post(
        f"/api/v1/payments/{entry_id}:reject", json={"reason": "cheque bounced"}, headers=_auth(tenant["admin"])
    )
    assert rejected.status_code == 200
    assert rejected.json()["data"]["status"] == "rejected"
    assert rejected.json()["data"]["description"].endswith("| Rejected: cheque bounced")
    assert seed.balance(customer_id) == Decimal("3200.00")


def test_other_driver_cannot_complete(client, seed, tenant) -> None:
    customer_id = seed.customer(tenant["tenant_id"], "Hotel Mehran")
    _warehouse_stock(seed, tenant, "W1")
    order = _place_order(client, tenant, customer_id, quantity=1)
    intruder = seed.user(tenant["tenant_id"], "driver", "Kamran")

    resp = _complete(client, intruder, order["order_id"])
    assert resp.status_code == 404
    assert resp.json()["detail"] == "Order not found or access denied"


def test_order_creation_guards(client, seed, tenant) -> None:
    customer_id = seed.customer(tenant["tenant_id"], "Hotel Mehran")
    _warehouse_stock(seed, tenant, "W1")
    headers = _auth(tenant["admin"])

    short = client.post(
        "/api/v1/orders",
        json={"customer_id": customer_id, "driver_id": tenant["driver"], "quantity": 2, "unit_price": "3200"},
        headers=headers,
    )
    assert short.status_code == 400
    assert short.json()["detail"] == "Not enough full cylinders in warehouse. Available: 1, requested: 2."

    bad_driver = client.post(
        "/api/v1/orders",
        json={"customer_id": customer_id, "driver_id": tenant["agent"], "quantity": 1, "unit_price": "3200"},
        headers=headers,
    )
    assert bad_driver.status_code == 400
    assert bad_driver.json()["detail"] == "Invalid Driver for this Tenant"

    unassigned = client.post(
        "/api/v1/orders", json={"customer_id": customer_id, "quantity": 1, "unit_price": "3200"}, headers=headers
    )
    assert unassigned.json()["data"]["status"] == "pending"
    assert seed.cylinder_state(tenant["tenant_id"])["W1"] == ("full", "warehouse", None)

    detail = client.get(f"/api/v1/orders/{unassigned.json()['data']['order_id']}", headers=headers).json()["data"]
    assert detail["items"] == [{"product_name": "LPG Cylinder 45.4KG", "quantity": 1, "price": "3200.00"}]


def test_explicit_serials_are_loaded(client, seed, tenant) -> None:
    customer_id = seed.customer(tenant["tenant_id"], "Hotel Mehran")
    _warehouse_stock(seed, tenant, "W1", "W2", "W3")

    _place_order(client, tenant, customer_id, quantity=2, serials=["W3", "W1"])
    state = seed.cylinder_state(tenant["tenant_id"])
    assert state["W1"][1:] == ("driver", tenant["driver"])
    assert state["W2"][1:] == ("warehouse", None)
    assert state["W3"][1:] == ("driver", tenant["driver"])


def test_cancel_returns_cylinders_to_warehouse(client, seed, tenant) -> None:
    tenant_id = tenant["tenant_id"]
    customer_id = seed.customer(tenant_id, "Hotel Mehran")
    _warehouse_stock(seed, tenant, "W1", "W2")
    order = _place_order(client, tenant, customer_id)
    headers = _auth(tenant["admin"])

    no_reason = client.post(f"/api/v1/orders/{order['order_id']}:cancel", json={"reason": "  "}, headers=headers)
    assert no_reason.status_code == 400
    assert no_reason.json()["detail"] == "Cancellation reason is required"

    cancelled = client.post(
        f"/api/v1/orders/{order['order_id']}:cancel", json={"reason": "customer closed"}, headers=headers
    )
    assert cancelled.status_code == 200
    assert cancelled.json()["data"]["cylinders_returned"] == 2
    state = seed.cylinder_state(tenant_id)
    assert state["W1"] == ("full", "warehouse", None)
    assert state["W2"] == ("full", "warehouse", None)

    stored = seed.get(Order, order["order_id"])
    assert stored.status == "cancelled"
    assert stored.cancel_reason == "customer closed"

    twice = client.post(f"/api/v1/orders/{order['order_id']}:cancel", json={"reason": "again"}, headers=headers)
    assert twice.status_code == 409
    assert twice.json()["detail"] == "Order cannot be cancelled (status: cancelled)"


def test_bulk_assign_moves_loaded_cylinders(client, seed, tenant) -> None:
    tenant_id = tenant["tenant_id"]
    customer_id = seed.customer(tenant_id, "Hotel Mehran")
    _warehouse_stock(seed, tenant, "W1", "W2")
    loaded = _place_order(client, tenant, customer_id)
    waiting = client.post(
        "/api/v1/orders",
        json={"customer_id": customer_id, "quantity": 1, "unit_price": "3200"},
        headers=_auth(tenant["admin"]),
    ).json()["data"]
    relief = seed.user(tenant_id, "driver", "Kamran")

    resp = client.post(
        "/api/v1/orders:assign",
        json={"order_ids": [loaded["order_id"], waiting["order_id"]], "driver_id": relief},
        headers=_auth(tenant["admin"]),
    )
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["assigned"] == 2
    assert data["cylinders_moved"] == 2
    assert data["message"] == "2 orders assigned to Kamran"

    state = seed.cylinder_state(tenant_id)
    assert state["W1"] == ("full", "driver", relief)
    assert state["W2"] == ("full", "driver", relief)
    assert {o.driver_id for o in seed.rows(Order)} == {relief}

    invalid = client.post(
        "/api/v1/orders:assign",
        json={"order_ids": [loaded["order_id"]], "driver_id": tenant["cashier"]},
        headers=_auth(tenant["admin"]),
    )
    assert invalid.status_code == 400
    assert invalid.json()["detail"] == "Invalid Driver for this Tenant"
