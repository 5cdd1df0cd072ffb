from decimal import Decimal
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

from collection_core.app import security
from collection_core.app.main import app
from collection_core.app.models import AuditLog

from conftest import TestingSessionLocal, engine

ORDERS = "/api/collection-orders"
BATCHES = "/api/inventory-batches"


# -----------------------------
# Dependency overrides
# -----------------------------
def override_get_db():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def current_user(seed):
    """Authenticated principal; tests switch its role to check permissions"""
    return SimpleNamespace(id=seed.user.id, username="admin", role="Admin")


@pytest.fixture
def client(current_user):
    app.dependency_overrides[security.get_db] = override_get_db
    app.dependency_overrides[security.get_current_user] = lambda: current_user
    yield TestClient(app)
    app.dependency_overrides.clear()


def as_decimal(value):
    return Decimal(str(value))


def create_completed_order(client, seed, items=None):
    items = items or [
        {"material_id": seed.steel.id, "collected_quantity": "10", "contract_rate": "2"},
        {"material_id": seed.rags.id, "collected_quantity": "5"},
    ]
    r = client.post(f"{ORDERS}/", json={"supplier_id": seed.supplier.id, "items": items})
    assert r.status_code == 201, r.text
    order_id = r.json()["order_id"]

    r = client.post(f"{ORDERS}/{order_id}/status", json={"status": "completed"})
    assert r.status_code == 200, r.text
    return order_id


def finalize(client, order_id, **body):
    return client.post(f"{ORDERS}/{order_id}/finalize", json={"wcn_date": "2026-03-05", **body})


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}


def test_finalize_and_rectify_flow(client, seed, db):
    order_id = create_completed_order(client, seed)

    r = finalize(client, order_id)
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["wcn_number"] == "WCN-2026-0001"
    assert body["items_processed"] == 2
    assert len(body["disposable_wastage_summary"]) == 1
    assert set(body["quantity_sources"].values()) == {"stored"}

    r = client.get(f"{ORDERS}/{order_id}/purchase-order")
    assert r.status_code == 200
    po = r.json()
    assert po["order_number"] == "PO-WCN-2026-0001"
    assert po["status"] == "received"
    assert as_decimal(po["total_amount"]) == Decimal("21.00")

    r = finalize(client, order_id)
    assert r.status_code == 404
    assert r.json()["detail"] == "Collection order not found or already finalized"

    order = client.get(f"{ORDERS}/{order_id}").json()
    steel_item = next(i for i in order["items"] if i["material_id"] == seed.steel.id)

    r = client.post(f"{ORDERS}/{order_id}/rectify", json={
        "item_adjustments": [{"item_id": steel_item["id"], "new_quantity": "7", "reason": "recount"}]
    })
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["rectification_count"] == 1
    assert as_decimal(body["adjustments"][0]["delta"]) == Decimal("-3")
    assert as_decimal(body["purchase_order_totals"]["subtotal"]) == Decimal("14.00")
    assert as_decimal(body["purchase_order_totals"]["total_amount"]) == Decimal("14.70")

    order = client.get(f"{ORDERS}/{order_id}").json()
    assert order["is_finalized"]
    assert order["rectification_count"] == 1
    assert "recount" in order["rectification_notes"]
    assert order["rectifications"][0]["lines"][0]["reason"] == "recount"

    actions = [a.action for a in db.query(AuditLog).order_by(AuditLog.id).all()]
    assert actions == ["finalize", "rectify"]


def test_rectify_short_reason_is_bad_request(client, seed):
    order_id = create_completed_order(client, seed)
    finalize(client, order_id)
    item_id = client.get(f"{ORDERS}/{order_id}").json()["items"][0]["id"]

    r = client.post(f"{ORDERS}/{order_id}/rectify", json={
        "item_adjustments": [{"item_id": item_id, "new_quantity": "7", "reason": "ok"}]
    })
    assert r.status_code == 400

    r = client.post(f"{ORDERS}/{order_id}/rectify", json={"item_adjustments": []})
    assert r.status_code == 400


def test_rectify_unfinalized_order_is_conflict(client, seed):
    order_id = create_completed_order(client, seed)
    item_id = client.get(f"{ORDERS}/{order_id}").json()["items"][0]["id"]

    r = client.post(f"{ORDERS}/{order_id}/rectify", json={
        "item_adjustments": [{"item_id": item_id, "new_quantity": "7", "reason": "recount"}]
    })
    assert r.status_code == 409


def test_status_cannot_move_backwards(client, seed):
    r = client.post(f"{ORDERS}/", json={"supplier_id": seed.supplier.id})
    order_id = r.json()["order_id"]
    assert client.post(f"{ORDERS}/{order_id}/status", json={"status": "collecting"}).status_code == 200

    r = client.post(f"{ORDERS}/{order_id}/status", json={"status": "in_transit"})
    assert r.status_code == 409

    r = client.post(f"{ORDERS}/{order_id}/status", json={"status": "lost"})
    assert r.status_code == 400


def test_items_and_expenses_endpoints(client, seed):
    r = client.post(f"{ORDERS}/", json={"supplier_id": seed.supplier.id})
    order_id = r.json()["order_id"]

    r = client.post(f"{ORDERS}/{order_id}/items", json={"material_id": seed.copper.id, "estimated_quantity": "4"})
    assert r.status_code == 201
    item_id = r.json()["item_id"]

    r = client.patch(f"{ORDERS}/{order_id}/items/{item_id}", json={"collected_quantity": "3"})
    assert r.status_code == 200
    assert as_decimal(r.json()["total_value"]) == Decimal("22.50")

    r = client.patch(f"{ORDERS}/{order_id}/items/999", json={"collected_quantity": "3"})
    assert r.status_code == 404

    r = client.post(f"{ORDERS}/{order_id}/expenses", json={
        "category": "transport", "description": "Truck hire", "amount": "15"
    })
    assert r.status_code == 201
    assert as_decimal(r.json()["total_expenses"]) == Decimal("15")


def test_unknown_order_is_not_found(client, seed):
    assert client.get(f"{ORDERS}/424242").status_code == 404
    assert finalize(client, 424242).status_code == 404
    assert client.post(f"{ORDERS}/", json={"supplier_id": 9999}).status_code == 404


def test_viewer_cannot_finalize(client, seed, current_user):
    order_id = create_completed_order(client, seed)
    current_user.role = "Viewer"

    r = finalize(client, order_id)
    assert r.status_code == 403

    assert client.get(f"{ORDERS}/{order_id}").status_code == 200


def test_wcn_register(client, seed):
    done = create_completed_order(client, seed)
    pending = create_completed_order(client, seed)
    finalize(client, done)

    register = client.get(f"{ORDERS}/wcn-register").json()
    assert {e["order_id"] for e in register} == {done, pending}

    waiting = client.get(f"{ORDERS}/wcn-register", params={"finalized": False}).json()
    assert [e["order_id"] for e in waiting] == [pending]
    assert waiting[0]["wcn_number"] is None


def test_batch_endpoints(client, seed):
    order_id = create_completed_order(client, seed)
    finalize(client, order_id)

    batches = client.get(f"{BATCHES}/", params={"collection_order_id": order_id}).json()
    [batch] = batches
    assert batch["material_id"] == seed.steel.id
    assert as_decimal(batch["remaining_quantity"]) == Decimal("10")

    detail = client.get(f"{BATCHES}/{batch['id']}").json()
    assert detail["is_balanced"]

    movements = client.get(f"{BATCHES}/{batch['id']}/movements").json()
    assert [m["movement_type"] for m in movements] == ["receipt"]

    r = client.post(f"{BATCHES}/{batch['id']}/adjustment", json={"quantity": "-2", "reason": "yard count"})
    assert r.status_code == 200, r.text
    assert as_decimal(r.json()["remaining_quantity"]) == Decimal("8")

    r = client.post(f"{BATCHES}/{batch['id']}/adjustment", json={"quantity": "-20", "reason": "yard count"})
    assert r.status_code == 400

    summary = client.get(f"{BATCHES}/material/{seed.steel.id}/summary").json()
    assert as_decimal(summary["total_quantity"]) == Decimal("8")

    assert client.get(f"{BATCHES}/999").status_code == 404


def test_allocation_preview_and_issue(client, seed):
    order_id = create_completed_order(client, seed)
    finalize(client, order_id)

    r = client.post(f"{BATCHES}/preview-allocation", json={"material_id": seed.steel.id, "quantity": "12"})
    assert r.status_code == 200
    preview = r.json()
    assert not preview["can_fulfill"]
    assert as_decimal(preview["shortfall"]) == Decimal("2")

    r = client.post(f"{BATCHES}/allocate", json={"material_id": seed.steel.id, "quantity": "12"})
    assert r.status_code == 400
    assert as_decimal(r.json()["detail"]["shortfall"]) == Decimal("2")

    r = client.post(f"{BATCHES}/allocate", json={"material_id": seed.steel.id, "quantity": "4"})
    assert r.status_code == 200
    assert as_decimal(r.json()["total_cogs"]) == Decimal("8.00")


def test_composite_receipts(client, seed):
    order_id = create_completed_order(client, seed, items=[
        {"material_id": seed.drum.id, "collected_quantity": "4", "contract_rate": "10"}
    ])
    finalize(client, order_id)

    r = client.get(f"{BATCHES}/material/{seed.drum.id}/composite-receipts")
    assert r.status_code == 200
    view = r.json()
    assert [c["component_type"] for c in view["components"]] == ["container", "content"]
    [receipt] = view["receipts"]
    assert receipt["wcn_number"] == "WCN-2026-0001"
    assert {b["material_id"] for b in receipt["batches"]} == {seed.shell.id, seed.oil.id}

    r = client.get(f"{BATCHES}/material/{seed.steel.id}/composite-receipts")
    assert r.status_code == 400


def test_audit_write_failure_is_logged_not_raised(db, seed, monkeypatch):
    def failing_commit():
        raise OperationalError("INSERT INTO audit_logs", {}, Exception("database is locked"))

    monkeypatch.setattr(db, "commit", failing_commit)

    stored = security.SecurityAuditLog.log_sensitive_action(
        db, seed.user.id, "finalize", "collection_order", 1, {"wcn_number": "WCN-2026-0001"}
    )

    assert stored is False
    monkeypatch.undo()
    assert db.query(AuditLog).count() == 0


def test_finalize_succeeds_when_audit_trail_is_unavailable(client, seed):
    order_id = create_completed_order(client, seed)
    AuditLog.__table__.drop(bind=engine)

    r = finalize(client, order_id)

    assert r.status_code == 200, r.text
    assert r.json()["wcn_number"] == "WCN-2026-0001"
    assert client.get(f"{ORDERS}/{order_id}").json()["is_finalized"]
