from datetime import date
from decimal import Decimal

import pytest

from collection_core.app.models import (
    BatchMovement, CollectionItem, CollectionOrder, CollectionStatus, InventoryBatch,
    MovementType, PurchaseOrder, PurchaseOrderItem, RectificationRecord, Wastage
)
from collection_core.app.schemas import render_rectification_log
from collection_core.app.services.exceptions import (
    NotFoundError, StateConflictError, TransactionFailure, ValidationError
)
from collection_core.app.services.inventory_service import InventoryQueryService
from collection_core.app.services.numbering import batch_number_for
from collection_core.app.services.purchase_order_service import PurchaseOrderProjector
from collection_core.app.services.wcn_service import ItemAdjustment, WcnService

WCN_DATE = date(2026, 3, 5)


@pytest.fixture
def finalized(db, seed, make_order):
    """Steel 10 @ 2.00 finalized into WCN-2026-0001"""
    def _finalized(items=None):
        items = items or [
            {"material_id": seed.steel.id, "collected_quantity": Decimal("10"), "contract_rate": Decimal("2")}
        ]
        order = make_order(items)
        result = WcnService.finalize(db, order.id, seed.user.id, wcn_date=WCN_DATE)
        return order, result

    return _finalized


def item_of(db, order, material):
    return db.query(CollectionItem).filter(
        CollectionItem.collection_order_id == order.id,
        CollectionItem.material_id == material.id
    ).first()


def wcn_batch(db, wcn_number, material):
    return db.query(InventoryBatch).filter(
        InventoryBatch.batch_number == batch_number_for(wcn_number, material.id)
    ).first()


def test_rectify_reduces_batch_and_purchase_order(db, seed, finalized):
    order, finalize_result = finalized()
    item = item_of(db, order, seed.steel)

    result = WcnService.rectify(
        db, order.id, [ItemAdjustment(item.id, Decimal("7"), "recount")], seed.user.id
    )

    assert result.rectification_count == 1
    assert result.wcn_number == "WCN-2026-0001"
    [adjustment] = result.adjustments
    assert adjustment.quantity_before == Decimal("10.000")
    assert adjustment.quantity_after == Decimal("7.000")
    assert adjustment.delta == Decimal("-3.000")

    batch = wcn_batch(db, result.wcn_number, seed.steel)
    assert batch.remaining_quantity == Decimal("7")
    assert batch.quantity_received == Decimal("10")
    last = db.query(BatchMovement).filter(BatchMovement.batch_id == batch.id).order_by(BatchMovement.id.desc()).first()
    assert last.movement_type == MovementType.ADJUSTMENT
    assert last.quantity == Decimal("-3")
    assert last.reference_type == "wcn_rectification"

    po = db.get(PurchaseOrder, finalize_result.purchase_order_id)
    assert po.subtotal == Decimal("14.00")
    assert po.tax_amount == Decimal("0.70")
    assert po.total_amount == Decimal("14.70")
    assert result.purchase_order_totals["total_amount"] == Decimal("14.70")
    [po_item] = po.items
    assert po_item.quantity_ordered == Decimal("7")
    assert po_item.quantity_received == Decimal("7")

    db.refresh(item)
    assert item.collected_quantity == Decimal("7")
    assert item.original_collected_quantity == Decimal("10")
    assert item.total_value == Decimal("14.00")
    assert "recount" in item.notes
    assert "[Rectification #1]" in item.notes

    db.refresh(order)
    assert order.rectification_count == 1
    assert order.total_value == Decimal("14.00")
    [record] = order.rectifications
    [line] = record.lines
    assert line.item_id == item.id
    assert line.delta == Decimal("-3")
    assert line.reason == "recount"


def test_rectify_zero_delta_keeps_totals(db, seed, finalized):
    order, finalize_result = finalized()
    item = item_of(db, order, seed.steel)

    WcnService.rectify(db, order.id, [ItemAdjustment(item.id, Decimal("10"), "double check")], seed.user.id)

    batch = wcn_batch(db, order.wcn_number, seed.steel)
    assert batch.remaining_quantity == Decimal("10")
    movements = db.query(BatchMovement).filter(BatchMovement.batch_id == batch.id).order_by(BatchMovement.id).all()
    assert [m.quantity for m in movements] == [Decimal("10"), Decimal("0")]
    po = db.get(PurchaseOrder, finalize_result.purchase_order_id)
    assert po.total_amount == Decimal("21.00")


def test_rectify_increase_grows_received_quantity(db, seed, finalized):
    order, finalize_result = finalized()
    item = item_of(db, order, seed.steel)

    WcnService.rectify(db, order.id, [ItemAdjustment(item.id, Decimal("12.5"), "scale recalibrated")], seed.user.id)

    batch = wcn_batch(db, order.wcn_number, seed.steel)
    assert batch.remaining_quantity == Decimal("12.5")
    assert batch.quantity_received == Decimal("12.5")
    assert db.get(PurchaseOrder, finalize_result.purchase_order_id).subtotal == Decimal("25.00")


@pytest.mark.parametrize("reason", ["", "   ", "oops", "  ok  "])
def test_rectify_requires_meaningful_reason(db, seed, finalized, reason):
    order, _ = finalized()
    item = item_of(db, order, seed.steel)

    with pytest.raises(ValidationError):
        WcnService.rectify(db, order.id, [ItemAdjustment(item.id, Decimal("7"), reason)], seed.user.id)

    assert db.query(RectificationRecord).count() == 0


def test_rectify_rejects_empty_and_negative_adjustments(db, seed, finalized):
    order, _ = finalized()
    item = item_of(db, order, seed.steel)

    with pytest.raises(ValidationError):
        WcnService.rectify(db, order.id, [], seed.user.id)
    with pytest.raises(ValidationError):
        WcnService.rectify(db, order.id, [ItemAdjustment(item.id, Decimal("-1"), "recount")], seed.user.id)


def test_rectify_requires_finalized_order(db, seed, make_order):
    order = make_order([
        {"material_id": seed.steel.id, "collected_quantity": Decimal("10")}
    ], status=CollectionStatus.COMPLETED)

    with pytest.raises(StateConflictError):
        WcnService.rectify(
            db, order.id, [ItemAdjustment(order.items[0].id, Decimal("7"), "recount")], seed.user.id
        )


def test_rectify_unknown_order(db, seed):
    with pytest.raises(NotFoundError):
        WcnService.rectify(db, 4040, [ItemAdjustment(1, Decimal("7"), "recount")], seed.user.id)


def test_rectify_item_from_another_order(db, seed, finalized, make_order):
    order, _ = finalized()
    other = make_order([{"material_id": seed.copper.id, "collected_quantity": Decimal("2")}])

    with pytest.raises(NotFoundError):
        WcnService.rectify(
            db, order.id, [ItemAdjustment(other.items[0].id, Decimal("1"), "recount")], seed.user.id
        )

    db.refresh(order)
    assert order.rectification_count == 0


def test_rectify_restores_missing_batch(db, seed, finalized):
    order, _ = finalized()
    item = item_of(db, order, seed.steel)
    batch = wcn_batch(db, order.wcn_number, seed.steel)
    db.query(BatchMovement).filter(BatchMovement.batch_id == batch.id).delete()
    db.delete(batch)
    db.commit()

    WcnService.rectify(db, order.id, [ItemAdjustment(item.id, Decimal("7"), "recount")], seed.user.id)

    restored = wcn_batch(db, order.wcn_number, seed.steel)
    assert restored.quantity_received == Decimal("7")
    assert restored.remaining_quantity == Decimal("7")
    assert restored.collection_order_id == order.id
    assert InventoryQueryService.reconcile_batch(db, restored).is_balanced


def test_rectify_item_dropped_at_finalize(db, seed, finalized):
    order, finalize_result = finalized([
        {"material_id": seed.steel.id, "collected_quantity": Decimal("10"), "contract_rate": Decimal("2")},
        {"material_id": seed.copper.id, "collected_quantity": Decimal("0")},
    ])
    copper_item = item_of(db, order, seed.copper)
    assert wcn_batch(db, order.wcn_number, seed.copper) is None

    WcnService.rectify(db, order.id, [ItemAdjustment(copper_item.id, Decimal("5"), "found on second pallet")], seed.user.id)

    batch = wcn_batch(db, order.wcn_number, seed.copper)
    assert batch.remaining_quantity == Decimal("5")
    po = db.get(PurchaseOrder, finalize_result.purchase_order_id)
    copper_po_item = db.query(PurchaseOrderItem).filter(
        PurchaseOrderItem.purchase_order_id == po.id,
        PurchaseOrderItem.material_id == seed.copper.id
    ).one()
    assert copper_po_item.quantity_received == Decimal("5")
    assert copper_po_item.total_price == Decimal("37.50")
    assert po.subtotal == Decimal("57.50")


def test_rectify_composite_moves_every_component(db, seed, finalized):
    order, finalize_result = finalized([
        {"material_id": seed.drum.id, "collected_quantity": Decimal("4"), "contract_rate": Decimal("10")}
    ])
    item = item_of(db, order, seed.drum)

    result = WcnService.rectify(db, order.id, [ItemAdjustment(item.id, Decimal("6"), "two drums missed")], seed.user.id)

    assert sorted(result.adjustments[0].batch_numbers) == sorted([
        batch_number_for(order.wcn_number, seed.shell.id),
        batch_number_for(order.wcn_number, seed.oil.id),
    ])
    for component in (seed.shell, seed.oil):
        batch = wcn_batch(db, order.wcn_number, component)
        assert batch.remaining_quantity == Decimal("6")
        assert InventoryQueryService.reconcile_batch(db, batch).is_balanced
    assert wcn_batch(db, order.wcn_number, seed.drum) is None

    [po_item] = db.get(PurchaseOrder, finalize_result.purchase_order_id).items
    assert po_item.material_id == seed.drum.id
    assert po_item.total_price == Decimal("60.00")


def test_rectify_disposable_follows_pending_wastage(db, seed, finalized):
    order, finalize_result = finalized([
        {"material_id": seed.steel.id, "collected_quantity": Decimal("10"), "contract_rate": Decimal("2")},
        {"material_id": seed.rags.id, "collected_quantity": Decimal("5")},
    ])
    rags_item = item_of(db, order, seed.rags)

    WcnService.rectify(db, order.id, [ItemAdjustment(rags_item.id, Decimal("3"), "wet weight")], seed.user.id)

    [wastage] = db.query(Wastage).all()
    assert wastage.quantity == Decimal("3")
    assert wastage.total_cost == Decimal("1.50")
    assert db.query(InventoryBatch).filter(InventoryBatch.material_id == seed.rags.id).count() == 0
    po = db.get(PurchaseOrder, finalize_result.purchase_order_id)
    assert po.subtotal == Decimal("20.00")
    assert [i.material_id for i in po.items] == [seed.steel.id]


def test_rectify_failure_rolls_back_every_write(db, seed, finalized, monkeypatch):
    order, finalize_result = finalized()
    item = item_of(db, order, seed.steel)
    movement_count = db.query(BatchMovement).count()

    def broken_totals(*args, **kwargs):
        raise RuntimeError("connection reset")

    monkeypatch.setattr(PurchaseOrderProjector, "recompute_totals", staticmethod(broken_totals))

    with pytest.raises(TransactionFailure):
        WcnService.rectify(db, order.id, [ItemAdjustment(item.id, Decimal("7"), "recount")], seed.user.id)

    db.expire_all()
    assert wcn_batch(db, order.wcn_number, seed.steel).remaining_quantity == Decimal("10")
    assert db.query(BatchMovement).count() == movement_count
    assert db.get(CollectionItem, item.id).collected_quantity == Decimal("10")
    assert db.get(CollectionOrder, order.id).rectification_count == 0
    assert db.get(PurchaseOrder, finalize_result.purchase_order_id).subtotal == Decimal("20.00")
    assert db.query(RectificationRecord).count() == 0


def test_repeated_rectifications_build_history(db, seed, finalized):
    order, finalize_result = finalized()
    item = item_of(db, order, seed.steel)

    WcnService.rectify(db, order.id, [ItemAdjustment(item.id, Decimal("7"), "recount")], seed.user.id)
    result = WcnService.rectify(
        db, order.id, [ItemAdjustment(item.id, Decimal("8"), "missed a bale")], seed.user.id,
        notes="supervisor review"
    )

    assert result.rectification_count == 2
    db.refresh(order)
    assert [r.sequence for r in order.rectifications] == [1, 2]

    log = render_rectification_log(order.rectifications)
    assert "Rectification #1" in log
    assert "Rectification #2" in log
    assert "supervisor review" in log
    assert "missed a bale" in log

    batch = wcn_batch(db, order.wcn_number, seed.steel)
    assert batch.remaining_quantity == Decimal("8")
    assert InventoryQueryService.reconcile_batch(db, batch).is_balanced
    assert db.get(PurchaseOrder, finalize_result.purchase_order_id).subtotal == Decimal("16.00")


def test_zero_delta_on_merged_lines_keeps_po_totals(db, seed, finalized):
    order, finalize_result = finalized([
        {"material_id": seed.steel.id, "collected_quantity": Decimal("10000"), "contract_rate": Decimal("1")},
        {"material_id": seed.steel.id, "collected_quantity": Decimal("1"), "contract_rate": Decimal("2")},
    ])
    po = db.get(PurchaseOrder, finalize_result.purchase_order_id)
    assert po.subtotal == Decimal("10002.00")
    before = (po.subtotal, po.tax_amount, po.total_amount)
    first_item = order.items[0]

    WcnService.rectify(db, order.id, [ItemAdjustment(first_item.id, Decimal("10000"), "double check")], seed.user.id)

    db.refresh(po)
    assert (po.subtotal, po.tax_amount, po.total_amount) == before
    [po_item] = po.items
    assert po_item.quantity_received == Decimal("10001")
    assert po_item.total_price == Decimal("10002.00")


def test_rectify_merged_line_totals_follow_item_values(db, seed, finalized):
    order, finalize_result = finalized([
        {"material_id": seed.steel.id, "collected_quantity": Decimal("10000"), "contract_rate": Decimal("1")},
        {"material_id": seed.steel.id, "collected_quantity": Decimal("1"), "contract_rate": Decimal("2")},
    ])
    second_item = order.items[1]

    WcnService.rectify(db, order.id, [ItemAdjustment(second_item.id, Decimal("3"), "recount")], seed.user.id)

    po = db.get(PurchaseOrder, finalize_result.purchase_order_id)
    [po_item] = po.items
    assert po_item.quantity_received == Decimal("10003")
    assert po_item.total_price == Decimal("10006.00")
    assert po.subtotal == Decimal("10006.00")
    batch = wcn_batch(db, order.wcn_number, seed.steel)
    assert batch.remaining_quantity == Decimal("10003")
