"""
WCN Finalization & Rectification
================================
Turns a completed collection order into a Waste Consignment Note:

FINALIZE (once per order):
1. Merge verified quantities, apply the fallback rule
2. Drop empty lines, allocate the WCN number
3. Stock regular materials, split composites into component batches,
   queue disposables as pending wastage
4. Generate the received purchase order and mark the order finalized

RECTIFY (any number of times after finalize):
1. Move each item's ledger batch(es) by the quantity delta
2. Sync the purchase order lines and totals
3. Append a structured rectification record

Each call runs inside one unit of work; nothing is visible unless the whole
sequence commits.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy.orm import Session

from .. import config
from ..logging_config import get_logger
from ..models import (
    CollectionItem, CollectionOrder, CollectionStatus, InventoryBatch, Material,
    RectificationLine, RectificationRecord
)
from .catalog_service import MaterialCatalog
from .collection_service import CollectionOrderService, resolve_rate
from .exceptions import (
    NoCollectedItemsError, NotFinalizableError, NotFoundError,
    StateConflictError, ValidationError
)
from .inventory_service import BatchLedgerService, ZERO, to_money, to_quantity
from .numbering import batch_number_for, next_wcn_number
from .purchase_order_service import BillableLine, PurchaseOrderProjector
from .unit_of_work import unit_of_work
from .wastage_service import WastageQueueService

logger = get_logger("services.wcn")

RECEIPT_REFERENCE = "collection_order"


class QuantitySource(str, Enum):
    """Where an item's finalized quantity came from"""
    VERIFIED = "verified"   # caller-supplied verified entry
    FALLBACK = "fallback"   # available / estimated quantity, stored value was zero
    STORED = "stored"       # collected quantity already on the item


# =============================================================================
# INPUT / RESULT TYPES
# =============================================================================

@dataclass
class VerifiedEntry:
    """Physically verified quantity for one material"""
    material_id: int
    verified_quantity: Decimal
    agreed_rate: Optional[Decimal] = None
    is_new_item: bool = False
    quality_grade: Optional[str] = None
    quality_verified: Optional[bool] = None
    actual_condition: Optional[str] = None


@dataclass
class ItemAdjustment:
    item_id: int
    new_quantity: Decimal
    reason: str


@dataclass
class _PlannedLine:
    material: Material
    quantity: Decimal
    rate: Decimal
    source: QuantitySource
    item: Optional[CollectionItem] = None
    entry: Optional[VerifiedEntry] = None


@dataclass
class FinalizeResult:
    wcn_number: str
    wcn_date: date
    purchase_order_id: int
    items_processed: int
    new_items_added: int
    disposable_wastage_summary: List[dict] = field(default_factory=list)
    quantity_sources: Dict[int, QuantitySource] = field(default_factory=dict)


@dataclass
class AdjustmentResult:
    item_id: int
    material_id: int
    quantity_before: Decimal
    quantity_after: Decimal
    delta: Decimal
    reason: str
    batch_numbers: List[str] = field(default_factory=list)


@dataclass
class RectifyResult:
    wcn_number: str
    purchase_order_id: Optional[int]
    rectification_count: int
    adjustments: List[AdjustmentResult] = field(default_factory=list)
    purchase_order_totals: Optional[dict] = None


def _po_totals(po) -> dict:
    return {
        "subtotal": po.subtotal,
        "tax_amount": po.tax_amount,
        "shipping_cost": po.shipping_cost,
        "total_amount": po.total_amount,
    }


class WcnService:
    """Service class for WCN finalization and rectification"""

    # =========================================================================
    # FINALIZE
    # =========================================================================

    @staticmethod
    def plan_quantities(
        items: List[CollectionItem],
        entries: List[VerifiedEntry],
        materials: Dict[int, Material]
    ) -> List[_PlannedLine]:
        """
        Decide the finalized quantity of every line.

        A verified entry applies to the first item of its material; entries
        flagged is_new_item become new lines. Items without an entry fall
        back to available / estimated quantity only while their stored
        collected quantity is zero.
        """
        by_material: Dict[int, VerifiedEntry] = {}
        new_entries = []
        for entry in entries:
            if entry.is_new_item:
                new_entries.append(entry)
            elif entry.material_id not in by_material:
                by_material[entry.material_id] = entry

        planned = []
        for item in items:
            material = materials[item.material_id]
            entry = by_material.pop(item.material_id, None)
            stored = to_quantity(item.collected_quantity)

            if entry is not None:
                quantity = to_quantity(entry.verified_quantity)
                source = QuantitySource.VERIFIED
                rate = resolve_rate(
                    entry.agreed_rate if entry.agreed_rate is not None else item.contract_rate,
                    material
                )
            else:
                fallback = item.available_quantity or item.estimated_quantity
                if stored == 0 and fallback:
                    quantity = to_quantity(fallback)
                    source = QuantitySource.FALLBACK
                else:
                    quantity = stored
                    source = QuantitySource.STORED
                rate = resolve_rate(item.contract_rate, material)

            planned.append(_PlannedLine(material, quantity, rate, source, item=item, entry=entry))

        for material_id, entry in by_material.items():
            logger.warning("verified_entry_unmatched", extra={"material_id": material_id})

        for entry in new_entries:
            material = materials[entry.material_id]
            planned.append(_PlannedLine(
                material,
                to_quantity(entry.verified_quantity),
                resolve_rate(entry.agreed_rate, material),
                QuantitySource.VERIFIED,
                entry=entry
            ))

        return planned

    @staticmethod
    def finalize(
        db: Session,
        order_id: int,
        user_id: Optional[int],
        wcn_date: Optional[date] = None,
        notes: Optional[str] = None,
        verified_items: Optional[Iterable[VerifiedEntry]] = None
    ) -> FinalizeResult:
        """
        Finalize a completed collection order into a WCN.

        Raises:
            NotFinalizableError: order missing, not completed, or already finalized
            NoCollectedItemsError: no line ends with a positive quantity
        """
        entries = list(verified_items or [])
        for entry in entries:
            if to_quantity(entry.verified_quantity) < 0:
                raise ValidationError(
                    f"Verified quantity for material {entry.material_id} cannot be negative"
                )

        with unit_of_work(db, "wcn_finalize", order_id=order_id):
            order = db.query(CollectionOrder).filter(
                CollectionOrder.id == order_id
            ).with_for_update().first()

            if not order or order.status != CollectionStatus.COMPLETED or order.is_finalized:
                raise NotFinalizableError(order_id)

            items = CollectionOrderService.get_items(db, order.id)
            materials = MaterialCatalog.get_materials(
                db, {i.material_id for i in items} | {e.material_id for e in entries}
            )

            planned = WcnService.plan_quantities(items, entries, materials)
            for line in planned:
                logger.info(
                    "quantity_source_selected",
                    extra={
                        "order_id": order.id,
                        "item_id": line.item.id if line.item else None,
                        "material_id": line.material.id,
                        "source": line.source.value,
                        "quantity": line.quantity,
                    },
                )

            # Persist final quantities, zeros included: they are the baseline
            # for later rectification
            for line in planned:
                if line.item is not None:
                    WcnService._persist_line(line.item, line)

            lines = [l for l in planned if l.quantity > 0]
            if not lines:
                raise NoCollectedItemsError("No items with a positive collected quantity to finalize")

            tax_rate = config.get_tax_rate()
            wcn_date = wcn_date or date.today()
            wcn_number = next_wcn_number(db, wcn_date)

            new_items_added = 0
            for line in lines:
                item = line.item
                if item is None:
                    item = CollectionItem(collection_order_id=order.id, material_id=line.material.id, is_new_item=True)
                    db.add(item)
                    line.item = item
                    new_items_added += 1
                    WcnService._persist_line(item, line)
            db.flush()

            for item in CollectionOrderService.get_items(db, order.id):
                if item.original_collected_quantity is None:
                    item.original_collected_quantity = to_quantity(item.collected_quantity)

            billable: Dict[int, BillableLine] = {}
            wastage_summary = []
            batches: List[InventoryBatch] = []

            for line in lines:
                material = line.material
                item = line.item

                if material.is_disposable:
                    wastage = WastageQueueService.queue_disposable(
                        db, material, line.quantity, order.id, wcn_number, user_id,
                        wastage_date=wcn_date
                    )
                    wastage_summary.append({
                        "wastage_id": wastage.id,
                        "wastage_number": wastage.wastage_number,
                        "material_id": material.id,
                        "quantity": wastage.quantity,
                        "waste_type": wastage.waste_type,
                    })
                    continue

                for material_id, unit_cost in WcnService._stock_targets(db, material, line.rate):
                    batch, _ = BatchLedgerService.receive_into_batch(
                        db,
                        material_id=material_id,
                        batch_number=batch_number_for(wcn_number, material_id),
                        quantity=line.quantity,
                        unit_cost=unit_cost,
                        user_id=user_id,
                        reference_type=RECEIPT_REFERENCE,
                        reference_id=order.id,
                        purchase_date=wcn_date,
                        collection_order_id=order.id,
                        supplier_id=order.supplier_id,
                        location=config.DEFAULT_RECEIPT_LOCATION,
                        condition=item.material_condition,
                        notes=f"Received on {wcn_number}"
                    )
                    batches.append(batch)

                line_total = to_money(line.quantity * line.rate)
                if material.id in billable:
                    billable[material.id].merge(line.quantity, line_total)
                else:
                    billable[material.id] = BillableLine(
                        material_id=material.id,
                        quantity=line.quantity,
                        unit_price=line.rate,
                        total_price=line_total,
                        batch_number=batch_number_for(wcn_number, material.id)
                    )

            CollectionOrderService.recalculate_totals(db, order)

            po = PurchaseOrderProjector.create_from_wcn(
                db, order, wcn_number, wcn_date, list(billable.values()), tax_rate, user_id
            )
            for batch in batches:
                if batch.purchase_order_id is None:
                    batch.purchase_order_id = po.id

            order.is_finalized = True
            order.wcn_number = wcn_number
            order.wcn_date = wcn_date
            order.finalized_at = datetime.utcnow()
            order.finalized_by = user_id
            order.purchase_order_id = po.id
            if notes:
                order.notes = f"{order.notes}\n{notes}" if order.notes else notes
            db.flush()

            result = FinalizeResult(
                wcn_number=wcn_number,
                wcn_date=wcn_date,
                purchase_order_id=po.id,
                items_processed=len(lines),
                new_items_added=new_items_added,
                disposable_wastage_summary=wastage_summary,
                quantity_sources={l.item.id: l.source for l in lines}
            )

        logger.info(
            "wcn_finalized",
            extra={
                "order_id": order_id,
                "wcn_number": result.wcn_number,
                "purchase_order_id": result.purchase_order_id,
                "items_processed": result.items_processed,
                "new_items_added": result.new_items_added,
                "disposable_count": len(result.disposable_wastage_summary),
            },
        )
        return result

    @staticmethod
    def _persist_line(item: CollectionItem, line: _PlannedLine) -> None:
        item.collected_quantity = line.quantity
        item.contract_rate = line.rate
        item.total_value = to_money(line.quantity * line.rate)
        if line.entry is not None:
            if line.entry.quality_grade is not None:
                item.quality_grade = line.entry.quality_grade
            if line.entry.quality_verified is not None:
                item.quality_verified = line.entry.quality_verified
            if line.entry.actual_condition is not None:
                item.material_condition = line.entry.actual_condition

    @staticmethod
    def _stock_targets(db: Session, material: Material, rate: Decimal):
        """
        (material id, unit cost) pairs a received line is stocked under.

        A composite is stocked as its components, each receiving the full
        line quantity at the component's standard price.
        """
        if material.is_composite:
            components = MaterialCatalog.get_composition(db, material.id)
            if components:
                component_materials = MaterialCatalog.get_materials(db, [c.material_id for c in components])
                return [
                    (c.material_id, MaterialCatalog.unit_price(component_materials[c.material_id]))
                    for c in components
                ]
            logger.warning("composite_without_components", extra={"material_id": material.id})
        return [(material.id, rate)]

    # =========================================================================
    # RECTIFY
    # =========================================================================

    @staticmethod
    def validate_adjustments(adjustments: List[ItemAdjustment]) -> None:
        if not adjustments:
            raise ValidationError("No item adjustments supplied")
        min_length = config.RECTIFICATION_REASON_MIN_LENGTH
        for adj in adjustments:
            if len((adj.reason or "").strip()) < min_length:
                raise ValidationError(
                    f"Reason for item {adj.item_id} must be at least {min_length} characters"
                )
            if to_quantity(adj.new_quantity) < 0:
                raise ValidationError(f"New quantity for item {adj.item_id} cannot be negative")

    @staticmethod
    def rectify(
        db: Session,
        order_id: int,
        adjustments: Iterable[ItemAdjustment],
        user_id: Optional[int],
        notes: Optional[str] = None
    ) -> RectifyResult:
        """
        Correct finalized quantities, keeping ledger and purchase order in step.

        All adjustments share one transaction.
        """
        adjustments = list(adjustments)
        WcnService.validate_adjustments(adjustments)

        with unit_of_work(db, "wcn_rectify", order_id=order_id):
            order = CollectionOrderService.get_order(db, order_id, lock=True)
            if not order.is_finalized:
                raise StateConflictError("Only finalized collection orders can be rectified")

            tax_rate = config.get_tax_rate()
            po = order.purchase_order
            wcn_number = order.wcn_number

            record = RectificationRecord(
                collection_order_id=order.id,
                sequence=(order.rectification_count or 0) + 1,
                notes=notes,
                performed_by=user_id
            )
            db.add(record)
            db.flush()

            results = []
            touched_billable = {}
            for adj in adjustments:
                item = db.query(CollectionItem).filter(
                    CollectionItem.id == adj.item_id,
                    CollectionItem.collection_order_id == order.id
                ).first()
                if not item:
                    raise NotFoundError(f"Collection item {adj.item_id} not found on this order")

                material = MaterialCatalog.get_material(db, item.material_id)
                before = to_quantity(item.collected_quantity)
                after = to_quantity(adj.new_quantity)
                delta = after - before
                rate = resolve_rate(item.contract_rate, material)
                reason = adj.reason.strip()
                movement_notes = f"Rectification #{record.sequence}: {reason}"

                batch_numbers = []
                if material.is_disposable:
                    WcnService._rectify_disposable(db, order, material, delta, user_id)
                else:
                    for material_id, unit_cost in WcnService._stock_targets(db, material, rate):
                        batch_number = batch_number_for(wcn_number, material_id)
                        BatchLedgerService.apply_rectification_delta(
                            db,
                            material_id=material_id,
                            batch_number=batch_number,
                            new_quantity=after,
                            delta=delta,
                            user_id=user_id,
                            reference_id=record.id,
                            unit_cost=unit_cost,
                            purchase_order_id=order.purchase_order_id,
                            collection_order_id=order.id,
                            supplier_id=order.supplier_id,
                            location=config.DEFAULT_RECEIPT_LOCATION,
                            notes=movement_notes
                        )
                        batch_numbers.append(batch_number)
                    touched_billable.setdefault(material.id, rate)

                item.collected_quantity = after
                item.contract_rate = rate
                item.total_value = to_money(after * rate)
                trail = f"[Rectification #{record.sequence}] {before} -> {after}: {reason}"
                item.notes = f"{item.notes}\n{trail}" if item.notes else trail
                item.updated_at = datetime.utcnow()

                db.add(RectificationLine(
                    record_id=record.id,
                    item_id=item.id,
                    material_id=material.id,
                    quantity_before=before,
                    quantity_after=after,
                    delta=delta,
                    reason=reason
                ))
                results.append(AdjustmentResult(
                    item_id=item.id,
                    material_id=material.id,
                    quantity_before=before,
                    quantity_after=after,
                    delta=delta,
                    reason=reason,
                    batch_numbers=batch_numbers
                ))
            db.flush()

            po_totals = None
            if po is not None:
                for material_id, rate in touched_billable.items():
                    quantity, value = WcnService._billable_totals(db, order.id, material_id)
                    PurchaseOrderProjector.upsert_item(
                        db, po, material_id, quantity, rate,
                        batch_number_for(wcn_number, material_id),
                        total_price=value
                    )
                PurchaseOrderProjector.recompute_totals(db, po, tax_rate)
                po_totals = _po_totals(po)
            else:
                logger.warning("rectify_without_purchase_order", extra={"order_id": order.id})

            order.rectification_count = record.sequence
            CollectionOrderService.recalculate_totals(db, order)

            result = RectifyResult(
                wcn_number=wcn_number,
                purchase_order_id=order.purchase_order_id,
                rectification_count=order.rectification_count,
                adjustments=results,
                purchase_order_totals=po_totals
            )

        logger.info(
            "wcn_rectified",
            extra={
                "order_id": order_id,
                "wcn_number": result.wcn_number,
                "rectification_count": result.rectification_count,
                "adjustments": len(result.adjustments),
            },
        )
        return result

    @staticmethod
    def _billable_totals(db: Session, order_id: int, material_id: int) -> Tuple[Decimal, Decimal]:
        """A PO line carries every item of its material on the order: (quantity, value)"""
        items = db.query(CollectionItem).filter(
            CollectionItem.collection_order_id == order_id,
            CollectionItem.material_id == material_id
        ).all()
        quantity = sum((Decimal(i.collected_quantity or 0) for i in items), ZERO)
        value = sum((Decimal(i.total_value or 0) for i in items), ZERO)
        return to_quantity(quantity), to_money(value)

    @staticmethod
    def _rectify_disposable(db: Session, order: CollectionOrder, material: Material, delta: Decimal, user_id):
        """Disposables never touch the ledger; the pending wastage follows the item instead"""
        wastage = WastageQueueService.find_pending_for_order(db, order.id, material.id)
        if wastage is not None:
            WastageQueueService.requantify_pending(
                wastage, max(to_quantity(wastage.quantity) + delta, ZERO)
            )
        elif delta > 0:
            WastageQueueService.queue_disposable(db, material, delta, order.id, order.wcn_number, user_id)
        else:
            logger.warning(
                "disposable_rectified_without_pending_wastage",
                extra={"order_id": order.id, "material_id": material.id, "delta": delta},
            )


# =============================================================================
# READS
# =============================================================================

class WcnQueryService:
    """WCN register and composite receipt views"""

    @staticmethod
    def list_register(
        db: Session,
        finalized: Optional[bool] = None,
        supplier_id: Optional[int] = None,
        limit: int = 100
    ) -> List[CollectionOrder]:
        """Completed orders: finalized WCNs and those still awaiting finalization"""
        query = db.query(CollectionOrder).filter(
            CollectionOrder.status == CollectionStatus.COMPLETED
        )
        if finalized is not None:
            query = query.filter(CollectionOrder.is_finalized == finalized)
        if supplier_id:
            query = query.filter(CollectionOrder.supplier_id == supplier_id)
        return query.order_by(
            CollectionOrder.wcn_date.desc(), CollectionOrder.id.desc()
        ).limit(limit).all()

    @staticmethod
    def composite_receipts(db: Session, material_id: int) -> dict:
        """Component definitions of a composite and the component batches each WCN created"""
        material = MaterialCatalog.get_material(db, material_id)
        if not material.is_composite:
            raise ValidationError(f"Material {material.code} is not a composite material")

        components = MaterialCatalog.get_composition(db, material.id)
        component_materials = MaterialCatalog.get_materials(db, [c.material_id for c in components])

        rows = db.query(InventoryBatch, CollectionOrder).join(
            CollectionOrder, InventoryBatch.collection_order_id == CollectionOrder.id
        ).filter(
            InventoryBatch.material_id.in_(list(component_materials)),
            CollectionOrder.is_finalized == True
        ).order_by(CollectionOrder.wcn_date.desc(), InventoryBatch.id.asc()).all()

        receipts: Dict[str, dict] = {}
        for batch, order in rows:
            if batch.batch_number != batch_number_for(order.wcn_number, batch.material_id):
                continue
            receipt = receipts.setdefault(order.wcn_number, {
                "wcn_number": order.wcn_number,
                "wcn_date": order.wcn_date,
                "collection_order_id": order.id,
                "batches": [],
            })
            receipt["batches"].append(batch)

        return {
            "material": material,
            "components": [
                {
                    "material_id": c.material_id,
                    "component_type": c.component_type,
                    "code": component_materials[c.material_id].code,
                    "name": component_materials[c.material_id].name,
                }
                for c in components
            ],
            "receipts": list(receipts.values()),
        }
