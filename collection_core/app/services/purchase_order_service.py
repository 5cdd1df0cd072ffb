"""
Purchase orders generated from finalized WCNs.

The Finalizer creates the order once; afterwards only the Rectifier changes
it, through upsert_item and recompute_totals.
"""

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy.orm import Session

from ..logging_config import get_logger
from ..models import (
    CollectionOrder, PurchaseOrder, PurchaseOrderItem, PurchaseOrderStatus,
    PO_SOURCE_WCN_AUTO
)
from .inventory_service import ZERO, to_money, to_quantity
from .numbering import purchase_order_number

logger = get_logger("services.purchase_orders")


@dataclass
class BillableLine:
    """Priced quantity of one material on a WCN"""
    material_id: int
    quantity: Decimal
    unit_price: Decimal
    total_price: Decimal
    batch_number: str

    def merge(self, quantity: Decimal, total_price: Decimal) -> None:
        """Fold another line of the same material in; unit price becomes the average"""
        self.quantity = to_quantity(self.quantity + quantity)
        self.total_price = to_money(self.total_price + total_price)
        if self.quantity > 0:
            self.unit_price = to_quantity(self.total_price / self.quantity)


class PurchaseOrderProjector:

    @staticmethod
    def create_from_wcn(
        db: Session,
        order: CollectionOrder,
        wcn_number: str,
        wcn_date: date,
        lines: List[BillableLine],
        tax_rate: Decimal,
        user_id: Optional[int]
    ) -> PurchaseOrder:
        """Create the received purchase order representing what the WCN owes the supplier"""
        po = PurchaseOrder(
            order_number=purchase_order_number(wcn_number),
            supplier_id=order.supplier_id,
            order_date=wcn_date,
            status=PurchaseOrderStatus.RECEIVED,
            source_type=PO_SOURCE_WCN_AUTO,
            collection_order_id=order.id,
            shipping_cost=to_money(order.total_expenses or 0),
            notes=f"Auto-generated from {wcn_number} ({order.order_number})",
            created_by=user_id
        )
        db.add(po)
        db.flush()

        for line in lines:
            db.add(PurchaseOrderItem(
                purchase_order_id=po.id,
                material_id=line.material_id,
                quantity_ordered=to_quantity(line.quantity),
                quantity_received=to_quantity(line.quantity),
                unit_price=to_quantity(line.unit_price),
                total_price=line.total_price,
                batch_number=line.batch_number
            ))
        db.flush()

        PurchaseOrderProjector.recompute_totals(db, po, tax_rate)
        logger.info(
            "purchase_order_generated",
            extra={"purchase_order_id": po.id, "wcn_number": wcn_number, "lines": len(lines), "total": po.total_amount},
        )
        return po

    @staticmethod
    def find_item(db: Session, po: PurchaseOrder, material_id: int) -> Optional[PurchaseOrderItem]:
        return db.query(PurchaseOrderItem).filter(
            PurchaseOrderItem.purchase_order_id == po.id,
            PurchaseOrderItem.material_id == material_id
        ).first()

    @staticmethod
    def upsert_item(
        db: Session,
        po: PurchaseOrder,
        material_id: int,
        quantity: Decimal,
        unit_price: Decimal,
        batch_number: str,
        total_price: Optional[Decimal] = None
    ) -> Optional[PurchaseOrderItem]:
        """
        Set the ordered/received quantity of a material on the PO.

        total_price, when given, is the summed value of the items behind the
        line and replaces quantity x unit price; the unit price of a merged
        line is then its average. Without it an existing line keeps its unit
        price. A missing line is added only for a positive quantity.
        """
        quantity = to_quantity(quantity)
        item = PurchaseOrderProjector.find_item(db, po, material_id)

        if item:
            item.quantity_ordered = quantity
            item.quantity_received = quantity
            if total_price is not None:
                item.total_price = to_money(total_price)
                if quantity > 0:
                    item.unit_price = to_quantity(item.total_price / quantity)
            else:
                item.total_price = to_money(quantity * Decimal(item.unit_price or 0))
        elif quantity > 0:
            item = PurchaseOrderItem(
                purchase_order_id=po.id,
                material_id=material_id,
                quantity_ordered=quantity,
                quantity_received=quantity,
                unit_price=to_quantity(unit_price),
                total_price=to_money(total_price if total_price is not None else quantity * unit_price),
                batch_number=batch_number
            )
            db.add(item)
        db.flush()
        return item

    @staticmethod
    def recompute_totals(db: Session, po: PurchaseOrder, tax_rate: Decimal) -> PurchaseOrder:
        """subtotal = sum of line totals; total = subtotal + tax + shipping"""
        items = db.query(PurchaseOrderItem).filter(
            PurchaseOrderItem.purchase_order_id == po.id
        ).all()
        subtotal = to_money(sum((Decimal(i.total_price or 0) for i in items), ZERO))
        tax = to_money(subtotal * tax_rate)
        shipping = to_money(po.shipping_cost or 0)

        po.subtotal = subtotal
        po.tax_amount = tax
        po.total_amount = to_money(subtotal + tax + shipping)
        po.updated_at = datetime.utcnow()
        db.flush()
        return po
