"""
Collection Order Aggregate
==========================
Order header + line items. Before finalization this service is the only
writer of an item's collected quantity.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional, Union

from sqlalchemy.orm import Session

from ..logging_config import get_logger
from ..models import (
    CollectionExpense, CollectionItem, CollectionOrder, CollectionStatus, Supplier
)
from .catalog_service import MaterialCatalog
from .exceptions import NotFoundError, StateConflictError, ValidationError
from .inventory_service import ZERO, to_money, to_quantity
from .numbering import next_order_number

logger = get_logger("services.collections")

# Forward path; cancelled and failed are reachable from any open state
STATUS_PROGRESSION = [
    CollectionStatus.SCHEDULED,
    CollectionStatus.IN_TRANSIT,
    CollectionStatus.COLLECTING,
    CollectionStatus.COMPLETED,
]
TERMINAL_STATUSES = {CollectionStatus.CANCELLED, CollectionStatus.FAILED}
OPEN_STATUSES = {CollectionStatus.SCHEDULED, CollectionStatus.IN_TRANSIT, CollectionStatus.COLLECTING}


def parse_status(value: Union[str, CollectionStatus]) -> CollectionStatus:
    if isinstance(value, CollectionStatus):
        return value
    try:
        return CollectionStatus(value)
    except ValueError:
        allowed = ", ".join(s.value for s in CollectionStatus)
        raise ValidationError(f"Invalid status '{value}'. Allowed: {allowed}")


def resolve_rate(explicit_rate, material) -> Decimal:
    """Explicit (contract / agreed) rate wins; otherwise the material's standard price"""
    if explicit_rate is not None:
        return to_quantity(explicit_rate)
    return to_quantity(MaterialCatalog.unit_price(material))


class CollectionOrderService:
    """Service class for collection order operations"""

    @staticmethod
    def get_order(db: Session, order_id: int, lock: bool = False) -> CollectionOrder:
        query = db.query(CollectionOrder).filter(CollectionOrder.id == order_id)
        if lock:
            query = query.with_for_update()
        order = query.first()
        if not order:
            raise NotFoundError("Collection order not found")
        return order

    @staticmethod
    def get_items(db: Session, order_id: int) -> List[CollectionItem]:
        return db.query(CollectionItem).filter(
            CollectionItem.collection_order_id == order_id
        ).order_by(CollectionItem.id.asc()).all()

    @staticmethod
    def get_item(db: Session, item_id: int) -> CollectionItem:
        item = db.query(CollectionItem).filter(CollectionItem.id == item_id).first()
        if not item:
            raise NotFoundError(f"Collection item {item_id} not found")
        return item

    @staticmethod
    def create_order(
        db: Session,
        supplier_id: int,
        user_id: Optional[int],
        contract_id: Optional[int] = None,
        location_id: Optional[int] = None,
        scheduled_date: Optional[date] = None,
        notes: Optional[str] = None
    ) -> CollectionOrder:
        """Create a new collection order in scheduled status"""
        supplier = db.query(Supplier).filter(Supplier.id == supplier_id).first()
        if not supplier:
            raise NotFoundError("Supplier not found")

        order = CollectionOrder(
            order_number=next_order_number(db, scheduled_date or date.today()),
            contract_id=contract_id,
            supplier_id=supplier_id,
            location_id=location_id,
            status=CollectionStatus.SCHEDULED,
            scheduled_date=scheduled_date,
            notes=notes,
            created_by=user_id
        )
        db.add(order)
        db.flush()

        logger.info("collection_order_created", extra={"order_id": order.id, "order_number": order.order_number})
        return order

    @staticmethod
    def add_item(
        db: Session,
        order_id: int,
        material_id: int,
        collected_quantity=ZERO,
        available_quantity=None,
        estimated_quantity=None,
        contract_rate=None,
        quality_grade: Optional[str] = None,
        material_condition: Optional[str] = None,
        notes: Optional[str] = None
    ) -> CollectionItem:
        """Add a material line to an open order; value is priced at the resolved rate"""
        order = CollectionOrderService.get_order(db, order_id)
        if order.is_finalized or order.status not in OPEN_STATUSES:
            raise StateConflictError("Items can only be added to an order in progress")

        material = MaterialCatalog.get_material(db, material_id)
        quantity = to_quantity(collected_quantity)
        if quantity < 0:
            raise ValidationError("Collected quantity cannot be negative")

        rate = resolve_rate(contract_rate, material)
        item = CollectionItem(
            collection_order_id=order.id,
            material_id=material.id,
            available_quantity=to_quantity(available_quantity) if available_quantity is not None else None,
            estimated_quantity=to_quantity(estimated_quantity) if estimated_quantity is not None else None,
            collected_quantity=quantity,
            contract_rate=rate,
            total_value=to_money(quantity * rate),
            quality_grade=quality_grade,
            material_condition=material_condition,
            notes=notes
        )
        db.add(item)
        db.flush()

        CollectionOrderService.recalculate_totals(db, order)
        return item

    @staticmethod
    def update_collected_quantity(db: Session, item_id: int, quantity) -> CollectionItem:
        """Record the collected quantity of a line before the order is finalized"""
        item = CollectionOrderService.get_item(db, item_id)
        order = item.order
        if order.is_finalized:
            raise StateConflictError("Order is finalized; use WCN rectification to change quantities")
        if order.status in TERMINAL_STATUSES:
            raise StateConflictError(f"Order is {order.status.value}")

        quantity = to_quantity(quantity)
        if quantity < 0:
            raise ValidationError("Collected quantity cannot be negative")

        item.collected_quantity = quantity
        item.total_value = to_money(quantity * Decimal(item.contract_rate or 0))
        item.updated_at = datetime.utcnow()
        db.flush()

        CollectionOrderService.recalculate_totals(db, order)
        return item

    @staticmethod
    def add_expense(
        db: Session,
        order_id: int,
        category: str,
        description: str,
        amount,
        expense_date: date,
        user_id: Optional[int]
    ) -> CollectionExpense:
        """Record a collection cost; the order's expenses become the PO shipping cost"""
        order = CollectionOrderService.get_order(db, order_id)
        if order.is_finalized:
            raise StateConflictError("Expenses cannot be added to a finalized order")

        amount = to_money(amount)
        if amount < 0:
            raise ValidationError("Expense amount cannot be negative")

        expense = CollectionExpense(
            collection_order_id=order.id,
            category=category,
            description=description,
            amount=amount,
            expense_date=expense_date,
            created_by=user_id
        )
        db.add(expense)
        db.flush()

        CollectionOrderService.recalculate_totals(db, order)
        return expense

    @staticmethod
    def recalculate_totals(db: Session, order: CollectionOrder) -> CollectionOrder:
        items = CollectionOrderService.get_items(db, order.id)
        expenses = db.query(CollectionExpense).filter(
            CollectionExpense.collection_order_id == order.id
        ).all()

        order.total_value = to_money(sum((Decimal(i.total_value or 0) for i in items), ZERO))
        order.total_expenses = to_money(sum((Decimal(e.amount or 0) for e in expenses), ZERO))
        order.updated_at = datetime.utcnow()
        db.flush()
        return order

    @staticmethod
    def advance_status(
        db: Session,
        order: CollectionOrder,
        new_status: Union[str, CollectionStatus]
    ) -> CollectionOrder:
        """
        Move the order along scheduled → in_transit → collecting → completed,
        or to cancelled / failed from any open state.

        Completing requires at least one item with a positive collected
        quantity.
        """
        target = parse_status(new_status)
        current = order.status

        if order.is_finalized:
            raise StateConflictError("Finalized orders cannot change status")
        if current in TERMINAL_STATUSES:
            raise StateConflictError(f"Order is already {current.value}")
        if target == current:
            raise StateConflictError(f"Order is already {current.value}")

        if target not in TERMINAL_STATUSES:
            if STATUS_PROGRESSION.index(target) < STATUS_PROGRESSION.index(current):
                raise StateConflictError(
                    f"Cannot move order back from {current.value} to {target.value}"
                )

        if target == CollectionStatus.COMPLETED:
            collected = [
                i for i in CollectionOrderService.get_items(db, order.id)
                if to_quantity(i.collected_quantity) > 0
            ]
            if not collected:
                raise ValidationError("Cannot complete order with no collected items")

        order.status = target
        order.updated_at = datetime.utcnow()
        db.flush()

        logger.info(
            "collection_status_changed",
            extra={"order_id": order.id, "from_status": current.value, "to_status": target.value},
        )
        return order
