"""
Inventory Batch Ledger
======================
Business logic for the batch ledger:
- Receipt upserts keyed by (material, batch number)
- Rectification and manual adjustments
- FIFO issue and allocation preview
- Movement log reconciliation

Every quantity change on a batch is written together with a BatchMovement;
remaining_quantity is the running sum of the batch's movements.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..logging_config import get_logger
from ..models import BatchMovement, InventoryBatch, MovementType
from .exceptions import InsufficientStockError, NotFoundError, ValidationError

logger = get_logger("services.inventory")

QTY_STEP = Decimal('0.001')
MONEY_STEP = Decimal('0.01')
ZERO = Decimal('0')


# =============================================================================
# DECIMAL UTILITIES
# =============================================================================

def to_quantity(value) -> Decimal:
    """Normalize any numeric input to a 3-place Decimal quantity"""
    if value is None:
        return ZERO.quantize(QTY_STEP)
    return Decimal(str(value)).quantize(QTY_STEP, rounding=ROUND_HALF_UP)


def to_money(value) -> Decimal:
    """Normalize any numeric input to a 2-place Decimal amount"""
    if value is None:
        return ZERO.quantize(MONEY_STEP)
    return Decimal(str(value)).quantize(MONEY_STEP, rounding=ROUND_HALF_UP)


# =============================================================================
# RESULT TYPES
# =============================================================================

@dataclass
class FifoAllocation:
    batch_id: int
    batch_number: str
    quantity: Decimal
    unit_cost: Decimal
    cogs: Decimal
    purchase_date: date
    remaining_after: Decimal


@dataclass
class FifoPlan:
    material_id: int
    requested_quantity: Decimal
    allocations: List[FifoAllocation] = field(default_factory=list)
    total_available: Decimal = ZERO
    total_cogs: Decimal = ZERO

    @property
    def allocated_quantity(self) -> Decimal:
        return sum((a.quantity for a in self.allocations), ZERO)

    @property
    def shortfall(self) -> Decimal:
        return max(self.requested_quantity - self.allocated_quantity, ZERO)

    @property
    def can_fulfill(self) -> bool:
        return self.shortfall == 0


@dataclass
class BatchReconciliation:
    batch_id: int
    batch_number: str
    remaining_quantity: Decimal
    movement_total: Decimal

    @property
    def is_balanced(self) -> bool:
        return self.remaining_quantity == self.movement_total


# =============================================================================
# LEDGER WRITES
# =============================================================================

class BatchLedgerService:
    """Service class for batch ledger writes"""

    @staticmethod
    def find_batch(
        db: Session,
        material_id: int,
        batch_number: str,
        lock: bool = False
    ) -> Optional[InventoryBatch]:
        query = db.query(InventoryBatch).filter(
            InventoryBatch.material_id == material_id,
            InventoryBatch.batch_number == batch_number
        )
        if lock:
            query = query.with_for_update()
        return query.first()

    @staticmethod
    def _record_movement(
        db: Session,
        batch: InventoryBatch,
        movement_type: MovementType,
        quantity: Decimal,
        reference_type: Optional[str],
        reference_id: Optional[int],
        user_id: Optional[int],
        notes: Optional[str] = None,
        movement_date: Optional[date] = None
    ) -> BatchMovement:
        movement = BatchMovement(
            batch_id=batch.id,
            movement_type=movement_type,
            quantity=quantity,
            reference_type=reference_type,
            reference_id=reference_id,
            movement_date=movement_date or date.today(),
            notes=notes,
            performed_by=user_id
        )
        db.add(movement)
        return movement

    @staticmethod
    def receive_into_batch(
        db: Session,
        material_id: int,
        batch_number: str,
        quantity: Decimal,
        unit_cost: Decimal,
        user_id: Optional[int],
        reference_type: str,
        reference_id: Optional[int],
        purchase_date: Optional[date] = None,
        purchase_order_id: Optional[int] = None,
        collection_order_id: Optional[int] = None,
        supplier_id: Optional[int] = None,
        location: Optional[str] = None,
        condition: Optional[str] = None,
        notes: Optional[str] = None
    ) -> Tuple[InventoryBatch, BatchMovement]:
        """
        Receive quantity into the batch identified by (material, batch number).

        An existing batch is topped up instead of duplicated, so re-entering
        the same receipt accumulates on one row.
        """
        quantity = to_quantity(quantity)
        if quantity <= 0:
            raise ValidationError(f"Receipt quantity must be positive (got {quantity})")

        batch = BatchLedgerService.find_batch(db, material_id, batch_number, lock=True)

        if batch:
            batch.quantity_received = to_quantity(batch.quantity_received) + quantity
            batch.remaining_quantity = to_quantity(batch.remaining_quantity) + quantity
            batch.is_depleted = batch.remaining_quantity <= 0
            if batch.purchase_order_id is None:
                batch.purchase_order_id = purchase_order_id
            batch.updated_at = datetime.utcnow()
            merged = True
        else:
            batch = InventoryBatch(
                material_id=material_id,
                batch_number=batch_number,
                quantity_received=quantity,
                remaining_quantity=quantity,
                unit_cost=to_quantity(unit_cost),
                is_depleted=False,
                purchase_order_id=purchase_order_id,
                collection_order_id=collection_order_id,
                supplier_id=supplier_id,
                purchase_date=purchase_date or date.today(),
                location=location,
                condition=condition,
                notes=notes
            )
            db.add(batch)
            db.flush()  # Get the ID
            merged = False

        movement = BatchLedgerService._record_movement(
            db, batch, MovementType.RECEIPT, quantity,
            reference_type, reference_id, user_id,
            notes=notes, movement_date=purchase_date
        )
        db.flush()

        logger.info(
            "batch_received",
            extra={
                "material_id": material_id,
                "batch_number": batch_number,
                "quantity": quantity,
                "merged": merged,
            },
        )
        return batch, movement

    @staticmethod
    def apply_rectification_delta(
        db: Session,
        material_id: int,
        batch_number: str,
        new_quantity: Decimal,
        delta: Decimal,
        user_id: Optional[int],
        reference_id: Optional[int],
        unit_cost: Decimal = ZERO,
        purchase_order_id: Optional[int] = None,
        collection_order_id: Optional[int] = None,
        supplier_id: Optional[int] = None,
        location: Optional[str] = None,
        notes: Optional[str] = None
    ) -> Tuple[Optional[InventoryBatch], Optional[BatchMovement]]:
        """
        Move a WCN batch by a rectification delta.

        remaining_quantity moves by delta, clamped at zero; the movement
        records the change actually applied so the log keeps summing to the
        remaining quantity. quantity_received only grows.

        A batch missing from the ledger is recreated holding new_quantity.
        """
        new_quantity = to_quantity(new_quantity)
        delta = to_quantity(delta)

        batch = BatchLedgerService.find_batch(db, material_id, batch_number, lock=True)

        if batch is None:
            if new_quantity <= 0:
                return None, None
            batch = InventoryBatch(
                material_id=material_id,
                batch_number=batch_number,
                quantity_received=new_quantity,
                remaining_quantity=new_quantity,
                unit_cost=to_quantity(unit_cost),
                is_depleted=False,
                purchase_order_id=purchase_order_id,
                collection_order_id=collection_order_id,
                supplier_id=supplier_id,
                purchase_date=date.today(),
                location=location
            )
            db.add(batch)
            db.flush()
            movement = BatchLedgerService._record_movement(
                db, batch, MovementType.ADJUSTMENT, new_quantity,
                "wcn_rectification", reference_id, user_id,
                notes=f"Ledger entry restored during rectification. {notes or ''}".strip()
            )
            db.flush()
            logger.warning(
                "batch_restored",
                extra={"material_id": material_id, "batch_number": batch_number, "quantity": new_quantity},
            )
            return batch, movement

        before = to_quantity(batch.remaining_quantity)
        after = max(before + delta, ZERO)
        applied = after - before

        if delta > 0:
            batch.quantity_received = to_quantity(batch.quantity_received) + delta
        batch.remaining_quantity = after
        batch.is_depleted = after <= 0
        batch.updated_at = datetime.utcnow()

        movement_notes = notes
        if applied != delta:
            movement_notes = f"{notes or ''} [clamped: requested {delta}, applied {applied}]".strip()

        movement = BatchLedgerService._record_movement(
            db, batch, MovementType.ADJUSTMENT, applied,
            "wcn_rectification", reference_id, user_id, notes=movement_notes
        )
        db.flush()
        return batch, movement

    @staticmethod
    def adjust_batch(
        db: Session,
        batch_id: int,
        quantity: Decimal,
        reason: str,
        user_id: Optional[int],
        notes: Optional[str] = None
    ) -> Tuple[BatchMovement, InventoryBatch]:
        """
        Manual stock adjustment (recount, damage found in store, etc.)

        Quantity is signed. The batch may not go below zero.
        """
        batch = db.query(InventoryBatch).filter(
            InventoryBatch.id == batch_id
        ).with_for_update().first()

        if not batch:
            raise NotFoundError("Inventory batch not found")

        quantity = to_quantity(quantity)
        if quantity == 0:
            raise ValidationError("No quantity change specified")

        current = to_quantity(batch.remaining_quantity)
        new_remaining = current + quantity
        if new_remaining < 0:
            raise ValidationError(
                f"Cannot reduce below 0. Current: {current}, Adjustment: {quantity}"
            )

        if quantity > 0:
            batch.quantity_received = to_quantity(batch.quantity_received) + quantity
        batch.remaining_quantity = new_remaining
        batch.is_depleted = new_remaining <= 0
        batch.updated_at = datetime.utcnow()

        movement = BatchLedgerService._record_movement(
            db, batch, MovementType.ADJUSTMENT, quantity,
            "manual_adjustment", None, user_id,
            notes=f"{reason}{f' - {notes}' if notes else ''}"
        )
        db.flush()

        logger.info(
            "batch_adjusted",
            extra={"batch_id": batch_id, "previous": current, "adjustment": quantity, "reason": reason},
        )
        return movement, batch

    @staticmethod
    def allocate_fifo(
        db: Session,
        material_id: int,
        quantity: Decimal,
        reference_type: str,
        reference_id: Optional[int],
        user_id: Optional[int],
        notes: Optional[str] = None
    ) -> FifoPlan:
        """
        Issue a quantity from the oldest batches first.

        Nothing is written when the batches cannot cover the full quantity.
        """
        plan = InventoryQueryService.plan_fifo(db, material_id, quantity, lock=True)

        if not plan.can_fulfill:
            raise InsufficientStockError(
                f"Insufficient inventory. Requested: {plan.requested_quantity}, "
                f"Available: {plan.total_available}",
                shortfall=plan.shortfall
            )

        batches = {
            b.id: b for b in db.query(InventoryBatch).filter(
                InventoryBatch.id.in_([a.batch_id for a in plan.allocations])
            ).all()
        }

        for allocation in plan.allocations:
            batch = batches[allocation.batch_id]
            batch.remaining_quantity = allocation.remaining_after
            batch.is_depleted = allocation.remaining_after <= 0
            batch.updated_at = datetime.utcnow()
            BatchLedgerService._record_movement(
                db, batch, MovementType.ISSUE, -allocation.quantity,
                reference_type, reference_id, user_id,
                notes=notes or (
                    f"FIFO allocation: {allocation.quantity} units @ "
                    f"{allocation.unit_cost}/unit = {allocation.cogs} COGS"
                )
            )
        db.flush()

        logger.info(
            "fifo_allocated",
            extra={
                "material_id": material_id,
                "quantity": plan.requested_quantity,
                "batches_used": len(plan.allocations),
                "total_cogs": plan.total_cogs,
                "reference_type": reference_type,
                "reference_id": reference_id,
            },
        )
        return plan


# =============================================================================
# LEDGER QUERIES
# =============================================================================

class InventoryQueryService:
    """Service for batch queries and reports"""

    @staticmethod
    def get_batch(db: Session, batch_id: int) -> InventoryBatch:
        batch = db.query(InventoryBatch).filter(InventoryBatch.id == batch_id).first()
        if not batch:
            raise NotFoundError("Inventory batch not found")
        return batch

    @staticmethod
    def list_movements(db: Session, batch_id: int) -> List[BatchMovement]:
        InventoryQueryService.get_batch(db, batch_id)
        return db.query(BatchMovement).filter(
            BatchMovement.batch_id == batch_id
        ).order_by(BatchMovement.id.asc()).all()

    @staticmethod
    def plan_fifo(
        db: Session,
        material_id: int,
        quantity: Decimal,
        lock: bool = False
    ) -> FifoPlan:
        """
        Work out which batches a FIFO issue would consume.

        Oldest purchase_date first, id as tie-breaker.
        """
        requested = to_quantity(quantity)
        if requested <= 0:
            raise ValidationError("Quantity must be positive")

        query = db.query(InventoryBatch).filter(
            InventoryBatch.material_id == material_id,
            InventoryBatch.is_depleted == False,
            InventoryBatch.remaining_quantity > 0
        ).order_by(
            InventoryBatch.purchase_date.asc(),
            InventoryBatch.id.asc()
        )
        if lock:
            query = query.with_for_update()

        batches = query.all()
        plan = FifoPlan(material_id=material_id, requested_quantity=requested)
        plan.total_available = sum((to_quantity(b.remaining_quantity) for b in batches), ZERO)

        outstanding = requested
        for batch in batches:
            if outstanding <= 0:
                break
            available = to_quantity(batch.remaining_quantity)
            take = min(available, outstanding)
            unit_cost = Decimal(batch.unit_cost or 0)
            cogs = to_money(take * unit_cost)
            plan.allocations.append(FifoAllocation(
                batch_id=batch.id,
                batch_number=batch.batch_number,
                quantity=take,
                unit_cost=unit_cost,
                cogs=cogs,
                purchase_date=batch.purchase_date,
                remaining_after=available - take
            ))
            plan.total_cogs += cogs
            outstanding -= take

        return plan

    @staticmethod
    def get_batch_summary(db: Session, material_id: int) -> dict:
        """Stock position of a material across its open batches"""
        batches = db.query(InventoryBatch).filter(
            InventoryBatch.material_id == material_id,
            InventoryBatch.is_depleted == False,
            InventoryBatch.remaining_quantity > 0
        ).order_by(InventoryBatch.purchase_date.asc()).all()

        if not batches:
            return {
                'total_quantity': ZERO,
                'total_value': ZERO,
                'average_cost': ZERO,
                'batch_count': 0,
                'oldest_batch_date': None,
                'newest_batch_date': None
            }

        total_quantity = sum((to_quantity(b.remaining_quantity) for b in batches), ZERO)
        total_value = sum((to_quantity(b.remaining_quantity) * Decimal(b.unit_cost or 0) for b in batches), ZERO)

        return {
            'total_quantity': total_quantity,
            'total_value': to_money(total_value),
            'average_cost': (total_value / total_quantity).quantize(QTY_STEP) if total_quantity > 0 else ZERO,
            'batch_count': len(batches),
            'oldest_batch_date': batches[0].purchase_date,
            'newest_batch_date': batches[-1].purchase_date
        }

    @staticmethod
    def reconcile_batch(db: Session, batch: InventoryBatch) -> BatchReconciliation:
        """Compare the materialized remaining quantity with the movement log"""
        movement_total = db.query(
            func.coalesce(func.sum(BatchMovement.quantity), 0)
        ).filter(BatchMovement.batch_id == batch.id).scalar()

        return BatchReconciliation(
            batch_id=batch.id,
            batch_number=batch.batch_number,
            remaining_quantity=to_quantity(batch.remaining_quantity),
            movement_total=to_quantity(movement_total)
        )
