"""
Inventory Batch API Router
==========================
Read access to the batch ledger plus the ledger operations outside
finalize / rectify:
- Manual adjustments after a physical count
- FIFO allocation and its dry-run preview
- Per-material stock summary and composite receipt view
"""

from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field, validator
from sqlalchemy.orm import Session

from ..http_errors import to_http_exception
from ..models import InventoryBatch
from ..schemas import BatchOut, ComponentOut, MovementOut
from ..security import get_db, require_permission, Permission, SecurityAuditLog
from ..services.exceptions import CollectionError
from ..services.inventory_service import (
    BatchLedgerService, InventoryQueryService, FifoPlan, to_quantity
)
from ..services.unit_of_work import unit_of_work
from ..services.wcn_service import WcnQueryService

router = APIRouter(prefix="/api/inventory-batches", tags=["Inventory Batches"])


# =============================================================================
# SCHEMAS
# =============================================================================

class BatchAdjustmentRequest(BaseModel):
    """Signed quantity change after physical verification"""
    quantity: Decimal
    reason: str = Field(..., min_length=3)
    notes: Optional[str] = None

    @validator('quantity')
    def round_precision(cls, v):
        return to_quantity(v)


class AllocationRequest(BaseModel):
    material_id: int
    quantity: Decimal = Field(..., gt=0)
    reference_type: str = "manual_issue"
    reference_id: Optional[int] = None
    notes: Optional[str] = None

    @validator('quantity')
    def round_precision(cls, v):
        return to_quantity(v)


def _plan_out(plan: FifoPlan) -> dict:
    return {
        "material_id": plan.material_id,
        "requested_quantity": plan.requested_quantity,
        "total_available": plan.total_available,
        "allocated_quantity": plan.allocated_quantity,
        "shortfall": plan.shortfall,
        "can_fulfill": plan.can_fulfill,
        "total_cogs": plan.total_cogs,
        "allocations": [
            {
                "batch_id": a.batch_id,
                "batch_number": a.batch_number,
                "quantity": a.quantity,
                "unit_cost": a.unit_cost,
                "cogs": a.cogs,
                "purchase_date": a.purchase_date,
                "remaining_after": a.remaining_after
            }
            for a in plan.allocations
        ]
    }


# =============================================================================
# QUERIES
# =============================================================================

@router.get("/", response_model=List[BatchOut])
async def list_batches(
    material_id: Optional[int] = None,
    collection_order_id: Optional[int] = None,
    include_depleted: bool = False,
    limit: int = Query(100, le=1000),
    offset: int = 0,
    db: Session = Depends(get_db),
    current_user = Depends(require_permission(Permission.INVENTORY_VIEW))
):
    """List batches in FIFO order (oldest first)"""
    query = db.query(InventoryBatch)

    if material_id:
        query = query.filter(InventoryBatch.material_id == material_id)

    if collection_order_id:
        query = query.filter(InventoryBatch.collection_order_id == collection_order_id)

    if not include_depleted:
        query = query.filter(InventoryBatch.is_depleted == False)

    batches = query.order_by(
        InventoryBatch.purchase_date.asc(), InventoryBatch.id.asc()
    ).offset(offset).limit(limit).all()

    return [BatchOut.model_validate(b) for b in batches]


@router.get("/{batch_id}")
async def get_batch(
    batch_id: int,
    db: Session = Depends(get_db),
    current_user = Depends(require_permission(Permission.INVENTORY_VIEW))
):
    """Batch details with a movement-log reconciliation"""
    try:
        batch = InventoryQueryService.get_batch(db, batch_id)
    except CollectionError as e:
        raise to_http_exception(e)

    check = InventoryQueryService.reconcile_batch(db, batch)
    return {
        "batch": BatchOut.model_validate(batch).model_dump(),
        "movement_total": check.movement_total,
        "is_balanced": check.is_balanced
    }


@router.get("/{batch_id}/movements", response_model=List[MovementOut])
async def list_batch_movements(
    batch_id: int,
    db: Session = Depends(get_db),
    current_user = Depends(require_permission(Permission.INVENTORY_VIEW))
):
    try:
        movements = InventoryQueryService.list_movements(db, batch_id)
    except CollectionError as e:
        raise to_http_exception(e)
    return [MovementOut.model_validate(m) for m in movements]


@router.get("/material/{material_id}/summary")
async def material_batch_summary(
    material_id: int,
    db: Session = Depends(get_db),
    current_user = Depends(require_permission(Permission.INVENTORY_VIEW))
):
    summary = InventoryQueryService.get_batch_summary(db, material_id)
    return {"material_id": material_id, **summary}


@router.get("/material/{material_id}/composite-receipts")
async def composite_receipts(
    material_id: int,
    db: Session = Depends(get_db),
    current_user = Depends(require_permission(Permission.INVENTORY_VIEW))
):
    """
    For a composite material: its components and the component batches
    each finalized WCN created.
    """
    try:
        view = WcnQueryService.composite_receipts(db, material_id)
    except CollectionError as e:
        raise to_http_exception(e)

    material = view["material"]
    return {
        "material_id": material.id,
        "material_code": material.code,
        "material_name": material.name,
        "components": [ComponentOut(**c).model_dump() for c in view["components"]],
        "receipts": [
            {
                "wcn_number": r["wcn_number"],
                "wcn_date": r["wcn_date"],
                "collection_order_id": r["collection_order_id"],
                "batches": [BatchOut.model_validate(b).model_dump() for b in r["batches"]]
            }
            for r in view["receipts"]
        ]
    }


# =============================================================================
# LEDGER OPERATIONS
# =============================================================================

@router.post("/{batch_id}/adjustment")
async def adjust_batch(
    batch_id: int,
    request: BatchAdjustmentRequest,
    db: Session = Depends(get_db),
    current_user = Depends(require_permission(Permission.INVENTORY_ADJUST))
):
    """
    Adjust a batch after physical verification.

    Positive quantities add stock, negative quantities remove it; a batch
    cannot go below zero.
    """
    try:
        with unit_of_work(db, "batch_adjustment", batch_id=batch_id):
            movement, batch = BatchLedgerService.adjust_batch(
                db=db,
                batch_id=batch_id,
                quantity=request.quantity,
                reason=request.reason,
                user_id=current_user.id,
                notes=request.notes
            )
            response = {
                "success": True,
                "message": f"Adjusted batch {batch.batch_number}",
                "movement_id": movement.id,
                "quantity_change": movement.quantity,
                "remaining_quantity": batch.remaining_quantity,
                "is_depleted": batch.is_depleted
            }
    except CollectionError as e:
        raise to_http_exception(e)

    SecurityAuditLog.log_sensitive_action(
        db, current_user.id, "adjust", "inventory_batch", batch_id,
        {"quantity": request.quantity, "reason": request.reason}
    )
    return response


@router.post("/preview-allocation")
async def preview_allocation(
    request: AllocationRequest,
    db: Session = Depends(get_db),
    current_user = Depends(require_permission(Permission.INVENTORY_VIEW))
):
    """Which batches a FIFO issue would consume; nothing is written"""
    try:
        plan = InventoryQueryService.plan_fifo(db, request.material_id, request.quantity)
    except CollectionError as e:
        raise to_http_exception(e)
    return {"success": True, **_plan_out(plan)}


@router.post("/allocate")
async def allocate(
    request: AllocationRequest,
    db: Session = Depends(get_db),
    current_user = Depends(require_permission(Permission.INVENTORY_ADJUST))
):
    """Issue a quantity from the oldest batches first"""
    try:
        with unit_of_work(db, "fifo_allocate", material_id=request.material_id):
            plan = BatchLedgerService.allocate_fifo(
                db=db,
                material_id=request.material_id,
                quantity=request.quantity,
                reference_type=request.reference_type,
                reference_id=request.reference_id,
                user_id=current_user.id,
                notes=request.notes
            )
    except CollectionError as e:
        raise to_http_exception(e)
    return {"success": True, **_plan_out(plan)}
