"""
WCN (Waste Consignment Note) API Router
=======================================
- Finalize a completed collection into a WCN
- Rectify finalized quantities
- View the generated purchase order
"""

from datetime import date
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field, validator
from sqlalchemy.orm import Session

from ..http_errors import to_http_exception
from ..models import PurchaseOrder
from ..schemas import PurchaseOrderOut
from ..security import get_db, require_permission, Permission, SecurityAuditLog
from ..services.collection_service import CollectionOrderService
from ..services.exceptions import CollectionError
from ..services.inventory_service import to_quantity
from ..services.wcn_service import ItemAdjustment, VerifiedEntry, WcnService

router = APIRouter(prefix="/api/collection-orders", tags=["WCN - Waste Consignment Note"])


# =============================================================================
# SCHEMAS
# =============================================================================

class VerifiedItem(BaseModel):
    """Physically verified quantity of one material"""
    material_id: int
    verified_quantity: Decimal = Field(..., ge=0)
    agreed_rate: Optional[Decimal] = Field(None, ge=0)
    is_new_item: bool = False
    quality_grade: Optional[str] = None
    quality_verified: Optional[bool] = None
    actual_condition: Optional[str] = None

    @validator('verified_quantity', 'agreed_rate')
    def round_precision(cls, v):
        return to_quantity(v) if v is not None else v


class FinalizeRequest(BaseModel):
    wcn_date: Optional[date] = None
    notes: Optional[str] = None
    items: Optional[List[VerifiedItem]] = None


class ItemAdjustmentRequest(BaseModel):
    item_id: int
    new_quantity: Decimal = Field(..., ge=0)
    reason: str

    @validator('new_quantity')
    def round_precision(cls, v):
        return to_quantity(v)


class RectifyRequest(BaseModel):
    item_adjustments: List[ItemAdjustmentRequest]
    notes: Optional[str] = None


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.post("/{order_id}/finalize")
async def finalize_wcn(
    order_id: int,
    data: FinalizeRequest,
    db: Session = Depends(get_db),
    current_user = Depends(require_permission(Permission.WCN_FINALIZE))
):
    """
    Finalize a completed collection order into a WCN.

    Stocks the collected materials, queues disposables as pending wastage
    and generates the received purchase order. An order can be finalized
    once; later corrections go through /rectify.
    """
    verified = None
    if data.items is not None:
        verified = [VerifiedEntry(**i.dict()) for i in data.items]

    try:
        result = WcnService.finalize(
            db,
            order_id=order_id,
            user_id=current_user.id,
            wcn_date=data.wcn_date,
            notes=data.notes,
            verified_items=verified
        )
    except CollectionError as e:
        raise to_http_exception(e)

    SecurityAuditLog.log_sensitive_action(
        db, current_user.id, "finalize", "collection_order", order_id,
        {"wcn_number": result.wcn_number, "purchase_order_id": result.purchase_order_id}
    )

    return {
        "success": True,
        "wcn_number": result.wcn_number,
        "wcn_date": result.wcn_date,
        "purchase_order_id": result.purchase_order_id,
        "items_processed": result.items_processed,
        "new_items_added": result.new_items_added,
        "disposable_wastage_summary": result.disposable_wastage_summary,
        "quantity_sources": {str(k): v.value for k, v in result.quantity_sources.items()}
    }


@router.post("/{order_id}/rectify")
async def rectify_wcn(
    order_id: int,
    data: RectifyRequest,
    db: Session = Depends(get_db),
    current_user = Depends(require_permission(Permission.WCN_RECTIFY))
):
    """
    Correct quantities on a finalized WCN.

    Ledger batches and the purchase order follow every adjustment; all
    adjustments of one call commit together.
    """
    adjustments = [
        ItemAdjustment(item_id=a.item_id, new_quantity=a.new_quantity, reason=a.reason)
        for a in data.item_adjustments
    ]

    try:
        result = WcnService.rectify(
            db,
            order_id=order_id,
            adjustments=adjustments,
            user_id=current_user.id,
            notes=data.notes
        )
    except CollectionError as e:
        raise to_http_exception(e)

    SecurityAuditLog.log_sensitive_action(
        db, current_user.id, "rectify", "collection_order", order_id,
        {
            "wcn_number": result.wcn_number,
            "rectification_count": result.rectification_count,
            "items": [a.item_id for a in result.adjustments]
        }
    )

    return {
        "success": True,
        "wcn_number": result.wcn_number,
        "purchase_order_id": result.purchase_order_id,
        "rectification_count": result.rectification_count,
        "adjustments": [
            {
                "item_id": a.item_id,
                "material_id": a.material_id,
                "quantity_before": a.quantity_before,
                "quantity_after": a.quantity_after,
                "delta": a.delta,
                "reason": a.reason,
                "batch_numbers": a.batch_numbers
            }
            for a in result.adjustments
        ],
        "purchase_order_totals": result.purchase_order_totals
    }


@router.get("/{order_id}/purchase-order", response_model=PurchaseOrderOut)
async def get_wcn_purchase_order(
    order_id: int,
    db: Session = Depends(get_db),
    current_user = Depends(require_permission(Permission.COLLECTION_VIEW))
):
    try:
        order = CollectionOrderService.get_order(db, order_id)
    except CollectionError as e:
        raise to_http_exception(e)

    if not order.purchase_order_id:
        raise HTTPException(status_code=404, detail="No purchase order generated for this collection")

    po = db.query(PurchaseOrder).filter(PurchaseOrder.id == order.purchase_order_id).first()
    return PurchaseOrderOut.model_validate(po)
