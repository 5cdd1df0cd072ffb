"""
Collection Orders API Router
============================
Order header, line items, expenses and status progression up to
completion, plus the WCN register.
"""

from datetime import date
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field, validator
from sqlalchemy.orm import Session

from ..http_errors import to_http_exception
from ..schemas import CollectionOrderOut, WcnRegisterEntry, order_out
from ..security import get_db, require_permission, Permission
from ..services.collection_service import CollectionOrderService
from ..services.exceptions import CollectionError, NotFoundError
from ..services.inventory_service import to_money, to_quantity
from ..services.unit_of_work import unit_of_work
from ..services.wcn_service import WcnQueryService

router = APIRouter(prefix="/api/collection-orders", tags=["Collection Orders"])


# =============================================================================
# SCHEMAS
# =============================================================================

class CollectionItemCreate(BaseModel):
    """Request to add a material line to an order"""
    material_id: int
    collected_quantity: Decimal = Field(Decimal("0"), ge=0)
    available_quantity: Optional[Decimal] = Field(None, ge=0)
    estimated_quantity: Optional[Decimal] = Field(None, ge=0)
    contract_rate: Optional[Decimal] = Field(None, ge=0)
    quality_grade: Optional[str] = None
    material_condition: Optional[str] = None
    notes: Optional[str] = None

    @validator('collected_quantity', 'available_quantity', 'estimated_quantity', 'contract_rate')
    def round_precision(cls, v):
        return to_quantity(v) if v is not None else v


class CollectionOrderCreate(BaseModel):
    """Request to schedule a new collection"""
    supplier_id: int
    contract_id: Optional[int] = None
    location_id: Optional[int] = None
    scheduled_date: Optional[date] = None
    notes: Optional[str] = None
    items: List[CollectionItemCreate] = []


class CollectedQuantityUpdate(BaseModel):
    collected_quantity: Decimal = Field(..., ge=0)

    @validator('collected_quantity')
    def round_precision(cls, v):
        return to_quantity(v)


class ExpenseCreate(BaseModel):
    category: str = Field(..., min_length=1, max_length=50)
    description: str = Field(..., min_length=1, max_length=200)
    amount: Decimal = Field(..., ge=0)
    expense_date: Optional[date] = None

    @validator('amount')
    def round_money(cls, v):
        return to_money(v)


class StatusChange(BaseModel):
    status: str


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.post("/", status_code=201)
async def create_collection_order(
    data: CollectionOrderCreate,
    db: Session = Depends(get_db),
    current_user = Depends(require_permission(Permission.COLLECTION_EDIT))
):
    """
    Schedule a collection, optionally with its planned material lines.
    """
    try:
        with unit_of_work(db, "collection_order_create", supplier_id=data.supplier_id):
            order = CollectionOrderService.create_order(
                db=db,
                supplier_id=data.supplier_id,
                user_id=current_user.id,
                contract_id=data.contract_id,
                location_id=data.location_id,
                scheduled_date=data.scheduled_date,
                notes=data.notes
            )
            for line in data.items:
                CollectionOrderService.add_item(db=db, order_id=order.id, **line.dict())
            order_id, order_number = order.id, order.order_number
    except CollectionError as e:
        raise to_http_exception(e)

    return {
        "success": True,
        "order_id": order_id,
        "order_number": order_number,
        "status": "scheduled"
    }


@router.get("/wcn-register", response_model=List[WcnRegisterEntry])
async def wcn_register(
    finalized: Optional[bool] = None,
    supplier_id: Optional[int] = None,
    limit: int = Query(100, le=500),
    db: Session = Depends(get_db),
    current_user = Depends(require_permission(Permission.COLLECTION_VIEW))
):
    """
    Completed collections with their WCN state.

    finalized=false lists orders still waiting to be finalized.
    """
    orders = WcnQueryService.list_register(db, finalized=finalized, supplier_id=supplier_id, limit=limit)
    return [
        WcnRegisterEntry(
            order_id=o.id,
            order_number=o.order_number,
            supplier_id=o.supplier_id,
            is_finalized=bool(o.is_finalized),
            wcn_number=o.wcn_number,
            wcn_date=o.wcn_date,
            purchase_order_id=o.purchase_order_id,
            total_value=o.total_value or 0,
            rectification_count=o.rectification_count or 0
        )
        for o in orders
    ]


@router.get("/{order_id}", response_model=CollectionOrderOut)
async def get_collection_order(
    order_id: int,
    db: Session = Depends(get_db),
    current_user = Depends(require_permission(Permission.COLLECTION_VIEW))
):
    try:
        order = CollectionOrderService.get_order(db, order_id)
    except CollectionError as e:
        raise to_http_exception(e)
    return order_out(order)


@router.post("/{order_id}/items", status_code=201)
async def add_collection_item(
    order_id: int,
    data: CollectionItemCreate,
    db: Session = Depends(get_db),
    current_user = Depends(require_permission(Permission.COLLECTION_EDIT))
):
    try:
        with unit_of_work(db, "collection_item_add", order_id=order_id):
            item = CollectionOrderService.add_item(db=db, order_id=order_id, **data.dict())
            response = {
                "success": True,
                "item_id": item.id,
                "total_value": item.total_value,
                "order_total_value": item.order.total_value
            }
    except CollectionError as e:
        raise to_http_exception(e)
    return response


@router.patch("/{order_id}/items/{item_id}")
async def update_collected_quantity(
    order_id: int,
    item_id: int,
    data: CollectedQuantityUpdate,
    db: Session = Depends(get_db),
    current_user = Depends(require_permission(Permission.COLLECTION_EDIT))
):
    """
    Record the weighed quantity of a line. Finalized orders are corrected
    through /rectify instead.
    """
    try:
        with unit_of_work(db, "collected_quantity_update", order_id=order_id, item_id=item_id):
            item = CollectionOrderService.get_item(db, item_id)
            if item.collection_order_id != order_id:
                raise NotFoundError(f"Collection item {item_id} not found on this order")
            item = CollectionOrderService.update_collected_quantity(db, item_id, data.collected_quantity)
            response = {
                "success": True,
                "item_id": item.id,
                "collected_quantity": item.collected_quantity,
                "total_value": item.total_value
            }
    except CollectionError as e:
        raise to_http_exception(e)
    return response


@router.post("/{order_id}/expenses", status_code=201)
async def add_collection_expense(
    order_id: int,
    data: ExpenseCreate,
    db: Session = Depends(get_db),
    current_user = Depends(require_permission(Permission.COLLECTION_EDIT))
):
    """
    Record a collection cost. The order's total expenses become the
    shipping cost of the WCN purchase order.
    """
    try:
        with unit_of_work(db, "collection_expense_add", order_id=order_id):
            expense = CollectionOrderService.add_expense(
                db=db,
                order_id=order_id,
                category=data.category,
                description=data.description,
                amount=data.amount,
                expense_date=data.expense_date or date.today(),
                user_id=current_user.id
            )
            response = {
                "success": True,
                "expense_id": expense.id,
                "total_expenses": expense.order.total_expenses
            }
    except CollectionError as e:
        raise to_http_exception(e)
    return response


@router.post("/{order_id}/status")
async def change_collection_status(
    order_id: int,
    data: StatusChange,
    db: Session = Depends(get_db),
    current_user = Depends(require_permission(Permission.COLLECTION_EDIT))
):
    """
    Status values: scheduled, in_transit, collecting, completed, cancelled, failed
    """
    try:
        with unit_of_work(db, "collection_status_change", order_id=order_id):
            order = CollectionOrderService.get_order(db, order_id, lock=True)
            previous = order.status.value
            order = CollectionOrderService.advance_status(db, order, data.status)
            current = order.status.value
    except CollectionError as e:
        raise to_http_exception(e)

    return {
        "success": True,
        "order_id": order_id,
        "previous_status": previous,
        "status": current
    }
