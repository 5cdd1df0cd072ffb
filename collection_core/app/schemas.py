from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel

from .models import CollectionStatus, ComponentType, MovementType, PurchaseOrderStatus


class CollectionItemOut(BaseModel):
    id: int
    material_id: int
    available_quantity: Optional[Decimal]
    estimated_quantity: Optional[Decimal]
    collected_quantity: Decimal
    original_collected_quantity: Optional[Decimal]
    contract_rate: Optional[Decimal]
    total_value: Decimal
    quality_grade: Optional[str]
    quality_verified: Optional[bool]
    material_condition: Optional[str]
    is_new_item: Optional[bool]
    notes: Optional[str]

    class Config:
        from_attributes = True


class CollectionExpenseOut(BaseModel):
    id: int
    category: str
    description: str
    amount: Decimal
    expense_date: date

    class Config:
        from_attributes = True


class RectificationLineOut(BaseModel):
    item_id: int
    material_id: int
    quantity_before: Decimal
    quantity_after: Decimal
    delta: Decimal
    reason: str

    class Config:
        from_attributes = True


class RectificationRecordOut(BaseModel):
    sequence: int
    created_at: datetime
    performed_by: Optional[int]
    notes: Optional[str]
    lines: List[RectificationLineOut] = []

    class Config:
        from_attributes = True


class CollectionOrderOut(BaseModel):
    id: int
    order_number: str
    supplier_id: int
    contract_id: Optional[int]
    location_id: Optional[int]
    status: CollectionStatus
    scheduled_date: Optional[date]
    is_finalized: bool
    wcn_number: Optional[str]
    wcn_date: Optional[date]
    finalized_at: Optional[datetime]
    purchase_order_id: Optional[int]
    total_value: Decimal
    total_expenses: Decimal
    rectification_count: int
    notes: Optional[str]
    items: List[CollectionItemOut] = []
    expenses: List[CollectionExpenseOut] = []
    rectifications: List[RectificationRecordOut] = []
    rectification_notes: Optional[str] = None


class PurchaseOrderItemOut(BaseModel):
    id: int
    material_id: int
    quantity_ordered: Decimal
    quantity_received: Decimal
    unit_price: Decimal
    total_price: Decimal
    batch_number: Optional[str]

    class Config:
        from_attributes = True


class PurchaseOrderOut(BaseModel):
    id: int
    order_number: str
    status: PurchaseOrderStatus
    source_type: Optional[str]
    subtotal: Decimal
    tax_amount: Decimal
    shipping_cost: Decimal
    total_amount: Decimal
    items: List[PurchaseOrderItemOut] = []

    class Config:
        from_attributes = True


class BatchOut(BaseModel):
    id: int
    material_id: int
    batch_number: str
    quantity_received: Decimal
    remaining_quantity: Decimal
    unit_cost: Decimal
    is_depleted: bool
    purchase_order_id: Optional[int]
    collection_order_id: Optional[int]
    supplier_id: Optional[int]
    purchase_date: date
    location: Optional[str]
    condition: Optional[str]

    class Config:
        from_attributes = True


class MovementOut(BaseModel):
    id: int
    movement_type: MovementType
    quantity: Decimal
    reference_type: Optional[str]
    reference_id: Optional[int]
    movement_date: date
    notes: Optional[str]
    performed_by: Optional[int]

    class Config:
        from_attributes = True


class ComponentOut(BaseModel):
    material_id: int
    component_type: ComponentType
    code: str
    name: str


class WcnRegisterEntry(BaseModel):
    order_id: int
    order_number: str
    supplier_id: int
    is_finalized: bool
    wcn_number: Optional[str]
    wcn_date: Optional[date]
    purchase_order_id: Optional[int]
    total_value: Decimal
    rectification_count: int


def render_rectification_log(records) -> Optional[str]:
    """Human-readable view of the structured rectification history"""
    if not records:
        return None
    blocks = []
    for record in records:
        header = f"Rectification #{record.sequence} ({record.created_at:%Y-%m-%d %H:%M})"
        if record.notes:
            header += f": {record.notes}"
        lines = [header]
        for line in record.lines:
            lines.append(
                f"  item {line.item_id}: {line.quantity_before} -> {line.quantity_after} - {line.reason}"
            )
        blocks.append("\n".join(lines))
    return "\n".join(blocks)


def order_out(order) -> CollectionOrderOut:
    return CollectionOrderOut(
        id=order.id,
        order_number=order.order_number,
        supplier_id=order.supplier_id,
        contract_id=order.contract_id,
        location_id=order.location_id,
        status=order.status,
        scheduled_date=order.scheduled_date,
        is_finalized=bool(order.is_finalized),
        wcn_number=order.wcn_number,
        wcn_date=order.wcn_date,
        finalized_at=order.finalized_at,
        purchase_order_id=order.purchase_order_id,
        total_value=order.total_value or 0,
        total_expenses=order.total_expenses or 0,
        rectification_count=order.rectification_count or 0,
        notes=order.notes,
        items=[CollectionItemOut.model_validate(i) for i in order.items],
        expenses=[CollectionExpenseOut.model_validate(e) for e in order.expenses],
        rectifications=[RectificationRecordOut.model_validate(r) for r in order.rectifications],
        rectification_notes=render_rectification_log(order.rectifications)
    )
