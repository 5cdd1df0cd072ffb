"""
Collection & WCN Data Models
============================
Persistence layer for collection orders, the batched inventory ledger and the
purchase orders generated when a collection is finalized into a Waste
Consignment Note (WCN).

Key Features:
- Decimal precision for every quantity and amount
- Batch ledger with an append-only movement log
- Auto-generated purchase orders linked back to their collection
- Structured rectification history
"""

from datetime import datetime
from enum import Enum

from sqlalchemy import (
    Column, Integer, String, DateTime, Date, ForeignKey, Text, Boolean,
    Numeric, Enum as SQLEnum, Index, CheckConstraint, UniqueConstraint
)
from sqlalchemy.orm import relationship, validates
from .db import Base


# =============================================================================
# ENUMS
# =============================================================================

class CollectionStatus(str, Enum):
    """Collection order lifecycle, in progression order"""
    SCHEDULED = "scheduled"
    IN_TRANSIT = "in_transit"
    COLLECTING = "collecting"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class ComponentType(str, Enum):
    """Role of a component inside a composite material"""
    CONTAINER = "container"
    CONTENT = "content"


class MovementType(str, Enum):
    """Ledger movement causes"""
    RECEIPT = "receipt"
    ADJUSTMENT = "adjustment"
    ISSUE = "issue"


class PurchaseOrderStatus(str, Enum):
    DRAFT = "draft"
    RECEIVED = "received"
    CANCELLED = "cancelled"


class WastageStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


PO_SOURCE_WCN_AUTO = "wcn_auto"


# =============================================================================
# USERS & MASTER DATA
# =============================================================================

class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True, index=True)
    full_name = Column(String(200), nullable=False)
    email = Column(String(255), unique=True, index=True, nullable=False)
    username = Column(String(100), unique=True, index=True, nullable=False)
    role = Column(String(50), nullable=False)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class Supplier(Base):
    """Supplier master data (owned by the supplier module; read here)"""
    __tablename__ = "suppliers"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(20), unique=True, nullable=False)
    name = Column(String(200), nullable=False)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class Material(Base):
    """
    Material catalog entry.

    Composite materials decompose into components on receipt (a drum is a
    container plus its oil content). Disposable materials are never stocked.
    """
    __tablename__ = "materials"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(50), unique=True, nullable=False, index=True)
    name = Column(String(200), nullable=False)
    unit = Column(String(20), nullable=False, default="kg")

    is_composite = Column(Boolean, nullable=False, default=False)
    is_disposable = Column(Boolean, nullable=False, default=False)
    default_waste_type = Column(String(50), nullable=True)
    standard_price = Column(Numeric(15, 3), nullable=False, default=0)

    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    components = relationship(
        "MaterialComposition",
        foreign_keys="MaterialComposition.composite_material_id",
        order_by="MaterialComposition.sort_order",
        back_populates="composite_material",
    )


class MaterialComposition(Base):
    """One component of a composite material; receives the composite quantity 1:1"""
    __tablename__ = "material_compositions"

    id = Column(Integer, primary_key=True, index=True)
    composite_material_id = Column(Integer, ForeignKey("materials.id"), nullable=False)
    component_material_id = Column(Integer, ForeignKey("materials.id"), nullable=False)
    component_type = Column(SQLEnum(ComponentType), nullable=False)
    sort_order = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, default=True)

    composite_material = relationship(
        "Material", foreign_keys=[composite_material_id], back_populates="components"
    )
    component_material = relationship("Material", foreign_keys=[component_material_id])

    __table_args__ = (
        UniqueConstraint('composite_material_id', 'component_material_id', name='uq_composition_component'),
    )


# =============================================================================
# COLLECTION ORDERS
# =============================================================================

class CollectionOrder(Base):
    """
    A scheduled physical collection from a supplier location.

    Workflow:
    1. Scheduled → in transit → collecting → completed
    2. Completed order is finalized once into a WCN (ledger + PO written)
    3. Finalized quantities may later be rectified
    """
    __tablename__ = "collection_orders"

    id = Column(Integer, primary_key=True, index=True)
    order_number = Column(String(50), unique=True, nullable=False, index=True)

    contract_id = Column(Integer, nullable=True)
    supplier_id = Column(Integer, ForeignKey("suppliers.id"), nullable=False)
    location_id = Column(Integer, nullable=True)

    status = Column(SQLEnum(CollectionStatus), nullable=False, default=CollectionStatus.SCHEDULED)
    scheduled_date = Column(Date, nullable=True)

    # WCN finalization - independent of status
    is_finalized = Column(Boolean, nullable=False, default=False)
    wcn_number = Column(String(50), unique=True, nullable=True, index=True)
    wcn_date = Column(Date, nullable=True)
    finalized_at = Column(DateTime, nullable=True)
    finalized_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    purchase_order_id = Column(Integer, ForeignKey("purchase_orders.id"), nullable=True)

    # Derived sums
    total_value = Column(Numeric(15, 2), nullable=False, default=0)
    total_expenses = Column(Numeric(15, 2), nullable=False, default=0)

    rectification_count = Column(Integer, nullable=False, default=0)
    notes = Column(Text, nullable=True)

    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Optimistic concurrency: concurrent writers of the same order collide here
    version = Column(Integer, nullable=False, default=1)

    items = relationship("CollectionItem", back_populates="order", order_by="CollectionItem.id")
    expenses = relationship("CollectionExpense", back_populates="order")
    purchase_order = relationship("PurchaseOrder", foreign_keys=[purchase_order_id])
    rectifications = relationship(
        "RectificationRecord", back_populates="order", order_by="RectificationRecord.sequence"
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index('ix_collection_order_status', 'status', 'is_finalized'),
        Index('ix_collection_order_wcn_date', 'wcn_date'),
    )


class CollectionItem(Base):
    """A material line on a collection order"""
    __tablename__ = "collection_items"

    id = Column(Integer, primary_key=True, index=True)
    collection_order_id = Column(Integer, ForeignKey("collection_orders.id"), nullable=False)
    material_id = Column(Integer, ForeignKey("materials.id"), nullable=False)

    # Planned
    available_quantity = Column(Numeric(15, 3), nullable=True)
    estimated_quantity = Column(Numeric(15, 3), nullable=True)

    # Actual
    collected_quantity = Column(Numeric(15, 3), nullable=False, default=0)
    # Rectification baseline, written once at finalize
    original_collected_quantity = Column(Numeric(15, 3), nullable=True)

    contract_rate = Column(Numeric(15, 3), nullable=True)
    total_value = Column(Numeric(15, 2), nullable=False, default=0)

    quality_grade = Column(String(20), nullable=True)
    quality_verified = Column(Boolean, default=False)
    material_condition = Column(String(50), nullable=True)

    is_new_item = Column(Boolean, default=False)  # found during physical verification
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    order = relationship("CollectionOrder", back_populates="items")
    material = relationship("Material")

    __table_args__ = (
        CheckConstraint('collected_quantity >= 0', name='ck_collected_quantity_positive'),
        Index('ix_collection_item_order_material', 'collection_order_id', 'material_id'),
    )

    @validates('collected_quantity')
    def validate_collected_quantity(self, key, value):
        if value is not None and value < 0:
            raise ValueError("Collected quantity cannot be negative")
        return value


class CollectionExpense(Base):
    """Collection-side cost (fuel, loading, permits); summed into the order's expenses"""
    __tablename__ = "collection_expenses"

    id = Column(Integer, primary_key=True, index=True)
    collection_order_id = Column(Integer, ForeignKey("collection_orders.id"), nullable=False)
    category = Column(String(50), nullable=False)
    description = Column(String(200), nullable=False)
    amount = Column(Numeric(15, 2), nullable=False)
    expense_date = Column(Date, nullable=False)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    order = relationship("CollectionOrder", back_populates="expenses")


class RectificationRecord(Base):
    """One rectification call against a finalized WCN"""
    __tablename__ = "rectification_records"

    id = Column(Integer, primary_key=True, index=True)
    collection_order_id = Column(Integer, ForeignKey("collection_orders.id"), nullable=False)
    sequence = Column(Integer, nullable=False)
    notes = Column(Text, nullable=True)
    performed_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    order = relationship("CollectionOrder", back_populates="rectifications")
    lines = relationship("RectificationLine", back_populates="record", order_by="RectificationLine.id")

    __table_args__ = (
        UniqueConstraint('collection_order_id', 'sequence', name='uq_rectification_sequence'),
    )


class RectificationLine(Base):
    """Per-item before → after change inside a rectification"""
    __tablename__ = "rectification_lines"

    id = Column(Integer, primary_key=True, index=True)
    record_id = Column(Integer, ForeignKey("rectification_records.id"), nullable=False)
    item_id = Column(Integer, ForeignKey("collection_items.id"), nullable=False)
    material_id = Column(Integer, ForeignKey("materials.id"), nullable=False)
    quantity_before = Column(Numeric(15, 3), nullable=False)
    quantity_after = Column(Numeric(15, 3), nullable=False)
    delta = Column(Numeric(15, 3), nullable=False)
    reason = Column(Text, nullable=False)

    record = relationship("RectificationRecord", back_populates="lines")


# =============================================================================
# INVENTORY LEDGER
# =============================================================================

class InventoryBatch(Base):
    """
    One receipt lot of a material.

    Key Design Decisions:
    1. batch_number is derived from the WCN and material, unique per material
    2. remaining_quantity is a cache of the movement log sum
    3. Changes are always paired with a BatchMovement row
    """
    __tablename__ = "inventory_batches"

    id = Column(Integer, primary_key=True, index=True)
    material_id = Column(Integer, ForeignKey("materials.id"), nullable=False)
    batch_number = Column(String(100), nullable=False)

    quantity_received = Column(Numeric(15, 3), nullable=False, default=0)
    remaining_quantity = Column(Numeric(15, 3), nullable=False, default=0)
    unit_cost = Column(Numeric(15, 3), nullable=False, default=0)
    is_depleted = Column(Boolean, nullable=False, default=False)

    purchase_order_id = Column(Integer, ForeignKey("purchase_orders.id"), nullable=True)
    collection_order_id = Column(Integer, ForeignKey("collection_orders.id"), nullable=True)
    supplier_id = Column(Integer, ForeignKey("suppliers.id"), nullable=True)

    purchase_date = Column(Date, nullable=False)
    location = Column(String(100), nullable=True)
    condition = Column(String(50), nullable=True)
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    material = relationship("Material")
    movements = relationship("BatchMovement", back_populates="batch", order_by="BatchMovement.id")

    __table_args__ = (
        CheckConstraint('remaining_quantity >= 0', name='ck_batch_remaining_positive'),
        UniqueConstraint('material_id', 'batch_number', name='uq_batch_material_number'),
        # FIFO pick order
        Index('ix_batch_material_fifo', 'material_id', 'is_depleted', 'purchase_date'),
        Index('ix_batch_purchase_order', 'purchase_order_id'),
    )

    @validates('remaining_quantity')
    def validate_remaining(self, key, value):
        """Prevent negative stock"""
        if value is not None and value < 0:
            raise ValueError("Remaining quantity cannot be negative")
        return value


class BatchMovement(Base):
    """
    Append-only log of every batch quantity change.

    Quantity is signed: positive for inflow, negative for outflow.
    """
    __tablename__ = "batch_movements"

    id = Column(Integer, primary_key=True, index=True)
    batch_id = Column(Integer, ForeignKey("inventory_batches.id"), nullable=False)
    movement_type = Column(SQLEnum(MovementType), nullable=False)
    quantity = Column(Numeric(15, 3), nullable=False)

    reference_type = Column(String(50), nullable=True)  # collection_order, wcn_rectification, ...
    reference_id = Column(Integer, nullable=True)

    movement_date = Column(Date, nullable=False)
    notes = Column(Text, nullable=True)
    performed_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    batch = relationship("InventoryBatch", back_populates="movements")

    __table_args__ = (
        Index('ix_batch_movement_batch', 'batch_id', 'movement_date'),
        Index('ix_batch_movement_reference', 'reference_type', 'reference_id'),
    )


# =============================================================================
# PURCHASE ORDERS & WASTAGE
# =============================================================================

class PurchaseOrder(Base):
    """
    Purchase order header.

    Orders with source_type "wcn_auto" are generated by WCN finalization and
    are only ever changed by WCN rectification.
    """
    __tablename__ = "purchase_orders"

    id = Column(Integer, primary_key=True, index=True)
    order_number = Column(String(50), unique=True, nullable=False, index=True)
    supplier_id = Column(Integer, ForeignKey("suppliers.id"), nullable=False)

    order_date = Column(Date, nullable=False)
    status = Column(SQLEnum(PurchaseOrderStatus), nullable=False, default=PurchaseOrderStatus.DRAFT)
    source_type = Column(String(20), nullable=True)
    # back-reference only; collection_orders.purchase_order_id is the owning FK
    collection_order_id = Column(Integer, nullable=True, index=True)

    subtotal = Column(Numeric(15, 2), nullable=False, default=0)
    tax_amount = Column(Numeric(15, 2), nullable=False, default=0)
    shipping_cost = Column(Numeric(15, 2), nullable=False, default=0)
    total_amount = Column(Numeric(15, 2), nullable=False, default=0)

    notes = Column(Text, nullable=True)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    items = relationship("PurchaseOrderItem", back_populates="purchase_order", order_by="PurchaseOrderItem.id")


class PurchaseOrderItem(Base):
    __tablename__ = "purchase_order_items"

    id = Column(Integer, primary_key=True, index=True)
    purchase_order_id = Column(Integer, ForeignKey("purchase_orders.id"), nullable=False)
    material_id = Column(Integer, ForeignKey("materials.id"), nullable=False)

    quantity_ordered = Column(Numeric(15, 3), nullable=False)
    quantity_received = Column(Numeric(15, 3), nullable=False, default=0)
    unit_price = Column(Numeric(15, 3), nullable=False, default=0)
    total_price = Column(Numeric(15, 2), nullable=False, default=0)
    batch_number = Column(String(100), nullable=True)

    purchase_order = relationship("PurchaseOrder", back_populates="items")

    __table_args__ = (
        UniqueConstraint('purchase_order_id', 'material_id', name='uq_po_item_material'),
    )


class Wastage(Base):
    """Wastage record; approval belongs to the wastage module"""
    __tablename__ = "wastages"

    id = Column(Integer, primary_key=True, index=True)
    wastage_number = Column(String(100), unique=True, nullable=False)
    material_id = Column(Integer, ForeignKey("materials.id"), nullable=False)
    collection_order_id = Column(Integer, ForeignKey("collection_orders.id"), nullable=True)

    quantity = Column(Numeric(15, 3), nullable=False)
    unit_cost = Column(Numeric(15, 3), nullable=False, default=0)
    total_cost = Column(Numeric(15, 2), nullable=False, default=0)
    waste_type = Column(String(50), nullable=False)
    status = Column(SQLEnum(WastageStatus), nullable=False, default=WastageStatus.PENDING)

    reason = Column(Text, nullable=True)
    wastage_date = Column(Date, nullable=False)
    reported_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index('ix_wastage_status', 'status'),
        Index('ix_wastage_collection_order', 'collection_order_id'),
    )


# =============================================================================
# SYSTEM TABLES
# =============================================================================

class AuditLog(Base):
    """
    General audit log for sensitive actions.
    Separate from batch movements.
    """
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(Integer, nullable=False)
    action = Column(String(30), nullable=False)
    new_values = Column(Text, nullable=True)  # JSON
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index('ix_audit_entity', 'entity_type', 'entity_id'),
    )


class NumberSequence(Base):
    """
    Counters for document numbers, one row per sequence and year
    (e.g. "wcn-2026"). Consumed under a row lock.
    """
    __tablename__ = "number_sequences"

    id = Column(Integer, primary_key=True, index=True)
    sequence_name = Column(String(50), unique=True, nullable=False)
    prefix = Column(String(20), default="")
    current_number = Column(Integer, nullable=False, default=0)
    year = Column(Integer, nullable=True)
    padding = Column(Integer, default=4)

    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
