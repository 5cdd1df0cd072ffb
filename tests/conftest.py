import os

# must be set before the app modules build their engine / secret key
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("COLLECTION_SECRET_KEY", "test-secret-key-for-collection-core-0123456789")

from datetime import date
from decimal import Decimal
from types import SimpleNamespace

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from collection_core.app.db import Base
from collection_core.app.models import (
    CollectionStatus, ComponentType, Material, MaterialComposition, Supplier, User
)
from collection_core.app.services.collection_service import CollectionOrderService

# -----------------------------
# Test DB: one shared in-memory SQLite connection
# -----------------------------
engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db():
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def seed(db):
    """Supplier, user and a small material catalog"""
    user = User(full_name="Site Admin", email="admin@test.local", username="admin", role="Admin")
    supplier = Supplier(code="SUP-001", name="Harbour Recycling")

    steel = Material(code="STEEL-SCRAP", name="Steel scrap", unit="kg", standard_price=Decimal("2.000"))
    copper = Material(code="COPPER", name="Copper wire", unit="kg", standard_price=Decimal("7.500"))
    rags = Material(
        code="OILY-RAGS", name="Oily rags", unit="kg", is_disposable=True,
        default_waste_type="contaminated", standard_price=Decimal("0.500")
    )
    drum = Material(code="OIL-DRUM", name="Drum of used oil", unit="pcs", is_composite=True, standard_price=Decimal("10.000"))
    shell = Material(code="DRUM-SHELL", name="Empty drum", unit="pcs", standard_price=Decimal("3.000"))
    oil = Material(code="WASTE-OIL", name="Used oil", unit="l", standard_price=Decimal("1.500"))

    db.add_all([user, supplier, steel, copper, rags, drum, shell, oil])
    db.flush()
    db.add_all([
        MaterialComposition(
            composite_material_id=drum.id, component_material_id=shell.id,
            component_type=ComponentType.CONTAINER, sort_order=1
        ),
        MaterialComposition(
            composite_material_id=drum.id, component_material_id=oil.id,
            component_type=ComponentType.CONTENT, sort_order=2
        ),
    ])
    db.commit()

    return SimpleNamespace(
        user=user, supplier=supplier, steel=steel, copper=copper,
        rags=rags, drum=drum, shell=shell, oil=oil
    )


@pytest.fixture
def make_order(db, seed):
    """
    Build a collection order from add_item keyword dicts and move it to
    the requested status.
    """
    def _make(items, status=CollectionStatus.COMPLETED, expenses=()):
        order = CollectionOrderService.create_order(
            db, seed.supplier.id, seed.user.id, scheduled_date=date(2026, 3, 2)
        )
        for item in items:
            CollectionOrderService.add_item(db, order.id, **item)
        for amount in expenses:
            CollectionOrderService.add_expense(
                db, order.id, "transport", "Truck hire", amount, date(2026, 3, 2), seed.user.id
            )
        if status != CollectionStatus.SCHEDULED:
            CollectionOrderService.advance_status(db, order, status)
        db.commit()
        return order

    return _make
