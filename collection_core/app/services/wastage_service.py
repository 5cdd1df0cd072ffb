"""
Queues wastage for disposable materials collected on a WCN.

Only creation lives here; review and approval belong to the wastage module.
"""

from datetime import date
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from .. import config
from ..logging_config import get_logger
from ..models import Material, Wastage, WastageStatus
from .inventory_service import to_money, to_quantity
from .numbering import next_wastage_number

logger = get_logger("services.wastage")


class WastageQueueService:

    @staticmethod
    def queue_disposable(
        db: Session,
        material: Material,
        quantity: Decimal,
        collection_order_id: int,
        wcn_number: str,
        user_id: Optional[int],
        wastage_date: Optional[date] = None
    ) -> Wastage:
        """Create a pending wastage for the full collected quantity of a disposable material"""
        wastage_date = wastage_date or date.today()
        quantity = to_quantity(quantity)
        unit_cost = to_quantity(material.standard_price or 0)

        wastage = Wastage(
            wastage_number=next_wastage_number(db, wastage_date),
            material_id=material.id,
            collection_order_id=collection_order_id,
            quantity=quantity,
            unit_cost=unit_cost,
            total_cost=to_money(quantity * unit_cost),
            waste_type=material.default_waste_type or config.DEFAULT_WASTE_TYPE,
            status=WastageStatus.PENDING,
            reason=f"Disposable material collected on {wcn_number}",
            wastage_date=wastage_date,
            reported_by=user_id
        )
        db.add(wastage)
        db.flush()

        logger.info(
            "disposable_wastage_queued",
            extra={"material_id": material.id, "quantity": quantity, "wcn_number": wcn_number},
        )
        return wastage

    @staticmethod
    def find_pending_for_order(
        db: Session,
        collection_order_id: int,
        material_id: int
    ) -> Optional[Wastage]:
        return db.query(Wastage).filter(
            Wastage.collection_order_id == collection_order_id,
            Wastage.material_id == material_id,
            Wastage.status == WastageStatus.PENDING
        ).order_by(Wastage.id.desc()).first()

    @staticmethod
    def requantify_pending(wastage: Wastage, new_quantity: Decimal) -> Wastage:
        """Follow a rectified disposable quantity while the wastage is still pending"""
        wastage.quantity = to_quantity(new_quantity)
        wastage.total_cost = to_money(wastage.quantity * Decimal(wastage.unit_cost or 0))
        return wastage
