"""
Read-only material catalog lookups used by finalization and the receipt views.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from ..models import Material, MaterialComposition, ComponentType
from .exceptions import NotFoundError


@dataclass(frozen=True)
class Component:
    material_id: int
    component_type: ComponentType


class MaterialCatalog:
    """Service class for material catalog reads"""

    @staticmethod
    def get_material(db: Session, material_id: int) -> Material:
        material = db.query(Material).filter(Material.id == material_id).first()
        if not material:
            raise NotFoundError(f"Material {material_id} not found")
        return material

    @staticmethod
    def get_materials(db: Session, material_ids: Iterable[int]) -> Dict[int, Material]:
        """
        Load several materials at once.

        Raises NotFoundError naming every unknown id.
        """
        ids = set(material_ids)
        if not ids:
            return {}
        found = {m.id: m for m in db.query(Material).filter(Material.id.in_(ids)).all()}
        missing = sorted(ids - set(found))
        if missing:
            raise NotFoundError(f"Materials not found: {', '.join(str(m) for m in missing)}")
        return found

    @staticmethod
    def get_composition(db: Session, composite_material_id: int) -> List[Component]:
        """Ordered active components of a composite material"""
        rows = db.query(MaterialComposition).filter(
            MaterialComposition.composite_material_id == composite_material_id,
            MaterialComposition.is_active == True
        ).order_by(
            MaterialComposition.sort_order.asc(),
            MaterialComposition.id.asc()
        ).all()
        return [Component(r.component_material_id, r.component_type) for r in rows]

    @staticmethod
    def unit_price(material: Optional[Material]) -> Decimal:
        if material is None or material.standard_price is None:
            return Decimal('0')
        return Decimal(material.standard_price)
