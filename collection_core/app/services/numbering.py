"""
Document number generation.

WCN, collection order and wastage numbers come from per-year counter rows
that are locked (SELECT ... FOR UPDATE) and incremented inside the caller's
transaction, so a rolled-back finalization never consumes a number and two
concurrent finalizations never share one.
"""

from datetime import date
from typing import Callable, Optional

from sqlalchemy.orm import Session

from ..logging_config import get_logger
from ..models import CollectionOrder, NumberSequence

logger = get_logger("services.numbering")

WCN_PREFIX = "WCN"
ORDER_PREFIX = "CL"
WASTAGE_PREFIX = "WST"
PO_PREFIX = "PO"


def get_next_sequence(
    db: Session,
    sequence_name: str,
    prefix: str,
    year: int,
    padding: int = 4,
    seed: Optional[Callable[[], int]] = None,
) -> str:
    """
    Thread-safe yearly sequence number generator.

    Uses SELECT FOR UPDATE on the counter row for (sequence_name, year).
    `seed` is called once, when the row does not exist yet, to start the
    counter after numbers already issued outside the counter.

    Format: PREFIX-YEAR-NNNN
    """
    row_name = f"{sequence_name}-{year}"

    seq = db.query(NumberSequence).filter(
        NumberSequence.sequence_name == row_name
    ).with_for_update().first()

    if not seq:
        # A concurrent first use of the same year fails on the unique
        # sequence_name and aborts that caller's whole transaction.
        seq = NumberSequence(
            sequence_name=row_name,
            prefix=prefix,
            current_number=seed() if seed else 0,
            year=year,
            padding=padding,
        )
        db.add(seq)

    seq.current_number += 1
    db.flush()

    number = f"{seq.prefix or prefix}-{year}-{str(seq.current_number).zfill(seq.padding or padding)}"
    logger.debug("sequence_allocated", extra={"sequence_name": row_name, "number": number})
    return number


def latest_wcn_sequence(db: Session, year: int) -> int:
    """Highest sequence already issued for the year; equals the WCN count when there are no gaps"""
    rows = db.query(CollectionOrder.wcn_number).filter(
        CollectionOrder.wcn_number.like(f"{WCN_PREFIX}-{year}-%")
    ).all()
    suffixes = [number.rsplit("-", 1)[-1] for (number,) in rows]
    return max((int(s) for s in suffixes if s.isdigit()), default=0)


def next_wcn_number(db: Session, wcn_date: date) -> str:
    """WCN-<year>-<4-digit sequence>, unique within the calendar year"""
    year = wcn_date.year
    return get_next_sequence(
        db, "wcn", WCN_PREFIX, year, padding=4,
        seed=lambda: latest_wcn_sequence(db, year),
    )


def next_order_number(db: Session, on_date: date) -> str:
    return get_next_sequence(db, "collection_order", ORDER_PREFIX, on_date.year, padding=5)


def next_wastage_number(db: Session, on_date: date) -> str:
    return get_next_sequence(db, "wastage", WASTAGE_PREFIX, on_date.year, padding=5)


def purchase_order_number(wcn_number: str) -> str:
    """The auto-generated PO mirrors its WCN: WCN-2026-0007 -> PO-WCN-2026-0007"""
    return f"{PO_PREFIX}-{wcn_number}"


def batch_number_for(wcn_number: str, material_id: int) -> str:
    """
    Deterministic ledger batch number for a material received under a WCN.

    Finalization and rectification both derive it, so rectification can find
    the batch without a stored link.
    """
    return f"{wcn_number}-M{material_id}"
