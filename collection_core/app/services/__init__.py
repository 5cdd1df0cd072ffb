"""
Services package initialization.
Business logic layer for collection finalization and the batch ledger.
"""

from .exceptions import (
    CollectionError,
    ValidationError,
    NoCollectedItemsError,
    StateConflictError,
    NotFinalizableError,
    NotFoundError,
    InsufficientStockError,
    TransactionFailure,
)
from .catalog_service import MaterialCatalog, Component
from .inventory_service import (
    BatchLedgerService,
    InventoryQueryService,
    FifoPlan,
    to_quantity,
    to_money,
)
from .collection_service import CollectionOrderService
from .purchase_order_service import PurchaseOrderProjector, BillableLine
from .wastage_service import WastageQueueService
from .wcn_service import (
    WcnService,
    WcnQueryService,
    QuantitySource,
    VerifiedEntry,
    ItemAdjustment,
    FinalizeResult,
    RectifyResult,
)
from .numbering import get_next_sequence, batch_number_for
from .unit_of_work import unit_of_work

__all__ = [
    'CollectionError',
    'ValidationError',
    'NoCollectedItemsError',
    'StateConflictError',
    'NotFinalizableError',
    'NotFoundError',
    'InsufficientStockError',
    'TransactionFailure',
    'MaterialCatalog',
    'Component',
    'BatchLedgerService',
    'InventoryQueryService',
    'FifoPlan',
    'to_quantity',
    'to_money',
    'CollectionOrderService',
    'PurchaseOrderProjector',
    'BillableLine',
    'WastageQueueService',
    'WcnService',
    'WcnQueryService',
    'QuantitySource',
    'VerifiedEntry',
    'ItemAdjustment',
    'FinalizeResult',
    'RectifyResult',
    'get_next_sequence',
    'batch_number_for',
    'unit_of_work',
]
