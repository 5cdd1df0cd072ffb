"""
Domain errors raised by the collection services.

The HTTP layer maps each family to a status code; services never raise
HTTPException themselves.
"""


class CollectionError(Exception):
    """Base exception for collection, ledger and WCN operations"""
    pass


class ValidationError(CollectionError):
    """Malformed or insufficient input; rejected before any write"""
    pass


class NoCollectedItemsError(ValidationError):
    """Finalization left no item with a positive quantity"""
    pass


class StateConflictError(CollectionError):
    """Operation not allowed in the entity's current state"""
    pass


class NotFinalizableError(StateConflictError):
    """
    Order is missing, not completed, or already finalized.

    The causes are reported with one message so callers cannot probe order
    state through the finalize endpoint.
    """

    def __init__(self, order_id=None):
        self.order_id = order_id
        super().__init__("Collection order not found or already finalized")


class NotFoundError(CollectionError):
    """Unknown order, item, batch or material id"""
    pass


class InsufficientStockError(CollectionError):
    """Raised when trying to issue more than the batches hold"""

    def __init__(self, message, shortfall=None):
        self.shortfall = shortfall
        super().__init__(message)


class TransactionFailure(CollectionError):
    """A write step failed inside a unit of work; everything was rolled back"""
    pass
