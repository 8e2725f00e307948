from lotledger.models.catalog_item import CatalogItem
from lotledger.models.enums import (
    AlertType,
    ConsumeReason,
    LotState,
    MovementKind,
    RestockReason,
)
from lotledger.models.ledger_lease import LedgerLease
from lotledger.models.lot_entry import LotEntry
from lotledger.models.lot_movement import LotMovement
from lotledger.models.product import Product
from lotledger.models.sequence_counter import SequenceCounter

__all__ = [
    "AlertType",
    "CatalogItem",
    "ConsumeReason",
    "LedgerLease",
    "LotEntry",
    "LotMovement",
    "LotState",
    "MovementKind",
    "Product",
    "RestockReason",
    "SequenceCounter",
]
