"""Model exports for the portfolio ledger."""

from .ledger import HoldingRecord, LedgerTransaction, TaxLotRecord
from .snapshot import PriceBar, SnapshotRecord

__all__ = [
    "HoldingRecord",
    "LedgerTransaction",
    "PriceBar",
    "SnapshotRecord",
    "TaxLotRecord",
]
