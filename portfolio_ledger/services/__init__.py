"""Service-layer exports."""

from .espp import DispositionReason, check_disposition_status, is_disqualifying_disposition
from .events import SnapshotTrigger, SnapshotTriggerType
from .holdings import HoldingsService, build_tax_lots, calculate_holding, order_open_lots
from .prices import CachingPriceLookup, HistoricalPriceLookup, InMemoryPriceHistory, PriceCache
from .snapshots import PortfolioLocks, SnapshotInProgressError, SnapshotService, summarize
from .tax_lots import (
    analyze_lot,
    calculate_sale_allocations,
    detect_aging_lots,
    estimate_for_holding,
    estimate_tax_liability,
    find_tax_loss_harvesting_opportunities,
)
from .types import (
    CostMode,
    Holding,
    HoldingPeriod,
    LotSelection,
    LotType,
    PerformanceSnapshot,
    TaxLot,
    TaxSettings,
    Transaction,
    TransactionType,
)

__all__ = [
    "CachingPriceLookup",
    "CostMode",
    "DispositionReason",
    "HistoricalPriceLookup",
    "Holding",
    "HoldingPeriod",
    "HoldingsService",
    "InMemoryPriceHistory",
    "LotSelection",
    "LotType",
    "PerformanceSnapshot",
    "PortfolioLocks",
    "PriceCache",
    "SnapshotInProgressError",
    "SnapshotService",
    "SnapshotTrigger",
    "SnapshotTriggerType",
    "TaxLot",
    "TaxSettings",
    "Transaction",
    "TransactionType",
    "analyze_lot",
    "build_tax_lots",
    "calculate_holding",
    "calculate_sale_allocations",
    "check_disposition_status",
    "detect_aging_lots",
    "estimate_for_holding",
    "estimate_tax_liability",
    "find_tax_loss_harvesting_opportunities",
    "is_disqualifying_disposition",
    "order_open_lots",
    "summarize",
]
