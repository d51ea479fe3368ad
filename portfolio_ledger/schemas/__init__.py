"""Schema exports for the portfolio ledger API."""

from .ledger import (
    AgingLotSchema,
    AgingLotsRequest,
    ComputeResultSchema,
    ComputeSnapshotsRequest,
    HoldingSchema,
    LotAnalysisSchema,
    MarketValueUpdateRequest,
    PerformanceSummarySchema,
    SaleAllocationRequest,
    SaleAllocationSchema,
    SnapshotSchema,
    SnapshotTriggerRequest,
    TaxEstimateRequest,
    TaxEstimateSchema,
    TaxLossHarvestingRequest,
    TaxLossOpportunitySchema,
    TaxLotSchema,
)

__all__ = [
    "AgingLotSchema",
    "AgingLotsRequest",
    "ComputeResultSchema",
    "ComputeSnapshotsRequest",
    "HoldingSchema",
    "LotAnalysisSchema",
    "MarketValueUpdateRequest",
    "PerformanceSummarySchema",
    "SaleAllocationRequest",
    "SaleAllocationSchema",
    "SnapshotSchema",
    "SnapshotTriggerRequest",
    "TaxEstimateRequest",
    "TaxEstimateSchema",
    "TaxLossHarvestingRequest",
    "TaxLossOpportunitySchema",
    "TaxLotSchema",
]
