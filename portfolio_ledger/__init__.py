"""Portfolio ledger: holdings, performance snapshots and tax-lot estimates."""

__version__ = "0.1.0"
