"""HTTP surface for the portfolio ledger."""
