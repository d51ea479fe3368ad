"""Persistence boundaries consumed by the ledger services.

The protocols are async so SQL-backed and in-memory implementations are
interchangeable. The in-memory stores back the unit tests and ad-hoc runs.
"""

from __future__ import annotations

import copy
from dataclasses import replace
from datetime import date
from typing import Dict, Iterable, Protocol

from .types import Holding, PerformanceSnapshot, Transaction


class TransactionLedger(Protocol):
    """Read side of the append-only transaction log. Ordering is not guaranteed."""

    async def get_by_portfolio(self, portfolio_id: str) -> list[Transaction]:
        ...

    async def get_by_portfolio_and_asset(self, portfolio_id: str, asset_id: str) -> list[Transaction]:
        ...


class HoldingRepository(Protocol):
    async def upsert(self, holding: Holding) -> None:
        ...

    async def delete(self, holding_id: str) -> None:
        ...

    async def get_by_portfolio_and_asset(self, portfolio_id: str, asset_id: str) -> Holding | None:
        ...

    async def list_by_portfolio(self, portfolio_id: str) -> list[Holding]:
        ...


class SnapshotRepository(Protocol):
    async def upsert(self, snapshot: PerformanceSnapshot) -> PerformanceSnapshot:
        ...

    async def get_range(self, portfolio_id: str, start: date, end: date) -> list[PerformanceSnapshot]:
        ...

    async def get_latest(self, portfolio_id: str) -> PerformanceSnapshot | None:
        ...

    async def get_latest_before(self, portfolio_id: str, before: date) -> PerformanceSnapshot | None:
        ...

    async def delete_range(self, portfolio_id: str, start: date, end: date) -> int:
        ...

    async def delete_all_for_portfolio(self, portfolio_id: str) -> int:
        ...


class InMemoryTransactionLedger:
    """Simple transaction ledger for tests and examples."""

    def __init__(self, transactions: Iterable[Transaction] = ()):
        self._transactions: list[Transaction] = list(transactions)

    def add(self, transaction: Transaction) -> None:
        if any(tx.id == transaction.id for tx in self._transactions):
            raise ValueError(f"Transaction {transaction.id} already exists")
        self._transactions.append(transaction)

    def remove(self, transaction_id: str) -> Transaction:
        for index, tx in enumerate(self._transactions):
            if tx.id == transaction_id:
                return self._transactions.pop(index)
        raise KeyError(transaction_id)

    async def get_by_portfolio(self, portfolio_id: str) -> list[Transaction]:
        return [tx for tx in self._transactions if tx.portfolio_id == portfolio_id]

    async def get_by_portfolio_and_asset(self, portfolio_id: str, asset_id: str) -> list[Transaction]:
        return [
            tx
            for tx in self._transactions
            if tx.portfolio_id == portfolio_id and tx.asset_id == asset_id
        ]


class InMemoryHoldingRepository:
    def __init__(self):
        self._holdings: Dict[str, Holding] = {}

    async def upsert(self, holding: Holding) -> None:
        self._holdings[holding.id] = copy.deepcopy(holding)

    async def delete(self, holding_id: str) -> None:
        self._holdings.pop(holding_id, None)

    async def get_by_portfolio_and_asset(self, portfolio_id: str, asset_id: str) -> Holding | None:
        for holding in self._holdings.values():
            if holding.portfolio_id == portfolio_id and holding.asset_id == asset_id:
                return copy.deepcopy(holding)
        return None

    async def list_by_portfolio(self, portfolio_id: str) -> list[Holding]:
        selected = [h for h in self._holdings.values() if h.portfolio_id == portfolio_id]
        return [copy.deepcopy(h) for h in sorted(selected, key=lambda h: h.asset_id)]


class InMemorySnapshotRepository:
    """Snapshot store keyed by (portfolio, date)."""

    def __init__(self):
        self._snapshots: Dict[tuple[str, date], PerformanceSnapshot] = {}
        self.upsert_count = 0

    async def upsert(self, snapshot: PerformanceSnapshot) -> PerformanceSnapshot:
        key = (snapshot.portfolio_id, snapshot.date)
        existing = self._snapshots.get(key)
        if existing is not None:
            # Keep the row identity stable across recomputations.
            snapshot = replace(snapshot, id=existing.id, created_at=existing.created_at)
        self._snapshots[key] = snapshot
        self.upsert_count += 1
        return snapshot

    async def get_range(self, portfolio_id: str, start: date, end: date) -> list[PerformanceSnapshot]:
        return sorted(
            (
                s
                for (pid, day), s in self._snapshots.items()
                if pid == portfolio_id and start <= day <= end
            ),
            key=lambda s: s.date,
        )

    async def get_latest(self, portfolio_id: str) -> PerformanceSnapshot | None:
        owned = [s for (pid, _), s in self._snapshots.items() if pid == portfolio_id]
        return max(owned, key=lambda s: s.date) if owned else None

    async def get_latest_before(self, portfolio_id: str, before: date) -> PerformanceSnapshot | None:
        owned = [
            s for (pid, day), s in self._snapshots.items() if pid == portfolio_id and day < before
        ]
        return max(owned, key=lambda s: s.date) if owned else None

    async def delete_range(self, portfolio_id: str, start: date, end: date) -> int:
        keys = [key for key in self._snapshots if key[0] == portfolio_id and start <= key[1] <= end]
        for key in keys:
            del self._snapshots[key]
        return len(keys)

    async def delete_all_for_portfolio(self, portfolio_id: str) -> int:
        keys = [key for key in self._snapshots if key[0] == portfolio_id]
        for key in keys:
            del self._snapshots[key]
        return len(keys)


__all__ = [
    "TransactionLedger",
    "HoldingRepository",
    "SnapshotRepository",
    "InMemoryTransactionLedger",
    "InMemoryHoldingRepository",
    "InMemorySnapshotRepository",
]
