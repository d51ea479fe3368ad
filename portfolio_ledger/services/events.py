"""Ledger mutation events consumed by the snapshot service."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from enum import Enum


class SnapshotTriggerType(str, Enum):
    TRANSACTION_ADDED = "TRANSACTION_ADDED"
    TRANSACTION_MODIFIED = "TRANSACTION_MODIFIED"
    TRANSACTION_DELETED = "TRANSACTION_DELETED"
    MANUAL_REFRESH = "MANUAL_REFRESH"


@dataclass(frozen=True)
class SnapshotTrigger:
    type: SnapshotTriggerType
    portfolio_id: str
    date: date | None = None
    old_date: date | None = None
    new_date: date | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "type", SnapshotTriggerType(self.type))
        if self.type in (SnapshotTriggerType.TRANSACTION_ADDED, SnapshotTriggerType.TRANSACTION_DELETED):
            if self.date is None:
                raise ValueError(f"{self.type.value} requires a date")
        elif self.type == SnapshotTriggerType.TRANSACTION_MODIFIED:
            if self.old_date is None or self.new_date is None:
                raise ValueError("TRANSACTION_MODIFIED requires old_date and new_date")

    @property
    def recompute_from(self) -> date | None:
        """First day affected by the event; ``None`` means a full rebuild."""

        if self.type == SnapshotTriggerType.MANUAL_REFRESH:
            return None
        if self.type == SnapshotTriggerType.TRANSACTION_MODIFIED:
            if self.old_date is None or self.new_date is None:
                raise ValueError("TRANSACTION_MODIFIED requires old_date and new_date")
            return min(self.old_date, self.new_date)
        return self.date

    @classmethod
    def transaction_added(cls, portfolio_id: str, day: date) -> "SnapshotTrigger":
        return cls(SnapshotTriggerType.TRANSACTION_ADDED, portfolio_id, date=day)

    @classmethod
    def transaction_modified(cls, portfolio_id: str, old_date: date, new_date: date) -> "SnapshotTrigger":
        return cls(SnapshotTriggerType.TRANSACTION_MODIFIED, portfolio_id, old_date=old_date, new_date=new_date)

    @classmethod
    def transaction_deleted(cls, portfolio_id: str, day: date) -> "SnapshotTrigger":
        return cls(SnapshotTriggerType.TRANSACTION_DELETED, portfolio_id, date=day)

    @classmethod
    def manual_refresh(cls, portfolio_id: str) -> "SnapshotTrigger":
        return cls(SnapshotTriggerType.MANUAL_REFRESH, portfolio_id)


__all__ = ["SnapshotTriggerType", "SnapshotTrigger"]
