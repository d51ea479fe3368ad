from __future__ import annotations

from decimal import Decimal

from sqlalchemy.types import String, TypeDecorator

from ..services.types import to_decimal


class DecimalString(TypeDecorator):
    """
    Store Decimals as their exact string form and return Decimals on read.

    ``Numeric`` round-trips through binary floats on SQLite; the string column
    keeps every digit on every backend.
    """

    impl = String(64)
    cache_ok = True

    def process_bind_param(self, value: Decimal | None, dialect):
        if value is None:
            return None
        return str(to_decimal(value))

    def process_result_value(self, value: str | None, dialect):
        if value is None:
            return None
        return Decimal(value)
