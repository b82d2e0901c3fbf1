"""Column types for money and price fields."""

from __future__ import annotations

from decimal import ROUND_HALF_EVEN, Decimal, InvalidOperation
from typing import Any

from sqlalchemy.types import Numeric, TypeDecorator


class Amount(TypeDecorator):
    """Stake, P&L and EV values stored as NUMERIC and read back as float.

    Values are quantized to ``scale`` places on the way in so a trade imported
    twice compares equal to the row already stored.
    """

    impl = Numeric(20, 8, asdecimal=True)
    cache_ok = True

    def __init__(self, scale: int = 8):
        super().__init__()
        self._quantum = Decimal(1).scaleb(-scale)

    def process_bind_param(self, value: Any, dialect):
        if value is None:
            return None
        try:
            amount = value if isinstance(value, Decimal) else Decimal(str(value))
        except (InvalidOperation, TypeError, ValueError) as exc:
            raise ValueError(f"Not a numeric amount: {value!r}") from exc
        if not amount.is_finite():
            raise ValueError(f"Amount must be finite: {value!r}")
        return amount.quantize(self._quantum, rounding=ROUND_HALF_EVEN)

    def process_result_value(self, value: Any, dialect):
        return None if value is None else float(value)
