"""Generators for invoice numbers, payment ids and receipt numbers."""

from __future__ import annotations

import random
from collections.abc import Callable
from datetime import UTC, datetime


def utc_now() -> datetime:
    return datetime.now(UTC)


class IdentifierFactory:
    """Produce the externally visible identifiers.

    Formats:
        invoice number: ``INV/{YYYY}/{MM}/{NNNN}``
        payment id:     ``PAY{epoch-ms}{NNNN}``
        receipt number: ``REC{epoch-ms}{NNNN}``
    """

    def __init__(
        self,
        clock: Callable[[], datetime] = utc_now,
        rng: random.Random | None = None,
    ):
        self._clock = clock
        self._rng = rng or random.Random()

    def _suffix(self) -> str:
        return f"{self._rng.randrange(10000):04d}"

    def _millis(self) -> int:
        return int(self._clock().timestamp() * 1000)

    def invoice_number(self, at: datetime | None = None) -> str:
        moment = at or self._clock()
        return f"INV/{moment.year:04d}/{moment.month:02d}/{self._suffix()}"

    def payment_id(self) -> str:
        return f"PAY{self._millis()}{self._suffix()}"

    def receipt_number(self) -> str:
        return f"REC{self._millis()}{self._suffix()}"
