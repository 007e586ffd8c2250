"""Per-year invoice number allocation."""
from __future__ import annotations

import logging
import secrets
from datetime import datetime, timezone
from typing import Optional, Protocol

from .exceptions import StoreError, ValidationFailed
from .models import InvoiceNumberAllocation

logger = logging.getLogger("billing.invoices")

SEQUENCE_WIDTH = 6


class InvoiceSequenceRepository(Protocol):
    def increment_invoice_sequence(self, year: int) -> int:
        """Atomically bump and return the counter for ``year`` (first call returns 1)."""


def format_invoice_number(year: int, sequence: int) -> str:
    return f"{year}-{sequence:0{SEQUENCE_WIDTH}d}"


class InvoiceSequencer:
    """Issues ``<year>-<000001>`` style invoice numbers."""

    def __init__(self, repository: InvoiceSequenceRepository, *, fallback_digits: int = 8) -> None:
        self._repository = repository
        self._fallback_digits = fallback_digits

    def allocate(self, year: Optional[int] = None) -> InvoiceNumberAllocation:
        if year is None:
            year = datetime.now(timezone.utc).year
        if isinstance(year, bool) or not isinstance(year, int) or not 1 <= year <= 9999:
            raise ValidationFailed(message=f"Invalid invoice year {year!r}")

        try:
            sequence = self._repository.increment_invoice_sequence(year)
        except StoreError:
            number = self._fallback_number(year)
            logger.exception(
                "Invoice sequence unavailable, issued degraded number %s",
                number,
                extra={"billing_event": "invoice_number.degraded"},
            )
            return InvoiceNumberAllocation(number=number, year=year, degraded=True)

        return InvoiceNumberAllocation(
            number=format_invoice_number(year, sequence),
            year=year,
            sequence=sequence,
        )

    def next_invoice_number(self, year: Optional[int] = None) -> str:
        return self.allocate(year).number

    def _fallback_number(self, year: int) -> str:
        # The "X" keeps degraded numbers out of the numeric sequence space.
        suffix = "".join(str(secrets.randbelow(10)) for _ in range(self._fallback_digits))
        return f"{year}-X{suffix}"
