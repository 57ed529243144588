"""
invoiceflow/invoices/numbering.py
---------------------------------
Invoice number allocation.

Format:  <period>-<sequence>
Example: 2026-0001, 2026-0002, … 2026-9999, 2026-10000

The period is strftime(INVOICE_PERIOD_FORMAT) of the allocation date, "%Y" by
default. The sequence restarts at 1 in every period and is counted per owner.

Algorithm
─────────
1. Read the owner's active invoice numbers that start with "<period>-".
2. Parse what follows the prefix as a plain decimal integer; skip anything
   that doesn't parse (legacy formats, fallback numbers).
3. Next = max + 1, zero-padded to at least `width` digits and never narrower
   than the widest suffix already in use.

The result is only a guess. Two requests can read the same max and compute
the same number; the unique index on invoices decides who gets it and the
workflow retries the loser once with a fresh allocation.

Nothing here writes to the database, so a number can be allocated just to
show it in a form and then thrown away.
"""
import re
import time
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError

from invoiceflow.errors import AllocationFailed, classify_store_error

_DIGITS = re.compile(r'[0-9]+')


def parse_suffix(invoice_number: str, prefix: str):
    """
    Return (value, width) of the numeric suffix after `prefix`,
    or None if the number doesn't belong to the prefix or isn't numeric.
    """
    if not invoice_number or not invoice_number.startswith(prefix):
        return None
    suffix = invoice_number[len(prefix):]
    if not _DIGITS.fullmatch(suffix):
        return None
    return int(suffix), len(suffix)


class NumberAllocator:
    """Computes the next candidate invoice number for an owner and period."""

    def __init__(self, store, period_format: str = '%Y', width: int = 4):
        self.store = store
        self.period_format = period_format
        self.width = width

    @classmethod
    def from_config(cls, store, config):
        return cls(
            store,
            period_format=config.get('INVOICE_PERIOD_FORMAT', '%Y'),
            width=config.get('INVOICE_NUMBER_WIDTH', 4),
        )

    def period_key(self, on=None) -> str:
        """Period part of the number for the given date (today by default)."""
        return (on or datetime.now()).strftime(self.period_format)

    def allocate(self, owner_id, period_key: str) -> str:
        """
        Next candidate number for `owner_id` in `period_key`.

        Raises AllocationFailed when the existing numbers cannot be read.
        """
        prefix = f'{period_key}-'
        try:
            existing = self.store.numbers(owner_id, prefix)
        except SQLAlchemyError as exc:
            self.store.rollback()
            raise AllocationFailed(
                f'Could not read existing invoice numbers: '
                f'{classify_store_error(exc).message}'
            ) from exc

        highest = 0
        width = self.width
        for number in existing:
            parsed = parse_suffix(number, prefix)
            if parsed is None:
                continue
            value, digits = parsed
            highest = max(highest, value)
            width = max(width, digits)

        return f'{prefix}{highest + 1:0{width}d}'

    def fallback_number(self, period_key: str) -> str:
        """
        Synthetic number used when allocation itself failed.

        The "T" keeps the suffix non-numeric, so parse_suffix ignores it and
        it never pushes later sequences up to clock-sized values.
        """
        return f'{period_key}-T{time.time_ns()}'


class CollisionChecker:
    """Answers "is this number already used by this owner?" (active rows only)."""

    def __init__(self, store):
        self.store = store

    def exists(self, owner_id, invoice_number: str) -> bool:
        try:
            return self.store.number_taken(owner_id, invoice_number)
        except SQLAlchemyError as exc:
            self.store.rollback()
            raise classify_store_error(exc, invoice_number) from exc
