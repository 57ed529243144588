"""
invoiceflow/invoices/store.py
-----------------------------
Owner-scoped access to the invoices table.

The database never scopes rows by itself: every method here takes the owner
id and adds the `owner_id = :owner` filter explicitly, for reads and writes.

Methods raise raw SQLAlchemy exceptions after rolling the session back.
Translating them into domain errors is the caller's job (see errors.py).
"""
from sqlalchemy import func

from invoiceflow import db
from invoiceflow.invoices.models import Invoice


class InvoiceStore:
    """query / insert_or_update / update_fields over a SQLAlchemy session."""

    def __init__(self, session=None):
        self._session = session

    @property
    def session(self):
        return self._session if self._session is not None else db.session

    # ── Reads ─────────────────────────────────────────────────────

    def query(self, owner_id, *criteria, order_by=None, limit=None, include_deleted=False):
        """Return the owner's invoices matching `criteria` (SQLAlchemy expressions)."""
        q = self.session.query(Invoice).filter(Invoice.owner_id == owner_id)
        if not include_deleted:
            q = q.filter(Invoice.deleted_at.is_(None))
        if criteria:
            q = q.filter(*criteria)
        if order_by is not None:
            q = q.order_by(*order_by)
        if limit is not None:
            q = q.limit(limit)
        return q.all()

    def numbers(self, owner_id, prefix):
        """Active invoice numbers of the owner that start with `prefix`."""
        rows = (
            self.session.query(Invoice.invoice_number)
            .filter(
                Invoice.owner_id == owner_id,
                Invoice.deleted_at.is_(None),
                Invoice.invoice_number.startswith(prefix, autoescape=True),
            )
            .all()
        )
        return [row.invoice_number for row in rows]

    def number_taken(self, owner_id, invoice_number) -> bool:
        q = self.session.query(Invoice.id).filter(
            Invoice.owner_id == owner_id,
            Invoice.invoice_number == invoice_number,
            Invoice.deleted_at.is_(None),
        )
        return self.session.query(q.exists()).scalar()

    def stored_state(self, owner_id, invoice_id):
        """
        Committed (status, deleted_at) of an invoice, ignoring unflushed
        changes held in the session. None if the owner has no such row.
        """
        with self.session.no_autoflush:
            return (
                self.session.query(Invoice.status, Invoice.deleted_at)
                .filter(Invoice.id == invoice_id, Invoice.owner_id == owner_id)
                .first()
            )

    def duplicate_numbers(self):
        """(owner_id, invoice_number, count) for active numbers used more than once."""
        return (
            self.session.query(Invoice.owner_id, Invoice.invoice_number, func.count(Invoice.id))
            .filter(Invoice.deleted_at.is_(None))
            .group_by(Invoice.owner_id, Invoice.invoice_number)
            .having(func.count(Invoice.id) > 1)
            .all()
        )

    @property
    def no_autoflush(self):
        """Context manager: reads inside it don't flush pending edits first."""
        return self.session.no_autoflush

    def rollback(self):
        """Discard a transaction left broken by a failed read."""
        self.session.rollback()

    # ── Writes ────────────────────────────────────────────────────

    def insert_or_update(self, invoice):
        """Insert a new invoice or write changes to an existing one, then commit."""
        try:
            if invoice.id is None:
                self.session.add(invoice)
            else:
                invoice = self.session.merge(invoice)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        return invoice

    def update_fields(self, owner_id, invoice_number, fields, expected_status=None) -> int:
        """
        UPDATE the owner's active invoice with that number.
        With `expected_status`, the row is only touched if its status still
        matches. Returns the number of rows changed (0 or 1).
        """
        try:
            q = self.session.query(Invoice).filter(
                Invoice.owner_id == owner_id,
                Invoice.invoice_number == invoice_number,
                Invoice.deleted_at.is_(None),
            )
            if expected_status is not None:
                q = q.filter(Invoice.status == expected_status)
            count = q.update(fields, synchronize_session='fetch')
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        return count
