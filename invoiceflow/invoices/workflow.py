"""
invoiceflow/invoices/workflow.py
--------------------------------
Creates an invoice end to end:

    allocate number → (pre-check) → build invoice → save
                                                   │
                              DuplicateInvoiceNumber
                                                   ↓
                       allocate again → build → save once more → done / terminal

Only a duplicate number is retried, and only once. A second duplicate means
something is wrong beyond an ordinary race (e.g. the allocator keeps
returning the same value), so it is reported instead of looped on.
Validation, auth and storage errors propagate on the first occurrence.

Steps run strictly one after another. No lock is taken: the unique index plus
one retry covers the realistic race of one person double-submitting a form
or two tabs creating invoices at the same moment.
"""
from datetime import date, timedelta
from decimal import Decimal

from flask import current_app

from invoiceflow.errors import AllocationFailed, DuplicateInvoiceNumber, NotAuthenticated
from invoiceflow.invoices.models import Invoice, InvoiceLine, InvoiceStatus
from invoiceflow.invoices.numbering import CollisionChecker, NumberAllocator
from invoiceflow.invoices.repository import InvoiceRepository, coerce_status
from invoiceflow.invoices.store import InvoiceStore

# A taken allocated number is retried exactly once, never more
MAX_RETRIES = 1


class InvoiceWorkflow:

    def __init__(self, repository, allocator, checker=None, precheck=True,
                 due_days=30, default_currency='EUR'):
        self.repository = repository
        self.allocator = allocator
        self.checker = checker
        self.precheck = precheck and checker is not None
        self.due_days = due_days
        self.default_currency = default_currency

    @classmethod
    def from_config(cls, config, store=None):
        """Wire the default collaborators from app.config."""
        store = store or InvoiceStore()
        return cls(
            InvoiceRepository(store),
            NumberAllocator.from_config(store, config),
            checker=CollisionChecker(store),
            precheck=config.get('INVOICE_PRECHECK', True),
            due_days=config.get('INVOICE_DUE_DAYS', 30),
            default_currency=config.get('INVOICE_DEFAULT_CURRENCY', 'EUR'),
        )

    # ── Building ──────────────────────────────────────────────────

    def build(self, owner_id, invoice_number, fields: dict, lines: list, status) -> Invoice:
        """A fresh, unsaved Invoice. Totals are filled in by the repository."""
        data = dict(fields)
        invoice_date = data.pop('invoice_date', None) or date.today()
        due_date = data.pop('due_date', None) or invoice_date + timedelta(days=self.due_days)
        currency = data.pop('currency', None) or self.default_currency

        invoice = Invoice(
            owner_id=owner_id,
            invoice_number=invoice_number,
            invoice_date=invoice_date,
            due_date=due_date,
            currency=currency,
            status=status,
            **data,
        )
        invoice.lines = [
            InvoiceLine(
                position=i,
                description=line.get('description'),
                hours=Decimal(str(line.get('hours', 0))),
                rate=Decimal(str(line.get('rate', 0))),
                currency=line.get('currency') or currency,
                included=line.get('included', True),
            )
            for i, line in enumerate(lines)
        ]
        return invoice

    # ── Numbering ─────────────────────────────────────────────────

    def _candidate(self, owner_id, period_key) -> str:
        try:
            return self.allocator.allocate(owner_id, period_key)
        except AllocationFailed as exc:
            number = self.allocator.fallback_number(period_key)
            current_app.logger.warning(
                f"Invoice number allocation failed for owner {owner_id} ({exc.message}); "
                f"using fallback number {number}"
            )
            return number

    # ── Create ────────────────────────────────────────────────────

    def create(self, owner_id, fields: dict, lines: list,
               status=InvoiceStatus.pending_approval, invoice_number=None, on=None) -> Invoice:
        """
        Allocate a number, build and save the invoice.

        `invoice_number` is for manually numbered invoices: it is used as-is
        and a collision is reported immediately, without retry.
        `on` is the allocation date (defaults to today).
        """
        if owner_id is None:
            raise NotAuthenticated()
        status = coerce_status(status)
        manual = invoice_number is not None
        period_key = None if manual else self.allocator.period_key(on)

        attempts = 1 if manual else 1 + MAX_RETRIES
        for attempt in range(1, attempts + 1):
            candidate = invoice_number if manual else self._candidate(owner_id, period_key)

            try:
                if self.precheck and self.checker.exists(owner_id, candidate):
                    raise DuplicateInvoiceNumber(candidate)
                invoice = self.build(owner_id, candidate, fields, lines, status)
                saved = self.repository.save(invoice)
            except DuplicateInvoiceNumber:
                if manual:
                    raise
                if attempt == attempts:
                    current_app.logger.error(
                        f"Invoice number still taken after {attempts} attempts "
                        f"for owner {owner_id} (last tried {candidate})"
                    )
                    raise DuplicateInvoiceNumber(candidate, retried=True)
                current_app.logger.warning(
                    f"Invoice number {candidate} taken for owner {owner_id}; allocating a new one"
                )
                continue

            if attempt > 1:
                current_app.logger.info(
                    f"Invoice {saved.invoice_number} saved on attempt {attempt} for owner {owner_id}"
                )
            return saved
