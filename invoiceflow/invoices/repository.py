"""
invoiceflow/invoices/repository.py
----------------------------------
The single authority for durable invoice state.

Rules enforced here:
  • every call is scoped to an owner; no owner → NotAuthenticated
  • (owner, number) is unique among active rows, enforced by the database
    index, surfaced as DuplicateInvoiceNumber
  • status only moves along TRANSITIONS; approved / issued are final
  • approved_at / issued_at are stamped by the transition itself, never
    taken from the caller
  • finalized invoices are never edited or deleted; others are soft-deleted
  • no SQLAlchemy exception leaves this module untranslated
"""
from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from invoiceflow.errors import (
    ForbiddenTransition, InvoiceNotFound, NotAuthenticated,
    ValidationFailure, classify_store_error,
)
from invoiceflow.invoices.models import (
    FINALIZED, INITIAL, TRANSITIONS, Invoice, InvoiceStatus,
)
from invoiceflow.invoices.store import InvoiceStore
from invoiceflow.invoices.validators import invoice_number_problem
from invoiceflow.utils.dates import utcnow

REQUIRED_FIELDS = (
    'invoice_number', 'invoice_date',
    'client_company', 'client_address', 'client_city', 'client_country',
)

_TRANSITION_MESSAGES = {
    InvoiceStatus.approved:  'Approved invoices can only be marked as issued.',
    InvoiceStatus.issued:    'Issued invoices cannot change status.',
    InvoiceStatus.cancelled: 'Cancelled invoices cannot change status.',
}


def coerce_status(value) -> InvoiceStatus:
    if isinstance(value, InvoiceStatus):
        return value
    try:
        return InvoiceStatus(value)
    except ValueError:
        allowed = ', '.join(s.value for s in InvoiceStatus)
        raise ValidationFailure(errors={'status': f'Must be one of: {allowed}.'})


def validate_invoice(invoice) -> dict:
    """Return {field: message} for everything missing or invalid on the invoice."""
    errors = {}
    for field in REQUIRED_FIELDS:
        value = getattr(invoice, field)
        if value is None or (isinstance(value, str) and not value.strip()):
            errors[field] = 'This field is required.'

    if 'invoice_number' not in errors:
        problem = invoice_number_problem(invoice.invoice_number)
        if problem:
            errors['invoice_number'] = problem

    if not invoice.lines:
        errors['lines'] = 'At least one service line is required.'

    for i, line in enumerate(invoice.lines):
        if not (line.description or '').strip():
            errors[f'lines[{i}].description'] = 'Description is required.'
        if line.hours is None or line.hours < 0:
            errors[f'lines[{i}].hours'] = 'Hours must be zero or more.'
        if line.rate is None or line.rate < 0:
            errors[f'lines[{i}].rate'] = 'Rate must be zero or more.'
        if (line.currency and invoice.currency and line.currency != invoice.currency
                and (invoice.exchange_rate is None or invoice.exchange_rate <= 0)):
            errors['exchange_rate'] = (
                f'An exchange rate is required for lines priced in {line.currency}.'
            )
    return errors


class InvoiceRepository:

    def __init__(self, store=None):
        self.store = store or InvoiceStore()

    # ── Helpers ───────────────────────────────────────────────────

    @staticmethod
    def _require_owner(owner_id):
        if owner_id is None:
            raise NotAuthenticated()
        return owner_id

    def _read(self, fn, *args, **kwargs):
        """Run a store read, translating storage errors."""
        try:
            return fn(*args, **kwargs)
        except SQLAlchemyError as exc:
            self.store.rollback()
            raise classify_store_error(exc) from exc

    def _active(self, invoice_number, owner_id) -> Invoice:
        rows = self._read(
            self.store.query, owner_id,
            Invoice.invoice_number == invoice_number,
            limit=1,
        )
        if not rows:
            raise InvoiceNotFound()
        return rows[0]

    def _update(self, owner_id, invoice_number, fields, expected_status) -> None:
        try:
            count = self.store.update_fields(owner_id, invoice_number, fields,
                                             expected_status=expected_status)
        except SQLAlchemyError as exc:
            raise classify_store_error(exc, invoice_number) from exc
        if count == 0:
            # Status changed (or row deleted) between our read and the write
            raise ForbiddenTransition(
                'The invoice was changed by someone else. Reload it and try again.'
            )

    def _reject(self, error):
        # Drop unflushed edits on the rejected invoice before surfacing the error
        self.store.rollback()
        raise error

    # ── Operations ────────────────────────────────────────────────

    def save(self, invoice: Invoice) -> Invoice:
        """
        Insert a new invoice (no id) or update an editable existing one.
        Totals are always recomputed from the lines.
        """
        # Edits on a persistent invoice must not be flushed before the
        # stored state is read, or the checks below would compare it to itself.
        with self.store.no_autoflush:
            owner_id = self._require_owner(invoice.owner_id)

            errors = validate_invoice(invoice)
            if errors:
                self._reject(ValidationFailure(errors=errors))

            if invoice.id is None:
                if invoice.status is None:
                    invoice.status = InvoiceStatus.draft
                if invoice.status not in INITIAL:
                    raise ValidationFailure(
                        errors={'status': 'New invoices start as draft or pending approval.'}
                    )
                invoice.created_at = utcnow()
                invoice.approved_at = None
                invoice.approved_by = None
                invoice.issued_at = None
                invoice.deleted_at = None
            else:
                state = self._read(self.store.stored_state, owner_id, invoice.id)
                if state is None or state.deleted_at is not None:
                    self._reject(InvoiceNotFound())
                if state.status in FINALIZED:
                    self._reject(ForbiddenTransition('Approved or issued invoices cannot be edited.'))
                if invoice.status != state.status:
                    self._reject(ForbiddenTransition(
                        'Status can only be changed through a status update.'
                    ))

        invoice.recalculate_totals()
        invoice_number = invoice.invoice_number
        try:
            saved = self.store.insert_or_update(invoice)
        except SQLAlchemyError as exc:
            error = classify_store_error(exc, invoice_number)
            current_app.logger.warning(
                f"Invoice save failed for owner {owner_id} ({invoice_number}): {error.kind}"
            )
            raise error from exc

        current_app.logger.info(
            f"Invoice {invoice_number} saved for owner {owner_id} | Total: {saved.total}"
        )
        return saved

    def update_status(self, invoice_number, owner_id, new_status, actor=None) -> Invoice:
        """Move an invoice to `new_status` and stamp the matching timestamp."""
        owner_id = self._require_owner(owner_id)
        new_status = coerce_status(new_status)
        invoice = self._active(invoice_number, owner_id)
        current = invoice.status

        if new_status == current:
            return invoice

        if new_status not in TRANSITIONS[current]:
            if current in _TRANSITION_MESSAGES:
                message = _TRANSITION_MESSAGES[current]
            elif new_status == InvoiceStatus.issued:
                message = 'An invoice must be approved before it is issued.'
            else:
                message = f'Cannot change a {current.value} invoice to {new_status.value}.'
            raise ForbiddenTransition(message)

        fields = {Invoice.status: new_status}
        now = utcnow()
        if new_status == InvoiceStatus.approved:
            fields[Invoice.approved_at] = now
            fields[Invoice.approved_by] = actor
        elif new_status == InvoiceStatus.issued:
            fields[Invoice.issued_at] = now

        self._update(owner_id, invoice_number, fields, expected_status=current)
        current_app.logger.info(
            f"Invoice {invoice_number} (owner {owner_id}): {current.value} -> {new_status.value}"
        )
        return self._active(invoice_number, owner_id)

    def soft_delete(self, invoice_number, owner_id) -> Invoice:
        """Hide a non-finalized invoice from listings. Hard delete is never offered."""
        owner_id = self._require_owner(owner_id)
        invoice = self._active(invoice_number, owner_id)

        if invoice.status in FINALIZED:
            raise ForbiddenTransition(
                'Cannot delete a finalized invoice. Only draft, pending or '
                'cancelled invoices can be deleted.'
            )

        self._update(owner_id, invoice_number,
                     {Invoice.deleted_at: utcnow()},
                     expected_status=invoice.status)
        current_app.logger.info(f"Invoice {invoice_number} (owner {owner_id}) soft-deleted")
        return self.get(invoice_number, owner_id)

    def list(self, owner_id, status=None, client_company=None, period_key=None,
             include_deleted=False, limit=None):
        """The owner's invoices, newest first. Soft-deleted rows only on request."""
        owner_id = self._require_owner(owner_id)
        criteria = []
        if status is not None:
            statuses = [status] if isinstance(status, (str, InvoiceStatus)) else list(status)
            criteria.append(Invoice.status.in_([coerce_status(s) for s in statuses]))
        if client_company:
            criteria.append(Invoice.client_company.icontains(client_company, autoescape=True))
        if period_key:
            criteria.append(Invoice.invoice_number.startswith(f'{period_key}-', autoescape=True))

        return self._read(
            self.store.query, owner_id, *criteria,
            order_by=(Invoice.created_at.desc(), Invoice.id.desc()),
            limit=limit,
            include_deleted=include_deleted,
        )

    def history(self, invoice_number, owner_id):
        """Every row that ever carried this number for the owner, newest first."""
        owner_id = self._require_owner(owner_id)
        return self._read(
            self.store.query, owner_id,
            Invoice.invoice_number == invoice_number,
            order_by=(Invoice.id.desc(),),
            include_deleted=True,
        )

    def get(self, invoice_number, owner_id, include_deleted=True):
        """
        Audit lookup by number. Prefers the active invoice; otherwise returns
        the most recently deleted one. None if the owner never used the number.
        """
        rows = self.history(invoice_number, owner_id)
        if not include_deleted:
            rows = [r for r in rows if r.deleted_at is None]
        if not rows:
            return None
        return next((r for r in rows if r.deleted_at is None), rows[0])
