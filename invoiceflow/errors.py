"""
invoiceflow/errors.py
---------------------
Error kinds raised by the invoice core.

Every storage failure is translated into one of these at the repository /
allocator boundary, so callers can branch on the kind without knowing the
database in use.

    NotAuthenticated        → 401  no caller identity
    ValidationFailure       → 400  missing / invalid field
    ForbiddenTransition     → 403  not owner, bad status change, finalized delete
      InvoiceNotFound       → 404  no active invoice with that number for the owner
    DuplicateInvoiceNumber  → 409  (owner, number) already taken
    StoreUnavailable        → 503  transient / unclassified storage error
      StoreTimeout          → 504
    AllocationFailed        → raised by the allocator only; the workflow falls back
"""
from sqlalchemy import exc as sa_exc


class InvoiceError(Exception):
    """Base class for all user-facing invoice errors."""
    kind = 'error'
    status_code = 500
    default_message = 'Something went wrong while processing the invoice.'

    def __init__(self, message=None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {'error': self.message, 'kind': self.kind}


class NotAuthenticated(InvoiceError):
    kind = 'not_authenticated'
    status_code = 401
    default_message = 'You are not logged in. Please log in and try again.'


class ValidationFailure(InvoiceError):
    kind = 'validation_failure'
    status_code = 400
    default_message = 'The invoice is missing required information.'

    def __init__(self, message=None, errors=None):
        self.errors = errors or {}
        if message is None and self.errors:
            message = 'Invalid invoice: ' + '; '.join(
                f'{field}: {msg}' for field, msg in sorted(self.errors.items())
            )
        super().__init__(message)

    def to_dict(self) -> dict:
        data = super().to_dict()
        if self.errors:
            data['errors'] = self.errors
        return data


class ForbiddenTransition(InvoiceError):
    kind = 'forbidden_transition'
    status_code = 403
    default_message = 'This change is not allowed for this invoice.'


class InvoiceNotFound(ForbiddenTransition):
    kind = 'not_found'
    status_code = 404
    default_message = 'Invoice not found or access denied.'


class DuplicateInvoiceNumber(InvoiceError):
    kind = 'duplicate_invoice_number'
    status_code = 409

    def __init__(self, invoice_number=None, retried=False):
        self.invoice_number = invoice_number
        self.retried = retried
        if retried:
            message = ('Could not find a free invoice number after retrying. '
                       'Please try again in a moment.')
        else:
            message = f'Invoice number {invoice_number} already exists.'
        super().__init__(message)


class StoreUnavailable(InvoiceError):
    kind = 'store_unavailable'
    status_code = 503
    default_message = 'The invoice database is not reachable right now. Please try again.'


class StoreTimeout(StoreUnavailable):
    kind = 'timeout'
    status_code = 504
    default_message = 'The invoice database took too long to answer. Please try again.'


class AllocationFailed(InvoiceError):
    kind = 'allocation_failed'
    status_code = 503
    default_message = 'Could not compute the next invoice number.'


# ── Storage error classification ──────────────────────────────────

_UNIQUE_SQLSTATE = '23505'
_VALIDATION_SQLSTATES = ('23502', '23514')   # not_null_violation, check_violation
_TIMEOUT_SQLSTATE = '57014'                  # query_canceled (statement_timeout)


def _sqlstate(exc):
    orig = getattr(exc, 'orig', None)
    return getattr(orig, 'pgcode', None) or getattr(orig, 'sqlstate', None)


def is_unique_violation(exc) -> bool:
    if not isinstance(exc, sa_exc.IntegrityError):
        return False
    if _sqlstate(exc) == _UNIQUE_SQLSTATE:
        return True
    text = str(getattr(exc, 'orig', exc))
    return 'UNIQUE constraint failed' in text or 'duplicate key' in text


def classify_store_error(exc, invoice_number=None) -> InvoiceError:
    """Map a SQLAlchemy exception to the matching InvoiceError."""
    if isinstance(exc, InvoiceError):
        return exc

    if is_unique_violation(exc):
        return DuplicateInvoiceNumber(invoice_number)

    if isinstance(exc, sa_exc.IntegrityError):
        state = _sqlstate(exc)
        text = str(getattr(exc, 'orig', exc))
        if state in _VALIDATION_SQLSTATES or 'NOT NULL' in text or 'CHECK' in text:
            return ValidationFailure(f'The database rejected the invoice: {text}')
        return StoreUnavailable()

    if isinstance(exc, sa_exc.TimeoutError) or _sqlstate(exc) == _TIMEOUT_SQLSTATE:
        return StoreTimeout()

    return StoreUnavailable()
