"""
invoiceflow/invoices/validators.py
----------------------------------
Pure-Python validation for the create-invoice payload.
Returns a dict of field -> error_message.
An empty dict means all fields are valid.
"""
from datetime import date
from decimal import Decimal, InvalidOperation

LANGUAGES = ('de', 'en', 'he', 'fr')
INITIAL_STATUSES = ('draft', 'pending_approval')

REQUIRED_CLIENT_FIELDS = ('client_company', 'client_address', 'client_city', 'client_country')
OPTIONAL_CLIENT_FIELDS = ('client_postal_code', 'client_business_license',
                          'client_company_registration')
DATE_FIELDS = ('invoice_date', 'due_date', 'service_period_start', 'service_period_end')

# Path segments under /invoices/ that a number would be shadowed by
RESERVED_NUMBERS = frozenset({'pending', 'approved', 'next-number', '.', '..'})
# Characters that can't survive as a single URL path segment
URL_UNSAFE = frozenset('/\\?#%')


def _text(data, key) -> str:
    value = data.get(key)
    return str(value).strip() if value is not None else ''


def _decimal(raw):
    try:
        value = Decimal(str(raw).strip())
    except (InvalidOperation, ValueError):
        return None
    return value if value.is_finite() else None


def _date(raw):
    try:
        return date.fromisoformat(str(raw).strip())
    except ValueError:
        return None


def invoice_number_problem(number: str):
    """
    Error message for a manually entered invoice number, or None if usable.
    Every number must stay addressable as /invoices/<number>.
    """
    if not number:
        return 'Invoice number cannot be blank.'
    if len(number) > 40:
        return 'Invoice number must be 40 characters or fewer.'
    if any(ch in URL_UNSAFE or ch.isspace() for ch in number):
        return 'Invoice number cannot contain spaces or any of / \\ ? # %.'
    if number.lower() in RESERVED_NUMBERS:
        return f'"{number}" is reserved and cannot be used as an invoice number.'
    return None


def validate_invoice_payload(data: dict) -> dict:
    """
    Validate a raw JSON payload for a new invoice.

    Args:
        data: decoded request body

    Returns:
        dict of {field_name: error_message}, empty if all valid.
    """
    errors = {}

    # ── client snapshot ───────────────────────────────────────────
    for field in REQUIRED_CLIENT_FIELDS:
        if not _text(data, field):
            errors[field] = 'This field is required.'

    # ── dates ─────────────────────────────────────────────────────
    for field in DATE_FIELDS:
        raw = _text(data, field)
        if raw and _date(raw) is None:
            errors[field] = 'Use the YYYY-MM-DD format.'

    start, end = _date(_text(data, 'service_period_start')), _date(_text(data, 'service_period_end'))
    if start and end and end < start:
        errors['service_period_end'] = 'Service period cannot end before it starts.'

    # ── language / currency / status ──────────────────────────────
    language = _text(data, 'language')
    if language and language not in LANGUAGES:
        errors['language'] = f'Language must be one of: {", ".join(LANGUAGES)}.'

    currency = _text(data, 'currency')
    if currency and len(currency) != 3:
        errors['currency'] = 'Currency must be a 3-letter code.'

    status = _text(data, 'status')
    if status and status not in INITIAL_STATUSES:
        errors['status'] = 'New invoices start as draft or pending_approval.'

    # ── exchange rate ─────────────────────────────────────────────
    rate_raw = _text(data, 'exchange_rate')
    if rate_raw:
        rate = _decimal(rate_raw)
        if rate is None:
            errors['exchange_rate'] = 'Exchange rate must be a valid number.'
        elif rate <= 0:
            errors['exchange_rate'] = 'Exchange rate must be greater than zero.'

    # ── manual invoice number ─────────────────────────────────────
    number = data.get('invoice_number')
    if number is not None:
        problem = invoice_number_problem(str(number).strip())
        if problem:
            errors['invoice_number'] = problem

    # ── lines ─────────────────────────────────────────────────────
    lines = data.get('lines')
    if not isinstance(lines, list) or not lines:
        errors['lines'] = 'At least one service line is required.'
        return errors

    for i, line in enumerate(lines):
        if not isinstance(line, dict):
            errors[f'lines[{i}]'] = 'Each line must be an object.'
            continue
        if not _text(line, 'description'):
            errors[f'lines[{i}].description'] = 'Description is required.'
        for key, label in (('hours', 'Hours'), ('rate', 'Rate')):
            value = _decimal(line.get(key, ''))
            if value is None:
                errors[f'lines[{i}].{key}'] = f'{label} must be a valid number.'
            elif value < 0:
                errors[f'lines[{i}].{key}'] = f'{label} cannot be negative.'
            elif value.normalize().as_tuple().exponent < -2:
                errors[f'lines[{i}].{key}'] = f'{label} can have at most 2 decimal places.'
        line_currency = _text(line, 'currency')
        if line_currency and len(line_currency) != 3:
            errors[f'lines[{i}].currency'] = 'Currency must be a 3-letter code.'

    return errors


def parse_invoice_payload(data: dict) -> dict:
    """
    Convert a validated payload to Python types.
    Call only after validate_invoice_payload returns no errors.

    Returns:
        {'fields': {...}, 'lines': [...], 'status': str, 'invoice_number': str | None}
    """
    fields = {field: _text(data, field) for field in REQUIRED_CLIENT_FIELDS}
    for field in OPTIONAL_CLIENT_FIELDS:
        fields[field] = _text(data, field) or None
    for field in DATE_FIELDS:
        raw = _text(data, field)
        fields[field] = _date(raw) if raw else None

    fields['language'] = _text(data, 'language') or 'en'
    currency = _text(data, 'currency').upper()
    if currency:
        fields['currency'] = currency
    rate_raw = _text(data, 'exchange_rate')
    fields['exchange_rate'] = Decimal(rate_raw) if rate_raw else None

    lines = [
        {
            'description': _text(line, 'description'),
            'hours':       Decimal(str(line.get('hours')).strip()),
            'rate':        Decimal(str(line.get('rate')).strip()),
            'currency':    _text(line, 'currency').upper() or None,
            'included':    line.get('included', True) not in (False, 'false', '0', 0, 'off'),
        }
        for line in data['lines']
    ]

    number = data.get('invoice_number')
    return {
        'fields':         fields,
        'lines':          lines,
        'status':         _text(data, 'status') or 'pending_approval',
        'invoice_number': str(number).strip() if number is not None else None,
    }
