"""
invoiceflow/invoices/routes.py
------------------------------
JSON endpoints used by the invoice screens.

Every route works on the logged-in owner's invoices only; the owner id comes
from the session and is passed explicitly to each repository call.
Domain errors are turned into JSON responses by the app-level handler.
"""
from flask import current_app, jsonify, request

from invoiceflow.auth.decorators import current_owner_id, login_required
from invoiceflow.auth.models import User
from invoiceflow import db
from invoiceflow.invoices import invoices
from invoiceflow.errors import InvoiceNotFound, ValidationFailure
from invoiceflow.invoices.models import InvoiceStatus
from invoiceflow.invoices.repository import InvoiceRepository
from invoiceflow.invoices.validators import parse_invoice_payload, validate_invoice_payload
from invoiceflow.invoices.workflow import InvoiceWorkflow

PENDING = (InvoiceStatus.draft, InvoiceStatus.pending_approval)
APPROVED = (InvoiceStatus.approved, InvoiceStatus.issued)


def _workflow() -> InvoiceWorkflow:
    return InvoiceWorkflow.from_config(current_app.config)


def _truthy(value) -> bool:
    return (value or '').lower() in ('1', 'true', 'yes', 'on')


# ── LIST ──────────────────────────────────────────────────────────

@invoices.route('/')
@login_required
def index():
    """Owner's invoices, newest first. ?status=&client=&period=&include_deleted="""
    statuses = request.args.getlist('status') or None
    rows = InvoiceRepository().list(
        current_owner_id(),
        status=statuses,
        client_company=request.args.get('client', '').strip() or None,
        period_key=request.args.get('period', '').strip() or None,
        include_deleted=_truthy(request.args.get('include_deleted')),
        limit=request.args.get('limit', type=int),
    )
    return jsonify([inv.to_dict() for inv in rows])


@invoices.route('/pending')
@login_required
def pending():
    """Invoices still waiting for approval (draft + pending_approval)."""
    rows = InvoiceRepository().list(current_owner_id(), status=PENDING)
    return jsonify([inv.to_dict() for inv in rows])


@invoices.route('/approved')
@login_required
def approved():
    """Finalized invoices (approved + issued)."""
    rows = InvoiceRepository().list(current_owner_id(), status=APPROVED)
    return jsonify([inv.to_dict() for inv in rows])


# ── CREATE ────────────────────────────────────────────────────────

@invoices.route('/', methods=['POST'])
@login_required
def create():
    """
    Create an invoice from the JSON body.
    Without "invoice_number" the next number is allocated automatically,
    with one silent retry if another request took it first.
    """
    owner_id = current_owner_id()
    data = request.get_json(silent=True) or {}

    errors = validate_invoice_payload(data)
    if errors:
        raise ValidationFailure(errors=errors)

    parsed = parse_invoice_payload(data)
    invoice = _workflow().create(
        owner_id,
        parsed['fields'],
        parsed['lines'],
        status=parsed['status'],
        invoice_number=parsed['invoice_number'],
    )
    current_app.logger.info(f"Invoice {invoice.invoice_number} created by User ID {owner_id}")
    return jsonify(invoice.to_dict()), 201


@invoices.route('/next-number')
@login_required
def next_number():
    """Preview of the number the next invoice would get. Nothing is reserved."""
    workflow = _workflow()
    period_key = workflow.allocator.period_key()
    number = workflow.allocator.allocate(current_owner_id(), period_key)
    return jsonify({'invoice_number': number, 'period': period_key})


# ── LOOKUP ────────────────────────────────────────────────────────

@invoices.route('/<invoice_number>/history')
@login_required
def history(invoice_number):
    rows = InvoiceRepository().history(invoice_number, current_owner_id())
    return jsonify([inv.to_dict() for inv in rows])


@invoices.route('/<invoice_number>/status', methods=['POST'])
@login_required
def update_status(invoice_number):
    """Body: {"status": "approved" | "issued" | ...}"""
    owner_id = current_owner_id()
    data = request.get_json(silent=True) or {}
    status = (data.get('status') or request.form.get('status') or '').strip()
    if not status:
        raise ValidationFailure(errors={'status': 'This field is required.'})

    user = db.session.get(User, owner_id)
    invoice = InvoiceRepository().update_status(
        invoice_number, owner_id, status,
        actor=user.name if user else None,
    )
    return jsonify(invoice.to_dict())


@invoices.route('/<invoice_number>/delete', methods=['POST'])
@login_required
def delete(invoice_number):
    """Soft delete. Approved and issued invoices are refused."""
    invoice = InvoiceRepository().soft_delete(invoice_number, current_owner_id())
    return jsonify(invoice.to_dict())


@invoices.route('/<invoice_number>')
@login_required
def detail(invoice_number):
    """Lookup by number, including soft-deleted invoices (audit view)."""
    invoice = InvoiceRepository().get(invoice_number, current_owner_id())
    if invoice is None:
        raise InvoiceNotFound()
    return jsonify(invoice.to_dict())
