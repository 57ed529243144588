"""
test_workflow.py: Tests for the create-invoice workflow:
allocation, pre-check, the single retry on a taken number, and fallback numbers.
Run: pytest test_workflow.py -v
"""
import pytest
from datetime import date, timedelta
from decimal import Decimal

from invoiceflow import create_app, db
from invoiceflow.auth.models import User
from invoiceflow.errors import (
    AllocationFailed, DuplicateInvoiceNumber, NotAuthenticated, ValidationFailure,
)
from invoiceflow.invoices.models import Invoice, InvoiceStatus
from invoiceflow.invoices.numbering import CollisionChecker, NumberAllocator
from invoiceflow.invoices.repository import InvoiceRepository
from invoiceflow.invoices.store import InvoiceStore
from invoiceflow.invoices.workflow import InvoiceWorkflow

FIELDS = {
    'client_company': 'Acme GmbH',
    'client_address': 'Hauptstr. 1',
    'client_city':    'Berlin',
    'client_country': 'Germany',
    'invoice_date':   date(2025, 5, 1),
}

LINES = [
    {'description': 'Consulting', 'hours': Decimal('2'),  'rate': Decimal('100')},
    {'description': 'Travel',     'hours': Decimal('1'),  'rate': Decimal('40')},
    {'description': 'Goodwill',   'hours': Decimal('3'),  'rate': Decimal('100'), 'included': False},
]

ON = date(2025, 5, 1)


# ── Fixtures ──────────────────────────────────────────────────────

@pytest.fixture(scope='function')
def app():
    app = create_app('testing')
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def owner(app):
    user = User(username='u1', name='User One')
    user.set_password('secret')
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture
def store(app):
    return InvoiceStore()


class ScriptedAllocator(NumberAllocator):
    """Hands out a fixed sequence of candidates, like a stale concurrent read would."""

    def __init__(self, store, numbers):
        super().__init__(store)
        self.numbers = list(numbers)
        self.calls = 0

    def allocate(self, owner_id, period_key):
        self.calls += 1
        return self.numbers.pop(0)


class BrokenAllocator(NumberAllocator):
    def allocate(self, owner_id, period_key):
        raise AllocationFailed('numbers unreadable')


class CountingRepository(InvoiceRepository):
    def __init__(self, store):
        super().__init__(store)
        self.saves = 0

    def save(self, invoice):
        self.saves += 1
        return super().save(invoice)


def make_workflow(store, allocator, precheck=False):
    repo = CountingRepository(store)
    workflow = InvoiceWorkflow(repo, allocator, checker=CollisionChecker(store), precheck=precheck)
    return workflow, repo


# ── 1. Happy path ─────────────────────────────────────────────────

def test_create_allocates_first_number(app, owner):
    workflow = InvoiceWorkflow.from_config(app.config)
    inv = workflow.create(owner.id, FIELDS, LINES, on=ON)

    assert inv.invoice_number == '2025-0001'
    assert inv.status == InvoiceStatus.pending_approval
    assert inv.total == Decimal('240.00')
    assert inv.vat_amount == Decimal('0.00')
    assert inv.due_date == date(2025, 5, 1) + timedelta(days=30)
    assert inv.currency == 'EUR'
    assert [line.position for line in inv.lines] == [0, 1, 2]


def test_create_numbers_are_sequential(app, owner):
    workflow = InvoiceWorkflow.from_config(app.config)
    first = workflow.create(owner.id, FIELDS, LINES, on=ON)
    second = workflow.create(owner.id, FIELDS, LINES, on=ON)
    assert (first.invoice_number, second.invoice_number) == ('2025-0001', '2025-0002')


def test_create_as_draft(app, owner):
    inv = InvoiceWorkflow.from_config(app.config).create(owner.id, FIELDS, LINES,
                                                         status='draft', on=ON)
    assert inv.status == InvoiceStatus.draft


def test_create_without_owner(store):
    allocator = ScriptedAllocator(store, ['2025-0001'])
    workflow, repo = make_workflow(store, allocator)
    with pytest.raises(NotAuthenticated):
        workflow.create(None, FIELDS, LINES, on=ON)
    assert allocator.calls == 0
    assert repo.saves == 0


# ── 2. Retry on a taken number ────────────────────────────────────

def test_single_retry_succeeds(store, owner):
    taken = InvoiceWorkflow.from_config({}, store).create(owner.id, FIELDS, LINES, on=ON)
    assert taken.invoice_number == '2025-0001'

    allocator = ScriptedAllocator(store, ['2025-0001', '2025-0002'])
    workflow, repo = make_workflow(store, allocator)
    inv = workflow.create(owner.id, FIELDS, LINES, on=ON)

    assert inv.invoice_number == '2025-0002'
    assert allocator.calls == 2
    assert repo.saves == 2
    assert Invoice.query.filter_by(owner_id=owner.id).count() == 2
    assert Invoice.query.filter_by(invoice_number='2025-0002').count() == 1


def test_retry_exhaustion_is_terminal(store, owner):
    InvoiceWorkflow.from_config({}, store).create(owner.id, FIELDS, LINES, on=ON)

    allocator = ScriptedAllocator(store, ['2025-0001', '2025-0001', '2025-0001'])
    workflow, repo = make_workflow(store, allocator)
    with pytest.raises(DuplicateInvoiceNumber) as exc_info:
        workflow.create(owner.id, FIELDS, LINES, on=ON)

    assert exc_info.value.retried is True
    assert repo.saves == 2
    assert allocator.calls == 2
    assert Invoice.query.filter_by(owner_id=owner.id).count() == 1


def test_precheck_skips_save_for_taken_number(store, owner):
    InvoiceWorkflow.from_config({}, store).create(owner.id, FIELDS, LINES, on=ON)

    allocator = ScriptedAllocator(store, ['2025-0001', '2025-0002'])
    workflow, repo = make_workflow(store, allocator, precheck=True)
    inv = workflow.create(owner.id, FIELDS, LINES, on=ON)

    assert inv.invoice_number == '2025-0002'
    assert repo.saves == 1


def test_validation_failure_is_not_retried(store, owner):
    allocator = ScriptedAllocator(store, ['2025-0001', '2025-0002'])
    workflow, repo = make_workflow(store, allocator)
    fields = dict(FIELDS, client_city='')
    with pytest.raises(ValidationFailure):
        workflow.create(owner.id, fields, LINES, on=ON)
    assert allocator.calls == 1
    assert repo.saves == 1


# ── 3. Manual numbers ─────────────────────────────────────────────

def test_manual_number_is_used_as_is(store, owner):
    allocator = ScriptedAllocator(store, [])
    workflow, _ = make_workflow(store, allocator)
    inv = workflow.create(owner.id, FIELDS, LINES, invoice_number='2025-08-AMYL-001')
    assert inv.invoice_number == '2025-08-AMYL-001'
    assert allocator.calls == 0


def test_manual_duplicate_is_not_retried(store, owner):
    allocator = ScriptedAllocator(store, [])
    workflow, repo = make_workflow(store, allocator)
    workflow.create(owner.id, FIELDS, LINES, invoice_number='MAN-1')

    with pytest.raises(DuplicateInvoiceNumber) as exc_info:
        workflow.create(owner.id, FIELDS, LINES, invoice_number='MAN-1')
    assert exc_info.value.retried is False
    assert repo.saves == 2


# ── 4. Allocation failure ─────────────────────────────────────────

def test_allocation_failure_uses_fallback_number(app, store, owner):
    workflow, _ = make_workflow(store, BrokenAllocator(store))
    inv = workflow.create(owner.id, FIELDS, LINES, on=ON)
    assert inv.invoice_number.startswith('2025-T')

    # The fallback number doesn't disturb the normal sequence
    normal = InvoiceWorkflow.from_config(app.config, store).create(owner.id, FIELDS, LINES, on=ON)
    assert normal.invoice_number == '2025-0001'


def test_retry_count_is_fixed_at_one(store, owner):
    InvoiceWorkflow.from_config({}, store).create(owner.id, FIELDS, LINES, on=ON)

    workflow = InvoiceWorkflow.from_config({'INVOICE_SAVE_RETRIES': 5, 'INVOICE_PRECHECK': False}, store)
    workflow.allocator = ScriptedAllocator(store, ['2025-0001'] * 6)
    workflow.repository = CountingRepository(store)
    with pytest.raises(DuplicateInvoiceNumber):
        workflow.create(owner.id, FIELDS, LINES, on=ON)
    assert workflow.repository.saves == 2
    assert workflow.allocator.calls == 2
