"""
test_auth_and_errors.py: Login/logout, health check and storage error classification.
Run: pytest test_auth_and_errors.py -v
"""
import pytest
from sqlalchemy import exc as sa_exc

from invoiceflow import create_app, db
from invoiceflow.auth.models import User
from invoiceflow.errors import (
    DuplicateInvoiceNumber, ForbiddenTransition, InvoiceNotFound, StoreTimeout,
    StoreUnavailable, ValidationFailure, classify_store_error, is_unique_violation,
)


@pytest.fixture
def client():
    app = create_app(config_name='testing')
    with app.app_context():
        db.create_all()
        user = User(username='alice', name='Alice Example')
        user.set_password('alice123')
        db.session.add(user)
        db.session.commit()

        with app.test_client() as client:
            yield client

        db.session.remove()
        db.drop_all()


class PgError(Exception):
    """Stands in for a DBAPI error carrying a PostgreSQL SQLSTATE."""

    def __init__(self, pgcode, message=''):
        super().__init__(message)
        self.pgcode = pgcode


def integrity(orig):
    return sa_exc.IntegrityError('INSERT INTO invoices ...', {}, orig)


# ── Auth ──────────────────────────────────────────────────────────

def test_login_success(client):
    resp = client.post('/auth/login', json={'username': 'alice', 'password': 'alice123'})
    assert resp.status_code == 200
    assert resp.get_json()['username'] == 'alice'
    assert client.get('/invoices/').status_code == 200


def test_login_with_form_data(client):
    resp = client.post('/auth/login', data={'username': 'alice', 'password': 'alice123'})
    assert resp.status_code == 200


def test_login_wrong_password(client):
    resp = client.post('/auth/login', json={'username': 'alice', 'password': 'nope'})
    assert resp.status_code == 401
    assert resp.get_json()['error'] == 'Invalid username or password.'


def test_login_missing_fields(client):
    resp = client.post('/auth/login', json={'username': 'alice'})
    assert resp.status_code == 400


def test_logout_clears_session(client):
    client.post('/auth/login', json={'username': 'alice', 'password': 'alice123'})
    assert client.get('/auth/logout').status_code == 200
    assert client.get('/invoices/').status_code == 401


# ── Health ────────────────────────────────────────────────────────

def test_health(client):
    resp = client.get('/health')
    assert resp.status_code == 200
    assert resp.get_json()['status'] == 'ok'


def test_unknown_route_is_json_404(client):
    resp = client.get('/nowhere')
    assert resp.status_code == 404
    assert resp.get_json()['kind'] == 'not_found'


# ── Error classification ──────────────────────────────────────────

def test_sqlite_unique_violation():
    exc = integrity(Exception('UNIQUE constraint failed: invoices.owner_id, invoices.invoice_number'))
    assert is_unique_violation(exc)
    error = classify_store_error(exc, '2025-0001')
    assert isinstance(error, DuplicateInvoiceNumber)
    assert error.invoice_number == '2025-0001'


def test_postgres_unique_violation():
    exc = integrity(PgError('23505', 'duplicate key value violates unique constraint'))
    assert isinstance(classify_store_error(exc), DuplicateInvoiceNumber)


@pytest.mark.parametrize('orig', [
    PgError('23502', 'null value in column "client_company"'),
    Exception('NOT NULL constraint failed: invoices.client_company'),
])
def test_missing_column_is_validation_failure(orig):
    assert isinstance(classify_store_error(integrity(orig)), ValidationFailure)


def test_statement_timeout_is_timeout():
    exc = sa_exc.OperationalError('SELECT', {}, PgError('57014', 'canceling statement due to statement timeout'))
    assert isinstance(classify_store_error(exc), StoreTimeout)


def test_other_errors_are_unavailable():
    exc = sa_exc.OperationalError('SELECT', {}, Exception('server closed the connection unexpectedly'))
    error = classify_store_error(exc)
    assert type(error) is StoreUnavailable
    assert error.status_code == 503


def test_not_found_counts_as_forbidden():
    error = InvoiceNotFound()
    assert isinstance(error, ForbiddenTransition)
    assert error.to_dict() == {'error': 'Invoice not found or access denied.', 'kind': 'not_found'}


def test_validation_failure_lists_fields():
    error = ValidationFailure(errors={'client_city': 'This field is required.'})
    assert error.to_dict()['errors'] == {'client_city': 'This field is required.'}
    assert 'client_city' in error.message


def test_retried_duplicate_message():
    assert DuplicateInvoiceNumber('2025-0001', retried=True).retried is True
    assert '2025-0001' in DuplicateInvoiceNumber('2025-0001').message
