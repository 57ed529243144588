"""
invoiceflow/auth/decorators.py
------------------------------
Route protection and access to the caller's identity.
Usage:
    from invoiceflow.auth.decorators import login_required, current_owner_id

    @invoices.route('/')
    @login_required
    def index():
        owner_id = current_owner_id()
        ...
"""
from functools import wraps
from flask import session

from invoiceflow.errors import NotAuthenticated


def current_owner_id():
    """
    Id of the logged-in user, used as the owner scope of every invoice call.
    Raises NotAuthenticated when nobody is logged in.
    """
    owner_id = session.get('user_id')
    if owner_id is None:
        raise NotAuthenticated()
    return owner_id


def login_required(f):
    """
    Reject anonymous callers with a 401 JSON body.
    Checks for 'user_id' key in the Flask session.
    """
    @wraps(f)
    def decorated(*args, **kwargs):
        if 'user_id' not in session:
            raise NotAuthenticated('Please log in to access this page.')
        return f(*args, **kwargs)
    return decorated
