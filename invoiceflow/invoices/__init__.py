"""
invoiceflow/invoices/__init__.py
--------------------------------
Invoices blueprint.
URL prefix: /invoices
"""
from flask import Blueprint

invoices = Blueprint('invoices', __name__)

from invoiceflow.invoices import routes  # noqa: E402, F401  (registers routes)
from invoiceflow.invoices import models  # noqa: E402, F401  (registers Invoice/InvoiceLine)
