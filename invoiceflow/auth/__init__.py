from flask import Blueprint

auth = Blueprint('auth', __name__)

from invoiceflow.auth import routes   # noqa: F401, E402
from invoiceflow.auth import models   # noqa: F401, E402  (registers User with SQLAlchemy)
