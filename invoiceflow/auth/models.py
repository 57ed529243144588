from werkzeug.security import generate_password_hash, check_password_hash
from invoiceflow import db
from invoiceflow.utils.dates import utcnow


class User(db.Model):
    """
    A person who logs in and owns invoices.
    The user id is the owner scope for invoice numbers and visibility.
    """
    __tablename__ = 'users'

    id            = db.Column(db.Integer, primary_key=True)
    name          = db.Column(db.String(120), nullable=False)
    username      = db.Column(db.String(64), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(256), nullable=False)
    created_at    = db.Column(db.DateTime, nullable=False, default=utcnow)

    # ── Password helpers ──────────────────────────────────────────
    def set_password(self, plain_password: str) -> None:
        """Hash and store the password. Never stores plain text."""
        self.password_hash = generate_password_hash(plain_password)

    def check_password(self, plain_password: str) -> bool:
        """Return True if the supplied password matches the stored hash."""
        return check_password_hash(self.password_hash, plain_password)

    def __repr__(self) -> str:
        return f"<User {self.username!r}>"
