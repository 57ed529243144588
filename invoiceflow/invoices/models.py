import enum
from decimal import Decimal, ROUND_HALF_UP
from sqlalchemy import text
from invoiceflow import db
from invoiceflow.utils.dates import utcnow


Q = Decimal('0.01')   # quantize target


def _money(value):
    if value is None:
        return None
    return Decimal(str(value)).quantize(Q, rounding=ROUND_HALF_UP)


class InvoiceStatus(enum.Enum):
    draft            = "draft"
    pending_approval = "pending_approval"
    approved         = "approved"
    issued           = "issued"
    cancelled        = "cancelled"


# Once finalized, an invoice can no longer be edited or deleted.
FINALIZED = frozenset({InvoiceStatus.approved, InvoiceStatus.issued})

# Statuses a new invoice may be created in.
INITIAL = frozenset({InvoiceStatus.draft, InvoiceStatus.pending_approval})

TRANSITIONS = {
    InvoiceStatus.draft:            {InvoiceStatus.pending_approval,
                                     InvoiceStatus.approved,
                                     InvoiceStatus.cancelled},
    InvoiceStatus.pending_approval: {InvoiceStatus.draft,
                                     InvoiceStatus.approved,
                                     InvoiceStatus.cancelled},
    InvoiceStatus.approved:         {InvoiceStatus.issued},
    InvoiceStatus.issued:           set(),
    InvoiceStatus.cancelled:        set(),
}


class Invoice(db.Model):
    """
    One invoice issued by an owner (the logged-in user).

    The (owner_id, invoice_number) pair is unique among rows that are not
    soft-deleted. The guarantee lives in a partial unique index, not in
    application code: two requests can compute the same next number at the
    same time, and only the database can decide which one wins.
    """
    __tablename__ = 'invoices'
    __table_args__ = (
        db.Index(
            'uq_invoices_owner_number_active',
            'owner_id', 'invoice_number',
            unique=True,
            sqlite_where=text('deleted_at IS NULL'),
            postgresql_where=text('deleted_at IS NULL'),
        ),
    )

    id                   = db.Column(db.Integer, primary_key=True)
    owner_id             = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    invoice_number       = db.Column(db.String(40), nullable=False, index=True)

    invoice_date         = db.Column(db.Date, nullable=False)
    due_date             = db.Column(db.Date, nullable=True)
    service_period_start = db.Column(db.Date, nullable=True)
    service_period_end   = db.Column(db.Date, nullable=True)
    language             = db.Column(db.String(2), nullable=False, default='en')
    currency             = db.Column(db.String(3), nullable=False, default='EUR')

    # ── Client snapshot (copied at creation time) ─────────────────
    client_company              = db.Column(db.String(200), nullable=False)
    client_address              = db.Column(db.String(255), nullable=False)
    client_city                 = db.Column(db.String(120), nullable=False)
    client_postal_code          = db.Column(db.String(20), nullable=True)
    client_country              = db.Column(db.String(120), nullable=False)
    client_business_license     = db.Column(db.String(60), nullable=True)
    client_company_registration = db.Column(db.String(60), nullable=True)

    # Units of line currency per one unit of invoice currency (e.g. ILS per EUR)
    exchange_rate        = db.Column(db.Numeric(12, 6), nullable=True)

    # ── Derived totals ────────────────────────────────────────────
    subtotal             = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    vat_amount           = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    total                = db.Column(db.Numeric(12, 2), nullable=False, default=0)

    status               = db.Column(db.Enum(InvoiceStatus), nullable=False,
                                     default=InvoiceStatus.draft)
    created_at           = db.Column(db.DateTime, nullable=False, default=utcnow)
    approved_at          = db.Column(db.DateTime, nullable=True)
    approved_by          = db.Column(db.String(120), nullable=True)
    issued_at            = db.Column(db.DateTime, nullable=True)
    deleted_at           = db.Column(db.DateTime, nullable=True)

    # ── Relationships ─────────────────────────────────────────────
    owner = db.relationship('User', lazy='select')
    lines = db.relationship('InvoiceLine', backref='invoice', lazy='select',
                            order_by='InvoiceLine.position',
                            cascade='all, delete-orphan')

    # ── Computed helpers ──────────────────────────────────────────
    @property
    def is_finalized(self) -> bool:
        return self.status in FINALIZED

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def recalculate_totals(self) -> None:
        """
        Recompute every line amount and the invoice totals.
        VAT is not charged by this system, so total == subtotal.
        """
        # Column defaults only apply on INSERT; fill them in before computing
        if self.currency is None:
            self.currency = 'EUR'
        subtotal = Decimal('0')
        for line in self.lines:
            if line.currency is None:
                line.currency = self.currency
            if line.included is None:
                line.included = True
            # Amounts come from the values the columns will actually store
            line.hours = _money(line.hours)
            line.rate  = _money(line.rate)
            line.amount = line.compute_amount(self.currency, self.exchange_rate)
            if line.included:
                subtotal += line.amount
        self.subtotal   = subtotal.quantize(Q)
        self.vat_amount = Decimal('0.00')
        self.total      = self.subtotal + self.vat_amount

    def to_dict(self) -> dict:
        def _iso(value):
            return value.isoformat() if value is not None else None

        return {
            'id':                   self.id,
            'invoice_number':       self.invoice_number,
            'owner_id':             self.owner_id,
            'status':               self.status.value,
            'invoice_date':         _iso(self.invoice_date),
            'due_date':             _iso(self.due_date),
            'service_period_start': _iso(self.service_period_start),
            'service_period_end':   _iso(self.service_period_end),
            'language':             self.language,
            'currency':             self.currency,
            'client_company':       self.client_company,
            'client_address':       self.client_address,
            'client_city':          self.client_city,
            'client_postal_code':   self.client_postal_code,
            'client_country':       self.client_country,
            'exchange_rate':        str(self.exchange_rate) if self.exchange_rate is not None else None,
            'lines':                [line.to_dict() for line in self.lines],
            'subtotal':             str(self.subtotal),
            'vat_amount':           str(self.vat_amount),
            'total':                str(self.total),
            'created_at':           _iso(self.created_at),
            'approved_at':          _iso(self.approved_at),
            'approved_by':          self.approved_by,
            'issued_at':            _iso(self.issued_at),
            'deleted_at':           _iso(self.deleted_at),
        }

    def __repr__(self):
        return f"<Invoice {self.invoice_number!r} owner={self.owner_id} {self.status.value}>"


class InvoiceLine(db.Model):
    """
    One service line on an invoice: hours × rate.
    Lines with included=False are kept on the invoice but excluded from totals.
    """
    __tablename__ = 'invoice_lines'

    id          = db.Column(db.Integer, primary_key=True)
    invoice_id  = db.Column(db.Integer, db.ForeignKey('invoices.id'), nullable=False)
    position    = db.Column(db.Integer, nullable=False, default=0)
    description = db.Column(db.String(255), nullable=False)
    hours       = db.Column(db.Numeric(10, 2), nullable=False)
    rate        = db.Column(db.Numeric(12, 2), nullable=False)
    currency    = db.Column(db.String(3), nullable=False, default='EUR')
    amount      = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    included    = db.Column(db.Boolean, nullable=False, default=True)

    def compute_amount(self, invoice_currency: str, exchange_rate=None) -> Decimal:
        """
        Amount in the invoice currency.
        A line priced in another currency is divided by the invoice's exchange rate.
        """
        gross = Decimal(str(self.hours)) * Decimal(str(self.rate))
        if self.currency and invoice_currency and self.currency != invoice_currency:
            gross = gross / Decimal(str(exchange_rate))
        return gross.quantize(Q, rounding=ROUND_HALF_UP)

    def to_dict(self) -> dict:
        return {
            'position':    self.position,
            'description': self.description,
            'hours':       str(self.hours),
            'rate':        str(self.rate),
            'currency':    self.currency,
            'amount':      str(self.amount),
            'included':    self.included,
        }

    def __repr__(self):
        return f"<InvoiceLine invoice={self.invoice_id} {self.description!r} amount={self.amount}>"
