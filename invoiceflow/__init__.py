import click
from flask import Flask, jsonify
from flask_sqlalchemy import SQLAlchemy
from config import config

db = SQLAlchemy()


def create_app(config_name='default'):
    """Application factory: creates and configures the Flask app."""
    app = Flask(__name__)
    app.config.from_object(config[config_name])

    # ── Logging ───────────────────────────────────────────────────
    from invoiceflow.utils.logging import setup_logging
    setup_logging(app)

    # ── Extensions ────────────────────────────────────────────────
    db.init_app(app)

    # ── Blueprints ────────────────────────────────────────────────
    from invoiceflow.main import main as main_blueprint
    app.register_blueprint(main_blueprint)

    from invoiceflow.auth import auth as auth_blueprint
    app.register_blueprint(auth_blueprint, url_prefix='/auth')

    from invoiceflow.invoices import invoices as invoices_blueprint
    app.register_blueprint(invoices_blueprint, url_prefix='/invoices')

    # ── Error Handlers ────────────────────────────────────────────
    from invoiceflow.errors import InvoiceError

    @app.errorhandler(InvoiceError)
    def invoice_error(e):
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(404)
    def not_found(e):
        return jsonify({'error': 'Page not found.', 'kind': 'not_found'}), 404

    @app.errorhandler(500)
    def internal_error(e):
        app.logger.error(f"Unhandled error: {e}")
        return jsonify({'error': 'Server error. Please try again.', 'kind': 'error'}), 500

    # ── CLI Commands ──────────────────────────────────────────────
    register_commands(app)

    # ── ProxyFix for HTTPS termination at the load balancer ──
    from werkzeug.middleware.proxy_fix import ProxyFix
    app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1, x_prefix=1)

    return app


def register_commands(app):
    """Register custom Flask CLI commands."""

    @app.cli.command('init-db')
    def init_db():
        """Create all database tables (including the invoice-number unique index)."""
        db.create_all()
        click.echo('✅  Database tables created.')

    @app.cli.command('patch-db')
    def patch_db():
        """Add the per-owner invoice-number unique index to an existing database."""
        from sqlalchemy import text
        from invoiceflow.invoices.store import InvoiceStore

        db.create_all()
        click.echo("✅ Verified all tables.")

        duplicates = InvoiceStore().duplicate_numbers()
        if duplicates:
            click.echo("⚠️  Active duplicate invoice numbers found. Fix these first:")
            for owner_id, number, count in duplicates:
                click.echo(f"   owner {owner_id}: {number} × {count}")
            raise click.ClickException("Unique index not created.")

        # Partial indexes work on both PostgreSQL and SQLite
        db.session.execute(text(
            "CREATE UNIQUE INDEX IF NOT EXISTS uq_invoices_owner_number_active "
            "ON invoices (owner_id, invoice_number) WHERE deleted_at IS NULL"
        ))
        db.session.commit()
        click.echo("✅ Unique index uq_invoices_owner_number_active is in place.")

    @app.cli.command('check-duplicates')
    def check_duplicates():
        """List active invoice numbers used more than once by the same owner (diagnostic)."""
        from invoiceflow.invoices.store import InvoiceStore

        rows = InvoiceStore().duplicate_numbers()
        if not rows:
            click.echo('✅  No duplicate invoice numbers.')
            return
        click.echo(f'{"Owner":<8} {"Invoice number":<24} {"Count"}')
        click.echo('─' * 40)
        for owner_id, number, count in rows:
            click.echo(f'{owner_id:<8} {number:<24} {count}')

    @app.cli.command('next-invoice-number')
    @click.option('--username', required=True, help='Owner whose next number to show')
    def next_invoice_number(username):
        """Show the next invoice number a user would get (nothing is reserved)."""
        from invoiceflow.auth.models import User
        from invoiceflow.invoices.numbering import NumberAllocator
        from invoiceflow.invoices.store import InvoiceStore

        user = User.query.filter_by(username=username).first()
        if user is None:
            click.echo(f'⚠️  User "{username}" not found.')
            return
        allocator = NumberAllocator.from_config(InvoiceStore(), app.config)
        click.echo(allocator.allocate(user.id, allocator.period_key()))

    @app.cli.command('seed-user')
    @click.option('--name',     prompt='Full name',  help='Full name')
    @click.option('--username', prompt='Username',   help='Login name')
    @click.option('--password', prompt=True, hide_input=True,
                  confirmation_prompt=True, help='Password')
    def seed_user(name, username, password):
        """Create a user who can log in and own invoices."""
        from invoiceflow.auth.models import User

        if User.query.filter_by(username=username).first():
            click.echo(f'⚠️  User "{username}" already exists.')
            return

        user = User(name=name, username=username)
        user.set_password(password)
        db.session.add(user)
        db.session.commit()
        click.echo(f'✅  User "{username}" created successfully.')

    return app
