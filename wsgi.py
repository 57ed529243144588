from invoiceflow import create_app, db
import os

config_name = os.environ.get('FLASK_ENV', 'production')
app = create_app(config_name)

# Tables (and the invoice-number unique index) must exist before the first request
with app.app_context():
    db.create_all()

if __name__ == "__main__":
    app.run()
