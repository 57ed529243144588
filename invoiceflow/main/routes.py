"""
invoiceflow/main/routes.py
──────────────────────────
Health check for load balancers and monitoring.
"""
from datetime import datetime

from flask import current_app, jsonify
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from invoiceflow import db
from invoiceflow.main import main


@main.route("/health")
def health():
    status = "ok"
    failures = []

    try:
        db.session.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        db.session.rollback()
        status = "error"
        failures.append(f"DB: {e}")
        current_app.logger.error(f"Health check failed (DB): {e}")

    return jsonify({
        "status": status,
        "failures": failures,
        "time": datetime.now().isoformat(timespec="seconds"),
    }), (200 if status == "ok" else 503)
