# backend/schoolbilling/__init__.py
from flask import Flask, jsonify

from .config import Config
from .errors import BillingError
from .extensions import db, migrate


def create_app(config_object=None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config_object or Config)

    app.logger.setLevel(app.config.get("LOG_LEVEL", "INFO"))

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # Whatever HTTP layer mounts the services gets domain errors as JSON
    @app.errorhandler(BillingError)
    def handle_billing_error(exc: BillingError):
        return jsonify({"error": exc.message, "details": exc.details}), exc.status_code

    return app
