import os
from datetime import timedelta
from typing import Dict, Optional

import click
import stripe
from dotenv import load_dotenv
from flask import Flask, g, jsonify, request
from flask_cors import CORS
from flask_jwt_extended import JWTManager, jwt_required
from flask_pymongo import PyMongo
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix

from accounts import AccountStore, attach_current_user
from catalog import CatalogStore, parse_line_items
from errors import InternalError, StoreError, ValidationError
from mailer import MailOutbox, Mailer
from payments import StripeCheckout, price_line_items
from purchases import PurchaseOrchestrator, serialize_transaction

load_dotenv()


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except (TypeError, ValueError):
        return default


def create_app(test_config: Optional[Dict] = None, database=None, stripe_client=None) -> Flask:
    """Create and configure the Flask application.

    ``database`` replaces the Flask-PyMongo handle and ``stripe_client`` the
    Stripe SDK module; both exist so tests can inject fakes.
    """
    app = Flask(__name__)

    trusted_proxy_hops = max(0, _env_int("TRUSTED_PROXY_HOPS", 1))
    if trusted_proxy_hops:
        app.wsgi_app = ProxyFix(
            app.wsgi_app,
            x_for=trusted_proxy_hops,
            x_proto=trusted_proxy_hops,
            x_host=trusted_proxy_hops,
            x_port=trusted_proxy_hops,
        )

    # --- Configuration ---
    app.config["JWT_SECRET_KEY"] = os.getenv("JWT_SECRET_KEY", "change-me-in-production")
    app.config["JWT_ACCESS_TOKEN_EXPIRES"] = timedelta(hours=1)
    app.config["MONGO_URI"] = (
        os.getenv("MONGO_URI")
        or os.getenv("MONGODB_URI")
        or "mongodb://localhost:27017/gadgetstore"
    )
    app.config["RESEND_API_KEY"] = (os.getenv("RESEND_API_KEY") or "").strip()
    app.config["MAIL_SENDER"] = (
        os.getenv("MAIL_SENDER", "Gadget Store <orders@gadgetstore.dev>")
        or "Gadget Store <orders@gadgetstore.dev>"
    )
    app.config["MAIL_MAX_ATTEMPTS"] = _env_int("MAIL_MAX_ATTEMPTS", 5)
    app.config["STRIPE_SECRET_KEY"] = (os.getenv("STRIPE_SECRET_KEY") or "").strip()
    app.config["PAYMENTS_CURRENCY"] = (os.getenv("PAYMENTS_CURRENCY") or "brl").strip().lower()
    app.config["PAYMENTS_TIMEOUT_SECONDS"] = _env_int("PAYMENTS_TIMEOUT_SECONDS", 15)
    app.config["CLIENT_URL"] = (
        os.getenv("CLIENT_URL") or os.getenv("REACT_APP_URL") or "http://localhost:3000"
    ).strip()
    app.config["PURCHASE_INTENT_TIMEOUT_MINUTES"] = _env_int(
        "PURCHASE_INTENT_TIMEOUT_MINUTES", 10
    )
    if test_config:
        app.config.update(test_config)

    # --- Initialize extensions ---
    allowed_origins = [app.config["CLIENT_URL"]]
    cors_extra = os.getenv("CORS_ALLOWED_ORIGINS", "")
    if cors_extra:
        for origin in cors_extra.split(","):
            trimmed = origin.strip()
            if trimmed:
                allowed_origins.append(trimmed)
    allowed_origins = [origin for origin in allowed_origins if origin]

    CORS(app, supports_credentials=True, origins=allowed_origins or "*")

    JWTManager(app)
    if database is None:
        database = PyMongo(app).db
    db = database

    try:
        db.users.create_index("email", unique=True)
        db.purchase_intents.create_index([("status", 1), ("created_at", 1)])
        db.mail_outbox.create_index([("status", 1), ("updated_at", 1)])
        db.transactions.create_index([("buyer_id", 1), ("timestamp", -1)])
    except Exception as exc:
        app.logger.warning("Unable to ensure indexes: %s", exc)

    if stripe_client is None:
        stripe.default_http_client = stripe.RequestsClient(
            timeout=app.config["PAYMENTS_TIMEOUT_SECONDS"]
        )
        stripe_client = stripe

    catalog = CatalogStore(db, app.logger)
    accounts = AccountStore(db, app.logger)
    mailer = Mailer(app.config["RESEND_API_KEY"], app.config["MAIL_SENDER"], app.logger)
    outbox = MailOutbox(db, mailer, app.logger, app.config["MAIL_MAX_ATTEMPTS"])
    checkout = StripeCheckout(
        app.config["STRIPE_SECRET_KEY"],
        app.config["CLIENT_URL"],
        app.logger,
        stripe_client=stripe_client,
    )
    purchases = PurchaseOrchestrator(db, catalog, accounts, outbox, app.logger)
    current_user_required = attach_current_user(accounts)

    app.extensions["gadget_store"] = {
        "db": db,
        "catalog": catalog,
        "accounts": accounts,
        "mailer": mailer,
        "outbox": outbox,
        "checkout": checkout,
        "purchases": purchases,
    }

    # --- Error handling ---

    @app.errorhandler(StoreError)
    def handle_store_error(error: StoreError):
        return jsonify(error.to_payload()), error.status_code

    @app.errorhandler(Exception)
    def handle_unexpected_error(error: Exception):
        if isinstance(error, HTTPException):
            return error
        app.logger.exception("Unhandled error on %s %s", request.method, request.path)
        internal = InternalError()
        return jsonify(internal.to_payload()), internal.status_code

    # --- ROUTES ---

    @app.route("/health")
    def health():
        return {"status": "ok"}, 200

    @app.route("/create-checkout-session", methods=["POST"])
    @jwt_required()
    @current_user_required
    def create_checkout_session():
        payload = request.get_json(silent=True) or {}
        if not isinstance(payload, dict):
            raise ValidationError("Request body must be a JSON object.")
        line_items = parse_line_items(payload.get("products"))

        priced_items = price_line_items(catalog, line_items, app.config["PAYMENTS_CURRENCY"])
        session = checkout.create_session(priced_items)

        purchases.record_audit_log(
            g.current_user.get("email"),
            "Created checkout session",
            {"session_id": session["id"], "items": len(priced_items)},
        )
        return jsonify({"id": session["id"]}), 201

    @app.route("/transaction", methods=["POST"])
    @jwt_required()
    @current_user_required
    def create_transaction():
        payload = request.get_json(silent=True) or {}
        if not isinstance(payload, dict):
            raise ValidationError("Request body must be a JSON object.")
        line_items = parse_line_items(payload.get("products"))
        buyer = purchases.resolve_buyer(g.current_user, payload.get("buyerId"))

        transaction_document, email_response = purchases.submit(buyer, line_items)
        return (
            jsonify(
                {
                    "result": serialize_transaction(transaction_document),
                    "emailResponse": email_response,
                }
            ),
            201,
        )

    @app.route("/transaction/<transaction_id>", methods=["GET"])
    def get_transaction(transaction_id: str):
        return jsonify(purchases.get_transaction(transaction_id))

    @app.route("/transactions", methods=["GET"])
    @jwt_required()
    @current_user_required
    def list_transactions():
        return jsonify({"transactions": purchases.list_transactions(g.current_user)})

    # --- CLI ---

    @app.cli.command("seed-catalog")
    def seed_catalog_command():
        """Insert demo products and accounts into an empty database."""
        product_ids = catalog.ensure_seed_products()
        user_ids = accounts.ensure_seed_users()
        click.echo(f"Seeded {len(product_ids)} products and {len(user_ids)} users.")

    @app.cli.command("deliver-mail")
    @click.option("--limit", default=50, show_default=True, help="Maximum emails to attempt.")
    def deliver_mail_command(limit: int):
        """Retry confirmation emails still waiting in the outbox."""
        outcomes = outbox.deliver_pending(limit)
        sent = sum(1 for outcome in outcomes if outcome.get("sent"))
        click.echo(f"Delivered {sent} of {len(outcomes)} queued emails.")

    @app.cli.command("recover-purchases")
    @click.option(
        "--older-than",
        "older_than_minutes",
        type=int,
        default=None,
        help="Only roll back intents pending for at least this many minutes.",
    )
    def recover_purchases_command(older_than_minutes: Optional[int]):
        """Roll back purchases interrupted before they were committed."""
        if older_than_minutes is None:
            older_than_minutes = app.config["PURCHASE_INTENT_TIMEOUT_MINUTES"]
        recovered = purchases.recover_stale(timedelta(minutes=older_than_minutes))
        click.echo(f"Rolled back {len(recovered)} stale purchase intents.")

    return app
