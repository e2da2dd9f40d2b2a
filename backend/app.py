import os
from datetime import datetime, timedelta
from typing import Dict, Optional
from urllib.parse import quote_plus

import click
from dotenv import load_dotenv
from flask import Flask, jsonify, request
from flask_cors import CORS
from flask_jwt_extended import JWTManager, jwt_required
from pydantic import ValidationError

from .auth import (
    check_ownership,
    denial_response,
    issue_token,
    register_token_handlers,
    token_email,
)
from .checkout import build_checkout_plan, finalize_checkout, reconcile_checkouts
from .payments import PaymentProcessorError, StripeClient
from .schemas import (
    PaymentCreate,
    PaymentIntentCreate,
    ProductCreate,
    ProductUpdate,
    SelectionCreate,
    TokenRequest,
    UserCreate,
)
from .store import Store, parse_object_id, serialize_document

load_dotenv()

DEFAULT_DATABASE_NAME = "BuySellPointDB"


def build_mongo_uri() -> str:
    explicit_uri = (os.getenv("MONGO_URI") or "").strip()
    if explicit_uri:
        return explicit_uri

    db_user = (os.getenv("DBUSER") or "").strip()
    db_pass = (os.getenv("DBPASS") or "").strip()
    if db_user and db_pass:
        return (
            f"mongodb+srv://{quote_plus(db_user)}:{quote_plus(db_pass)}"
            f"@cluster0.vqc0wwo.mongodb.net/{db_user}"
            "?retryWrites=true&w=majority&appName=Cluster0"
        )

    return f"mongodb://localhost:27017/{DEFAULT_DATABASE_NAME}"


def create_app(
    config: Optional[Dict[str, object]] = None,
    store: Optional[Store] = None,
    processor: Optional[StripeClient] = None,
) -> Flask:
    """Create and configure the Flask application."""
    app = Flask(__name__)

    # --- Configuration ---
    app.config["JWT_SECRET_KEY"] = (
        os.getenv("ACCESS_TOKEN_SECRET")
        or os.getenv("JWT_SECRET_KEY")
        or "change-me-in-production"
    )
    app.config["JWT_ACCESS_TOKEN_EXPIRES"] = timedelta(hours=1)
    app.config["MONGO_URI"] = build_mongo_uri()
    app.config["MONGO_DBNAME"] = os.getenv("MONGO_DBNAME", DEFAULT_DATABASE_NAME)
    app.config["MONGO_MAX_POOL_SIZE"] = int(os.getenv("MONGO_MAX_POOL_SIZE", "10"))
    app.config["PAYMENT_SECRET_KEY"] = os.getenv("PAYMENT_SECRET_KEY", "")
    app.config["PAYMENT_API_BASE"] = os.getenv(
        "PAYMENT_API_BASE", "https://api.stripe.com"
    )
    app.config["PAYMENT_CURRENCY"] = os.getenv("PAYMENT_CURRENCY", "usd")
    app.config["CHECKOUT_RECOVERY_GRACE_SECONDS"] = int(
        os.getenv("CHECKOUT_RECOVERY_GRACE_SECONDS", "60")
    )
    if config:
        app.config.update(config)

    # --- Initialize extensions ---
    CORS(app)

    jwt_manager = JWTManager(app)
    register_token_handlers(jwt_manager)

    if store is None:
        store = Store.connect(app)
    if processor is None:
        processor = StripeClient(
            app.config["PAYMENT_SECRET_KEY"],
            api_base=app.config["PAYMENT_API_BASE"],
            currency=app.config["PAYMENT_CURRENCY"],
        )
    app.extensions["store"] = store
    app.extensions["payment_processor"] = processor

    # --- Helpers ---

    def error_response(message: str, status: int, **extra):
        return jsonify({"error": True, "message": message, **extra}), status

    def parse_payload(schema):
        payload = request.get_json(silent=True)
        if payload is None:
            payload = {}
        if not isinstance(payload, dict):
            return None, error_response("Request body must be a JSON object.", 400)

        try:
            return schema.model_validate(payload), None
        except ValidationError as exc:
            return None, error_response(
                "Invalid request body.",
                400,
                details=exc.errors(
                    include_url=False, include_context=False, include_input=False
                ),
            )

    def load_identifier(raw_identifier: str, label: str):
        object_id = parse_object_id(raw_identifier)
        if object_id is None:
            return None, error_response(f"Invalid {label} identifier.", 400)
        return object_id, None

    def serialize_insert(result):
        return {"acknowledged": result.acknowledged, "insertedId": str(result.inserted_id)}

    def serialize_update(result):
        return {
            "acknowledged": result.acknowledged,
            "matchedCount": result.matched_count,
            "modifiedCount": result.modified_count,
        }

    def serialize_delete(result):
        return {"acknowledged": result.acknowledged, "deletedCount": result.deleted_count}

    def user_has_role(user_document, role: str) -> bool:
        if not user_document:
            return False
        stored_role = user_document.get("role")
        if role == "user":
            return not stored_role or stored_role == "user"
        return stored_role == role

    def role_flag_response(role: str, email: str):
        decision = check_ownership(role, email)
        if not decision.allowed:
            return denial_response(role, decision)

        user_document = store.users.find_one({"email": email})
        return jsonify({role: user_has_role(user_document, role)})

    def set_user_role(user_id: str, role: str):
        object_id, id_error = load_identifier(user_id, "user")
        if id_error:
            return id_error

        result = store.users.update_one({"_id": object_id}, {"$set": {"role": role}})
        app.logger.info("User %s promoted to %s", user_id, role)
        return jsonify(serialize_update(result))

    # --- ROUTES ---

    @app.route("/")
    def server_status():
        return jsonify(
            {
                "message": "BuySellPoint Server is running smoothly",
                "timestamp": datetime.utcnow().isoformat() + "Z",
            }
        )

    @app.route("/health")
    def health():
        return {"status": "ok"}, 200

    # Tokens
    @app.route("/jwt", methods=["POST"])
    def create_token():
        body, body_error = parse_payload(TokenRequest)
        if body_error:
            return body_error

        token = issue_token(body.model_dump(by_alias=True, exclude_none=True))
        return jsonify({"token": token})

    # Users
    @app.route("/users", methods=["GET"])
    def list_users():
        return jsonify([serialize_document(user) for user in store.users.find()])

    @app.route("/users", methods=["POST"])
    def create_user():
        body, body_error = parse_payload(UserCreate)
        if body_error:
            return body_error

        if store.users.find_one({"email": body.email}):
            return jsonify({"message": "user already exists"})

        result = store.users.insert_one(body.to_document())
        app.logger.info("Registered user %s", body.email)
        return jsonify(serialize_insert(result))

    @app.route("/users/<user_id>", methods=["DELETE"])
    def delete_user(user_id: str):
        object_id, id_error = load_identifier(user_id, "user")
        if id_error:
            return id_error

        result = store.users.delete_one({"_id": object_id})
        return jsonify(serialize_delete(result))

    @app.route("/users/admin/<user_id>", methods=["PATCH"])
    def make_admin(user_id: str):
        return set_user_role(user_id, "admin")

    @app.route("/users/seller/<user_id>", methods=["PATCH"])
    def make_seller(user_id: str):
        return set_user_role(user_id, "seller")

    @app.route("/users/admin/<email>", methods=["GET"])
    @jwt_required()
    def get_admin_flag(email: str):
        return role_flag_response("admin", email)

    @app.route("/users/seller/<email>", methods=["GET"])
    @jwt_required()
    def get_seller_flag(email: str):
        return role_flag_response("seller", email)

    @app.route("/users/user/<email>", methods=["GET"])
    @jwt_required()
    def get_user_flag(email: str):
        return role_flag_response("user", email)

    # Products
    @app.route("/products", methods=["GET"])
    def list_products():
        return jsonify([serialize_document(product) for product in store.products.find()])

    @app.route("/products/<product_id>", methods=["GET"])
    def get_product(product_id: str):
        object_id, id_error = load_identifier(product_id, "product")
        if id_error:
            return id_error

        product_document = store.products.find_one({"_id": object_id})
        if not product_document:
            return error_response("Product not found.", 404)
        return jsonify(serialize_document(product_document))

    @app.route("/products", methods=["POST"])
    def create_product():
        body, body_error = parse_payload(ProductCreate)
        if body_error:
            return body_error

        result = store.products.insert_one(body.to_document())
        return jsonify(serialize_insert(result))

    @app.route("/products/<product_id>", methods=["PATCH"])
    def update_product(product_id: str):
        object_id, id_error = load_identifier(product_id, "product")
        if id_error:
            return id_error

        body, body_error = parse_payload(ProductUpdate)
        if body_error:
            return body_error

        updates = body.to_document()
        if not updates:
            return error_response("No fields to update.", 400)

        result = store.products.update_one({"_id": object_id}, {"$set": updates})
        if result.matched_count == 0:
            return error_response("Product not found.", 404)
        return jsonify(serialize_update(result))

    @app.route("/products/<product_id>", methods=["DELETE"])
    def delete_product(product_id: str):
        object_id, id_error = load_identifier(product_id, "product")
        if id_error:
            return id_error

        result = store.products.delete_one({"_id": object_id})
        return jsonify(serialize_delete(result))

    # Selected products (cart)
    @app.route("/selectedProduct", methods=["GET"])
    @jwt_required()
    def list_selections():
        email = request.args.get("email")
        if not email:
            return jsonify([])

        decision = check_ownership("selections", email)
        if not decision.allowed:
            return denial_response("selections", decision)

        selections = store.selections.find({"email": email})
        return jsonify([serialize_document(selection) for selection in selections])

    @app.route("/selectedProduct", methods=["POST"])
    def create_selection():
        body, body_error = parse_payload(SelectionCreate)
        if body_error:
            return body_error

        result = store.selections.insert_one(body.to_document())
        return jsonify(serialize_insert(result))

    @app.route("/selectedProduct/<selection_id>", methods=["DELETE"])
    def delete_selection(selection_id: str):
        object_id, id_error = load_identifier(selection_id, "cart item")
        if id_error:
            return id_error

        result = store.selections.delete_one({"_id": object_id})
        return jsonify(serialize_delete(result))

    # Payments
    @app.route("/create-payment-intent", methods=["POST"])
    @jwt_required()
    def create_payment_intent():
        body, body_error = parse_payload(PaymentIntentCreate)
        if body_error:
            return body_error

        try:
            client_secret = processor.create_payment_intent(body.price)
        except PaymentProcessorError as exc:
            app.logger.error("Payment intent failed for %s: %s", token_email(), exc)
            return error_response("Payment processor request failed.", 502)

        return jsonify({"clientSecret": client_secret})

    @app.route("/payments", methods=["GET"])
    def list_payments():
        email = request.args.get("email")
        if not email:
            return jsonify([])

        cursor = store.payments.find({"email": email}).sort("_id", -1)
        return jsonify([serialize_document(payment) for payment in cursor])

    @app.route("/payments", methods=["POST"])
    @jwt_required()
    def create_payment():
        body, body_error = parse_payload(PaymentCreate)
        if body_error:
            return body_error

        plan, plan_error = build_checkout_plan(store, body, app.logger)
        if plan_error:
            return error_response(plan_error, 400)

        summary = finalize_checkout(store, plan)
        app.logger.info(
            "Recorded payment %s (%s) for %s",
            summary["insertedId"],
            body.transaction_id,
            body.email,
        )

        return jsonify(
            {
                "result": {"acknowledged": True, "insertedId": str(summary["insertedId"])},
                "deleteResult": {"deletedCount": summary["deletedCount"]},
                "updateResult": {"modifiedCount": summary["modifiedCount"]},
            }
        )

    # --- Maintenance ---

    @app.cli.command("reconcile-checkouts")
    def reconcile_checkouts_command():
        """Roll forward checkouts left pending by an interrupted payment."""
        recovered = reconcile_checkouts(
            store, app.config["CHECKOUT_RECOVERY_GRACE_SECONDS"], app.logger
        )
        click.echo(f"Recovered {recovered} pending checkout(s).")

    return app


if __name__ == "__main__":
    app = create_app()
    reconcile_checkouts(
        app.extensions["store"],
        app.config["CHECKOUT_RECOVERY_GRACE_SECONDS"],
        app.logger,
    )
    port = int(os.environ.get("PORT", 5000))
    try:
        app.run(host="0.0.0.0", port=port)
    finally:
        app.extensions["store"].close()
