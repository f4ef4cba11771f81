import logging
import os
from datetime import timedelta
from typing import Dict, Optional

from bson import ObjectId
from bson.errors import InvalidId
from dotenv import load_dotenv
from flask import Flask, jsonify, request
from flask_cors import CORS
from flask_jwt_extended import JWTManager, get_jwt_identity, jwt_required
from flask_pymongo import PyMongo
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix

from . import customers, orders
from .errors import ApiError, NotFoundError, UnauthorizedError
from .sanitize import nest_query_params
from .visibility import RequestContext, normalize_email

DEFAULT_MONGO_URI = "mongodb://localhost:27017/limeorders"


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except (TypeError, ValueError):
        return default


def create_app(test_config: Optional[Dict] = None, db=None) -> Flask:
    """Create and configure the Flask application.

    ``test_config`` overrides values read from the environment. When ``db``
    is given it is used instead of connecting to ``MONGO_URI``.
    """
    load_dotenv()
    app = Flask(__name__)

    # Honor proxy headers so request URLs keep the public origin.
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
    app.config["JWT_SECRET_KEY"] = os.getenv(
        "JWT_SECRET_KEY", "change-me-in-production"
    )
    app.config["JWT_ACCESS_TOKEN_EXPIRES"] = timedelta(
        hours=_env_int("JWT_ACCESS_TOKEN_HOURS", 1)
    )
    app.config["MONGO_URI"] = os.getenv("MONGO_URI", DEFAULT_MONGO_URI)
    app.config["MAX_CONTENT_LENGTH"] = _env_int("MAX_CONTENT_LENGTH_MB", 1) * 1024 * 1024
    app.config["DEFAULT_ADMIN_EMAIL"] = normalize_email(os.getenv("DEFAULT_ADMIN_EMAIL"))
    app.config["LOG_LEVEL"] = (os.getenv("LOG_LEVEL") or "INFO").strip().upper()
    if test_config:
        app.config.update(test_config)

    app.logger.setLevel(getattr(logging, app.config["LOG_LEVEL"], logging.INFO))

    # --- Initialize extensions ---
    allowed_origins = [
        "http://localhost:5173",
        "http://localhost:3000",
        os.getenv("FRONTEND_URL", "").strip(),
    ]
    cors_extra = os.getenv("CORS_ALLOWED_ORIGINS", "")
    if cors_extra:
        for origin in cors_extra.split(","):
            trimmed = origin.strip()
            if trimmed:
                allowed_origins.append(trimmed)
    allowed_origins = [origin for origin in allowed_origins if origin]

    CORS(app, supports_credentials=True, origins=allowed_origins)

    jwt_manager = JWTManager(app)
    if db is None:
        mongo = PyMongo(app)
        db = mongo.db

    # --- Helpers ---

    def current_context() -> RequestContext:
        identity = get_jwt_identity()
        try:
            user_id = ObjectId(str(identity))
        except (InvalidId, TypeError):
            raise NotFoundError(customers.CUSTOMER_NOT_FOUND)
        user_document = db.users.find_one({"_id": user_id}, customers.CUSTOMER_PROJECTION)
        if not user_document:
            raise NotFoundError(customers.CUSTOMER_NOT_FOUND)
        return RequestContext.from_user(
            user_document, default_admin_email=app.config["DEFAULT_ADMIN_EMAIL"]
        )

    def query_params() -> Dict:
        return nest_query_params(request.args)

    def json_body():
        return request.get_json(silent=True)

    # --- Error handlers ---

    @app.errorhandler(ApiError)
    def handle_api_error(error: ApiError):
        return jsonify(error.to_dict()), error.status_code

    def unauthorized(message: str):
        error = UnauthorizedError(message)
        return jsonify(error.to_dict()), error.status_code

    @jwt_manager.unauthorized_loader
    def handle_missing_token(reason: str):
        return unauthorized("Missing authorization token.")

    @jwt_manager.expired_token_loader
    def handle_expired_token(jwt_header, jwt_payload):
        return unauthorized("Token has expired.")

    @jwt_manager.invalid_token_loader
    def handle_invalid_token(reason: str):
        app.logger.info("Rejected access token: %s", reason)
        return unauthorized("Invalid token.")

    @app.errorhandler(HTTPException)
    def handle_http_error(error: HTTPException):
        return (
            jsonify({"error": error.name.replace(" ", ""), "message": error.description}),
            error.code,
        )

    @app.errorhandler(Exception)
    def handle_unexpected_error(error: Exception):
        app.logger.exception(
            "Unhandled error while processing %s %s", request.method, request.path
        )
        return (
            jsonify(
                {
                    "error": "InternalServerError",
                    "message": "Something went wrong. Please try again later.",
                }
            ),
            500,
        )

    # --- Customer Routes ---

    @app.route("/api/customers", methods=["GET"])
    @jwt_required()
    def list_customers():
        page = customers.list_customers(db, current_context(), query_params())
        return jsonify(page.to_dict("customers"))

    @app.route("/api/customers/me", methods=["GET"])
    @jwt_required()
    def get_own_customer():
        context = current_context()
        return jsonify(customers.get_customer(db, context, context.user_id))

    @app.route("/api/customers/me", methods=["PATCH"])
    @jwt_required()
    def update_own_customer():
        context = current_context()
        return jsonify(
            customers.update_customer(
                db,
                context,
                context.user_id,
                json_body(),
                default_admin_email=app.config["DEFAULT_ADMIN_EMAIL"],
            )
        )

    @app.route("/api/customers/<customer_id>", methods=["GET"])
    @jwt_required()
    def get_customer(customer_id: str):
        return jsonify(customers.get_customer(db, current_context(), customer_id))

    @app.route("/api/customers/<customer_id>", methods=["PATCH"])
    @jwt_required()
    def update_customer(customer_id: str):
        return jsonify(
            customers.update_customer(
                db,
                current_context(),
                customer_id,
                json_body(),
                default_admin_email=app.config["DEFAULT_ADMIN_EMAIL"],
            )
        )

    @app.route("/api/customers/<customer_id>", methods=["DELETE"])
    @jwt_required()
    def delete_customer(customer_id: str):
        return jsonify(customers.delete_customer(db, current_context(), customer_id))

    # --- Order Routes ---

    @app.route("/api/orders", methods=["GET"])
    @jwt_required()
    def list_orders():
        page = orders.list_orders(db, current_context(), query_params())
        return jsonify(page.to_dict("orders"))

    @app.route("/api/orders/me", methods=["GET"])
    @jwt_required()
    def list_my_orders():
        page = orders.list_my_orders(db, current_context(), query_params())
        return jsonify(page.to_dict("orders"))

    @app.route("/api/orders/me/<order_number>", methods=["GET"])
    @jwt_required()
    def get_my_order(order_number: str):
        return jsonify(
            orders.get_order(db, current_context(), order_number, owner_only=True)
        )

    @app.route("/api/orders/<order_number>", methods=["GET"])
    @jwt_required()
    def get_order(order_number: str):
        return jsonify(orders.get_order(db, current_context(), order_number))

    @app.route("/api/orders", methods=["POST"])
    @jwt_required()
    def create_order():
        return jsonify(orders.create_order(db, current_context(), json_body())), 201

    @app.route("/api/orders/<order_number>", methods=["PATCH"])
    @jwt_required()
    def update_order_status(order_number: str):
        return jsonify(
            orders.update_order_status(db, current_context(), order_number, json_body())
        )

    @app.route("/api/orders/<order_id>", methods=["DELETE"])
    @jwt_required()
    def delete_order(order_id: str):
        return jsonify(orders.delete_order(db, current_context(), order_id))

    @app.route("/health")
    def health():
        return {"status": "ok"}, 200

    return app


if __name__ == "__main__":
    app = create_app()
    port = _env_int("PORT", 5000)
    app.run(host="0.0.0.0", port=port)
