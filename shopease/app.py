import math
import os
from datetime import datetime, timedelta
from typing import Dict, Optional

import bcrypt
from dotenv import load_dotenv
from flask import Flask, jsonify, request
from flask_cors import CORS
from flask_jwt_extended import JWTManager
from flask_pymongo import PyMongo
from pymongo.errors import PyMongoError
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix

from shopease.errors import (
    ApiError,
    Forbidden,
    InvalidToken,
    NotFound,
    ServerError,
    Unauthorized,
    ValidationError,
)
from shopease.orders import (
    MAX_AMOUNT,
    OrderCoordinator,
    parse_quantity,
    safe_float,
    safe_positive_int,
)
from shopease.payments import DEFAULT_STRIPE_API_BASE, StripeClient
from shopease.storage import Storage, normalize_email, serialize_document, to_object_id
from shopease.tokens import (
    ADMIN_ROLE,
    CUSTOMER_ROLE,
    current_claims,
    is_admin,
    issue_token,
    normalize_role,
    require_own_email,
    token_required,
)

load_dotenv()

PRODUCT_FIELDS = ("name", "category", "price", "description", "image", "brand", "stock", "rating")


def build_config() -> Dict[str, object]:
    return {
        "JWT_SECRET_KEY": os.getenv("JWT_SECRET_KEY")
        or os.getenv("JWT_SECRET")
        or "change-me-in-production",
        "JWT_ACCESS_TOKEN_EXPIRES": timedelta(days=7),
        "MONGO_URI": os.getenv("MONGO_URI", "mongodb://localhost:27017/shopeEase"),
        "MONGO_DB_NAME": os.getenv("MONGO_DB_NAME", "shopeEase"),
        "STRIPE_SECRET_KEY": os.getenv("STRIPE_SECRET_KEY", ""),
        "STRIPE_API_BASE": os.getenv("STRIPE_API_BASE", DEFAULT_STRIPE_API_BASE),
        "PAYMENT_CURRENCY": os.getenv("PAYMENT_CURRENCY", "usd"),
        "PAYMENT_TIMEOUT_SECONDS": float(os.getenv("PAYMENT_TIMEOUT_SECONDS", "10")),
        "PRODUCTS_PAGE_SIZE": int(os.getenv("PRODUCTS_PAGE_SIZE", "12")),
        "POPULAR_PRODUCTS_LIMIT": int(os.getenv("POPULAR_PRODUCTS_LIMIT", "8")),
        "DEFAULT_ADMIN_EMAIL": normalize_email(os.getenv("DEFAULT_ADMIN_EMAIL", "")),
        "CORS_ALLOWED_ORIGINS": os.getenv("CORS_ALLOWED_ORIGINS", ""),
        "TRUSTED_PROXY_HOPS": os.getenv("TRUSTED_PROXY_HOPS", "1"),
        "LOG_LEVEL": os.getenv("LOG_LEVEL", "INFO").upper(),
    }


MAX_PAGE_SIZE = 100
MAX_PAGE_NUMBER = 100000


def parse_page_number(value, default: int, maximum: int) -> int:
    parsed = safe_positive_int(value, 0)
    if parsed < 1:
        return default
    if parsed > maximum:
        raise ValidationError(f"Page values must not exceed {maximum}.")
    return parsed


def create_app(test_config: Optional[Dict] = None, db=None, payment_client=None) -> Flask:
    """Create and configure the Flask application."""
    app = Flask(__name__)
    app.config.update(build_config())
    if test_config:
        app.config.update(test_config)

    app.logger.setLevel(app.config["LOG_LEVEL"])

    # Honor proxy headers so request.remote_addr reflects the client.
    try:
        trusted_proxy_hops = max(0, int(app.config["TRUSTED_PROXY_HOPS"]))
    except (TypeError, ValueError):
        trusted_proxy_hops = 1
    if trusted_proxy_hops:
        app.wsgi_app = ProxyFix(
            app.wsgi_app,
            x_for=trusted_proxy_hops,
            x_proto=trusted_proxy_hops,
            x_host=trusted_proxy_hops,
            x_port=trusted_proxy_hops,
        )

    allowed_origins = [
        origin.strip()
        for origin in str(app.config["CORS_ALLOWED_ORIGINS"] or "").split(",")
        if origin.strip()
    ]
    CORS(app, supports_credentials=True, origins=allowed_origins or "*")

    jwt = JWTManager(app)

    @jwt.unauthorized_loader
    def missing_token(reason: str):
        failure = Unauthorized()
        return jsonify(failure.to_dict()), failure.status_code

    @jwt.invalid_token_loader
    def invalid_token(reason: str):
        app.logger.warning("Rejected token: %s", reason)
        failure = InvalidToken()
        return jsonify(failure.to_dict()), failure.status_code

    @jwt.expired_token_loader
    def expired_token(jwt_header, jwt_payload):
        failure = InvalidToken()
        return jsonify(failure.to_dict()), failure.status_code

    if db is None:
        mongo = PyMongo(app)
        db = mongo.db if mongo.db is not None else mongo.cx[app.config["MONGO_DB_NAME"]]

    storage = Storage(db, logger=app.logger)
    storage.ensure_indexes()

    if payment_client is None:
        payment_client = StripeClient(
            app.config["STRIPE_SECRET_KEY"],
            api_base=app.config["STRIPE_API_BASE"],
            currency=app.config["PAYMENT_CURRENCY"],
            timeout=app.config["PAYMENT_TIMEOUT_SECONDS"],
            logger=app.logger,
        )

    coordinator = OrderCoordinator(storage, payment_client, app.logger)
    app.extensions["shopease"] = {
        "storage": storage,
        "payments": payment_client,
        "orders": coordinator,
    }

    # --- Helpers ---

    def json_payload() -> Dict:
        payload = request.get_json(silent=True)
        return payload if isinstance(payload, dict) else {}

    def serialize_user(user_document):
        serialized = serialize_document(user_document) or {}
        serialized.pop("password", None)
        serialized["role"] = normalize_role(serialized.get("role"))
        return serialized

    def serialize_many(documents):
        return [serialize_document(document) for document in documents]

    def ensure_order_access(order_document):
        claims = current_claims()
        if is_admin(claims):
            return
        if normalize_email(order_document.get("customer_email")) != claims.get("email"):
            raise Forbidden("Forbidden access")

    def parse_product_fields(payload: Dict, partial: bool = False) -> Dict:
        fields = {key: payload[key] for key in PRODUCT_FIELDS if key in payload}

        if not partial and not str(fields.get("name") or "").strip():
            raise ValidationError("A product name is required.")
        if "name" in fields:
            fields["name"] = str(fields["name"]).strip()
            if not fields["name"]:
                raise ValidationError("A product name is required.")
        if "category" in fields:
            fields["category"] = str(fields["category"] or "").strip()

        if "price" in fields or not partial:
            price_value = safe_float(fields.get("price"))
            if price_value is None:
                raise ValidationError("Price must be a valid number.")
            if price_value <= 0:
                raise ValidationError("Price must be greater than zero.")
            if price_value > MAX_AMOUNT:
                raise ValidationError("Price is too large.")
            fields["price"] = round(price_value, 2)

        if "stock" in fields:
            fields["stock"] = safe_positive_int(fields["stock"], 0)
            if fields["stock"] > MAX_AMOUNT:
                raise ValidationError("Stock is too large.")
        return fields

    # --- Error handlers ---

    @app.errorhandler(ApiError)
    def handle_api_error(error: ApiError):
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(PyMongoError)
    def handle_storage_error(error: PyMongoError):
        app.logger.exception("Storage failure: %s", error)
        failure = ServerError()
        return jsonify(failure.to_dict()), failure.status_code

    @app.errorhandler(Exception)
    def handle_unexpected_error(error: Exception):
        if isinstance(error, HTTPException):
            return jsonify({"message": error.description}), error.code
        app.logger.exception("Unhandled error: %s", error)
        failure = ServerError()
        return jsonify(failure.to_dict()), failure.status_code

    # --- ROUTES ---

    @app.route("/")
    def index():
        return "Welcome to shopeEase server"

    @app.route("/health")
    def health():
        return {"status": "ok"}, 200

    # Auth
    @app.route("/auth/register", methods=["POST"])
    @app.route("/users", methods=["POST"])
    def register():
        payload = json_payload()
        email = normalize_email(payload.get("email"))
        if not email:
            raise ValidationError("Email is required to create an account.")

        if storage.find_user_by_email(email):
            return jsonify({"message": "user already exist", "inserted": False}), 200

        password = str(payload.get("password") or "")
        if not password:
            raise ValidationError("A password is required to create an account.")

        default_admin = app.config["DEFAULT_ADMIN_EMAIL"]
        user_document = {
            "email": email,
            "name": str(payload.get("name") or "").strip(),
            "photoURL": str(payload.get("photoURL") or "").strip(),
            "role": ADMIN_ROLE if default_admin and email == default_admin else CUSTOMER_ROLE,
            "password": bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()),
            "createdAt": datetime.utcnow(),
        }

        inserted_id = storage.insert_user(user_document)
        app.logger.info("Registered new account %s", email)

        return (
            jsonify(
                {
                    "message": "User inserted successfully",
                    "inserted": True,
                    "insertedId": str(inserted_id),
                }
            ),
            201,
        )

    @app.route("/auth/login", methods=["POST"])
    def login():
        payload = json_payload()
        email = normalize_email(payload.get("email"))
        password = str(payload.get("password") or "")
        if not email:
            raise ValidationError("Email is required.")

        user = storage.find_user_by_email(email)
        if not user:
            app.logger.warning("Login rejected for unknown account %s", email)
            return jsonify({"message": "Unauthorized"}), 401

        stored_hash = user.get("password")
        if isinstance(stored_hash, str):
            stored_hash = stored_hash.encode("utf-8")
        if not (
            password
            and stored_hash
            and bcrypt.checkpw(password.encode("utf-8"), stored_hash)
        ):
            app.logger.warning("Login rejected for %s: invalid credentials", email)
            return jsonify({"message": "Invalid credentials"}), 401

        storage.touch_user_login(user["_id"])
        token = issue_token(user)
        return jsonify({"token": token, "user": serialize_user(user)})

    # Users
    @app.route("/users/role", methods=["GET"])
    @token_required()
    def get_user_role():
        email = normalize_email(request.args.get("email"))
        require_own_email(email, allow_admin=False)

        user = storage.find_user_by_email(email)
        if not user:
            raise NotFound("User not found")
        return jsonify({"role": normalize_role(user.get("role"))})

    # Admin
    @app.route("/admin/stats", methods=["GET"])
    @token_required(ADMIN_ROLE)
    def admin_stats():
        counts = storage.counts()
        return jsonify(
            {
                "totalUsers": counts["users"],
                "totalProducts": counts["products"],
                "totalOrders": counts["orders"],
                "totalPayments": counts["payments"],
                "totalRevenue": storage.revenue(),
                "monthlyOrders": storage.monthly_order_counts(),
            }
        )

    @app.route("/admin/users", methods=["GET"])
    @token_required(ADMIN_ROLE)
    def admin_list_users():
        return jsonify([serialize_user(user) for user in storage.list_users()])

    # Products
    @app.route("/products", methods=["POST"])
    @token_required(ADMIN_ROLE)
    def create_product():
        fields = parse_product_fields(json_payload())
        fields.update(
            {
                "orderCount": 0,
                "createdAt": datetime.utcnow(),
                "createdBy": current_claims().get("email"),
            }
        )
        inserted_id = storage.insert_product(fields)
        app.logger.info("Product %s created by %s", inserted_id, fields["createdBy"])
        return jsonify({"insertedId": str(inserted_id)}), 201

    @app.route("/product", methods=["GET"])
    def list_all_products():
        return jsonify(serialize_many(storage.all_products()))

    @app.route("/product/<product_id>", methods=["GET"])
    @token_required()
    def get_product(product_id: str):
        product_document = storage.find_product(product_id)
        if not product_document:
            raise NotFound("Product not found")
        return jsonify(serialize_document(product_document))

    @app.route("/products/<product_id>", methods=["DELETE"])
    @token_required(ADMIN_ROLE)
    def delete_product(product_id: str):
        if not storage.delete_product(product_id):
            raise NotFound("Product not found")
        app.logger.info("Product %s deleted by %s", product_id, current_claims().get("email"))
        return jsonify({"deletedCount": 1})

    @app.route("/products/<product_id>", methods=["PATCH"])
    def update_product(product_id: str):
        fields = parse_product_fields(json_payload(), partial=True)
        if not fields:
            raise ValidationError("No updatable product fields supplied.")

        product_document = storage.update_product(product_id, fields)
        if not product_document:
            raise NotFound("Product not found")
        return jsonify(serialize_document(product_document))

    @app.route("/products", methods=["GET"])
    def list_products():
        page = parse_page_number(request.args.get("page"), 1, MAX_PAGE_NUMBER)
        limit = parse_page_number(
            request.args.get("limit"), app.config["PRODUCTS_PAGE_SIZE"], MAX_PAGE_SIZE
        )

        products, total = storage.list_products(
            category=request.args.get("category"),
            search=request.args.get("search"),
            page=page,
            limit=limit,
        )
        return jsonify(
            {
                "products": serialize_many(products),
                "total": total,
                "page": page,
                "totalPages": math.ceil(total / limit),
            }
        )

    @app.route("/popular-products", methods=["GET"])
    def popular_products():
        products = storage.popular_products(app.config["POPULAR_PRODUCTS_LIMIT"])
        return jsonify(serialize_many(products))

    # Cart
    @app.route("/cart", methods=["POST"])
    @app.route("/cartProduct", methods=["POST"])
    def add_to_cart():
        payload = json_payload()
        product_id = str(payload.get("productId") or "").strip()
        to_object_id(product_id, "product identifier")
        user_email = normalize_email(payload.get("userEmail") or payload.get("email"))
        if not user_email:
            raise ValidationError("userEmail is required.")

        item_document = {
            "userEmail": user_email,
            "productId": product_id,
            "quantity": parse_quantity(payload.get("quantity")),
            "addedAt": datetime.utcnow(),
        }
        for key in ("name", "price", "image", "category"):
            if key in payload:
                item_document[key] = payload[key]

        inserted_id = storage.insert_cart_item(item_document)
        return jsonify({"insertedId": str(inserted_id)}), 201

    @app.route("/cart", methods=["GET"])
    @token_required()
    def get_cart():
        email = normalize_email(request.args.get("email"))
        require_own_email(email)
        return jsonify(serialize_many(storage.cart_for(email)))

    @app.route("/cart/<item_id>", methods=["DELETE"])
    @token_required()
    def remove_cart_item(item_id: str):
        item_document = storage.find_cart_item(item_id)
        if not item_document:
            raise NotFound("Cart item not found")
        require_own_email(item_document.get("userEmail"))

        storage.delete_cart_item(item_document["_id"])
        return jsonify({"deletedCount": 1})

    # Orders
    @app.route("/order", methods=["POST"])
    def create_order():
        order_document = coordinator.create_order(json_payload())
        return (
            jsonify(
                {
                    "insertedId": str(order_document["_id"]),
                    "order": serialize_document(order_document),
                }
            ),
            201,
        )

    @app.route("/order/<order_id>", methods=["GET"])
    @token_required()
    def get_order(order_id: str):
        order_document = coordinator.get_order(order_id)
        ensure_order_access(order_document)
        return jsonify(serialize_document(order_document))

    @app.route("/order", methods=["GET"])
    @token_required()
    def list_user_orders():
        email = normalize_email(request.args.get("email"))
        require_own_email(email)
        return jsonify(serialize_many(coordinator.orders_for(email)))

    @app.route("/orders", methods=["GET"])
    @token_required(ADMIN_ROLE)
    def list_all_orders():
        return jsonify(serialize_many(coordinator.all_orders()))

    @app.route("/order/<order_id>", methods=["DELETE"])
    @token_required()
    def cancel_order(order_id: str):
        ensure_order_access(coordinator.get_order(order_id))
        coordinator.cancel_order(order_id)
        return jsonify({"message": "Order cancelled", "deletedCount": 1})

    @app.route("/order/confirm/<order_id>", methods=["PATCH"])
    @token_required()
    def confirm_order(order_id: str):
        ensure_order_access(coordinator.get_order(order_id))
        order_document = coordinator.confirm_delivery(order_id)
        return jsonify(serialize_document(order_document))

    # Payments
    @app.route("/create-payment-intent", methods=["POST"])
    def create_payment_intent():
        payload = json_payload()
        order_id = str(payload.get("orderId") or "").strip()
        if not order_id:
            raise ValidationError("orderId is required.")

        raw_amount = payload.get("amountInCents")
        amount_value = None if isinstance(raw_amount, bool) else safe_float(raw_amount)
        if amount_value is None or amount_value != int(amount_value):
            raise ValidationError("amountInCents must be a whole number.")

        return jsonify(coordinator.create_payment_intent(order_id, int(amount_value)))

    @app.route("/payments", methods=["POST"])
    def record_payment():
        payment_document = coordinator.confirm_payment(json_payload())
        return (
            jsonify(
                {
                    "insertedId": str(payment_document["_id"]),
                    "payment": serialize_document(payment_document),
                }
            ),
            201,
        )

    @app.route("/payments", methods=["GET"])
    @token_required()
    def list_payments():
        email = normalize_email(request.args.get("email"))
        require_own_email(email)
        return jsonify(serialize_many(storage.payments_for(email)))

    return app
