import os
from datetime import datetime, timedelta
from typing import Dict, Optional

import bcrypt
from dotenv import load_dotenv
from flask import Flask, jsonify, request, send_from_directory
from flask_cors import CORS
from flask_jwt_extended import (
    JWTManager,
    create_access_token,
    get_jwt_identity,
    jwt_required,
)
from flask_pymongo import PyMongo
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix

import catalog
from analytics import compute_payment_analytics
from errors import ApiError, AuthError, ForbiddenError, UnexpectedError, ValidationError
from media import ImageStorage
from payments import serialize_payments, update_payment_status
from query_builder import (
    PAYMENT_PAGE_SIZE,
    PAYMENT_SORT_FIELDS,
    PRODUCT_PAGE_SIZE,
    PRODUCT_SORT_FIELDS,
    build_payment_filter,
    build_product_filter,
    build_sort,
    paginate,
    parse_limit,
    parse_page,
)
from site_settings import (
    SettingsPatch,
    ensure_settings,
    get_settings,
    serialize_public_config,
    serialize_settings,
    update_settings,
)

load_dotenv()

ALLOWED_USER_ROLES = {"admin", "seller", "standard"}


def create_app(config_overrides: Optional[Dict] = None, database=None) -> Flask:
    """Create and configure the Flask application.

    ``database`` lets callers hand in an already opened database handle;
    otherwise one is opened from ``MONGO_URI`` through Flask-PyMongo.
    """
    app = Flask(__name__)

    # Honor proxy headers so generated image links keep the public origin.
    trusted_proxy_hops_raw = os.getenv("TRUSTED_PROXY_HOPS", "1")
    try:
        trusted_proxy_hops = max(0, int(trusted_proxy_hops_raw))
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

    # --- Configuration ---
    app.config["JWT_SECRET_KEY"] = os.getenv(
        "JWT_SECRET_KEY", "change-me-in-production"
    )
    app.config["JWT_ACCESS_TOKEN_EXPIRES"] = timedelta(hours=1)
    app.config["MONGO_URI"] = os.getenv(
        "MONGO_URI", "mongodb://localhost:27017/storefront"
    )
    max_upload_mb = int(os.getenv("MAX_UPLOAD_SIZE_MB", "16"))
    app.config["MAX_CONTENT_LENGTH"] = max_upload_mb * 1024 * 1024
    app.config["UPLOAD_FOLDER"] = os.getenv(
        "UPLOAD_FOLDER", os.path.join(app.root_path, "uploads")
    )
    app.config["PUBLIC_BASE_URL"] = os.getenv("PUBLIC_BASE_URL", "").strip() or None
    if config_overrides:
        app.config.update(config_overrides)

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

    CORS(app, supports_credentials=True, origins=allowed_origins or "*")

    jwt = JWTManager(app)

    if database is None:
        mongo = PyMongo(app)
        database = mongo.db
    db = database

    try:
        db.products.create_index([("created_at", -1)])
        db.products.create_index([("category", 1)])
        db.products.create_index([("owner", 1)])
        db.payment_intents.create_index([("status", 1), ("created_at", -1)])
        db.audit_logs.create_index([("created_at", -1)])
    except Exception as exc:
        app.logger.warning("Unable to ensure indexes: %s", exc)

    # The settings record is created here, once, rather than on first request.
    ensure_settings(db.settings)

    storage = ImageStorage(app.config["UPLOAD_FOLDER"], app.config["PUBLIC_BASE_URL"])

    # --- Helpers ---

    def respond(data=None, message: Optional[str] = None, status: int = 200, pagination=None):
        body: Dict[str, object] = {"success": True}
        if message:
            body["message"] = message
        if data is not None:
            body["data"] = data
        if pagination is not None:
            body["pagination"] = pagination
        return jsonify(body), status

    def error_response(message: str, status: int):
        return jsonify({"success": False, "message": message}), status

    def normalize_email(value: Optional[str]) -> str:
        return str(value or "").strip().lower()

    def normalize_role(value: Optional[str]) -> str:
        normalized = str(value or "").strip().lower()
        return normalized if normalized in ALLOWED_USER_ROLES else "standard"

    def get_current_user():
        current_email = normalize_email(get_jwt_identity())
        user_document = db.users.find_one({"email": current_email}) if current_email else None
        if not user_document:
            raise AuthError("Your session is no longer valid. Please sign in again.")
        return user_document

    def require_role(*roles: str):
        allowed = {normalize_role(role) for role in roles if role}
        current_user = get_current_user()
        user_role = normalize_role(current_user.get("role"))

        if user_role == "admin" or not allowed or user_role in allowed:
            return current_user
        raise ForbiddenError()

    def require_admin_user():
        return require_role("admin")

    def record_audit_log(actor_email: Optional[str], action: str, metadata: Optional[Dict] = None):
        try:
            db.audit_logs.insert_one(
                {
                    "user_email": normalize_email(actor_email) or None,
                    "action": action,
                    "metadata": {
                        str(key): str(value)
                        for key, value in (metadata or {}).items()
                        if value is not None
                    },
                    "created_at": datetime.utcnow(),
                }
            )
        except Exception as exc:
            app.logger.warning("Unable to record audit log: %s", exc)

    def request_payload() -> Dict:
        payload = request.form.to_dict() if request.form else {}
        if not payload:
            payload = request.get_json(silent=True) or {}
        if not isinstance(payload, dict):
            raise ValidationError("Request body must be an object.")
        return payload

    def request_images():
        if not request.files:
            return []
        image_files = request.files.getlist("images")
        if not image_files:
            fallback_file = request.files.get("image")
            if fallback_file:
                image_files = [fallback_file]
        return image_files

    def list_products_response(query: Dict, extra: Optional[Dict] = None):
        page = parse_page(request.args.get("page"))
        limit = parse_limit(request.args.get("limit"), PRODUCT_PAGE_SIZE)
        sort = build_sort(request.args, PRODUCT_SORT_FIELDS)
        documents, pagination = paginate(db.products, query, sort, page, limit)
        body = {
            "success": True,
            "data": catalog.serialize_products(db, documents),
            "pagination": pagination,
        }
        if extra:
            body.update(extra)
        return jsonify(body)

    # --- Error boundary ---

    @jwt.unauthorized_loader
    def missing_token(reason):
        return error_response("Unauthorized: please sign in to continue.", 401)

    @jwt.invalid_token_loader
    def invalid_token(reason):
        return error_response("Invalid session token.", 401)

    @jwt.expired_token_loader
    def expired_token(jwt_header, jwt_payload):
        return error_response("Your session has expired. Please sign in again.", 401)

    @app.errorhandler(ApiError)
    def handle_api_error(error: ApiError):
        if error.status_code >= 500:
            app.logger.error("%s %s failed: %s", request.method, request.path, error.message)
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(HTTPException)
    def handle_http_exception(error: HTTPException):
        return error_response(error.description or error.name, error.code or 500)

    @app.errorhandler(Exception)
    def handle_unexpected_error(error: Exception):
        app.logger.exception("Unhandled error on %s %s", request.method, request.path)
        unexpected = UnexpectedError()
        return jsonify(unexpected.to_dict()), unexpected.status_code

    # --- ROUTES ---

    @app.route("/health")
    def health():
        return {"status": "ok"}, 200

    @app.route("/uploads/<path:filename>")
    def serve_uploaded_file(filename: str):
        return send_from_directory(app.config["UPLOAD_FOLDER"], filename)

    @app.route("/api/auth/login", methods=["POST"])
    def login():
        payload = request.get_json(silent=True) or {}
        email = normalize_email(payload.get("email"))
        password = str(payload.get("password", ""))

        if not email or not password:
            raise ValidationError("Email and password are required.")

        user = db.users.find_one({"email": email})
        stored_hash = (user or {}).get("password")
        if isinstance(stored_hash, str):
            stored_hash = stored_hash.encode("utf-8")
        if not stored_hash or not bcrypt.checkpw(password.encode("utf-8"), stored_hash):
            raise AuthError("Invalid credentials.")

        token = create_access_token(identity=email)
        return respond(
            {
                "access_token": token,
                "user": {
                    "id": str(user["_id"]),
                    "name": user.get("name", "") or "",
                    "email": email,
                    "role": normalize_role(user.get("role")),
                },
            }
        )

    # Products
    @app.route("/api/products", methods=["GET"])
    def list_products():
        return list_products_response(build_product_filter(request.args))

    @app.route("/api/products/search", methods=["GET"])
    def search_products():
        return list_products_response(build_product_filter(request.args))

    @app.route("/api/products/category/<category_name>", methods=["GET"])
    def list_products_by_category(category_name: str):
        if not category_name.strip():
            raise ValidationError("Category name is required.")
        query = build_product_filter(request.args, category=category_name)
        return list_products_response(query, {"category": category_name})

    @app.route("/api/products/categories/top", methods=["GET"])
    def list_top_categories():
        return respond(catalog.top_categories(db))

    @app.route("/api/products/flash-sale", methods=["GET"])
    def list_flash_sale_products():
        query = build_product_filter(request.args)
        query.update(catalog.active_flash_sale_query())
        return list_products_response(query)

    @app.route("/api/products/featured", methods=["GET"])
    def list_featured_products():
        query = build_product_filter(request.args)
        query["is_featured"] = True
        return list_products_response(query)

    @app.route("/api/products/mine", methods=["GET"])
    @jwt_required()
    def list_my_products():
        current_user = get_current_user()
        return list_products_response({"owner": current_user["_id"]})

    @app.route("/api/products/<product_id>", methods=["GET"])
    def get_product(product_id: str):
        product_document = catalog.fetch_product(db, product_id)
        return respond(catalog.serialize_with_owner(db, product_document))

    @app.route("/api/products", methods=["POST"])
    @jwt_required()
    def create_product():
        current_user = require_role("seller", "admin")
        created_product = catalog.create_product(
            db, storage, current_user, request_payload(), request_images(), request.host_url
        )

        record_audit_log(
            current_user.get("email"),
            "Created product",
            {"product_id": str(created_product["_id"]), "product_name": created_product.get("name")},
        )

        return respond(
            catalog.serialize_with_owner(db, created_product),
            message="Product created successfully",
            status=201,
        )

    @app.route("/api/products/<product_id>", methods=["PUT"])
    @jwt_required()
    def update_product(product_id: str):
        current_user = get_current_user()
        updated_product = catalog.update_product(
            db,
            storage,
            current_user,
            product_id,
            request_payload(),
            request_images(),
            request.host_url,
        )

        record_audit_log(
            current_user.get("email"),
            "Updated product",
            {"product_id": product_id, "product_name": updated_product.get("name")},
        )

        return respond(
            catalog.serialize_with_owner(db, updated_product),
            message="Product updated successfully",
        )

    @app.route("/api/products/<product_id>", methods=["DELETE"])
    @jwt_required()
    def delete_product(product_id: str):
        current_user = get_current_user()
        removed = catalog.delete_product(db, storage, current_user, product_id)

        record_audit_log(
            current_user.get("email"),
            "Deleted product",
            {"product_id": product_id, "product_name": removed.get("name")},
        )

        return respond(message="Product deleted successfully")

    # Payments
    @app.route("/api/payments", methods=["GET"])
    @jwt_required()
    def list_payments():
        require_admin_user()

        page = parse_page(request.args.get("page"))
        limit = parse_limit(request.args.get("limit"), PAYMENT_PAGE_SIZE)
        query = build_payment_filter(request.args, db)
        sort = build_sort(request.args, PAYMENT_SORT_FIELDS)
        documents, pagination = paginate(db.payment_intents, query, sort, page, limit)

        return respond(serialize_payments(db, documents), pagination=pagination)

    @app.route("/api/payments/analytics", methods=["GET"])
    @jwt_required()
    def payment_analytics():
        require_admin_user()
        return respond(compute_payment_analytics(db.payment_intents, request.args.get("period")))

    @app.route("/api/payments/<payment_id>/status", methods=["PUT"])
    @jwt_required()
    def change_payment_status(payment_id: str):
        admin_user = require_admin_user()
        payload = request.get_json(silent=True) or {}
        if not isinstance(payload, dict):
            raise ValidationError("Invalid status.")
        payment = update_payment_status(db, payment_id, payload.get("status"))

        record_audit_log(
            admin_user.get("email"),
            "Updated payment status",
            {"payment_id": payment_id, "status": payment["status"]},
        )

        return respond(payment, message="Payment status updated successfully")

    # Settings
    @app.route("/api/settings/config", methods=["GET"])
    def public_config():
        return respond(serialize_public_config(get_settings(db.settings)))

    @app.route("/api/settings/admin", methods=["GET"])
    @jwt_required()
    def admin_settings():
        require_admin_user()
        return respond(serialize_settings(get_settings(db.settings)))

    @app.route("/api/settings/admin", methods=["PUT"])
    @jwt_required()
    def admin_update_settings():
        admin_user = require_admin_user()
        patch = SettingsPatch.from_payload(request.get_json(silent=True) or {})
        settings_document = update_settings(db.settings, patch)

        record_audit_log(
            admin_user.get("email"),
            "Updated settings",
            {"fields": ",".join(sorted(patch.changes()))},
        )

        return respond(serialize_settings(settings_document), message="Settings updated successfully")

    return app


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5000))
    create_app().run(host="0.0.0.0", port=port)
