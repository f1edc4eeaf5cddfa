import io
from datetime import datetime

import bcrypt
import mongomock
import pytest
from flask_jwt_extended import create_access_token

from app import create_app


@pytest.fixture
def db():
    return mongomock.MongoClient()["storefront_test"]


@pytest.fixture
def app(db, tmp_path):
    app = create_app(
        {
            "TESTING": True,
            "JWT_SECRET_KEY": "test-secret-key-with-enough-length",
            "UPLOAD_FOLDER": str(tmp_path / "uploads"),
            "PUBLIC_BASE_URL": "https://cdn.example.com",
        },
        database=db,
    )
    return app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def users(db):
    documents = {
        "admin": {"name": "Ada Admin", "email": "admin@example.com", "role": "admin"},
        "seller": {"name": "Sam Seller", "email": "seller@example.com", "role": "seller"},
        "other_seller": {"name": "Olive Other", "email": "other@example.com", "role": "seller"},
        "customer": {
            "name": "Alice Smith",
            "email": "alice@example.com",
            "phone": "+15550001",
            "role": "standard",
        },
    }
    for key, document in documents.items():
        document["password"] = bcrypt.hashpw(b"secret-pass", bcrypt.gensalt())
        document["_id"] = db.users.insert_one(document).inserted_id
    return documents


@pytest.fixture
def auth_headers(app, users):
    def build(role):
        with app.app_context():
            token = create_access_token(identity=users[role]["email"])
        return {"Authorization": f"Bearer {token}"}

    return build


@pytest.fixture
def image_file():
    def build(name="photo.png"):
        return (io.BytesIO(b"\x89PNG fake image bytes"), name)

    return build


@pytest.fixture
def make_product(db, users):
    def build(**overrides):
        now = datetime.utcnow()
        document = {
            "name": "Canvas Sneaker",
            "description": "Lightweight everyday sneaker",
            "price": 100.0,
            "category": "Shoes",
            "stock": 5,
            "images": [{"public_id": "products/seed.png", "url": "https://cdn.example.com/uploads/products/seed.png"}],
            "owner": users["seller"]["_id"],
            "is_featured": False,
            "is_flash_sale": False,
            "created_at": now,
            "updated_at": now,
        }
        document.update(overrides)
        document["_id"] = db.products.insert_one(document).inserted_id
        return document

    return build


@pytest.fixture
def make_payment(db, users):
    def build(status="pending", amount=50.0, created_at=None, customer="customer", intent_id=None):
        order_id = db.orders.insert_one(
            {
                "customer": users[customer]["_id"],
                "total": amount,
                "currency": "usd",
                "status": "placed",
                "created_at": created_at or datetime.utcnow(),
            }
        ).inserted_id
        document = {
            "intent_id": intent_id or f"pi_{order_id}",
            "total_amount": amount,
            "status": status,
            "order": order_id,
            "created_at": created_at or datetime.utcnow(),
            "updated_at": created_at or datetime.utcnow(),
        }
        document["_id"] = db.payment_intents.insert_one(document).inserted_id
        return document

    return build
