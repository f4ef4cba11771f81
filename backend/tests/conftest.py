from datetime import datetime
from types import SimpleNamespace

import mongomock
import pytest
from bson import ObjectId
from flask_jwt_extended import create_access_token

from lime_orders import create_app
from lime_orders.visibility import RequestContext

ADMIN_EMAIL = "owner@limeorders.test"

TEST_CONFIG = {
    "TESTING": True,
    "JWT_SECRET_KEY": "lime-orders-test-secret-key-0123456789abcdef",
    "DEFAULT_ADMIN_EMAIL": ADMIN_EMAIL,
}


@pytest.fixture
def db():
    return mongomock.MongoClient()["limeorders_test"]


@pytest.fixture
def app(db):
    return create_app(TEST_CONFIG, db=db)


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def store(db):
    """Two customers, an admin, three products and four orders."""
    admin_id, alice_id, bob_id = ObjectId(), ObjectId(), ObjectId()
    sorbet_id, tart_id, gift_id = ObjectId(), ObjectId(), ObjectId()

    db.users.insert_many(
        [
            {
                "_id": admin_id,
                "name": "Store Owner",
                "email": ADMIN_EMAIL,
                "role": "customer",
                "password": "hashed",
                "createdAt": datetime(2024, 1, 1, 9, 0),
            },
            {
                "_id": alice_id,
                "name": "Alice <b>Green</b>",
                "email": "alice@example.com",
                "phone": "+31 600 000 001",
                "role": "customer",
                "password": "hashed",
                "totalAmount": 50.5,
                "orderCount": 3,
                "createdAt": datetime(2024, 2, 10, 12, 0),
            },
            {
                "_id": bob_id,
                "name": "Bob Lime",
                "email": "bob@example.com",
                "role": "customer",
                "password": "hashed",
                "totalAmount": 20.5,
                "orderCount": 1,
                "createdAt": datetime(2024, 3, 5, 8, 30),
            },
        ]
    )
    db.products.insert_many(
        [
            {"_id": sorbet_id, "title": "Glacier Lime Sorbet", "price": 10},
            {"_id": tart_id, "title": "Key Lime Tart", "price": 20.5},
            {"_id": gift_id, "title": "Gift Wrapping", "price": None},
        ]
    )

    orders = [
        {
            "_id": ObjectId(),
            "orderNumber": 1,
            "status": "new",
            "totalAmount": 10,
            "deliveryAddress": "1 Citrus Lane",
            "comment": "",
            "email": "alice@example.com",
            "phone": "+31 600 000 001",
            "customer": alice_id,
            "products": [sorbet_id],
            "createdAt": datetime(2024, 4, 1, 10, 0),
        },
        {
            "_id": ObjectId(),
            "orderNumber": 2,
            "status": "delivering",
            "totalAmount": 20.5,
            "deliveryAddress": "1 Citrus Lane",
            "comment": "Ring twice",
            "email": "alice@example.com",
            "phone": "+31 600 000 001",
            "customer": alice_id,
            "products": [tart_id],
            "createdAt": datetime(2024, 4, 15, 23, 59, 59, 500000),
        },
        {
            "_id": ObjectId(),
            "orderNumber": 3,
            "status": "completed",
            "totalAmount": 20,
            "deliveryAddress": "<p>9 Peel Street</p>",
            "comment": None,
            "email": "alice@example.com",
            "phone": "+31 600 000 001",
            "customer": alice_id,
            "products": [sorbet_id, sorbet_id],
            "createdAt": datetime(2024, 5, 2, 9, 0),
        },
        {
            "_id": ObjectId(),
            "orderNumber": 4,
            "status": "new",
            "totalAmount": 20.5,
            "deliveryAddress": "22 Zest Road",
            "comment": "",
            "email": "bob@example.com",
            "phone": "",
            "customer": bob_id,
            "products": [tart_id],
            "createdAt": datetime(2024, 5, 20, 18, 0),
        },
    ]
    db.orders.insert_many(orders)
    db.users.update_one(
        {"_id": alice_id},
        {"$set": {"lastOrder": orders[2]["_id"], "lastOrderDate": orders[2]["createdAt"]}},
    )
    db.users.update_one(
        {"_id": bob_id},
        {"$set": {"lastOrder": orders[3]["_id"], "lastOrderDate": orders[3]["createdAt"]}},
    )
    db.counters.insert_one({"_id": "orderNumber", "seq": 4})

    return SimpleNamespace(
        admin_id=admin_id,
        alice_id=alice_id,
        bob_id=bob_id,
        sorbet_id=sorbet_id,
        tart_id=tart_id,
        gift_id=gift_id,
        orders=orders,
    )


@pytest.fixture
def admin_context(store):
    return RequestContext(user_id=store.admin_id, role="admin", email=ADMIN_EMAIL)


@pytest.fixture
def alice_context(store):
    return RequestContext(user_id=store.alice_id, email="alice@example.com")


@pytest.fixture
def bob_context(store):
    return RequestContext(user_id=store.bob_id, email="bob@example.com")


@pytest.fixture
def auth_headers(app):
    def build(user_id):
        with app.app_context():
            token = create_access_token(identity=str(user_id))
        return {"Authorization": f"Bearer {token}"}

    return build
