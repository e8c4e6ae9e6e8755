from datetime import date, datetime, timedelta

import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

from auth import CurrentUser, get_current_user
from database import create_document, get_db
from images import get_image_store
from main import app
from orders import OrderPlacement

FIXED_NOW = datetime(2026, 10, 18, 15, 30)


class FakeImageStore:
    def __init__(self):
        self.saved = []
        self.discarded = []

    async def save(self, upload):
        ref = f"/uploads/{upload.filename}"
        self.saved.append(ref)
        return ref

    def discard(self, reference):
        self.discarded.append(reference)


class FailingCollection:
    def __init__(self, exc):
        self.exc = exc

    def __getattr__(self, name):
        def fail(*args, **kwargs):
            raise self.exc
        return fail


class FailingDB:
    def __init__(self, exc):
        self.exc = exc

    def __getitem__(self, name):
        return FailingCollection(self.exc)


def cake_doc(**overrides):
    doc = {
        "name": "Chocolate Truffle",
        "flavor": "Chocolate",
        "flavors": ["Chocolate"],
        "price": 300,
        "description": "Rich chocolate sponge layered with truffle ganache",
        "weightOptions": [{"weight": "500g", "price": 300}, {"weight": "1kg", "price": 550}],
        "imageUrl": "/uploads/truffle.jpg",
        "category": "Birthday",
        "isAvailable": True,
        "tags": [],
        "rating": 0,
        "reviewCount": 0,
    }
    doc.update(overrides)
    return doc


def order_payload(cake_id, weight="1kg", quantity=1, delivery=None, **overrides):
    payload = {
        "items": [{"cakeId": str(cake_id), "quantity": quantity, "weight": weight}],
        "customerInfo": {"name": "Asha Rao", "phone": "9876543210", "email": "Asha@Example.com"},
        "deliveryAddress": {
            "street": "12 Road No 5",
            "area": "Banjara Hills",
            "city": "Hyderabad",
            "pincode": "500034",
        },
        "estimatedDelivery": delivery or (date.today() + timedelta(days=1)).isoformat(),
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def db():
    return mongomock.MongoClient()["cake_shop_test"]


@pytest.fixture
def add_cake(db):
    def _add(**overrides):
        return str(create_document(db, "cake", cake_doc(**overrides))["_id"])
    return _add


@pytest.fixture
def customer(db):
    user_id = ObjectId()
    db["user"].insert_one({"_id": user_id, "name": "Asha Rao", "email": "asha@example.com", "role": "customer"})
    return CurrentUser(user_id=str(user_id), role="customer")


@pytest.fixture
def other_customer():
    return CurrentUser(user_id=str(ObjectId()), role="customer")


@pytest.fixture
def admin():
    return CurrentUser(user_id=str(ObjectId()), role="admin")


@pytest.fixture
def placement(db):
    return OrderPlacement(db, clock=lambda: FIXED_NOW)


@pytest.fixture
def placed_order(placement, customer, add_cake):
    cake_id = add_cake()
    return placement.place(customer, order_payload(cake_id, delivery="2026-10-20"))


@pytest.fixture
def images():
    return FakeImageStore()


@pytest.fixture
def api(db, images, customer):
    state = {"user": customer}
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_image_store] = lambda: images
    app.dependency_overrides[get_current_user] = lambda: state["user"]
    client = TestClient(app)

    def login(user):
        state["user"] = user

    client.login = login
    yield client
    app.dependency_overrides.clear()
