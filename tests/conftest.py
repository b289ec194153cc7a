from datetime import datetime

import mongomock
import pytest

from shopease import create_app
from shopease.errors import PaymentProcessorError

ADMIN_EMAIL = "admin@shopease.test"
CUSTOMER_EMAIL = "buyer@shopease.test"


class FakePaymentClient:
    def __init__(self):
        self.calls = []
        self.fail = False

    def create_payment_intent(self, amount_in_cents, metadata=None):
        if self.fail:
            raise PaymentProcessorError("Failed to create payment intent.")
        self.calls.append({"amount": amount_in_cents, "metadata": metadata or {}})
        number = len(self.calls)
        return {"id": f"pi_test_{number}", "client_secret": f"pi_test_{number}_secret"}


@pytest.fixture
def db():
    return mongomock.MongoClient().shopease_test


@pytest.fixture
def payment_client():
    return FakePaymentClient()


@pytest.fixture
def app(db, payment_client):
    app = create_app(
        {
            "TESTING": True,
            "JWT_SECRET_KEY": "test-secret",
            "DEFAULT_ADMIN_EMAIL": ADMIN_EMAIL,
            "TRUSTED_PROXY_HOPS": "0",
        },
        db=db,
        payment_client=payment_client,
    )
    return app


@pytest.fixture
def client(app):
    return app.test_client()


DEFAULT_PASSWORD = "correct-horse-battery"


def issue_login(client, email, password=DEFAULT_PASSWORD):
    credentials = {"email": email, "password": password}
    client.post("/auth/register", json=dict(credentials, name="Test User"))
    response = client.post("/auth/login", json=credentials)
    assert response.status_code == 200
    return {"Authorization": f"Bearer {response.get_json()['token']}"}


@pytest.fixture
def login(client):
    return lambda email, password=DEFAULT_PASSWORD: issue_login(client, email, password)


@pytest.fixture
def admin_headers(client):
    return issue_login(client, ADMIN_EMAIL)


@pytest.fixture
def customer_headers(client):
    return issue_login(client, CUSTOMER_EMAIL)


@pytest.fixture
def product(db):
    document = {
        "name": "Trail Runner",
        "category": "Shoes",
        "price": 10.0,
        "orderCount": 0,
        "createdAt": datetime.utcnow(),
    }
    document["_id"] = db.products.insert_one(document).inserted_id
    return document


@pytest.fixture
def order(client, product):
    response = client.post(
        "/order",
        json={
            "productId": str(product["_id"]),
            "customer_email": CUSTOMER_EMAIL,
            "customer_name": "Buyer",
        },
    )
    assert response.status_code == 201
    return response.get_json()["order"]
