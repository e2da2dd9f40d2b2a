import mongomock
import pytest
from flask_jwt_extended import create_access_token

from backend import create_app
from backend.payments import PaymentProcessorError
from backend.store import Store

TEST_SECRET = "test-secret-key-with-enough-length-for-hs256"


class FakeProcessor:
    def __init__(self):
        self.charges = []
        self.fail = False

    def create_payment_intent(self, price):
        if self.fail:
            raise PaymentProcessorError("card network down")
        self.charges.append(price)
        return f"pi_test_secret_{len(self.charges)}"


@pytest.fixture
def store():
    return Store(mongomock.MongoClient()["BuySellPointDB"])


@pytest.fixture
def processor():
    return FakeProcessor()


@pytest.fixture
def app(store, processor):
    return create_app(
        {"TESTING": True, "JWT_SECRET_KEY": TEST_SECRET},
        store=store,
        processor=processor,
    )


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def auth_headers(app):
    def build(email, **token_kwargs):
        with app.app_context():
            token = create_access_token(
                identity=email, additional_claims={"email": email}, **token_kwargs
            )
        return {"Authorization": f"Bearer {token}"}

    return build
