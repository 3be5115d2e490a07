# savepad/conftest.py
import pytest
from unittest.mock import Mock

from fastapi.testclient import TestClient
from sqlalchemy import insert

from savepad.api.deps import build_services
from savepad.core.database import Database, users
from savepad.features.billing.provider import CheckoutSession
from savepad.features.identity.service import IdentityResolver
from savepad.models.user import UserStatus


class RecordingNotifier:
    """Notifier double that remembers every call."""

    def __init__(self, result: bool = True):
        self.result = result
        self.family_calls = []
        self.payment_calls = []

    def notify_family(self, phone, name, owner_name, action):
        self.family_calls.append({"phone": phone, "name": name, "ownerName": owner_name, "action": action})
        return self.result

    def notify_payment(self, user_id, plano, status, valor):
        self.payment_calls.append({"user_id": user_id, "plano": plano, "status": status, "valor": valor})
        return self.result


@pytest.fixture
def database():
    """Fresh in-memory SQLite store per test."""
    db = Database("sqlite://")
    db.create_all()
    yield db
    db.drop_all()
    db.dispose()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def provider():
    """Mercado Pago double with successful checkout defaults."""
    mock = Mock()
    mock.create_preference.return_value = CheckoutSession(id="pref-123", url="https://mp.test/checkout/pref-123")
    mock.create_preapproval.return_value = CheckoutSession(id="pre-456", url="https://mp.test/preapproval/pre-456")
    mock.cancel_preapproval.return_value = None
    return mock


@pytest.fixture
def services(database, provider, notifier):
    return build_services(database, provider, notifier, base_url="https://savepad.test")


@pytest.fixture
def client(database, provider, notifier):
    from savepad.main import create_app

    app = create_app(database=database, provider=provider, notifier=notifier)
    return TestClient(app)


@pytest.fixture
def make_user(database):
    """Insert a user row directly and return the User model."""
    identity = IdentityResolver(database)

    def _make(name="Maria", email=None, phone=None, status=UserStatus.REGISTERED, password_hash=None):
        with database.session() as session:
            result = session.execute(
                insert(users).values(
                    name=name,
                    email=email,
                    phone=phone,
                    status=status,
                    password_hash=password_hash,
                )
            )
            user_id = result.inserted_primary_key[0]
        return identity.by_id(user_id)

    return _make
