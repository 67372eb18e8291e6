import json
from datetime import datetime, timedelta, timezone

import mongomock
import pytest
from fastapi.testclient import TestClient

from accounts import local_subject, to_principal
from config import Settings
from database import ensure_indexes
from errors import InvalidCredential, NotFound
from identity import SignedTokenVerifier
from main import Services, create_app
from schemas import (BookPayload, IntentResult, OrderPayload, PaymentConfirmation, PaymentEvent,
                     RegisterPayload)

SECRET = "test-secret"


class FakeGateway:
    """In-memory payment provider: intents are created pending and completed by the test."""

    def __init__(self):
        self.intents = {}

    def create_intent(self, amount, currency, metadata):
        ref = f"pi_{len(self.intents) + 1}"
        self.intents[ref] = PaymentConfirmation(
            transaction_ref=ref,
            order_id=metadata.get("order_id"),
            amount=amount,
            currency=currency,
            provider_status="pending",
            payer_email=metadata.get("payer_email"),
        )
        return IntentResult(intent_ref=ref, client_secret=f"{ref}_secret", amount=amount, currency=currency)

    def succeed(self, ref, **overrides):
        self.intents[ref] = self.intents[ref].model_copy(update={"provider_status": "completed", **overrides})

    def retrieve(self, ref):
        if ref not in self.intents:
            raise NotFound("Payment intent not found")
        return self.intents[ref]

    def parse_event(self, payload, signature):
        if signature != "valid":
            raise InvalidCredential("Invalid webhook signature")
        data = json.loads(payload)
        confirmation = data.get("confirmation")
        return PaymentEvent(type=data["type"],
                            confirmation=PaymentConfirmation(**confirmation) if confirmation else None)


class FakeImageHost:
    def __init__(self):
        self.uploads = []

    def upload(self, image_data):
        self.uploads.append(image_data)
        return f"https://img.example.com/{len(self.uploads)}.png"


@pytest.fixture
def db():
    database = mongomock.MongoClient()["booknest_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def verifier():
    return SignedTokenVerifier(SECRET)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def image_host():
    return FakeImageHost()


@pytest.fixture
def services(db, verifier, gateway, image_host):
    return Services(db, verifier, gateway, image_host)


@pytest.fixture
def make_account(services, db):
    counter = {"n": 0}

    def _make(role="user", email=None, name="Test User", password="secret123"):
        counter["n"] += 1
        email = email or f"{role}{counter['n']}@example.com"
        services.accounts.register(RegisterPayload(name=name, email=email, password=password))
        if role != "user":
            db["account"].update_one({"email": email.lower()}, {"$set": {"role": role}})
        return to_principal(db["account"].find_one({"email": email.lower()}))

    return _make


@pytest.fixture
def user(make_account):
    return make_account("user", name="Reader One")


@pytest.fixture
def other_user(make_account):
    return make_account("user", name="Reader Two")


@pytest.fixture
def librarian(make_account):
    return make_account("librarian", name="Libby Rarian")


@pytest.fixture
def other_librarian(make_account):
    return make_account("librarian", name="Other Librarian")


@pytest.fixture
def admin(make_account):
    return make_account("admin", name="Ada Admin")


def book_payload(**overrides):
    data = {
        "title": "The Left Hand of Darkness",
        "author": "Ursula K. Le Guin",
        "description": "A classic of speculative fiction.",
        "category": "Science Fiction",
        "price": 16.99,
        "isbn": "9780441478125",
        "cover_image_ref": "https://img.example.com/cover.png",
    }
    data.update(overrides)
    return BookPayload(**data)


def order_payload(book_id, **overrides):
    data = {
        "book_id": book_id,
        "delivery_type": "pickup",
        "requested_date": datetime.now(timezone.utc) + timedelta(days=3),
    }
    data.update(overrides)
    return OrderPayload(**data)


@pytest.fixture
def make_book(services, librarian):
    def _make(owner=None, status="published", **overrides):
        book = services.books.create(owner or librarian, book_payload(**overrides))
        if status != "draft":
            book = services.books.set_status(owner or librarian, book["_id"], status)
        return book

    return _make


@pytest.fixture
def book(make_book):
    return make_book()


@pytest.fixture
def deliver(services, librarian):
    """Walk an order through confirmed -> shipped -> delivered as its book's librarian."""

    def _deliver(order_id, by=None):
        actor = by or librarian
        for status in ("confirmed", "shipped", "delivered"):
            order = services.orders.update_status(actor, order_id, status)
        return order

    return _deliver


@pytest.fixture
def app(db, verifier, gateway, image_host):
    settings = Settings(secret_key=SECRET, log_level="WARNING", rate_limit_enabled=False)
    return create_app(settings, db=db, verifier=verifier, gateway=gateway, image_host=image_host)


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture
def auth(verifier):
    def _auth(principal):
        return {"Authorization": f"Bearer {verifier.issue(local_subject(principal.id), principal.email)}"}

    return _auth
