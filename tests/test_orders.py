from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError as PydanticValidationError

from errors import InsufficientRole, InvalidState, InvalidTransition, NotFound, NotOwner
from orders import TRANSITIONS, can_transition
from tests.conftest import order_payload

STATUSES = ["pending", "confirmed", "shipped", "delivered", "cancelled"]


def test_transition_table_is_total():
    assert set(TRANSITIONS) == set(STATUSES)
    assert TRANSITIONS["delivered"] == set()
    assert TRANSITIONS["cancelled"] == set()
    assert can_transition("pending", "confirmed")
    assert can_transition("confirmed", "shipped")
    assert can_transition("shipped", "delivered")
    assert not can_transition("delivered", "confirmed")
    assert not can_transition("shipped", "cancelled")
    assert not can_transition("pending", "shipped")


def test_create_order_defaults(services, user, book):
    order = services.orders.create(user, order_payload(book["_id"]))
    assert order["status"] == "pending"
    assert order["payment_status"] == "pending"
    assert order["total_amount"] == 16.99
    assert order["user_id"] == user.id
    assert order["contact_email"] == user.email
    assert order["book"]["title"] == book["title"]


def test_order_payload_rules(book):
    with pytest.raises(PydanticValidationError):
        order_payload(book["_id"], requested_date=datetime.now(timezone.utc) - timedelta(minutes=1))
    with pytest.raises(PydanticValidationError):
        order_payload(book["_id"], delivery_type="delivery")
    with pytest.raises(PydanticValidationError):
        order_payload(book["_id"], delivery_address={"street": "1 Main", "city": "Town", "zip_code": "12345"})
    ok = order_payload(book["_id"], delivery_type="delivery",
                       delivery_address={"street": "1 Main", "city": "Town", "zip_code": "12345"})
    assert ok.delivery_address.city == "Town"


def test_cannot_order_unpublished_book(services, user, make_book):
    draft = make_book(status="draft")
    with pytest.raises(NotFound):
        services.orders.create(user, order_payload(draft["_id"]))


def test_owner_cancels_pending(services, user, book):
    order = services.orders.create(user, order_payload(book["_id"]))
    assert services.orders.cancel(user, order["_id"])["status"] == "cancelled"


def test_owner_cannot_cancel_confirmed(services, user, librarian, book):
    order = services.orders.create(user, order_payload(book["_id"]))
    services.orders.update_status(librarian, order["_id"], "confirmed")
    with pytest.raises(InvalidState):
        services.orders.cancel(user, order["_id"])
    assert services.orders.get(user, order["_id"])["status"] == "confirmed"


def test_librarian_cancels_confirmed(services, user, librarian, book):
    order = services.orders.create(user, order_payload(book["_id"]))
    services.orders.update_status(librarian, order["_id"], "confirmed")
    assert services.orders.cancel(librarian, order["_id"])["status"] == "cancelled"


def test_other_user_cannot_cancel(services, user, other_user, book):
    order = services.orders.create(user, order_payload(book["_id"]))
    with pytest.raises(InsufficientRole):
        services.orders.cancel(other_user, order["_id"])


def test_full_lifecycle_and_terminal_states(services, user, librarian, book, deliver):
    order = services.orders.create(user, order_payload(book["_id"]))
    assert deliver(order["_id"])["status"] == "delivered"
    with pytest.raises(InvalidTransition):
        services.orders.update_status(librarian, order["_id"], "confirmed")


def test_skipping_states_is_rejected(services, user, admin, book):
    order = services.orders.create(user, order_payload(book["_id"]))
    with pytest.raises(InvalidTransition):
        services.orders.update_status(admin, order["_id"], "delivered")


def test_transition_requires_book_ownership(services, user, other_librarian, book):
    order = services.orders.create(user, order_payload(book["_id"]))
    with pytest.raises(NotOwner):
        services.orders.update_status(other_librarian, order["_id"], "confirmed")
    with pytest.raises(InsufficientRole):
        services.orders.update_status(user, order["_id"], "confirmed")


def test_read_rules(services, user, other_user, librarian, other_librarian, book):
    order = services.orders.create(user, order_payload(book["_id"]))
    assert services.orders.get(user, order["_id"])["user"]["email"] == user.email
    assert services.orders.get(librarian, order["_id"])["_id"] == order["_id"]
    with pytest.raises(NotOwner):
        services.orders.get(other_user, order["_id"])
    with pytest.raises(NotOwner):
        services.orders.get(other_librarian, order["_id"])


def test_listings(services, user, other_user, librarian, other_librarian, admin, book):
    services.orders.create(user, order_payload(book["_id"]))
    services.orders.create(other_user, order_payload(book["_id"]))
    assert len(services.orders.list_by_user(user, user.id)) == 1
    assert len(services.orders.list_by_user(admin, user.id)) == 1
    with pytest.raises(NotOwner):
        services.orders.list_by_user(user, other_user.id)
    by_librarian = services.orders.list_by_librarian(librarian, librarian.id)
    assert len(by_librarian) == 2
    assert {o["user"]["email"] for o in by_librarian} == {user.email, other_user.email}
    assert services.orders.list_by_librarian(other_librarian, other_librarian.id) == []
    with pytest.raises(NotOwner):
        services.orders.list_by_librarian(other_librarian, librarian.id)


def test_status_change_does_not_touch_payment_status(services, user, librarian, book):
    order = services.orders.create(user, order_payload(book["_id"]))
    updated = services.orders.update_status(librarian, order["_id"], "confirmed")
    assert updated["payment_status"] == "pending"
