import logging
from typing import List

from pymongo.database import Database

from database import attach, create_document, find_by_id, serialize, utcnow
from errors import InvalidTransition, NotFound
from policy import Action, authorize
from schemas import Order, OrderPayload, OrderStatus, Principal

logger = logging.getLogger(__name__)

# Allowed status transitions. delivered and cancelled are terminal.
TRANSITIONS = {
    "pending": {"confirmed", "cancelled"},
    "confirmed": {"shipped", "cancelled"},
    "shipped": {"delivered"},
    "delivered": set(),
    "cancelled": set(),
}

USER_FIELDS = {"name": 1, "email": 1, "photo_url": 1}


def can_transition(current: str, new: str) -> bool:
    return new in TRANSITIONS.get(current, set())


class OrderManager:
    def __init__(self, db: Database):
        self.db = db

    @property
    def orders(self):
        return self.db["order"]

    def _state(self, order: dict) -> dict:
        return {"status": order.get("status"), "book_owner_id": self._book_owner(order["book_id"])}

    def _book_owner(self, book_id: str):
        try:
            return find_by_id(self.db, "book", book_id, "Book").get("owner_id")
        except NotFound:
            return None

    def create(self, principal: Principal, payload: OrderPayload) -> dict:
        book = find_by_id(self.db, "book", payload.book_id, "Book")
        if book.get("status") != "published":
            raise NotFound("Book not found")
        order = Order(
            user_id=principal.id,
            book_id=payload.book_id,
            contact_email=principal.email,
            delivery_type=payload.delivery_type,
            delivery_address=payload.delivery_address,
            pickup_location=payload.pickup_location,
            requested_date=payload.requested_date,
            notes=payload.notes,
            total_amount=round(float(book["price"]), 2),
        )
        doc = create_document(self.db, "order", order)
        logger.info(f"Order {doc['_id']} placed by {principal.id} for book {payload.book_id}")
        doc["book"] = book
        return serialize(doc)

    def get(self, principal: Principal, order_id: str) -> dict:
        order = find_by_id(self.db, "order", order_id, "Order")
        authorize(principal, Action.ORDER_READ, order["user_id"], self._state(order))
        attach(self.db, [order], "book", "book_id", "book")
        attach(self.db, [order], "account", "user_id", "user", USER_FIELDS)
        return serialize(order)

    def list_by_user(self, principal: Principal, user_id: str) -> List[dict]:
        authorize(principal, Action.ORDER_LIST_BY_USER, user_id)
        orders = list(self.orders.find({"user_id": user_id}).sort([("created_at", -1), ("_id", -1)]))
        attach(self.db, orders, "book", "book_id", "book")
        return [serialize(o) for o in orders]

    def list_by_librarian(self, principal: Principal, librarian_id: str) -> List[dict]:
        authorize(principal, Action.ORDER_LIST_BY_LIBRARIAN, librarian_id)
        book_ids = [str(b["_id"]) for b in self.db["book"].find({"owner_id": librarian_id}, {"_id": 1})]
        if not book_ids:
            return []
        orders = list(self.orders.find({"book_id": {"$in": book_ids}}).sort([("created_at", -1), ("_id", -1)]))
        attach(self.db, orders, "book", "book_id", "book")
        attach(self.db, orders, "account", "user_id", "user", USER_FIELDS)
        return [serialize(o) for o in orders]

    def _apply(self, order: dict, new_status: str) -> dict:
        current = order["status"]
        if not can_transition(current, new_status):
            raise InvalidTransition(f"Cannot change order status from {current} to {new_status}")
        patch = {"status": new_status, "updated_at": utcnow()}
        # Compare-and-set on the status read above.
        res = self.orders.update_one({"_id": order["_id"], "status": current}, {"$set": patch})
        if res.matched_count == 0:
            raise InvalidTransition("Order status changed concurrently, reload and retry")
        order.update(patch)
        return order

    def update_status(self, principal: Principal, order_id: str, new_status: OrderStatus) -> dict:
        order = find_by_id(self.db, "order", order_id, "Order")
        state = self._state(order)
        if new_status == "cancelled":
            authorize(principal, Action.ORDER_CANCEL, order["user_id"], state)
        else:
            authorize(principal, Action.ORDER_TRANSITION, None, state)
        self._apply(order, new_status)
        logger.info(f"Order {order_id} moved to {new_status} by {principal.id}")
        return serialize(order)

    def cancel(self, principal: Principal, order_id: str) -> dict:
        order = find_by_id(self.db, "order", order_id, "Order")
        authorize(principal, Action.ORDER_CANCEL, order["user_id"], self._state(order))
        self._apply(order, "cancelled")
        logger.info(f"Order {order_id} cancelled by {principal.id}")
        return serialize(order)
