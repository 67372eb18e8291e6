import logging
from typing import List

from bson import ObjectId
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import create_document, find_by_id, serialize
from errors import DuplicateError
from policy import Action, authorize
from schemas import Principal, WishlistEntry

logger = logging.getLogger(__name__)


class WishlistManager:
    def __init__(self, db: Database):
        self.db = db

    @property
    def entries(self):
        return self.db["wishlist"]

    def _has_entry(self, user_id: str, book_id: str) -> bool:
        return self.entries.find_one({"user_id": user_id, "book_id": book_id}) is not None

    def add(self, principal: Principal, book_id: str) -> dict:
        book = find_by_id(self.db, "book", book_id, "Book")
        if self._has_entry(principal.id, book_id):
            raise DuplicateError("Book already in wishlist")
        try:
            doc = create_document(self.db, "wishlist", WishlistEntry(user_id=principal.id, book_id=book_id))
        except DuplicateKeyError:
            raise DuplicateError("Book already in wishlist")
        logger.info(f"Book {book_id} added to wishlist of {principal.id}")
        doc["book"] = book
        return serialize(doc)

    def list(self, principal: Principal, user_id: str) -> List[dict]:
        authorize(principal, Action.WISHLIST_READ, user_id)
        entries = list(self.entries.find({"user_id": user_id}).sort([("created_at", -1), ("_id", -1)]))
        book_ids = [ObjectId(e["book_id"]) for e in entries if ObjectId.is_valid(e["book_id"])]
        books = {str(b["_id"]): b for b in self.db["book"].find({"_id": {"$in": book_ids}})}
        items = []
        for entry in entries:
            book = books.get(entry["book_id"])
            if book is None:
                # Book was deleted after being wishlisted; not an error.
                continue
            entry["book"] = book
            items.append(serialize(entry))
        return items

    def remove(self, principal: Principal, entry_id: str) -> None:
        entry = find_by_id(self.db, "wishlist", entry_id, "Wishlist item")
        authorize(principal, Action.WISHLIST_REMOVE, entry["user_id"])
        self.entries.delete_one({"_id": entry["_id"]})
        logger.info(f"Wishlist item {entry_id} removed by {principal.id}")
