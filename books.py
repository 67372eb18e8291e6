import logging
import re
from typing import List, Optional

from pymongo.database import Database

from database import attach, create_document, find_by_id, serialize, utcnow
from errors import NotFound, ValidationError
from policy import Action, authorize, decide
from schemas import CATEGORIES, Book, BookPayload, BookStatus, BookUpdatePayload, Principal

logger = logging.getLogger(__name__)

SORTS = {
    "newest": [("created_at", -1), ("_id", -1)],
    "oldest": [("created_at", 1), ("_id", 1)],
    "title": [("title", 1)],
    "price-asc": [("price", 1)],
    "price-desc": [("price", -1)],
}

OWNER_FIELDS = {"name": 1, "email": 1, "photo_url": 1}


class BookManager:
    def __init__(self, db: Database, image_host=None):
        self.db = db
        self.image_host = image_host

    @property
    def books(self):
        return self.db["book"]

    def _can_see_unpublished(self, principal: Optional[Principal], owner_id: Optional[str]) -> bool:
        return principal is not None and bool(decide(principal, Action.BOOK_READ_UNPUBLISHED, owner_id))

    def _visibility(self, principal: Optional[Principal]) -> Optional[dict]:
        if principal is None:
            return {"status": "published"}
        if principal.role == "admin":
            return None
        if principal.role == "librarian":
            return {"$or": [{"status": "published"}, {"owner_id": principal.id}]}
        return {"status": "published"}

    def _cover(self, ref: Optional[str], data: Optional[str]) -> Optional[str]:
        if data:
            if self.image_host is None:
                raise ValidationError("Image upload is not available, provide cover_image_ref")
            return self.image_host.upload(data)
        return ref

    def list(self, principal: Optional[Principal] = None, search: Optional[str] = None,
             category: Optional[str] = None, sort: Optional[str] = None,
             status: Optional[BookStatus] = None) -> List[dict]:
        sort = sort or "newest"
        if sort not in SORTS:
            raise ValidationError(errors=[{"field": "sort", "message": f"Unknown sort '{sort}'"}])
        conditions = []
        visibility = self._visibility(principal)
        if visibility:
            conditions.append(visibility)
        if search:
            regex = {"$regex": re.escape(search.strip()), "$options": "i"}
            conditions.append({"$or": [{"title": regex}, {"author": regex}]})
        if category and category != "All":
            if category not in CATEGORIES:
                raise ValidationError(errors=[{"field": "category", "message": f"Unknown category '{category}'"}])
            conditions.append({"category": category})
        if status:
            conditions.append({"status": status})
        query = {"$and": conditions} if conditions else {}
        books = list(self.books.find(query).sort(SORTS[sort]))
        attach(self.db, books, "account", "owner_id", "librarian", OWNER_FIELDS)
        return [serialize(b) for b in books]

    def list_by_librarian(self, principal: Optional[Principal], librarian_id: str) -> List[dict]:
        query = {"owner_id": librarian_id}
        if not self._can_see_unpublished(principal, librarian_id):
            query["status"] = "published"
        return [serialize(b) for b in self.books.find(query).sort(SORTS["newest"])]

    def get(self, principal: Optional[Principal], book_id: str) -> dict:
        book = find_by_id(self.db, "book", book_id, "Book")
        if book.get("status") != "published" and not self._can_see_unpublished(principal, book.get("owner_id")):
            raise NotFound("Book not found")
        attach(self.db, [book], "account", "owner_id", "librarian", OWNER_FIELDS)
        return serialize(book)

    def create(self, principal: Principal, payload: BookPayload) -> dict:
        authorize(principal, Action.BOOK_CREATE)
        data = payload.model_dump(exclude={"cover_image_ref", "cover_image_data"})
        book = Book(
            **data,
            cover_image_ref=self._cover(payload.cover_image_ref, payload.cover_image_data),
            owner_id=principal.id,
        )
        doc = create_document(self.db, "book", book)
        logger.info(f"Book {doc['_id']} created by {principal.id}")
        return serialize(doc)

    def update(self, principal: Principal, book_id: str, payload: BookUpdatePayload) -> dict:
        book = find_by_id(self.db, "book", book_id, "Book")
        authorize(principal, Action.BOOK_UPDATE, book.get("owner_id"),
                  message="You can only update your own books")
        patch = payload.model_dump(exclude_none=True)
        image_data = patch.pop("cover_image_data", None)
        if image_data:
            patch["cover_image_ref"] = self._cover(None, image_data)
        for key in ("title", "author", "publisher"):
            if key in patch:
                patch[key] = patch[key].strip()
        if not patch:
            raise ValidationError("No fields to update")
        patch["updated_at"] = utcnow()
        self.books.update_one({"_id": book["_id"]}, {"$set": patch})
        book.update(patch)
        logger.info(f"Book {book_id} updated by {principal.id}")
        return serialize(book)

    def set_status(self, principal: Principal, book_id: str, status: BookStatus) -> dict:
        book = find_by_id(self.db, "book", book_id, "Book")
        authorize(principal, Action.BOOK_SET_STATUS, book.get("owner_id"),
                  message="You can only publish your own books")
        patch = {"status": status, "updated_at": utcnow()}
        self.books.update_one({"_id": book["_id"]}, {"$set": patch})
        book.update(patch)
        logger.info(f"Book {book_id} status set to {status} by {principal.id}")
        return serialize(book)

    def delete(self, principal: Principal, book_id: str) -> None:
        book = find_by_id(self.db, "book", book_id, "Book")
        authorize(principal, Action.BOOK_DELETE, book.get("owner_id"))
        self.books.delete_one({"_id": book["_id"]})
        logger.info(f"Book {book_id} deleted by {principal.id}")
