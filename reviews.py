import logging
from typing import List

from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import attach, create_document, find_by_id, serialize, utcnow
from errors import DuplicateError, NotEligible, ValidationError
from policy import Action, authorize
from ratings import RatingEngine, summarize
from schemas import Principal, Review, ReviewPayload, ReviewUpdatePayload

logger = logging.getLogger(__name__)

AUTHOR_FIELDS = {"name": 1, "photo_url": 1}
BOOK_FIELDS = {"title": 1, "author": 1, "cover_image_ref": 1}
NEWEST = [("created_at", -1), ("_id", -1)]


class ReviewManager:
    def __init__(self, db: Database, ratings: RatingEngine):
        self.db = db
        self.ratings = ratings

    @property
    def reviews(self):
        return self.db["review"]

    def _has_delivered_order(self, user_id: str, book_id: str) -> bool:
        return self.db["order"].find_one(
            {"user_id": user_id, "book_id": book_id, "status": "delivered"}) is not None

    def _has_reviewed(self, user_id: str, book_id: str) -> bool:
        return self.reviews.find_one({"user_id": user_id, "book_id": book_id}) is not None

    def create(self, principal: Principal, payload: ReviewPayload) -> dict:
        find_by_id(self.db, "book", payload.book_id, "Book")
        if not self._has_delivered_order(principal.id, payload.book_id):
            raise NotEligible()
        if self._has_reviewed(principal.id, payload.book_id):
            raise DuplicateError("You have already reviewed this book")
        review = Review(user_id=principal.id, book_id=payload.book_id,
                        rating=payload.rating, comment=payload.comment)
        try:
            doc = create_document(self.db, "review", review)
        except DuplicateKeyError:
            raise DuplicateError("You have already reviewed this book")
        self.ratings.recompute(payload.book_id)
        logger.info(f"Review {doc['_id']} added by {principal.id} for book {payload.book_id}")
        attach(self.db, [doc], "account", "user_id", "user", AUTHOR_FIELDS)
        return serialize(doc)

    def get(self, review_id: str) -> dict:
        review = find_by_id(self.db, "review", review_id, "Review")
        attach(self.db, [review], "account", "user_id", "user", AUTHOR_FIELDS)
        return serialize(review)

    def list_by_book(self, book_id: str) -> dict:
        reviews = list(self.reviews.find({"book_id": book_id}).sort(NEWEST))
        attach(self.db, reviews, "account", "user_id", "user", AUTHOR_FIELDS)
        rating, count = summarize(r["rating"] for r in reviews)
        return {"items": [serialize(r) for r in reviews], "avg_rating": rating, "total_reviews": count}

    def list_by_user(self, user_id: str) -> List[dict]:
        reviews = list(self.reviews.find({"user_id": user_id}).sort(NEWEST))
        attach(self.db, reviews, "book", "book_id", "book", BOOK_FIELDS)
        return [serialize(r) for r in reviews]

    def update(self, principal: Principal, review_id: str, payload: ReviewUpdatePayload) -> dict:
        review = find_by_id(self.db, "review", review_id, "Review")
        authorize(principal, Action.REVIEW_UPDATE, review["user_id"])
        patch = payload.model_dump(exclude_none=True)
        if not patch:
            raise ValidationError("No fields to update")
        patch["updated_at"] = utcnow()
        self.reviews.update_one({"_id": review["_id"]}, {"$set": patch})
        review.update(patch)
        self.ratings.recompute(review["book_id"])
        logger.info(f"Review {review_id} updated by {principal.id}")
        return serialize(review)

    def delete(self, principal: Principal, review_id: str) -> None:
        review = find_by_id(self.db, "review", review_id, "Review")
        authorize(principal, Action.REVIEW_DELETE, review["user_id"])
        self.reviews.delete_one({"_id": review["_id"]})
        self.ratings.recompute(review["book_id"])
        logger.info(f"Review {review_id} deleted by {principal.id}")

    def can_review(self, principal: Principal, book_id: str) -> dict:
        has_ordered = self._has_delivered_order(principal.id, book_id)
        has_reviewed = self._has_reviewed(principal.id, book_id)
        return {
            "can_review": has_ordered and not has_reviewed,
            "has_ordered": has_ordered,
            "has_reviewed": has_reviewed,
        }
