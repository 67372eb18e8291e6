import logging
import threading
from contextlib import contextmanager
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Iterable, Tuple

from pymongo.database import Database

from database import to_object_id, utcnow

logger = logging.getLogger(__name__)


def summarize(ratings: Iterable[int]) -> Tuple[float, int]:
    """Mean rounded half-up to one decimal, and the count. (0.0, 0) when empty."""
    values = list(ratings)
    if not values:
        return 0.0, 0
    mean = Decimal(sum(values)) / Decimal(len(values))
    return float(mean.quantize(Decimal("0.1"), rounding=ROUND_HALF_UP)), len(values)


class RatingEngine:
    """Owns Book.rating and Book.review_count.

    Always a full recompute from the live review set. Recomputes of the same
    book are serialized within the process; a book's lock is dropped once no
    recompute holds or waits on it.
    """

    def __init__(self, db: Database):
        self.db = db
        self._guard = threading.Lock()
        # book id -> [lock, number of recomputes holding or waiting on it]
        self._locks: Dict[str, list] = {}

    @contextmanager
    def _locked(self, book_id: str):
        with self._guard:
            entry = self._locks.setdefault(book_id, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if not entry[1]:
                    del self._locks[book_id]

    def recompute(self, book_id: str) -> Tuple[float, int]:
        with self._locked(book_id):
            reviews = self.db["review"].find({"book_id": book_id}, {"rating": 1})
            rating, count = summarize(r["rating"] for r in reviews)
            self.db["book"].update_one(
                {"_id": to_object_id(book_id, "Book")},
                {"$set": {"rating": rating, "review_count": count, "updated_at": utcnow()}},
            )
        logger.info(f"Book {book_id} rating recomputed: {rating} over {count} reviews")
        return rating, count
