"""
Denormalized counter maintenance.

Counters are always recomputed from the live source rows, never incremented:

    review  -> institution.avgRating, institution.reviewCount
    comment -> thread.commentCount
    helpful -> comment.helpfulCount

Each update runs in one direction, from a source collection to its single
target, and is called explicitly by the operation that changed the source.
Recomputes for the same target are serialized within the process; the read
happens immediately before the write so the last writer always writes a value
computed from live state.
"""

import threading
from contextlib import contextmanager
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Iterator, List

from pymongo.database import Database
from pymongo.errors import PyMongoError

from database import (
    COLL_COMMENT,
    COLL_HELPFUL,
    COLL_INSTITUTION,
    COLL_REVIEW,
    COLL_THREAD,
    store_call,
    to_obj_id,
)
from errors import AggregateRecomputeError, StorageUnavailable
from logger import get_logger

logger = get_logger(__name__)


def round_half_up(value: float) -> float:
    """Round to one decimal, halves away from zero (4.25 -> 4.3)."""
    return float(Decimal(str(value)).quantize(Decimal("0.1"), rounding=ROUND_HALF_UP))


class KeyedLocks:
    """A lock per key, dropped again once nobody holds or waits on it."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, List] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


class AggregateEngine:
    def __init__(self, db: Database, timeout_seconds: float = 5.0):
        self.db = db
        self.timeout_seconds = timeout_seconds
        self.locks = KeyedLocks()

    @contextmanager
    def _recompute(self, target: str, target_id: str) -> Iterator[None]:
        with self.locks.hold(f"{target}:{target_id}"):
            try:
                with store_call(self.timeout_seconds):
                    yield
            except (PyMongoError, StorageUnavailable) as e:
                logger.error(
                    "recompute of %s %s failed: %s", target, target_id, type(e).__name__
                )
                raise AggregateRecomputeError(
                    f"Could not refresh the {target} counters", target, target_id
                ) from e

    def recompute_institution_rating(self, institution_id: str) -> Dict:
        """Rewrite avgRating (1 decimal) and reviewCount from live reviews."""
        with self._recompute("institution", institution_id):
            rows = list(self.db[COLL_REVIEW].aggregate([
                {"$match": {"institution_id": institution_id}},
                {"$group": {
                    "_id": "$institution_id",
                    "avgRating": {"$avg": "$rating"},
                    "reviewCount": {"$sum": 1},
                }},
            ]))
            if rows:
                values = {
                    "avgRating": round_half_up(rows[0]["avgRating"]),
                    "reviewCount": rows[0]["reviewCount"],
                }
            else:
                values = {"avgRating": 0, "reviewCount": 0}
            self.db[COLL_INSTITUTION].update_one(
                {"_id": to_obj_id(institution_id, "Institution")}, {"$set": values}
            )
        logger.debug("institution %s rating -> %s", institution_id, values)
        return values

    def recompute_thread_comment_count(self, thread_id: str) -> Dict:
        with self._recompute("thread", thread_id):
            count = self.db[COLL_COMMENT].count_documents({"thread_id": thread_id})
            self.db[COLL_THREAD].update_one(
                {"_id": to_obj_id(thread_id, "Thread")}, {"$set": {"commentCount": count}}
            )
        logger.debug("thread %s commentCount -> %d", thread_id, count)
        return {"commentCount": count}

    def recompute_comment_helpful_count(self, comment_id: str) -> Dict:
        with self._recompute("comment", comment_id):
            count = self.db[COLL_HELPFUL].count_documents({"comment_id": comment_id})
            self.db[COLL_COMMENT].update_one(
                {"_id": to_obj_id(comment_id, "Comment")}, {"$set": {"helpfulCount": count}}
            )
        logger.debug("comment %s helpfulCount -> %d", comment_id, count)
        return {"helpfulCount": count}
