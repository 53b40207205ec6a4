"""
Institutions, reviews, categories, threads, comments and helpful votes.

Every create/delete of a review, comment or helpful vote is followed, in the
same call, by a recompute of the counter it feeds. The source write is never
undone if the recompute fails: the result then carries the failure as a
warning and the counter stays stale until the next recompute of that target.
"""

import re
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from aggregates import AggregateEngine
from database import (
    COLL_CATEGORY,
    COLL_COMMENT,
    COLL_HELPFUL,
    COLL_INSTITUTION,
    COLL_REVIEW,
    COLL_THREAD,
    sanitize,
    store_call,
    to_obj_id,
)
from errors import AggregateRecomputeError, Conflict, Forbidden, NotFound
from logger import get_logger
from schemas import Category, Comment, FinancialInstitution, Helpful, Review, Thread

logger = get_logger(__name__)


@dataclass
class MutationResult:
    data: Dict
    aggregate: Optional[Dict] = None
    warnings: List[AggregateRecomputeError] = field(default_factory=list)
    created: bool = True


def slugify(name: str) -> str:
    slug = re.sub(r"[^\w]+", "-", name.strip().lower(), flags=re.UNICODE).strip("-")
    return slug or "category"


def can_modify(account: Dict, owner_id: str) -> bool:
    return account.get("role") == "admin" or str(account["_id"]) == owner_id


class ContentService:
    def __init__(self, db: Database, aggregates: AggregateEngine, timeout_seconds: float = 5.0):
        self.db = db
        self.aggregates = aggregates
        self.timeout_seconds = timeout_seconds

    def call(self):
        return store_call(self.timeout_seconds)

    def _find(self, coll: str, doc_id: str, what: str) -> Dict:
        with self.call():
            doc = self.db[coll].find_one({"_id": to_obj_id(doc_id, what)})
        if not doc:
            raise NotFound(f"{what} not found")
        return doc

    def _insert(self, coll: str, doc: Dict) -> Dict:
        with self.call():
            res = self.db[coll].insert_one(doc)
        doc["_id"] = res.inserted_id
        return sanitize(doc)

    def _refresh(
        self, result: MutationResult, recompute: Callable[[str], Dict], target_id: str
    ) -> MutationResult:
        try:
            result.aggregate = recompute(target_id)
        except AggregateRecomputeError as e:
            # already logged by the engine; the source write stands
            result.warnings.append(e)
        return result

    # Institutions

    def create_institution(self, institution: FinancialInstitution) -> Dict:
        doc = institution.model_dump()
        doc["avgRating"] = 0
        doc["reviewCount"] = 0
        return self._insert(COLL_INSTITUTION, doc)

    def get_institution(self, institution_id: str) -> Dict:
        return sanitize(self._find(COLL_INSTITUTION, institution_id, "Institution"))

    def list_institutions(self) -> List[Dict]:
        with self.call():
            docs = self.db[COLL_INSTITUTION].find({}).sort([("createdAt", -1)])
            return [sanitize(d) for d in docs]

    # Reviews

    def create_review(
        self, account: Dict, institution_id: str, rating: int, title: str, text: str
    ) -> MutationResult:
        self._find(COLL_INSTITUTION, institution_id, "Institution")
        doc = Review(
            institution_id=institution_id,
            user_id=str(account["_id"]),
            rating=rating,
            title=title,
            text=text,
        ).model_dump()
        try:
            review = self._insert(COLL_REVIEW, doc)
        except DuplicateKeyError:
            raise Conflict(
                "You have already reviewed this institution", kind="DuplicateReview"
            )
        return self._refresh(
            MutationResult(review), self.aggregates.recompute_institution_rating, institution_id
        )

    def delete_review(self, account: Dict, review_id: str) -> MutationResult:
        review = self._find(COLL_REVIEW, review_id, "Review")
        if not can_modify(account, review["user_id"]):
            raise Forbidden("You may only delete your own reviews")
        with self.call():
            self.db[COLL_REVIEW].delete_one({"_id": review["_id"]})
        logger.info("review %s deleted by account %s", review_id, account["_id"])
        return self._refresh(
            MutationResult(sanitize(review), created=False),
            self.aggregates.recompute_institution_rating,
            review["institution_id"],
        )

    # Categories and threads

    def create_category(self, name: str, description: str) -> Dict:
        doc = Category(name=name, description=description, slug=slugify(name)).model_dump()
        try:
            return self._insert(COLL_CATEGORY, doc)
        except DuplicateKeyError:
            raise Conflict("Category already exists", kind="DuplicateCategory")

    def create_thread(self, account: Dict, category_id: str, title: str) -> Dict:
        self._find(COLL_CATEGORY, category_id, "Category")
        doc = Thread(category_id=category_id, user_id=str(account["_id"]), title=title)
        return self._insert(COLL_THREAD, doc.model_dump())

    def get_thread(self, thread_id: str) -> Dict:
        return sanitize(self._find(COLL_THREAD, thread_id, "Thread"))

    def list_comments(self, thread_id: str) -> List[Dict]:
        self._find(COLL_THREAD, thread_id, "Thread")
        with self.call():
            docs = self.db[COLL_COMMENT].find({"thread_id": thread_id}).sort([("createdAt", 1)])
            return [sanitize(d) for d in docs]

    # Comments

    def create_comment(self, account: Dict, thread_id: str, content: str) -> MutationResult:
        self._find(COLL_THREAD, thread_id, "Thread")
        doc = Comment(thread_id=thread_id, user_id=str(account["_id"]), content=content)
        comment = self._insert(COLL_COMMENT, doc.model_dump())
        return self._refresh(
            MutationResult(comment), self.aggregates.recompute_thread_comment_count, thread_id
        )

    def get_comment(self, comment_id: str) -> Dict:
        return sanitize(self._find(COLL_COMMENT, comment_id, "Comment"))

    def delete_comment(self, account: Dict, comment_id: str) -> MutationResult:
        comment = self._find(COLL_COMMENT, comment_id, "Comment")
        if not can_modify(account, comment["user_id"]):
            raise Forbidden("You may only delete your own comments")
        with self.call():
            self.db[COLL_COMMENT].delete_one({"_id": comment["_id"]})
            self.db[COLL_HELPFUL].delete_many({"comment_id": comment_id})
        logger.info("comment %s deleted by account %s", comment_id, account["_id"])
        return self._refresh(
            MutationResult(sanitize(comment), created=False),
            self.aggregates.recompute_thread_comment_count,
            comment["thread_id"],
        )

    # Helpful votes

    def toggle_helpful(self, account: Dict, comment_id: str) -> MutationResult:
        """Remove the caller's vote if present, otherwise add it."""
        self._find(COLL_COMMENT, comment_id, "Comment")
        user_id = str(account["_id"])
        with self.call():
            removed = self.db[COLL_HELPFUL].delete_one(
                {"comment_id": comment_id, "user_id": user_id}
            ).deleted_count
        if removed:
            result = MutationResult(
                {"comment_id": comment_id, "user_id": user_id}, created=False
            )
        else:
            result = MutationResult(self.add_helpful(user_id, comment_id))
        return self._refresh(result, self.aggregates.recompute_comment_helpful_count, comment_id)

    def add_helpful(self, user_id: str, comment_id: str) -> Dict:
        doc = Helpful(comment_id=comment_id, user_id=user_id).model_dump()
        try:
            return self._insert(COLL_HELPFUL, doc)
        except DuplicateKeyError:
            raise Conflict("You have already marked this comment helpful", kind="DuplicateVote")
