"""
Credential store.

Accounts live in the `user` collection. Email uniqueness is enforced by the
unique index, so two concurrent registrations for the same address cannot
both succeed; the loser gets Conflict(DuplicateEmail).
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from database import COLL_USER, MongoStore, sanitize, to_obj_id
from errors import Conflict, NotFound
from schemas import Account

PUBLIC_FIELDS = ("id", "name", "email", "role", "isApproved", "approvalEvidenceRef", "createdAt")


def normalize_email(email: str) -> str:
    return email.strip().lower()


def public_account(doc: Dict) -> Dict[str, Any]:
    """Client-safe view of an account document. Never includes the hash."""
    d = sanitize(doc)
    return {k: d.get(k) for k in PUBLIC_FIELDS}


class AccountStore(MongoStore):
    collection_name = COLL_USER

    def find_by_email(self, email: str) -> Optional[Dict]:
        with self.call():
            return self.coll.find_one({"email": normalize_email(email)})

    def find_by_id(self, account_id: str) -> Optional[Dict]:
        try:
            _id = ObjectId(account_id)
        except (InvalidId, TypeError):
            return None
        with self.call():
            return self.coll.find_one({"_id": _id})

    def insert(self, account: Account) -> Dict:
        doc = account.model_dump()
        doc["email"] = normalize_email(doc["email"])
        try:
            with self.call():
                res = self.coll.insert_one(doc)
        except DuplicateKeyError:
            raise Conflict("Email is already registered", kind="DuplicateEmail")
        doc["_id"] = res.inserted_id
        return doc

    def update(self, account_id: str, fields: Dict[str, Any]) -> Dict:
        updated = self.update_where(account_id, {}, fields)
        if updated is None:
            raise NotFound("Account not found")
        return updated

    def update_where(
        self, account_id: str, conditions: Dict[str, Any], fields: Dict[str, Any]
    ) -> Optional[Dict]:
        """Atomically update the account only if it also matches `conditions`.

        Returns the updated document, or None when nothing matched.
        """
        query = {"_id": to_obj_id(account_id, "Account"), **conditions}
        changes = {**fields, "updatedAt": datetime.now(timezone.utc)}
        with self.call():
            return self.coll.find_one_and_update(
                query, {"$set": changes}, return_document=ReturnDocument.AFTER
            )

    def list_pending(self) -> List[Dict]:
        """Unapproved accounts that have uploaded evidence, oldest first."""
        with self.call():
            cursor = self.coll.find(
                {"isApproved": False, "approvalEvidenceRef": {"$ne": None}}
            ).sort([("createdAt", 1)])
            return list(cursor)

    def count_admins(self) -> int:
        with self.call():
            return self.coll.count_documents({"role": "admin"})
