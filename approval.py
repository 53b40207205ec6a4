"""
Account approval state machine.

    NO_EVIDENCE --submit_evidence--> PENDING_REVIEW --approve--> APPROVED
                                     PENDING_REVIEW --submit_evidence--> PENDING_REVIEW

Each transition is a single conditional update on the account document, so
the check and the write cannot interleave with a concurrent transition. This
module does not check who is calling; admin-only access to `approve` is the
gateway's job.
"""

from enum import Enum
from typing import Dict, List

from accounts import AccountStore
from errors import InvalidTransition, NotFound, Validation
from logger import get_logger

logger = get_logger(__name__)


class ApprovalState(str, Enum):
    NO_EVIDENCE = "no_evidence"
    PENDING_REVIEW = "pending_review"
    APPROVED = "approved"


def approval_state(account: Dict) -> ApprovalState:
    if account.get("isApproved"):
        return ApprovalState.APPROVED
    if account.get("approvalEvidenceRef"):
        return ApprovalState.PENDING_REVIEW
    return ApprovalState.NO_EVIDENCE


class ApprovalService:
    def __init__(self, accounts: AccountStore):
        self.accounts = accounts

    def _load(self, account_id: str) -> Dict:
        account = self.accounts.find_by_id(account_id)
        if account is None:
            raise NotFound("Account not found")
        return account

    def submit_evidence(self, account_id: str, evidence_ref: str) -> Dict:
        """Store (or overwrite) the evidence reference of an unapproved account."""
        if not evidence_ref:
            raise Validation("Evidence reference is required")
        updated = self.accounts.update_where(
            account_id, {"isApproved": False}, {"approvalEvidenceRef": evidence_ref}
        )
        if updated is None:
            self._load(account_id)
            raise InvalidTransition("Account is already approved", kind="AlreadyApproved")
        logger.info("approval evidence submitted for account %s", account_id)
        return updated

    def approve(self, account_id: str) -> Dict:
        updated = self.accounts.update_where(
            account_id,
            {"isApproved": False, "approvalEvidenceRef": {"$ne": None}},
            {"isApproved": True},
        )
        if updated is not None:
            logger.info("account %s approved", account_id)
            return updated

        state = approval_state(self._load(account_id))
        if state is ApprovalState.APPROVED:
            raise InvalidTransition("Account is already approved", kind="AlreadyApproved")
        raise InvalidTransition(
            "No approval evidence has been uploaded", kind="EvidenceMissing"
        )

    def list_pending(self) -> List[Dict]:
        return self.accounts.list_pending()
