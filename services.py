from dataclasses import dataclass
from typing import Optional

from pymongo.database import Database

from accounts import AccountStore
from aggregates import AggregateEngine
from approval import ApprovalService
from auth import AuthService
from config import Settings
from content import ContentService
from hashing import PasswordHasher
from tokens import Clock, TokenService
from uploads import EvidenceUploads


@dataclass
class Services:
    """Everything a request handler needs, wired from one Settings object."""

    settings: Settings
    db: Database
    hasher: PasswordHasher
    tokens: TokenService
    accounts: AccountStore
    auth: AuthService
    approvals: ApprovalService
    aggregates: AggregateEngine
    content: ContentService
    uploads: EvidenceUploads

    @classmethod
    def build(cls, settings: Settings, db: Database, clock: Optional[Clock] = None) -> "Services":
        timeout = settings.db_timeout_seconds
        hasher = PasswordHasher(rounds=settings.bcrypt_rounds)
        tokens = TokenService(settings, clock=clock)
        accounts = AccountStore(db, timeout)
        aggregates = AggregateEngine(db, timeout)
        return cls(
            settings=settings,
            db=db,
            hasher=hasher,
            tokens=tokens,
            accounts=accounts,
            auth=AuthService(accounts, hasher, tokens),
            approvals=ApprovalService(accounts),
            aggregates=aggregates,
            content=ContentService(db, aggregates, timeout),
            uploads=EvidenceUploads(settings.upload_dir, settings.max_upload_bytes),
        )
