"""
Registration, login and token refresh.

Passwords only ever pass through the hasher; neither the plaintext nor the
hash is logged or returned. There is no server-side token store: a token is
valid until it expires, and logout only clears the client's copies.
"""

from dataclasses import dataclass
from typing import Dict, Tuple

from accounts import AccountStore, normalize_email
from errors import Conflict, Forbidden, Unauthenticated
from hashing import PasswordHasher
from logger import get_logger
from schemas import Account
from tokens import REFRESH, TokenService

logger = get_logger(__name__)


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    token_type: str = "bearer"


class AuthService:
    def __init__(self, accounts: AccountStore, hasher: PasswordHasher, tokens: TokenService):
        self.accounts = accounts
        self.hasher = hasher
        self.tokens = tokens

    def issue(self, account: Dict) -> TokenPair:
        subject = str(account["_id"])
        return TokenPair(
            access_token=self.tokens.issue_access(subject),
            refresh_token=self.tokens.issue_refresh(subject),
        )

    def register(self, name: str, email: str, password: str) -> Tuple[Dict, TokenPair]:
        """Create an unapproved user account and sign it in."""
        account = self.accounts.insert(
            Account(
                name=name,
                email=normalize_email(email),
                password_hash=self.hasher.hash(password),
                role="user",
            )
        )
        logger.info("registered account %s", account["_id"])
        return account, self.issue(account)

    def login(self, email: str, password: str) -> Tuple[Dict, TokenPair]:
        account = self.accounts.find_by_email(email)
        if account is None:
            self.hasher.dummy_verify()
            logger.info("login failed for unknown email")
            raise Unauthenticated("Invalid email or password", kind="InvalidCredentials")
        if not self.hasher.verify(password, account.get("password_hash", "")):
            logger.info("login failed for account %s", account["_id"])
            raise Unauthenticated("Invalid email or password", kind="InvalidCredentials")
        if not account.get("isApproved"):
            raise Forbidden("Account has not been approved yet", kind="NotApproved")
        logger.info("account %s logged in", account["_id"])
        return account, self.issue(account)

    def refresh(self, refresh_token: str) -> Tuple[Dict, TokenPair]:
        """Exchange a refresh token for a new access and refresh token."""
        subject = self.tokens.verify(refresh_token, REFRESH)
        account = self.accounts.find_by_id(subject)
        if account is None:
            raise Unauthenticated("Account no longer exists")
        return account, self.issue(account)

    def bootstrap_admin(self, name: str, email: str, password: str) -> Dict:
        """Create the first admin account, approved from the start."""
        if self.accounts.count_admins() > 0:
            raise Conflict("Admin already exists", kind="AdminExists")
        account = self.accounts.insert(
            Account(
                name=name,
                email=normalize_email(email),
                password_hash=self.hasher.hash(password),
                role="admin",
                isApproved=True,
            )
        )
        logger.info("bootstrap admin %s created", account["_id"])
        return account
