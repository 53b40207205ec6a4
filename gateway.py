"""
Per-request authentication dependencies.

The access token is taken from the Authorization header first and the access
cookie second. The account is re-read from the store on every request, so a
role or approval change is visible on the very next call.
"""

from typing import Dict, Optional

from fastapi import Depends, Request
from fastapi.security import OAuth2PasswordBearer

from errors import Forbidden, Unauthenticated
from services import Services
from tokens import ACCESS

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login", auto_error=False)


def get_services(request: Request) -> Services:
    return request.app.state.services


def extract_token(request: Request, header_token: Optional[str], cookie_name: str) -> Optional[str]:
    if header_token:
        return header_token
    return request.cookies.get(cookie_name) or None


def get_current_account(
    request: Request,
    header_token: Optional[str] = Depends(oauth2_scheme),
    services: Services = Depends(get_services),
) -> Dict:
    token = extract_token(request, header_token, services.settings.access_cookie_name)
    if not token:
        raise Unauthenticated("Authentication required")
    # ExpiredToken is not refreshed here; clients call the refresh endpoint
    subject = services.tokens.verify(token, ACCESS)
    account = services.accounts.find_by_id(subject)
    if account is None:
        raise Unauthenticated("Account no longer exists")
    request.state.account = account
    return account


def require_role(*roles: str):
    def role_dep(current_account: Dict = Depends(get_current_account)) -> Dict:
        if current_account.get("role") not in roles:
            raise Forbidden("Insufficient permissions")
        return current_account
    return role_dep


def require_approved(current_account: Dict = Depends(get_current_account)) -> Dict:
    if not current_account.get("isApproved"):
        raise Forbidden("Account has not been approved yet", kind="NotApproved")
    return current_account
