"""
Signed, time-bounded JWTs.

Access and refresh tokens share one payload shape, {sub, iat, exp}, but are
signed with different secrets and have different lifetimes. Verification is a
pure function of the token, the key material and the injected clock, and it
checks in a fixed order: signature, then expiry, then payload shape. A
tampered token is therefore never reported as merely expired.
"""

from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

from jose import JWTError, jwt

from config import Settings
from errors import ExpiredToken, InvalidToken

ACCESS = "access"
REFRESH = "refresh"

Clock = Callable[[], datetime]


def system_clock() -> datetime:
    return datetime.now(timezone.utc)


class TokenService:
    def __init__(self, settings: Settings, clock: Optional[Clock] = None):
        self.algorithm = settings.jwt_algorithm
        self.clock = clock or system_clock
        self._keys: Dict[str, str] = {
            ACCESS: settings.jwt_secret,
            REFRESH: settings.jwt_refresh_secret,
        }
        self._ttls: Dict[str, timedelta] = {
            ACCESS: timedelta(minutes=settings.access_token_expire_minutes),
            REFRESH: timedelta(days=settings.refresh_token_expire_days),
        }

    def ttl(self, key_class: str) -> timedelta:
        return self._ttls[key_class]

    def _issue(self, subject_id: str, key_class: str) -> str:
        issued_at = self.clock()
        to_encode = {
            "sub": str(subject_id),
            "iat": int(issued_at.timestamp()),
            "exp": int((issued_at + self._ttls[key_class]).timestamp()),
        }
        return jwt.encode(to_encode, self._keys[key_class], algorithm=self.algorithm)

    def issue_access(self, subject_id: str) -> str:
        return self._issue(subject_id, ACCESS)

    def issue_refresh(self, subject_id: str) -> str:
        return self._issue(subject_id, REFRESH)

    def verify(self, token: str, key_class: str = ACCESS) -> str:
        """Return the subject id of a valid token.

        Raises InvalidToken for a bad signature or malformed payload and
        ExpiredToken once `exp` has passed.
        """
        if key_class not in self._keys:
            raise ValueError(f"unknown key class: {key_class}")
        if not token or not isinstance(token, str):
            raise InvalidToken("Token is missing or malformed")
        try:
            # expiry is checked below against the injected clock
            payload = jwt.decode(
                token,
                self._keys[key_class],
                algorithms=[self.algorithm],
                options={"verify_exp": False},
            )
        except JWTError:
            raise InvalidToken("Token signature is invalid")

        exp = payload.get("exp")
        if isinstance(exp, (int, float)) and not isinstance(exp, bool):
            if self.clock().timestamp() >= exp:
                raise ExpiredToken("Token has expired")
        else:
            raise InvalidToken("Token payload is malformed")

        sub = payload.get("sub")
        iat = payload.get("iat")
        if not isinstance(sub, str) or not sub or not isinstance(iat, (int, float)):
            raise InvalidToken("Token payload is malformed")
        return sub
