from passlib.context import CryptContext

from errors import HashingFailed, Validation

# bcrypt only reads the first 72 bytes of its input
MAX_PASSWORD_BYTES = 72


class PasswordHasher:
    """Salted bcrypt hashing with a configurable cost factor."""

    def __init__(self, rounds: int = 10):
        self.pwd_context = CryptContext(
            schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=rounds
        )

    def hash(self, password: str) -> str:
        if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
            raise Validation(f"Password must be at most {MAX_PASSWORD_BYTES} bytes")
        try:
            return self.pwd_context.hash(password)
        except Exception as e:
            raise HashingFailed("Password could not be hashed") from e

    def verify(self, password: str, hashed: str) -> bool:
        """Return False on mismatch or on an unusable stored hash; never raises."""
        if not hashed or len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
            return False
        try:
            return self.pwd_context.verify(password, hashed)
        except (ValueError, TypeError):
            return False

    def dummy_verify(self) -> None:
        # keeps login timing the same whether or not the email exists
        self.pwd_context.dummy_verify()
