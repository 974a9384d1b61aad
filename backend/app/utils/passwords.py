"""Password hashing using bcrypt."""

import bcrypt


class PasswordHasher:
    """Hashes and verifies passwords with a fixed bcrypt work factor.

    >>> hasher = PasswordHasher(rounds=4)
    >>> hasher.verify("Secret123!", hasher.hash("Secret123!"))
    True
    """

    def __init__(self, rounds: int = 12):
        self._rounds = rounds

    def hash(self, password: str) -> str:
        if not password:
            raise ValueError("Password cannot be empty")
        salt = bcrypt.gensalt(rounds=self._rounds)
        return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")

    def verify(self, password: str, password_hash: str | None) -> bool:
        """Constant-time check; malformed or missing hashes never match."""
        if not password or not password_hash:
            return False
        try:
            return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
        except (ValueError, TypeError):
            return False
