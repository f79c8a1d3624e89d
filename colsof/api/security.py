"""Password hashing with bcrypt."""

import bcrypt

BCRYPT_ROUNDS = 10


def get_password_hash(password: str, rounds: int = BCRYPT_ROUNDS) -> str:
    """Hash a password; bcrypt only looks at the first 72 bytes."""
    password_bytes = password.encode("utf-8")[:72]
    hashed = bcrypt.hashpw(password_bytes, bcrypt.gensalt(rounds=rounds))
    return hashed.decode("utf-8")


def verify_password(plain_password: str, hashed_password: str) -> bool:
    password_bytes = plain_password.encode("utf-8")[:72]
    try:
        return bcrypt.checkpw(password_bytes, hashed_password.encode("utf-8"))
    except ValueError:
        # Stored value is not a bcrypt hash
        return False
