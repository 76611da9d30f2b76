from passlib.context import CryptContext

from backend.core import config

pwd_context = CryptContext(schemes=config.PASSWORD_HASH_SCHEMES, deprecated="auto")


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(raw: str | None, hashed: str | None) -> bool:
    """Check ``raw`` against a stored hash; blank or unrecognised hashes never match."""
    if not raw or not hashed:
        return False
    try:
        return pwd_context.verify(raw, hashed)
    except ValueError:
        return False
