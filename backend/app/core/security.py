import secrets

from passlib.context import CryptContext


pwd_context = CryptContext(schemes=["argon2"], deprecated="auto")

API_KEY_PREFIX_LENGTH = 8


def generate_api_key() -> str:
    return secrets.token_urlsafe(32)


def api_key_prefix(api_key: str) -> str:
    """Stored in clear next to the hash so lookups only verify a handful of candidates."""
    return api_key[:API_KEY_PREFIX_LENGTH]


def hash_api_key(api_key: str) -> str:
    return pwd_context.hash(api_key)


def verify_api_key(plain_api_key: str, hashed_api_key: str) -> bool:
    return pwd_context.verify(plain_api_key, hashed_api_key)


def admin_key_matches(candidate: str, admin_key: str) -> bool:
    return secrets.compare_digest(candidate.encode("utf-8"), admin_key.encode("utf-8"))
