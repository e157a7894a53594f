import hashlib
import secrets


def generate_refresh_token() -> str:
    """
    Generate a cryptographically secure random refresh token.
    Returns a URL-safe 64-character token (384 bits of entropy).
    """
    return secrets.token_urlsafe(48)


def hash_token(raw_token: str) -> str:
    """
    Deterministic SHA-256 digest of a raw refresh token.

    The digest is the only lookup key persisted for a refresh token, so it
    must be unsalted: the same raw token always maps to the same row.

    Raises:
        ValueError: if the token is empty or cannot be encoded as UTF-8
    """
    if not raw_token:
        raise ValueError("Refresh token must be a non-empty string")
    try:
        encoded = raw_token.encode("utf-8")
    except UnicodeEncodeError as exc:
        raise ValueError("Refresh token is not valid UTF-8 text") from exc
    return hashlib.sha256(encoded).hexdigest()
