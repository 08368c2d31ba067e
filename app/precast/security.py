import secrets

from flask import Request, session
from werkzeug.security import check_password_hash, generate_password_hash

# 32 random bytes -> 43 url-safe characters.
SHARE_TOKEN_BYTES = 32


def ensure_csrf_token() -> str:
    """Ensure a CSRF token exists in the session and return it."""
    token = session.get("csrf_token")
    if not token:
        token = secrets.token_urlsafe(32)
        session["csrf_token"] = token
    return token


def validate_csrf(req: Request) -> bool:
    """Validate CSRF token from header, form, or JSON body."""
    token = req.headers.get("X-CSRF-Token") or req.form.get("csrf_token")
    if not token and req.is_json:
        json_data = req.get_json(silent=True) or {}
        if isinstance(json_data, dict):
            token = json_data.get("csrf_token")
    expected = session.get("csrf_token")
    return bool(token and expected and secrets.compare_digest(str(token), str(expected)))


def new_share_token() -> str:
    """Unguessable share credential from the OS CSPRNG."""
    return secrets.token_urlsafe(SHARE_TOKEN_BYTES)


def hash_share_password(password: str | None) -> str | None:
    if not password:
        return None
    return generate_password_hash(password)


def check_share_password(password_hash: str | None, candidate: str | None) -> bool:
    if not password_hash:
        return True
    if not candidate:
        return False
    return check_password_hash(password_hash, candidate)
