import hashlib
from datetime import datetime, timedelta, timezone
from typing import Optional

from config import settings


# Simple token system: token is user_id|expiry signed with the secret


def hash_password(pw: str, secret: Optional[str] = None) -> str:
    secret = settings.secret_key if secret is None else secret
    return hashlib.sha256((pw + secret).encode()).hexdigest()


def verify_password(pw: str, hashed: str, secret: Optional[str] = None) -> bool:
    return hash_password(pw, secret) == hashed


def make_token(user_id: str, now: Optional[datetime] = None, ttl_hours: Optional[int] = None) -> str:
    now = now or datetime.now(timezone.utc)
    ttl = settings.token_ttl_hours if ttl_hours is None else ttl_hours
    expiry = int((now + timedelta(hours=ttl)).timestamp())
    payload = f"{user_id}|{expiry}"
    signature = hashlib.sha256((payload + settings.secret_key).encode()).hexdigest()
    return f"{payload}|{signature}"


def parse_token(token: str, now: Optional[datetime] = None) -> Optional[str]:
    """Return the user id carried by a valid, unexpired token, else None."""
    parts = token.split("|") if token else []
    if len(parts) != 3:
        return None
    user_id, expiry, signature = parts
    payload = f"{user_id}|{expiry}"
    if hashlib.sha256((payload + settings.secret_key).encode()).hexdigest() != signature:
        return None
    if not expiry.isdigit():
        return None
    now = now or datetime.now(timezone.utc)
    if int(expiry) < int(now.timestamp()):
        return None
    return user_id
