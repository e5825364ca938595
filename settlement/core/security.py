import hmac
from datetime import datetime, timedelta, timezone

from jose import jwt

from settlement.core.config import settings

ALGO = "HS256"


def create_access_token(subject: str, expires_minutes: int = 30) -> str:
    exp = datetime.now(timezone.utc) + timedelta(minutes=expires_minutes)
    payload = {"sub": subject, "type": "access", "exp": exp}
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=ALGO)


def decode_token(token: str) -> dict:
    return jwt.decode(token, settings.SECRET_KEY, algorithms=[ALGO])


def bearer_matches(authorization: str | None, secret: str) -> bool:
    """Constant-time check of an ``Authorization: Bearer <secret>`` header."""
    if not authorization or not secret:
        return False
    expected = f"Bearer {secret}"
    return hmac.compare_digest(authorization.encode("utf-8"), expected.encode("utf-8"))
