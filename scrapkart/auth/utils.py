import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt

from scrapkart.auth.constants import ACCESS_TOKEN_EXPIRE_MINUTES, JWT_ALGO, JWT_SECRET


def create_access_token(user_id: str, role: str, expires_dur: int = ACCESS_TOKEN_EXPIRE_MINUTES) -> str:
    """Tokens normally come from the identity provider; this mints compatible ones for tooling and tests."""
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "role": role,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=expires_dur)).timestamp()),
        "jti": secrets.token_hex(16),
    }
    return jwt.encode(claims=payload, key=JWT_SECRET, algorithm=JWT_ALGO)


def decode_token(token: str) -> Optional[dict]:
    """Verify signature and expiry; None for anything invalid."""
    try:
        return jwt.decode(token, key=JWT_SECRET, algorithms=[JWT_ALGO])
    except JWTError:
        return None
