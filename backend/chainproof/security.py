from __future__ import annotations
import hmac
from datetime import datetime, timedelta, timezone
from typing import Any
import jwt
from chainproof.config import settings

JWT_ALG = "HS256"
ADMIN_SUBJECT = "admin"

def verify_admin_password(password: str) -> bool:
    # No configured password means admin login is switched off.
    if not settings.admin_password:
        return False
    return hmac.compare_digest(password.encode(), settings.admin_password.encode())

def make_admin_token() -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": ADMIN_SUBJECT,
        "role": "admin",
        "type": "access",
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=settings.admin_token_ttl_min)).timestamp()),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=JWT_ALG)

def decode_token(token: str) -> dict[str, Any]:
    return jwt.decode(token, settings.jwt_secret, algorithms=[JWT_ALG])
