from __future__ import annotations
import jwt
from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from chainproof.errors import Unauthorized
from chainproof.security import decode_token

security = HTTPBearer(auto_error=False)

async def require_admin(credentials: HTTPAuthorizationCredentials | None = Depends(security)) -> dict:
    if credentials is None:
        raise Unauthorized("Admin authentication required")
    try:
        data = decode_token(credentials.credentials)
    except jwt.PyJWTError:
        raise Unauthorized("Invalid token") from None
    if data.get("type") != "access" or data.get("role") != "admin":
        raise Unauthorized("Admin authentication required")
    return data
