from __future__ import annotations
from chainproof.schemas.common import CamelModel


class AdminLoginRequest(CamelModel):
    password: str


class TokenResponse(CamelModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
