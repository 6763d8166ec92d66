from __future__ import annotations
import structlog
from fastapi import APIRouter
from chainproof.config import settings
from chainproof.errors import Unauthorized
from chainproof.schemas.auth import AdminLoginRequest, TokenResponse
from chainproof.security import make_admin_token, verify_admin_password

router = APIRouter(prefix="/auth", tags=["auth"])
log = structlog.get_logger()


@router.post("/admin/token", response_model=TokenResponse)
async def admin_token(payload: AdminLoginRequest):
    if not verify_admin_password(payload.password):
        log.warning("admin_login_failed")
        raise Unauthorized("Admin authentication required")
    return TokenResponse(access_token=make_admin_token(), expires_in=settings.admin_token_ttl_min * 60)
