from __future__ import annotations
import uuid
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from chainproof.config import settings
from chainproof.errors import ApiError
from chainproof.logging_setup import configure_logging
from chainproof.routes.system import router as system_router
from chainproof.routes.auth import router as auth_router
from chainproof.routes.challenges import router as challenges_router
from chainproof.routes.submissions import router as submissions_router, status_router
from chainproof.routes.likes import router as likes_router
from chainproof.routes.users import router as users_router
from chainproof.routes.admin import router as admin_router
import structlog

configure_logging()
log = structlog.get_logger()

@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    log.info("startup", env=settings.environment, version=settings.app_version, git_sha=settings.git_sha)
    yield
    # Shutdown
    log.info("shutdown")

app = FastAPI(
    title=f"{settings.app_display_name} API",
    version=settings.app_version,
    lifespan=lifespan,
    description=f"{settings.app_display_name} API for signed, ledger-anchored image submissions",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.environment == "dev" else settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(system_router)
app.include_router(auth_router)
app.include_router(challenges_router)
app.include_router(submissions_router)
app.include_router(status_router)
app.include_router(likes_router)
app.include_router(users_router)
app.include_router(admin_router)

@app.exception_handler(ApiError)
async def api_error_handler(request: Request, exc: ApiError):
    body = {"detail": exc.message}
    if exc.field:
        body["field"] = exc.field
    if exc.status_code >= 500:
        log.error("api_error", error=exc.message, path=request.url.path)
    return JSONResponse(status_code=exc.status_code, content=body)

@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    loc = [str(part) for part in first.get("loc", ()) if part not in ("body", "query", "path", "form")]
    body = {"detail": first.get("msg", "Invalid request"), "errors": jsonable_encoder(errors)}
    if loc:
        body["field"] = loc[-1]
    return JSONResponse(status_code=400, content=body)

@app.middleware("http")
async def add_request_id(request: Request, call_next):
    rid = request.headers.get("x-request-id") or str(uuid.uuid4())
    request.state.request_id = rid
    structlog.contextvars.bind_contextvars(request_id=rid, correlation_id=rid)
    try:
        response: Response = await call_next(request)
    finally:
        structlog.contextvars.clear_contextvars()
    response.headers["X-Request-ID"] = rid
    return response
