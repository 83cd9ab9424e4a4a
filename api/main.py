"""
FastAPI Application — account REST API.

Provides:
- Registration, email verification, sign-in, logout, token refresh
- Profile update (display name, password, avatar upload)
- Health and propagation job inspection

The queue client, stores and services are built once per process in the
lifespan and reached through ``request.app.state.container``.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Optional
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import APIRouter, Depends, FastAPI, File, Form, Query, Request, Response, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from config.logging import setup_logging
from config.settings import get_settings
from core.exceptions import AccountError, ErrorKind, NotFoundError
from models.schemas import AvatarFile, ProfileUpdate
from services.bootstrap import Container, build_container

logger = structlog.get_logger()

ACCESS_COOKIE = "accessToken"
REFRESH_COOKIE = "refreshToken"


# ──────────────────────────────────────────────────────────────
#  Request Models
# ──────────────────────────────────────────────────────────────

class RegisterRequest(BaseModel):
    email: str
    password: str


class VerifyRequest(BaseModel):
    email: str
    token: str


class LoginRequest(BaseModel):
    email: str
    password: str


# ──────────────────────────────────────────────────────────────
#  Dependencies
# ──────────────────────────────────────────────────────────────

def get_container(request: Request) -> Container:
    return request.app.state.container


def current_user(request: Request, container: Container = Depends(get_container)) -> dict[str, Any]:
    """Resolve the caller from a Bearer header or the access token cookie."""
    token = request.cookies.get(ACCESS_COOKIE, "")
    header = request.headers.get("Authorization", "")
    if header.lower().startswith("bearer "):
        token = header[7:].strip()
    return container.account_service.authenticate(token)


def _set_auth_cookies(response: Response, container: Container, access: str, refresh: Optional[str] = None):
    secure = not container.settings.debug
    auth = container.settings.auth
    response.set_cookie(ACCESS_COOKIE, access, max_age=auth.refresh_token_life,
                        httponly=True, secure=secure, samesite="lax")
    if refresh is not None:
        response.set_cookie(REFRESH_COOKIE, refresh, max_age=auth.refresh_token_life,
                            httponly=True, secure=secure, samesite="lax")


# ══════════════════════════════════════════════════════════════
#  HEALTH
# ══════════════════════════════════════════════════════════════

router = APIRouter()


@router.get("/health")
async def health(container: Container = Depends(get_container)):
    queue_name = container.settings.queue.propagation_queue
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "queue_backend": container.queue.backend.backend_name,
        "queue_started": container.queue.started,
        "waiting_jobs": await container.queue.queue_length(queue_name),
        "delayed_jobs": await container.queue.delayed_length(),
    }


# ══════════════════════════════════════════════════════════════
#  USERS
# ══════════════════════════════════════════════════════════════

@router.post("/v1/users/register", status_code=201)
async def register(req: RegisterRequest, container: Container = Depends(get_container)):
    return await container.account_service.create_new(req.email, req.password)


@router.put("/v1/users/verify")
async def verify(req: VerifyRequest, container: Container = Depends(get_container)):
    return await container.account_service.verify_account(req.email, req.token)


@router.post("/v1/users/login")
async def login(req: LoginRequest, response: Response, container: Container = Depends(get_container)):
    result = await container.account_service.sign_in(req.email, req.password)
    _set_auth_cookies(response, container, result.access_token, result.refresh_token)
    return {
        "access_token": result.access_token,
        "refresh_token": result.refresh_token,
        **result.user,
    }


@router.delete("/v1/users/logout")
async def logout(response: Response):
    response.delete_cookie(ACCESS_COOKIE)
    response.delete_cookie(REFRESH_COOKIE)
    return {"logged_out": True}


@router.get("/v1/users/refresh_token")
async def refresh_token(
    request: Request,
    response: Response,
    refresh_token: str = Query(default=""),
    container: Container = Depends(get_container),
):
    token = refresh_token or request.cookies.get(REFRESH_COOKIE, "")
    result = await container.account_service.refresh_token(token)
    _set_auth_cookies(response, container, result["access_token"])
    return result


@router.put("/v1/users/update")
async def update_user(
    display_name: Optional[str] = Form(default=None),
    current_password: Optional[str] = Form(default=None),
    new_password: Optional[str] = Form(default=None),
    avatar: Optional[UploadFile] = File(default=None),
    user: dict[str, Any] = Depends(current_user),
    container: Container = Depends(get_container),
):
    avatar_file = None
    if avatar is not None and avatar.filename:
        avatar_file = AvatarFile(
            filename=avatar.filename,
            content_type=avatar.content_type or "application/octet-stream",
            data=await avatar.read(),
        )
    data = ProfileUpdate(
        display_name=display_name,
        current_password=current_password,
        new_password=new_password,
    )
    return await container.account_service.update(user["_id"], data, avatar_file)


# ══════════════════════════════════════════════════════════════
#  QUEUE
# ══════════════════════════════════════════════════════════════

@router.get("/v1/queues/jobs/{job_id}")
async def get_job(
    job_id: str,
    user: dict[str, Any] = Depends(current_user),
    container: Container = Depends(get_container),
):
    job = await container.queue.get_job(job_id)
    if job is None:
        raise NotFoundError("Job not found.", details={"job_id": job_id})
    return job.to_dict()


# ──────────────────────────────────────────────────────────────
#  Error handling
# ──────────────────────────────────────────────────────────────

def setup_exception_handlers(app: FastAPI) -> None:

    @app.exception_handler(AccountError)
    async def account_error_handler(request: Request, exc: AccountError) -> JSONResponse:
        log = logger.warning if exc.status_code < 500 else logger.error
        log("account_error", error_code=exc.kind.value, message=exc.message, path=request.url.path)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        logger.info("request_validation_error", path=request.url.path)
        return JSONResponse(
            status_code=422,
            content={
                "error_code": ErrorKind.VALIDATION.value,
                "message": "Request validation failed",
                "details": [
                    {
                        "field": ".".join(str(x) for x in error["loc"]),
                        "message": error["msg"],
                        "type": error["type"],
                    }
                    for error in exc.errors()
                ],
            },
        )


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

def create_app(container: Container = None) -> FastAPI:
    """
    Build the app. A prebuilt container (tests) is used as-is; otherwise one
    is built from settings when the lifespan starts.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        nonlocal container
        if container is None:
            settings = get_settings()
            setup_logging(settings)
            container = build_container(settings)
        app.state.container = container
        await container.start()
        logger.info("taskboard_accounts_started",
                    queue_backend=container.queue.backend.backend_name,
                    store_backend=container.settings.database.store_backend)
        yield
        await container.close()
        logger.info("taskboard_accounts_stopped")

    app = FastAPI(
        title="TaskBoard Accounts API",
        description="User accounts with asynchronous comment author propagation",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    setup_exception_handlers(app)
    app.include_router(router)
    return app


app = create_app()
