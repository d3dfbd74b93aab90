import logging
import math
import time
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from app.config import Settings, settings as default_settings
from app.database import build_engine, build_session_factory, init_db
from app.routers import auth, health, push
from app.schemas.otp import ErrorResponse
from app.services.connections import ConnectionRegistry
from app.services.delivery import DeliveryDispatcher
from app.services.email import EmailSender, SmtpEmailSender
from app.services.engine import OtpEngine
from app.services.errors import InternalError, OtpServiceError, RateLimited
from app.services.identities import IdentityDirectory
from app.services.otp import Clock, OtpStore
from app.services.sweeper import ExpirySweeper

LOGGER = logging.getLogger(__name__)


def _error_response(exc: OtpServiceError) -> JSONResponse:
    body = ErrorResponse(reason=exc.reason, detail=exc.message)
    headers = None
    if isinstance(exc, RateLimited):
        body.retry_after = exc.retry_after
        headers = {"Retry-After": str(exc.retry_after)}
    return JSONResponse(
        status_code=exc.status_code,
        content=body.model_dump(exclude_none=True),
        headers=headers,
    )


def otp_request_rate(app_settings: Settings) -> str:
    return (
        f"{app_settings.otp_request_limit} per "
        f"{app_settings.otp_request_window_seconds} seconds"
    )


def _retry_after(request: Request, exc: RateLimitExceeded) -> int:
    window = int(exc.limit.limit.get_expiry())
    current = getattr(request.state, "view_rate_limit", None)
    if current is None:
        return window
    limit_item, keys = current
    reset_at, _ = request.app.state.limiter.limiter.get_window_stats(limit_item, *keys)
    return max(1, math.ceil(reset_at - time.time()))


def _install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(OtpServiceError)
    async def handle_service_error(request: Request, exc: OtpServiceError) -> JSONResponse:
        return _error_response(exc)

    @app.exception_handler(RateLimitExceeded)
    async def handle_rate_limited(request: Request, exc: RateLimitExceeded) -> JSONResponse:
        LOGGER.warning("OTP request rate limit hit client=%s", get_remote_address(request))
        return _error_response(RateLimited(retry_after=_retry_after(request, exc)))

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        fields = sorted(
            {str(error["loc"][-1]) for error in exc.errors() if error.get("loc")}
        )
        detail = "Invalid request"
        if fields:
            detail = f"Invalid or missing field(s): {', '.join(fields)}"
        body = ErrorResponse(reason="VALIDATION_ERROR", detail=detail)
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=body.model_dump(exclude_none=True),
        )

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        LOGGER.exception("Unhandled error on %s %s", request.method, request.url.path)
        return _error_response(InternalError())


def create_app(
    app_settings: Optional[Settings] = None,
    *,
    email_sender: Optional[EmailSender] = None,
    clock: Optional[Clock] = None,
) -> FastAPI:
    app_settings = app_settings or default_settings
    logging.basicConfig(
        level=app_settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    engine = build_engine(app_settings.database_url)
    init_db(engine)
    directory = IdentityDirectory(build_session_factory(engine))
    store = OtpStore(app_settings.otp_ttl_seconds, app_settings.otp_length, clock=clock)
    registry = ConnectionRegistry(app_settings.push_write_timeout_seconds)
    dispatcher = DeliveryDispatcher(
        registry,
        directory,
        email_sender or SmtpEmailSender.from_settings(app_settings),
        app_settings.otp_email_subject,
        app_settings.otp_ttl_seconds,
    )
    sweeper = ExpirySweeper(store, app_settings.otp_sweep_interval_seconds)

    app = FastAPI(title="OTP Relay")
    app.state.settings = app_settings
    app.state.db_engine = engine
    app.state.directory = directory
    app.state.store = store
    app.state.registry = registry
    app.state.engine = OtpEngine(store, directory, dispatcher)
    app.state.sweeper = sweeper
    # Keys on the socket peer address; run uvicorn with --proxy-headers and
    # --forwarded-allow-ips to trust X-Forwarded-For from a known proxy.
    limiter = Limiter(key_func=get_remote_address)
    app.state.limiter = limiter

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(app_settings.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    _install_error_handlers(app)

    auth_router = auth.build_router(limiter, otp_request_rate(app_settings))
    app.include_router(health.router)
    app.include_router(auth_router)
    app.include_router(push.router)
    app.include_router(health.router, prefix="/api")
    app.include_router(auth_router, prefix="/api")
    app.include_router(push.router, prefix="/api")

    @app.on_event("startup")
    def startup() -> None:
        if app_settings.sweeper_enabled:
            sweeper.start()

    @app.on_event("shutdown")
    def shutdown() -> None:
        sweeper.stop()
        engine.dispose()

    @app.get("/")
    def root():
        return {"status": "Backend running"}

    return app
