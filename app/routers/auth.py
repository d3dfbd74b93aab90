from fastapi import APIRouter, Depends, Request
from slowapi import Limiter

from app.dependencies import get_directory, get_engine
from app.schemas.otp import (
    MessageResponse,
    OtpRequest,
    OtpResponse,
    OtpVerifyRequest,
    RegisterRequest,
)
from app.services.engine import OtpEngine
from app.services.identities import IdentityDirectory


def build_router(limiter: Limiter, request_rate: str) -> APIRouter:
    """OTP routes; ``request_rate`` throttles ``/send-otp`` per client address."""
    router = APIRouter(tags=["otp"])

    @router.post("/register", response_model=MessageResponse)
    def register(
        payload: RegisterRequest,
        directory: IdentityDirectory = Depends(get_directory),
    ) -> MessageResponse:
        created = directory.register(payload.user_id, payload.phone, payload.email)
        message = "User registered" if created else "User already registered"
        return MessageResponse(message=message)

    @router.post("/send-otp", response_model=OtpResponse)
    @limiter.limit(request_rate)
    async def send_otp(
        request: Request,
        payload: OtpRequest,
        engine: OtpEngine = Depends(get_engine),
    ) -> OtpResponse:
        record = await engine.request_otp(payload.user_id, payload.method)
        ttl = int((record.expires_at - record.issued_at).total_seconds())
        return OtpResponse(
            message=f"OTP sent via {payload.method}",
            expires_at=record.expires_at,
            expires_in_seconds=ttl,
        )

    @router.post("/verify-otp", response_model=MessageResponse)
    def verify_otp(
        payload: OtpVerifyRequest,
        engine: OtpEngine = Depends(get_engine),
    ) -> MessageResponse:
        engine.verify_otp(payload.user_id, payload.otp)
        return MessageResponse(message="OTP verified")

    return router
