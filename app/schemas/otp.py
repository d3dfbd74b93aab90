from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class RegisterRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId", min_length=1, max_length=128)
    phone: str = Field(min_length=3, max_length=32)
    email: str = Field(min_length=3, max_length=255, pattern=r"^[^@\s]+@[^@\s]+$")


class OtpRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId", min_length=1, max_length=128)
    method: Literal["push", "email"]


class OtpVerifyRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId", min_length=1, max_length=128)
    otp: str = Field(min_length=1, max_length=32)


class MessageResponse(BaseModel):
    ok: bool = True
    message: str


class OtpResponse(MessageResponse):
    expires_at: datetime
    expires_in_seconds: int


class HealthResponse(BaseModel):
    ok: bool = True
    status: str = "ok"
    connections: int


class ErrorResponse(BaseModel):
    ok: bool = False
    reason: str
    detail: str
    retry_after: Optional[int] = None
