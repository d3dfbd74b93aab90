import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

load_dotenv(override=True)


def _env_bool(name: str, default: bool = False) -> bool:
    raw_value = os.getenv(name)
    if raw_value is None:
        return default
    return raw_value.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_list(name: str, default: str = "") -> tuple[str, ...]:
    raw_value = os.getenv(name, default)
    return tuple(item.strip() for item in raw_value.split(",") if item.strip())


@dataclass(frozen=True)
class Settings:
    database_url: str = os.getenv("DATABASE_URL", "sqlite:///./data/otp.db")
    otp_length: int = int(os.getenv("OTP_LENGTH", "6"))
    otp_ttl_seconds: int = int(os.getenv("OTP_TTL_SECONDS", "300"))
    otp_sweep_interval_seconds: int = int(
        os.getenv("OTP_SWEEP_INTERVAL_SECONDS", "3600")
    )
    sweeper_enabled: bool = _env_bool("SWEEPER_ENABLED", True)
    push_write_timeout_seconds: float = float(
        os.getenv("PUSH_WRITE_TIMEOUT_SECONDS", "5")
    )
    smtp_host: str = os.getenv("SMTP_HOST", "localhost")
    smtp_port: int = int(os.getenv("SMTP_PORT", "25"))
    smtp_username: str = os.getenv("SMTP_USERNAME", "")
    smtp_password: str = os.getenv("SMTP_PASSWORD", "")
    smtp_use_tls: bool = _env_bool("SMTP_USE_TLS", False)
    smtp_timeout_seconds: float = float(os.getenv("SMTP_TIMEOUT_SECONDS", "10"))
    otp_email_sender: str = (
        os.getenv("OTP_EMAIL_SENDER")
        or os.getenv("FROM_EMAIL", "no-reply@yourdomain.com")
    )
    otp_email_subject: str = os.getenv("OTP_EMAIL_SUBJECT", "Your OTP Code")
    otp_request_limit: int = int(os.getenv("OTP_REQUEST_LIMIT", "5"))
    otp_request_window_seconds: int = int(
        os.getenv("OTP_REQUEST_WINDOW_SECONDS", "900")
    )
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()
    cors_origins: tuple[str, ...] = field(
        default_factory=lambda: _env_list(
            "CORS_ORIGINS", "http://localhost:5173,http://127.0.0.1:5173"
        )
    )


settings = Settings()
