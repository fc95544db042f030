from __future__ import annotations
import os
from dataclasses import dataclass, field
from typing import Mapping, Optional, Tuple


def _flag(v: Optional[str], default: bool = False) -> bool:
    if v is None or v == "":
        return default
    return v.strip().lower() in ("1", "true", "yes", "on")


def _csv(v: Optional[str]) -> Tuple[str, ...]:
    if not v:
        return ()
    return tuple(p.strip() for p in v.split(",") if p.strip())


@dataclass(frozen=True)
class EventDetails:
    name: str = "De Noble Choral Voices 5th Edition Concert"
    date: str = "2025-09-28"
    time: str = "17:00"
    venue: str = "Oasis Event Centre, Port Harcourt"


@dataclass(frozen=True)
class SMTPProfile:
    name: str
    host: str
    port: int
    use_tls: bool       # implicit TLS (465)
    start_tls: bool     # STARTTLS upgrade (587)


@dataclass(frozen=True)
class Settings:
    # ----------------------------
    # Database
    # ----------------------------
    database_url: str = "sqlite:///./ticketdesk.db"
    db_pool_size: int = 10
    db_max_overflow: int = 10
    db_pool_timeout: int = 30
    db_gate_limit: Optional[int] = None

    app_env: str = "development"

    # ----------------------------
    # Admin
    # ----------------------------
    session_secret: str = "dev-secret-change-me"
    admin_username: str = "admin"
    admin_password: str = "supasecret"
    admin_secret: str = ""

    # ----------------------------
    # Transfer flow
    # ----------------------------
    trusted_proxy_hops: int = 1
    reference_window: float = 120.0
    ticket_type_window: float = 90.0
    approval_email_mode: str = "strict"  # strict | deferred
    currency: str = "NGN"

    # ----------------------------
    # Gateways
    # ----------------------------
    paystack_secret: str = ""
    opay_private_key: str = ""

    # ----------------------------
    # Email
    # ----------------------------
    email_backend: str = "smtp"  # smtp | console
    email_host: str = "smtp.gmail.com"
    email_port: Optional[int] = None
    email_secure: bool = True
    email_user: str = ""
    email_password: str = ""
    email_from_name: str = "De Noble Choral Voices"
    email_from_address: str = "noreply@denoblechoralvoices.com"
    email_timeout: float = 30.0

    # ----------------------------
    # Delivery pipeline
    # ----------------------------
    queue_max_retries: int = 3
    queue_retry_base: float = 5.0
    queue_pause: float = 1.0
    buffer_backend: str = "files"  # files | redis
    buffer_dir: str = "data/email-buffer"
    buffer_sweep_interval: float = 60.0
    redis_url: str = "redis://127.0.0.1:6379"

    # ----------------------------
    # Admin alerts
    # ----------------------------
    whatsapp_enabled: bool = False
    whatsapp_provider: str = "meta"  # meta | twilio
    admin_whatsapp_numbers: Tuple[str, ...] = ()
    whatsapp_phone_number_id: str = ""
    whatsapp_access_token: str = ""
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_whatsapp_number: str = ""

    # ----------------------------
    # Reminders
    # ----------------------------
    reminder_time: str = "10:00"
    reminder_timezone: str = "Africa/Lagos"
    reminder_after_hours: float = 24.0
    suspicious_after_hours: float = 72.0

    event: EventDetails = field(default_factory=EventDetails)

    @property
    def is_production(self) -> bool:
        return self.app_env.lower() == "production"

    def smtp_profiles(self) -> Tuple[SMTPProfile, ...]:
        """Transport profiles in the order they are tried on verify."""
        if self.email_port is not None:
            primary = SMTPProfile(
                name="configured",
                host=self.email_host,
                port=self.email_port,
                use_tls=self.email_secure,
                start_tls=not self.email_secure,
            )
            return (primary,)
        return (
            SMTPProfile("SSL", self.email_host, 465, True, False),
            SMTPProfile("STARTTLS", self.email_host, 587, False, True),
        )

    @classmethod
    def from_env(cls, environ: Mapping[str, str] = os.environ) -> "Settings":
        e = environ.get
        port = e("EMAIL_PORT")
        gate = e("DB_GATE_LIMIT")
        return cls(
            database_url=e("DATABASE_URL", cls.database_url),
            db_pool_size=int(e("DB_POOL_SIZE", "10")),
            db_max_overflow=int(e("DB_MAX_OVERFLOW", "10")),
            db_pool_timeout=int(e("DB_POOL_TIMEOUT", "30")),
            db_gate_limit=int(gate) if gate else None,
            app_env=e("APP_ENV", "development"),
            session_secret=e("SESSION_SECRET", cls.session_secret),
            admin_username=e("ADMIN_USERNAME", cls.admin_username),
            admin_password=e("ADMIN_PASSWORD", cls.admin_password),
            admin_secret=e("ADMIN_SECRET", ""),
            trusted_proxy_hops=int(e("TRUSTED_PROXY_HOPS", "1")),
            reference_window=float(e("TRANSFER_REFERENCE_WINDOW", "120")),
            ticket_type_window=float(e("TRANSFER_TICKET_TYPE_WINDOW", "90")),
            approval_email_mode=e("APPROVAL_EMAIL_MODE", "strict").lower(),
            currency=e("CURRENCY", "NGN"),
            paystack_secret=e("PAYSTACK_SECRET_KEY", ""),
            opay_private_key=e("OPAY_PRIVATE_KEY", ""),
            email_backend=e("EMAIL_BACKEND", "smtp").lower(),
            email_host=e("EMAIL_HOST", cls.email_host),
            email_port=int(port) if port else None,
            email_secure=_flag(e("EMAIL_SECURE"), default=True),
            email_user=e("EMAIL_USER", ""),
            email_password=e("EMAIL_PASSWORD", ""),
            email_from_name=e("EMAIL_FROM_NAME", cls.email_from_name),
            email_from_address=(
                e("EMAIL_FROM") or e("EMAIL_USER") or cls.email_from_address
            ),
            email_timeout=float(e("EMAIL_TIMEOUT", "30")),
            queue_max_retries=int(e("QUEUE_MAX_RETRIES", "3")),
            queue_retry_base=float(e("QUEUE_RETRY_BASE", "5")),
            queue_pause=float(e("QUEUE_PAUSE", "1")),
            buffer_backend=e("BUFFER_BACKEND", "files").lower(),
            buffer_dir=e("BUFFER_DIR", cls.buffer_dir),
            buffer_sweep_interval=float(e("BUFFER_SWEEP_INTERVAL", "60")),
            redis_url=e("REDIS_URL", cls.redis_url),
            whatsapp_enabled=_flag(e("ENABLE_WHATSAPP_NOTIFICATIONS")),
            whatsapp_provider=e("WHATSAPP_PROVIDER", "meta").lower(),
            admin_whatsapp_numbers=_csv(e("ADMIN_WHATSAPP_NUMBERS")),
            whatsapp_phone_number_id=e("WHATSAPP_PHONE_NUMBER_ID", ""),
            whatsapp_access_token=e("WHATSAPP_ACCESS_TOKEN", ""),
            twilio_account_sid=e("TWILIO_ACCOUNT_SID", ""),
            twilio_auth_token=e("TWILIO_AUTH_TOKEN", ""),
            twilio_whatsapp_number=e("TWILIO_WHATSAPP_NUMBER", ""),
            reminder_time=e("REMINDER_TIME", "10:00"),
            reminder_timezone=e("REMINDER_TIMEZONE", "Africa/Lagos"),
            reminder_after_hours=float(e("PAYMENT_REMINDER_HOURS", "24")),
            suspicious_after_hours=float(e("MAX_WAIT_HOURS", "72")),
            event=EventDetails(
                name=e("EVENT_NAME", EventDetails.name),
                date=e("EVENT_DATE", EventDetails.date),
                time=e("EVENT_TIME", EventDetails.time),
                venue=e("EVENT_VENUE", EventDetails.venue),
            ),
        )
