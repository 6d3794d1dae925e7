# backend/app/core/config.py

from __future__ import annotations

from decimal import Decimal
from urllib.parse import urlsplit, urlunsplit, parse_qsl, urlencode

from cryptography.fernet import Fernet
from pydantic_settings import BaseSettings, SettingsConfigDict


def _strip_asyncpg_unsupported_params(url: str) -> str:
    """
    asyncpg does NOT accept sslmode or channel_binding as connect kwargs.
    If these appear in the URL query, SQLAlchemy can end up passing them to
    asyncpg.connect(), causing:
      TypeError: connect() got an unexpected keyword argument 'sslmode'
    """
    parts = urlsplit(url)
    if not parts.query:
        return url

    params = parse_qsl(parts.query, keep_blank_values=True)
    filtered = [(k, v) for (k, v) in params if k not in {"sslmode", "channel_binding"}]
    new_query = urlencode(filtered, doseq=True)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, new_query, parts.fragment))


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # -----------------------------
    # Environment
    # -----------------------------
    # Use: development | staging | production
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    # -----------------------------
    # DB
    # -----------------------------
    DATABASE_URL_ASYNC: str
    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_RECYCLE_SECONDS: int = 300

    # -----------------------------
    # JWT (manual endpoints)
    # -----------------------------
    JWT_SECRET: str = "dev-secret-change-me"
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60

    # -----------------------------
    # Credential encryption
    # -----------------------------
    # Mandatory. Stored third-party credentials are unreadable under any other key.
    ENCRYPTION_KEY: str

    # -----------------------------
    # Webhooks
    # -----------------------------
    # Empty secret = verification skipped with a warning (legacy senders).
    GHL_WEBHOOK_SECRET: str = ""
    PAYMENT_WEBHOOK_SECRET: str = ""
    ZOOM_WEBHOOK_SECRET: str = ""
    WEBHOOK_REPLAY_WINDOW_SECONDS: int = 300
    WEBHOOK_MAX_PAYLOAD_BYTES: int = 1024 * 1024

    # -----------------------------
    # Reconciliation policy
    # -----------------------------
    DEFAULT_COMMISSION_RATE: Decimal = Decimal("0.10")
    DEFAULT_MATCH_THRESHOLD: float = 0.70

    @property
    def DATABASE_URL_ASYNC_CLEAN(self) -> str:
        return _strip_asyncpg_unsupported_params(self.DATABASE_URL_ASYNC)

    def model_post_init(self, __context) -> None:  # pydantic v2 hook
        env = (self.ENVIRONMENT or "").strip().lower()

        # Enforce that we never run staging/production with a placeholder secret.
        if env in {"staging", "production"}:
            if not self.JWT_SECRET or self.JWT_SECRET.strip() == "dev-secret-change-me":
                raise ValueError("JWT_SECRET must be set to a strong value in staging/production.")
            if len(self.JWT_SECRET.strip()) < 32:
                raise ValueError("JWT_SECRET is too short; use at least 32 characters in staging/production.")

        if self.JWT_ALGORITHM not in {"HS256"}:
            raise ValueError(f"Unsupported JWT_ALGORITHM={self.JWT_ALGORITHM!r}. Allowed: HS256")

        key = (self.ENCRYPTION_KEY or "").strip()
        if not key:
            raise ValueError(
                "ENCRYPTION_KEY is required. "
                'Generate with: python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"'
            )
        try:
            Fernet(key.encode())
        except (ValueError, TypeError) as e:
            raise ValueError("ENCRYPTION_KEY must be a urlsafe base64-encoded 32-byte Fernet key.") from e

        if not (Decimal("0") <= self.DEFAULT_COMMISSION_RATE <= Decimal("1")):
            raise ValueError("DEFAULT_COMMISSION_RATE must be between 0 and 1.")
        if not (0.0 <= self.DEFAULT_MATCH_THRESHOLD <= 1.0):
            raise ValueError("DEFAULT_MATCH_THRESHOLD must be between 0 and 1.")


settings = Settings()
