"""
ReelProxy — Application Configuration
======================================

What:  Centralized configuration management using Pydantic Settings.
How:   Pydantic Settings reads from environment variables (or .env file),
       validates types/ranges, and provides a singleton `settings` object.
Who:   Imported by every module that needs configuration values.
When:  Loaded once at module import time; validated before the app starts.

Environment names match the deployment the proxy replaces:
    API_URL            Base URL of the upstream REST API
    API_ACCESS_TOKEN   Bearer credential injected into every upstream call
"""

from typing import List, Optional
from urllib.parse import urlsplit

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All settings have development defaults. Production deployments MUST
    provide API_ACCESS_TOKEN.

    Attributes are grouped by concern for readability.
    """

    # ── Upstream API ──────────────────────────────────────────────────────
    # What: Base URL every relative `path` is resolved against
    # Constraint: Its host is the only host the proxy will ever contact
    api_url: str = Field(
        default="https://api.themoviedb.org/3",
        description="Base URL of the proxied upstream API",
    )

    # What: Static bearer credential forwarded to the upstream
    # Never logged and never returned to clients
    api_access_token: str = Field(
        default="",
        description="Bearer token injected as the upstream Authorization header",
    )

    # What: Seconds allowed for everything below the timeout stage
    # (cache lookup + upstream call, retries included)
    api_timeout: float = Field(default=10.0, gt=0, le=120)

    # ── Request Guards ────────────────────────────────────────────────────
    # Format: Comma-separated verbs (parsed by validator below)
    allowed_methods: str = Field(default="GET,POST,PUT,PATCH,DELETE,OPTIONS")

    # Default: 5MB = 5 * 1024 * 1024
    max_body_size: int = Field(default=5_242_880, ge=1, le=52_428_800)

    @property
    def allowed_methods_list(self) -> List[str]:
        """Splits comma-separated methods into an ordered, upper-case list."""
        return [m.strip().upper() for m in self.allowed_methods.split(",") if m.strip()]

    @field_validator("allowed_methods")
    @classmethod
    def validate_allowed_methods(cls, v: str) -> str:
        """Rejects an empty method allow-list."""
        if not [m for m in v.split(",") if m.strip()]:
            raise ValueError("allowed_methods must name at least one HTTP method")
        return v

    @field_validator("api_url")
    @classmethod
    def validate_api_url(cls, v: str) -> str:
        """Ensures the upstream base is an absolute http(s) URL."""
        parts = urlsplit(v.strip())
        if parts.scheme not in ("http", "https") or not parts.hostname:
            raise ValueError(f"Invalid api_url '{v}'. Must be an absolute http(s) URL")
        return v.strip().rstrip("/")

    @property
    def upstream_host(self) -> str:
        """Lower-cased host name of the upstream API."""
        return urlsplit(self.api_url).hostname or ""

    # ── Cache ─────────────────────────────────────────────────────────────
    # What: Max GET responses held in memory (least-recently-inserted evicted)
    cache_max_size: int = Field(default=100, ge=1, le=100_000)

    # What: Seconds a cached response stays valid; unset = until evicted
    cache_ttl: Optional[float] = Field(default=None, gt=0)

    # ── CORS ──────────────────────────────────────────────────────────────
    cors_allow_origin: str = Field(default="*")
    cors_allow_headers: str = Field(default="Content-Type, Authorization")
    cors_max_age: int = Field(default=86400, ge=0)

    # ── Server ────────────────────────────────────────────────────────────
    backend_host: str = Field(default="0.0.0.0")
    backend_port: int = Field(default=8000, ge=1024, le=65535)

    # Valid: DEBUG, INFO, WARNING, ERROR, CRITICAL
    log_level: str = Field(default="INFO")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Ensures log level is a valid Python logging level name."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper = v.upper()
        if upper not in valid_levels:
            raise ValueError(f"Invalid log_level '{v}'. Must be one of: {valid_levels}")
        return upper

    # ── Retry Configuration ───────────────────────────────────────────────
    # What: Tenacity retry settings for idempotent upstream calls
    retry_max_attempts: int = Field(default=3, ge=1, le=10)
    retry_min_wait: float = Field(default=0.5, ge=0, le=30)
    retry_max_wait: float = Field(default=4.0, ge=0, le=120)

    # ── Circuit Breaker ───────────────────────────────────────────────────
    # How: After N consecutive transport failures, reject calls for M seconds
    cb_failure_threshold: int = Field(default=5, ge=1, le=100)
    cb_recovery_timeout: int = Field(default=30, ge=0, le=3600)

    # ── Rate Limiting ─────────────────────────────────────────────────────
    # What: Per-IP sliding window rate limit (100 requests per minute)
    rate_limit_requests: int = Field(default=100, ge=1, le=100_000)
    rate_limit_window: int = Field(default=60, ge=1, le=86400)  # seconds

    # ── Pydantic Settings Config ──────────────────────────────────────────
    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,  # API_URL and api_url both work
    }

    def validate_required_for_production(self) -> None:
        """
        What:  Validates that critical settings are configured.
        When:  Called during app startup (lifespan).
        How:   Checks each required field and raises ValueError with guidance.
        """
        errors = []
        if not self.api_access_token:
            errors.append(
                "API_ACCESS_TOKEN is not set. Upstream calls will be sent "
                "without a usable bearer credential"
            )
        if errors:
            raise ValueError(
                "Configuration validation failed:\n" + "\n".join(f"  - {e}" for e in errors)
            )


# Module-level singleton, imported by main.py
settings = Settings()
