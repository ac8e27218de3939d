"""
Utilities to centralize configuration handling for the POS simulator services.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field


@dataclass
class PaymentTimings:
    """
    Demo tuning constants for the simulated payment terminal.

    None of these encode a business rule; they only shape how long the demo
    waits before resolving a payment or an automatic customer scan.
    """

    base_delay_ms: int = 900
    slow_factor: float = 2.3
    timeout_factor: float = 3.0
    issuance_delay_ms: int = 1500
    scan_delay_ms: int = 1200


@dataclass
class AppConfig:
    """Simple container for application level settings."""

    app_name: str
    pos_sim_enabled: bool
    # PostgreSQL database
    db_host: str
    db_port: int
    db_user: str
    db_password: str
    db_name: str
    db_sslmode: str
    database_url: str
    # Receipt backend (edge functions)
    supabase_url: str
    supabase_anon_key: str
    terminal_key: str
    rl_signing_secret: str
    receipt_ingest_function: str
    receipt_consume_function: str
    returns_verify_function: str
    upstream_timeout_seconds: float
    # Session channel
    channel_backend: str
    redis_host: str
    redis_port: int
    redis_db: int
    redis_password: str
    # App settings
    secret_key: str
    log_level: str
    customer_base_path: str
    session_idle_seconds: float = 1800.0
    allowed_origins: list[str] = field(default_factory=list)
    timings: PaymentTimings = field(default_factory=PaymentTimings)

    @property
    def sqlalchemy_uri(self) -> str:
        """
        Build a SQLAlchemy PostgreSQL URI using psycopg2 as the driver.

        An explicit DATABASE_URL always wins so tests and local runs can point
        at SQLite.
        """
        if self.database_url:
            return self.database_url
        ssl_arg = f"?sslmode={self.db_sslmode}" if self.db_sslmode else ""
        return (
            f"postgresql+psycopg2://{self.db_user}:{self.db_password}"
            f"@{self.db_host}:{self.db_port}/{self.db_name}{ssl_arg}"
        )


def _read_env(name: str, default: str | None = None) -> str:
    """
    Internal helper to fetch environment variables with support for defaults.
    """
    value = os.getenv(name)
    if value is None:
        if default is None:
            raise RuntimeError(f"Missing required environment variable '{name}'")
        value = default
    return value


def _read_first(*names: str, default: str = "") -> str:
    """Return the first non-empty value among several aliases of one setting."""
    for name in names:
        value = os.getenv(name)
        if value is not None and value.strip():
            return value.strip()
    return default


def read_bool(name: str, default: str = "false") -> bool:
    value = _read_env(name, default)
    return value.strip().lower() in {"1", "true", "yes", "on"}


def pos_sim_enabled() -> bool:
    """Feature gate for the whole simulator subsystem."""
    return read_bool("POS_SIM_ENABLED", "false") or read_bool(
        "NEXT_PUBLIC_POS_SIM_ENABLED", "false"
    )


def _parse_origins(raw: str) -> list[str]:
    return [item.strip() for item in raw.split(",") if item.strip()]


def load_timings() -> PaymentTimings:
    return PaymentTimings(
        base_delay_ms=int(_read_env("PAYMENT_BASE_DELAY_MS", "900")),
        slow_factor=float(_read_env("PAYMENT_SLOW_FACTOR", "2.3")),
        timeout_factor=float(_read_env("PAYMENT_TIMEOUT_FACTOR", "3.0")),
        issuance_delay_ms=int(_read_env("ISSUANCE_DELAY_MS", "1500")),
        scan_delay_ms=int(_read_env("SCAN_SIM_DELAY_MS", "1200")),
    )


def validate_required_env_vars() -> None:
    """
    Validate that the variables needed by the receipt backend calls are set.

    Only enforced while the simulator is enabled: a disabled simulator never
    reaches the backend. Every problem is reported at once.

    Raises:
        RuntimeError: If any required variable is missing or has an invalid value
    """
    if not pos_sim_enabled():
        return

    errors = []

    if not _read_first("RL_SIGNING_SECRET"):
        errors.append("RL_SIGNING_SECRET must be configured (shared request signing secret)")

    if not _read_first("SUPABASE_URL", "NEXT_PUBLIC_SUPABASE_URL"):
        errors.append("SUPABASE_URL must be configured (receipt backend base URL)")

    if not _read_first("TERMINAL_KEY", "TERMINAL_KEY_TEST_001"):
        errors.append("TERMINAL_KEY must be configured (x-terminal-key for receipt issuance)")

    backend = _read_first("CHANNEL_BACKEND", default="memory").lower()
    if backend not in {"memory", "redis"}:
        errors.append(f"CHANNEL_BACKEND must be 'memory' or 'redis', got: {backend}")

    timeout = _read_first("UPSTREAM_TIMEOUT_SECONDS", default="4")
    try:
        if float(timeout) <= 0:
            errors.append("UPSTREAM_TIMEOUT_SECONDS must be positive")
    except ValueError:
        errors.append(f"UPSTREAM_TIMEOUT_SECONDS must be a number, got: {timeout}")

    if errors:
        error_msg = "\nConfiguration Errors - Missing or invalid environment variables:\n"
        for error in errors:
            error_msg += f"  - {error}\n"
        raise RuntimeError(error_msg)


def load_config(app_name: str) -> AppConfig:
    """
    Produce an AppConfig instance populated from environment variables.

    Each service passes its desired `app_name` to keep logs easy to
    differentiate while still reusing the same config loader.
    """
    return AppConfig(
        app_name=app_name,
        pos_sim_enabled=pos_sim_enabled(),
        db_host=_read_env("POSTGRES_HOST", "pos-sim-postgres"),
        db_port=int(_read_env("POSTGRES_PORT", "5432")),
        db_user=_read_env("POSTGRES_USER", "pos_sim"),
        db_password=_read_env("POSTGRES_PASSWORD", "pos_sim"),
        db_name=_read_env("POSTGRES_DB", "pos_sim"),
        db_sslmode=_read_env("POSTGRES_SSLMODE", "disable"),
        database_url=_read_env("DATABASE_URL", ""),
        supabase_url=_read_first("SUPABASE_URL", "NEXT_PUBLIC_SUPABASE_URL"),
        supabase_anon_key=_read_first("SUPABASE_ANON_KEY", "NEXT_PUBLIC_SUPABASE_ANON_KEY"),
        terminal_key=_read_first("TERMINAL_KEY", "TERMINAL_KEY_TEST_001"),
        rl_signing_secret=_read_first("RL_SIGNING_SECRET"),
        receipt_ingest_function=_read_env("RECEIPT_INGEST_FUNCTION", "receipt-ingest"),
        receipt_consume_function=_read_env("RECEIPT_CONSUME_FUNCTION", "receipt-consume"),
        returns_verify_function=_read_env("RETURNS_VERIFY_FUNCTION", "returns-verify"),
        upstream_timeout_seconds=float(_read_env("UPSTREAM_TIMEOUT_SECONDS", "4")),
        channel_backend=_read_env("CHANNEL_BACKEND", "memory").strip().lower(),
        redis_host=_read_env("REDIS_HOST", "redis"),
        redis_port=int(_read_env("REDIS_PORT", "6379")),
        redis_db=int(_read_env("REDIS_DB", "0")),
        redis_password=_read_env("REDIS_PASSWORD", ""),
        secret_key=_read_env("SECRET_KEY", "pos-sim-dev-secret"),
        log_level=_read_env("LOG_LEVEL", "INFO"),
        customer_base_path=_read_env("CUSTOMER_BASE_PATH", "/sim/customer"),
        session_idle_seconds=float(_read_env("SESSION_IDLE_SECONDS", "1800")),
        allowed_origins=_parse_origins(
            _read_first("POS_SIM_ALLOWED_ORIGINS", "RL_ALLOWED_ORIGINS")
        ),
        timings=load_timings(),
    )
