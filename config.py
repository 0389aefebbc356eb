"""
Runtime configuration.

Everything is read from environment variables with sensible defaults so the
API can start against a local MongoDB without any setup.
"""
import os
from dataclasses import dataclass, field


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class LoanPolicyConfig:
    """Limits consulted by the loan policy before a loan is created or changed."""
    max_loans_per_user: int = 5
    max_daily_loans_per_user: int = 3
    max_books_per_request: int = 5
    max_quantity_per_loan: int = 5
    default_loan_days: int = 14
    max_loan_days: int = 30
    max_extension_days: int = 14
    max_extensions_per_loan: int = 2
    blacklist_overdue_threshold: int = 5
    blacklist_window_months: int = 3
    cancel_same_day_only: bool = True
    due_soon_days: int = 3

    @classmethod
    def from_env(cls) -> "LoanPolicyConfig":
        return cls(
            max_loans_per_user=int(os.getenv("MAX_LOANS_PER_USER", 5)),
            max_daily_loans_per_user=int(os.getenv("MAX_DAILY_LOANS_PER_USER", 3)),
            max_books_per_request=int(os.getenv("MAX_BOOKS_PER_REQUEST", 5)),
            max_quantity_per_loan=int(os.getenv("MAX_QUANTITY_PER_LOAN", 5)),
            default_loan_days=int(os.getenv("DEFAULT_LOAN_DAYS", 14)),
            max_loan_days=int(os.getenv("MAX_LOAN_DAYS", 30)),
            max_extension_days=int(os.getenv("MAX_EXTENSION_DAYS", 14)),
            max_extensions_per_loan=int(os.getenv("MAX_EXTENSIONS_PER_LOAN", 2)),
            blacklist_overdue_threshold=int(os.getenv("BLACKLIST_OVERDUE_THRESHOLD", 5)),
            blacklist_window_months=int(os.getenv("BLACKLIST_WINDOW_MONTHS", 3)),
            cancel_same_day_only=_env_bool("CANCEL_SAME_DAY_ONLY", True),
            due_soon_days=int(os.getenv("DUE_SOON_DAYS", 3)),
        )


@dataclass(frozen=True)
class Settings:
    database_url: str = "mongodb://localhost:27017"
    database_name: str = "library"
    secret_key: str = "dev-secret"
    token_ttl_hours: int = 24
    mongo_transactions: bool = False
    conflict_retries: int = 3
    admin_email: str = ""
    admin_password: str = ""
    reminder_interval_seconds: int = 0
    log_level: str = "INFO"
    port: int = 8000
    policy: LoanPolicyConfig = field(default_factory=LoanPolicyConfig)

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("DATABASE_URL", "mongodb://localhost:27017"),
            database_name=os.getenv("DATABASE_NAME", "library"),
            secret_key=os.getenv("SECRET_KEY", "dev-secret"),
            token_ttl_hours=int(os.getenv("TOKEN_TTL_HOURS", 24)),
            mongo_transactions=_env_bool("MONGO_TRANSACTIONS", False),
            conflict_retries=int(os.getenv("CONFLICT_RETRIES", 3)),
            admin_email=os.getenv("ADMIN_EMAIL", ""),
            admin_password=os.getenv("ADMIN_PASSWORD", ""),
            reminder_interval_seconds=int(os.getenv("REMINDER_INTERVAL_SECONDS", 0)),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            port=int(os.getenv("PORT", 8000)),
            policy=LoanPolicyConfig.from_env(),
        )


settings = Settings.from_env()
