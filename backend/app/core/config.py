from functools import lru_cache
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from pydantic import AnyUrl, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _ensure_sqlalchemy_postgres_scheme(value: str) -> str:
    if not value.lower().startswith("postgres"):
        return value

    parsed = urlparse(value)
    # Only the psycopg 3 driver is installed.
    scheme = "postgresql+psycopg"

    query_params = dict(parse_qsl(parsed.query, keep_blank_values=True))
    query_params.setdefault("target_session_attrs", "read-write")
    new_query = urlencode(query_params, doseq=True)

    return urlunparse(parsed._replace(scheme=scheme, query=new_query))


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    debug: bool = Field(False, description="Enable FastAPI debug mode")
    environment: str = Field(
        default="development",
        description="Runtime environment (development|staging|production)",
    )
    database_url: AnyUrl | str = Field(
        default="sqlite:///../data/settlement.db",
        description="SQLAlchemy compatible database URL",
    )
    default_creator_fee_percentage: float = Field(
        default=0.02,
        description="Creator fee applied when a resolution request does not specify one",
        ge=0.01,
        le=0.05,
    )
    evidence_min_content_length: int = Field(
        default=10,
        description="Minimum trimmed length of every resolution evidence item",
        ge=1,
    )
    ledger_max_retries: int = Field(
        default=3,
        description="Attempts made by a balance update before a version conflict is surfaced",
        ge=1,
    )
    ledger_retry_backoff_seconds: list[float] | tuple[float, ...] | str = Field(
        default_factory=lambda: [0.05, 0.1, 0.2],
        description="Comma-separated list or array of delays (seconds) between balance update attempts",
    )
    ledger_call_timeout_seconds: float = Field(
        default=10.0,
        description="Upper bound on a single user's ledger postings during payout distribution",
        gt=0,
    )
    payout_worker_count: int = Field(
        default=4,
        description="Number of users whose payouts are applied concurrently",
        ge=1,
    )
    reconciliation_tolerance: float = Field(
        default=0.01,
        description="Absolute difference tolerated between stored and recomputed balances",
        ge=0,
    )
    reconciliation_batch_size: int = Field(
        default=100,
        description="Number of users audited per batch by the reconciliation job",
        ge=1,
    )
    health_report_sample_size: int = Field(
        default=50,
        description="Number of balances audited when estimating the inconsistency rate",
        ge=1,
    )

    @field_validator("database_url", mode="before")
    @classmethod
    def _normalize_postgres_urls(cls, value: Any) -> Any:
        if value is None or not isinstance(value, str):
            return value

        if value.startswith("postgres://"):
            return "postgresql://" + value[len("postgres://") :]
        return value

    @field_validator("ledger_retry_backoff_seconds", mode="before")
    @classmethod
    def _parse_retry_backoff(cls, value: Any) -> list[float]:
        if value in (None, "", []):
            return [0.05, 0.1, 0.2]
        if isinstance(value, str):
            tokens = [token.strip() for token in value.split(",") if token.strip()]
            if not tokens:
                raise ValueError("LEDGER_RETRY_BACKOFF_SECONDS must contain at least one value")
            value = tokens
        if isinstance(value, (list, tuple)):
            backoff: list[float] = []
            for item in value:
                try:
                    delay = float(item)
                except (TypeError, ValueError) as exc:
                    raise ValueError("LEDGER_RETRY_BACKOFF_SECONDS entries must be numeric") from exc
                if delay < 0:
                    raise ValueError("LEDGER_RETRY_BACKOFF_SECONDS entries must not be negative")
                backoff.append(delay)
            if not backoff:
                raise ValueError("LEDGER_RETRY_BACKOFF_SECONDS must contain at least one value")
            return backoff
        raise ValueError(
            "LEDGER_RETRY_BACKOFF_SECONDS must be provided as a comma-separated string or list of numbers"
        )

    @property
    def resolved_database_url(self) -> str:
        return _ensure_sqlalchemy_postgres_scheme(str(self.database_url))

    @property
    def ledger_retry_backoff_schedule(self) -> tuple[float, ...]:
        sequence = tuple(float(value) for value in self.ledger_retry_backoff_seconds)
        if not sequence:
            return (0.0,)
        return sequence


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
