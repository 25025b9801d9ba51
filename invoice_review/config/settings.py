"""
Pipeline configuration.

Every component receives an explicit PipelineConfig at construction time;
nothing reads thresholds from module globals. ``from_env`` builds one from
environment variables (and a local .env file).
"""

import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from invoice_review.config.exception import ConfigurationError

MB = 1024 * 1024


class PipelineConfig(BaseModel):
    # Extraction
    max_document_bytes: int = Field(default=25 * MB, gt=0)
    quality_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    hybrid_penalty: float = Field(default=0.8, ge=0.0, le=1.0)

    # Validation
    blocking_penalty: float = Field(default=0.15, ge=0.0, le=1.0)
    advisory_penalty: float = Field(default=0.05, ge=0.0, le=1.0)
    max_reasonable_amount: float = Field(default=100_000.0, gt=0)
    allowed_currencies: list[str] = ["GBP", "EUR", "USD"]
    vendor_denylist: list[str] = []

    # Routing
    auto_approve_max_amount: float = Field(default=1000.0, ge=0)
    auto_approve_min_confidence: float = Field(default=0.9, ge=0.0, le=1.0)
    manual_review_min_confidence: float = Field(default=0.5, ge=0.0, le=1.0)

    # Resume tokens
    resume_token_ttl_seconds: int = Field(default=24 * 60 * 60, gt=0)

    # Boundary retries for transient store failures
    max_retries: int = Field(default=3, ge=0)
    retry_delay: float = Field(default=0.5, ge=0.0)

    # LLM field extraction (fallback strategy)
    llm_model: str = "openai/gpt-oss-120b"
    llm_temperature: float = 0.1
    groq_api_key: Optional[str] = None

    # Persistence
    database_url: Optional[str] = None

    @field_validator("allowed_currencies", mode="after")
    @classmethod
    def _upper_currencies(cls, value: list[str]) -> list[str]:
        return [c.strip().upper() for c in value if c.strip()]

    @model_validator(mode="after")
    def _check_thresholds(self) -> "PipelineConfig":
        if self.manual_review_min_confidence > self.auto_approve_min_confidence:
            raise ValueError(
                "manual_review_min_confidence must not exceed auto_approve_min_confidence"
            )
        return self

    @property
    def llm_enabled(self) -> bool:
        return bool(self.groq_api_key)

    @classmethod
    def build(cls, **overrides) -> "PipelineConfig":
        """Construct a config, reporting invalid values as ConfigurationError."""
        try:
            return cls(**overrides)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid pipeline configuration: {e}") from e

    @classmethod
    def from_env(cls) -> "PipelineConfig":
        """Load configuration from environment variables (and .env)."""
        load_dotenv()

        env_map = {
            "max_document_bytes": "INVOICE_MAX_DOCUMENT_BYTES",
            "quality_threshold": "INVOICE_QUALITY_THRESHOLD",
            "hybrid_penalty": "INVOICE_HYBRID_PENALTY",
            "blocking_penalty": "INVOICE_BLOCKING_PENALTY",
            "advisory_penalty": "INVOICE_ADVISORY_PENALTY",
            "max_reasonable_amount": "INVOICE_MAX_REASONABLE_AMOUNT",
            "auto_approve_max_amount": "INVOICE_AUTO_APPROVE_MAX_AMOUNT",
            "auto_approve_min_confidence": "INVOICE_AUTO_APPROVE_MIN_CONFIDENCE",
            "manual_review_min_confidence": "INVOICE_MANUAL_REVIEW_MIN_CONFIDENCE",
            "resume_token_ttl_seconds": "INVOICE_RESUME_TOKEN_TTL_SECONDS",
            "max_retries": "INVOICE_STORE_MAX_RETRIES",
            "retry_delay": "INVOICE_STORE_RETRY_DELAY",
            "llm_model": "INVOICE_LLM_MODEL",
            "llm_temperature": "INVOICE_LLM_TEMPERATURE",
            "groq_api_key": "GROQ_API_KEY",
            "database_url": "INVOICE_DATABASE_URL",
        }
        values = {
            field: os.getenv(var)
            for field, var in env_map.items()
            if os.getenv(var) not in (None, "")
        }

        currencies = os.getenv("INVOICE_ALLOWED_CURRENCIES")
        if currencies:
            values["allowed_currencies"] = currencies.split(",")
        denylist = os.getenv("INVOICE_VENDOR_DENYLIST")
        if denylist:
            values["vendor_denylist"] = [v.strip() for v in denylist.split(",") if v.strip()]

        return cls.build(**values)
