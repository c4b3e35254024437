"""Application configuration and settings."""

from decimal import Decimal
from functools import lru_cache
from typing import Dict, List, Optional, Union

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings."""

    # Service Configuration
    service_name: str = Field(default="collections-sequencer")
    service_version: str = Field(default="1.0.0")
    port: int = Field(default=8000)
    host: str = Field(default="::")
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")

    # Collections Policy Defaults (per-practice overrides come from the policy provider)
    min_balance: Decimal = Field(default=Decimal("0.00"))
    auto_escalation: bool = Field(default=True)
    delay_statement: int = Field(default=0)
    delay_sms: int = Field(default=7)
    delay_email: int = Field(default=14)
    delay_phone: int = Field(default=30)
    delay_final_notice: int = Field(default=60)
    delay_agency: int = Field(default=90)

    # Scheduler
    tick_concurrency: int = Field(default=10)

    # Messaging collaborator
    messaging_service_url: Optional[str] = Field(default=None)
    messaging_timeout_seconds: int = Field(default=30)
    messaging_max_retries: int = Field(default=3)

    # Circuit Breaker Configuration
    circuit_breaker_failure_threshold: int = Field(default=5)
    circuit_breaker_timeout_seconds: int = Field(default=60)

    # Development Settings
    enable_cors: bool = Field(default=True)
    cors_origins: List[str] = Field(
        default=["http://localhost:3000", "http://localhost:8080"]
    )

    @field_validator("cors_origins", mode="before")
    @classmethod
    def assemble_cors_origins(cls, v: Union[str, List[str]]) -> Union[List[str], str]:
        if isinstance(v, str) and not v.startswith("["):
            return [i.strip() for i in v.split(",")]
        elif isinstance(v, (list, str)):
            return v
        raise ValueError(v)

    @field_validator("min_balance")
    @classmethod
    def validate_min_balance(cls, v: Decimal) -> Decimal:
        if v < 0:
            raise ValueError("Minimum balance cannot be negative")
        return v

    @field_validator("tick_concurrency")
    @classmethod
    def validate_tick_concurrency(cls, v: int) -> int:
        if v < 1:
            raise ValueError("Tick concurrency must be at least 1")
        return v

    @model_validator(mode="after")
    def validate_delays(self) -> "Settings":
        delays = list(self.step_delays().values())
        if any(d < 0 for d in delays):
            raise ValueError("Step delays cannot be negative")
        if delays != sorted(delays):
            raise ValueError("Step delays must be non-decreasing in step order")
        return self

    def step_delays(self) -> Dict[str, int]:
        """Default delay in days for each channel, in catalog order."""
        return {
            "statement": self.delay_statement,
            "sms": self.delay_sms,
            "email": self.delay_email,
            "phone": self.delay_phone,
            "final_notice": self.delay_final_notice,
            "agency": self.delay_agency,
        }

    model_config = {
        "env_file": ".env",
        "case_sensitive": False,
        "extra": "ignore",
    }


@lru_cache()
def get_settings() -> Settings:
    """Get application settings."""
    return Settings()
