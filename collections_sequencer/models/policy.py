"""
Per-practice collections policy.

The policy is owned by the practice configuration collaborator and read at
tick and escalate time; the sequencer never stores it.
"""

from decimal import Decimal
from typing import Dict, Optional

from pydantic import BaseModel, Field, field_validator

from collections_sequencer.core.config import Settings, get_settings
from collections_sequencer.utils.step_catalog import STEP_CATALOG, StepChannel, step_at


def _catalog_delays() -> Dict[str, int]:
    return {step.channel.value: step.offset for step in STEP_CATALOG}


class CollectionsPolicy(BaseModel):
    """Minimum balance, per-step delays and auto-escalation switch for a practice."""

    min_balance: Decimal = Field(Decimal("0.00"), ge=0, description="Balance that must be exceeded to start a sequence")
    delays: Dict[str, int] = Field(default_factory=_catalog_delays, description="Days from start per step channel")
    auto_escalation: bool = Field(True, description="Whether scheduled ticks advance sequences")
    action_overrides: Dict[str, str] = Field(default_factory=dict, description="Custom action text per step channel")

    @field_validator("delays")
    @classmethod
    def validate_delays(cls, v: Dict[str, int]) -> Dict[str, int]:
        """Fill missing channels from the catalog and require a non-decreasing schedule."""
        unknown = set(v) - {channel.value for channel in StepChannel}
        if unknown:
            raise ValueError(f"Unknown step channels in delays: {sorted(unknown)}")

        merged = {**_catalog_delays(), **v}
        ordered = [merged[step.channel.value] for step in STEP_CATALOG]
        if any(days < 0 for days in ordered):
            raise ValueError("Step delays cannot be negative")
        if ordered != sorted(ordered):
            raise ValueError("Step delays must be non-decreasing in step order")
        return merged

    @field_validator("action_overrides")
    @classmethod
    def validate_action_overrides(cls, v: Dict[str, str]) -> Dict[str, str]:
        unknown = set(v) - {channel.value for channel in StepChannel}
        if unknown:
            raise ValueError(f"Unknown step channels in action overrides: {sorted(unknown)}")
        return v

    def delay_for(self, offset: int) -> int:
        """Days from sequence start before the step at ``offset`` is due."""
        return self.delays[step_at(offset).channel.value]

    def action_for(self, offset: int) -> str:
        """Human-readable action for the step at ``offset``."""
        step = step_at(offset)
        return self.action_overrides.get(step.channel.value, step.action)

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "CollectionsPolicy":
        """Build the service-wide default policy from settings."""
        settings = settings or get_settings()
        return cls(
            min_balance=settings.min_balance,
            delays=settings.step_delays(),
            auto_escalation=settings.auto_escalation,
        )
