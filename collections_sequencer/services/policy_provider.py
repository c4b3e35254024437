"""
Collections policy lookup.

Practice configuration is owned outside the sequencer; this provider is the
seam through which it is read at create, tick and escalate time.
"""

import abc
from typing import Dict, Optional

from collections_sequencer.core.config import Settings
from collections_sequencer.models.policy import CollectionsPolicy


class PolicyProvider(abc.ABC):
    """Resolves the collections policy that applies to an account."""

    @abc.abstractmethod
    def get_policy(self, account_id: str) -> CollectionsPolicy:
        """Policy for the practice owning ``account_id``."""


class StaticPolicyProvider(PolicyProvider):
    """One default policy with optional per-account overrides."""

    def __init__(
        self,
        default: Optional[CollectionsPolicy] = None,
        overrides: Optional[Dict[str, CollectionsPolicy]] = None,
    ):
        self.default = default or CollectionsPolicy()
        self.overrides: Dict[str, CollectionsPolicy] = dict(overrides or {})

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "StaticPolicyProvider":
        return cls(default=CollectionsPolicy.from_settings(settings))

    def get_policy(self, account_id: str) -> CollectionsPolicy:
        return self.overrides.get(account_id, self.default)

    def set_policy(self, account_id: str, policy: CollectionsPolicy) -> None:
        self.overrides[account_id] = policy
