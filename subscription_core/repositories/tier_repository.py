"""Tier repository - provides access to the static tier catalogue.

Loads from config/tiers.yaml and provides lookup methods. The catalogue is
not mutable at runtime.
"""

from typing import Dict, List, Optional

from subscription_core.config import Config, get_config
from subscription_core.models import TierDefinition


class UnknownTierError(Exception):
    """Raised when a requested tier is not in the catalogue."""

    pass


class TierRepository:
    """Repository for subscription tier definitions.

    Read-only after construction, so safe to share between threads.
    """

    def __init__(self, config: Optional[Config] = None, tiers: Optional[List[TierDefinition]] = None):
        """Initialize tier repository.

        Args:
            config: Configuration instance. If not provided, uses global config.
            tiers: Explicit tier list; takes precedence over configuration.
        """
        if tiers is None:
            tiers = (config or get_config()).tiers
        self._tiers_by_id: Dict[str, TierDefinition] = {tier.id: tier for tier in tiers}

    def get_by_id(self, tier_id: str) -> TierDefinition:
        """Get tier definition by ID.

        Args:
            tier_id: Tier ID (e.g., "1_month")

        Returns:
            TierDefinition

        Raises:
            UnknownTierError: If tier ID not found
        """
        tier = self._tiers_by_id.get(tier_id)
        if tier is None:
            raise UnknownTierError(
                f"Unknown tier: {tier_id}. "
                f"Available tiers: {list(self._tiers_by_id.keys())}"
            )
        return tier

    def find_by_id(self, tier_id: str) -> Optional[TierDefinition]:
        """Find tier definition by ID (returns None if not found)."""
        return self._tiers_by_id.get(tier_id)

    def get_all(self) -> List[TierDefinition]:
        """Get all tier definitions."""
        return list(self._tiers_by_id.values())

    def get_all_ids(self) -> List[str]:
        """Get list of all tier IDs."""
        return list(self._tiers_by_id.keys())

    def exists(self, tier_id: str) -> bool:
        return tier_id in self._tiers_by_id

    def __len__(self) -> int:
        return len(self._tiers_by_id)

    def __contains__(self, tier_id: str) -> bool:
        return tier_id in self._tiers_by_id

    def __repr__(self) -> str:
        return f"TierRepository(tiers={len(self._tiers_by_id)})"
