"""
Gem pricing for try-on jobs.

Maps quality tiers to gem costs. Edit requests are always billed at the
standard rate.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class QualityTier(Enum):
    """Requested output quality."""
    STANDARD = "standard"
    HD = "hd"

    @classmethod
    def parse(cls, value: Optional[str]) -> "QualityTier":
        """Parse a tier value, falling back to STANDARD for unknown input."""
        if isinstance(value, QualityTier):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.STANDARD


@dataclass(frozen=True)
class GemPricing:
    """Gem cost per generation for each tier."""
    standard: int = 1
    hd: int = 2

    def __post_init__(self):
        """Validate costs are positive integers."""
        if not isinstance(self.standard, int) or self.standard <= 0:
            raise ValueError("standard cost must be a positive integer")
        if not isinstance(self.hd, int) or self.hd <= 0:
            raise ValueError("hd cost must be a positive integer")

    def cost_for(self, tier: QualityTier) -> int:
        """Get the gem cost for a tier.

        Args:
            tier: Quality tier

        Returns:
            Gem cost for one generation
        """
        if tier is QualityTier.HD:
            return self.hd
        return self.standard


# Default pricing - 1 gem standard, 2 gems HD
DEFAULT_PRICING = GemPricing()


def gem_cost(tier: QualityTier, edit_mode: bool = False, pricing: GemPricing = DEFAULT_PRICING) -> int:
    """Calculate the gems to reserve for a request.

    Args:
        tier: Requested quality tier
        edit_mode: Edit requests always use the standard cost
        pricing: Pricing table

    Returns:
        Gem cost
    """
    if edit_mode:
        return pricing.standard
    return pricing.cost_for(tier)
