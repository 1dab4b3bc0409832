# Severity classification of computed index values
import math
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from engine_errors import ConfigurationError

SAFE = 'Safe'
MODERATE = 'Moderate'
UNSAFE = 'Unsafe'
NOT_APPLICABLE = 'NotApplicable'

# Ordered by increasing pollution
TIERS = (SAFE, MODERATE, UNSAFE)
TIER_RANK = {tier: rank for rank, tier in enumerate(TIERS)}


@dataclass(frozen=True)
class ThresholdBand:
    """Half-open range [lower, upper) mapped to a tier"""
    tier: str
    lower: float
    upper: float

    def contains(self, value: float) -> bool:
        return self.lower <= value < self.upper


def build_bands(table: Sequence[Tuple[str, Optional[float]]]) -> List[ThresholdBand]:
    """Turn ``[(tier, upper), ...]`` into contiguous bands.

    The first band starts at -inf and a missing upper bound on the last band
    means +inf, so consecutive bands always share their boundary.
    """
    bands = []
    lower = float('-inf')
    for tier, upper in table:
        upper = float('inf') if upper is None else float(upper)
        bands.append(ThresholdBand(tier=tier, lower=lower, upper=upper))
        lower = upper
    return bands


def validate_thresholds(index_id: str, bands: Sequence[ThresholdBand]) -> None:
    """Check that a table partitions the real line in non-decreasing severity"""
    if not bands:
        raise ConfigurationError(f"Threshold table for '{index_id}' is empty")
    if bands[0].lower != float('-inf'):
        raise ConfigurationError(f"Threshold table for '{index_id}' must start at -inf")
    if bands[-1].upper != float('inf'):
        raise ConfigurationError(f"Threshold table for '{index_id}' must end at +inf")

    previous = None
    for band in bands:
        if band.tier not in TIER_RANK:
            raise ConfigurationError(f"Unknown tier '{band.tier}' in threshold table for '{index_id}'")
        if not band.lower < band.upper:
            raise ConfigurationError(
                f"Empty or inverted band {band.tier} [{band.lower}, {band.upper}) for '{index_id}'"
            )
        if previous is not None:
            if band.lower != previous.upper:
                raise ConfigurationError(
                    f"Gap or overlap between {previous.tier} and {band.tier} for '{index_id}'"
                )
            if TIER_RANK[band.tier] < TIER_RANK[previous.tier]:
                raise ConfigurationError(
                    f"Tiers for '{index_id}' must not decrease in severity ({previous.tier} -> {band.tier})"
                )
        previous = band


class Classifier:
    """Looks index values up in per-index threshold tables"""

    def __init__(self, thresholds: Dict[str, List[ThresholdBand]]):
        for index_id, bands in thresholds.items():
            validate_thresholds(index_id, bands)
        self.thresholds = thresholds

    def classify(self, index_id: str, value: Optional[float]) -> str:
        bands = self.thresholds.get(index_id)
        if bands is None:
            raise KeyError(f"No threshold table for index '{index_id}'")
        if value is None or not math.isfinite(value):
            return NOT_APPLICABLE
        for band in bands:
            if band.contains(value):
                return band.tier
        return NOT_APPLICABLE
