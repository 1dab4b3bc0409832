# Dataset-level reduction of per-sample classifications
from dataclasses import dataclass
from typing import Dict, Mapping, Optional, Sequence, Tuple

import numpy as np

from classification import MODERATE, NOT_APPLICABLE, SAFE, UNSAFE, Classifier
from engine_settings import INDEX_IDS, PRIMARY_INDEX


@dataclass(frozen=True)
class DatasetSummary:
    total_samples: int
    safe: int
    moderate: int
    unsafe: int
    not_computable: int
    percentage_denominator: int
    safe_percentage: float
    moderate_percentage: float
    unsafe_percentage: float
    primary_index: str = PRIMARY_INDEX

    def to_dict(self) -> Dict[str, object]:
        return {
            'totalSamples': self.total_samples,
            'safeLocations': self.safe,
            'moderateLocations': self.moderate,
            'unsafeLocations': self.unsafe,
            'notComputableLocations': self.not_computable,
            'percentageDenominator': self.percentage_denominator,
            'safePercentage': self.safe_percentage,
            'moderatePercentage': self.moderate_percentage,
            'unsafePercentage': self.unsafe_percentage,
            'primaryIndex': self.primary_index,
        }


def _percentage(count: int, denominator: int) -> float:
    if denominator == 0:
        return 0.0
    return count / denominator * 100.0


def aggregate(classifications: Sequence[Mapping[str, str]],
              primary_index: str = PRIMARY_INDEX) -> DatasetSummary:
    """Tally samples by the tier of their primary index.

    Samples whose primary index is not computable are counted on their own
    and left out of the percentage denominator.
    """
    counts = {SAFE: 0, MODERATE: 0, UNSAFE: 0, NOT_APPLICABLE: 0}
    for tiers in classifications:
        counts[tiers.get(primary_index, NOT_APPLICABLE)] += 1

    total = len(classifications)
    denominator = total - counts[NOT_APPLICABLE]
    return DatasetSummary(
        total_samples=total,
        safe=counts[SAFE],
        moderate=counts[MODERATE],
        unsafe=counts[UNSAFE],
        not_computable=counts[NOT_APPLICABLE],
        percentage_denominator=denominator,
        safe_percentage=_percentage(counts[SAFE], denominator),
        moderate_percentage=_percentage(counts[MODERATE], denominator),
        unsafe_percentage=_percentage(counts[UNSAFE], denominator),
        primary_index=primary_index,
    )


def dataset_indices(per_sample: Sequence[Mapping[str, Optional[float]]],
                    classifier: Classifier) -> Dict[str, Tuple[Optional[float], str]]:
    """Mean of the computable per-sample values of each index, classified"""
    indices = {}
    for index_id in INDEX_IDS:
        values = [v[index_id] for v in per_sample if v.get(index_id) is not None]
        value = None
        if values:
            # Means of huge finite values can overflow; report them as not computable
            with np.errstate(over='ignore'):
                value = float(np.mean(values))
            if not np.isfinite(value):
                value = None
        indices[index_id] = (value, classifier.classify(index_id, value))
    return indices
