# Per-sample computation of the five pollution indices
import math
import logging
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Sequence

from joblib import Parallel, delayed

from engine_settings import INDEX_IDS, METALS, StandardValue
from formula_expressions import evaluate_or_none
from formula_store import FormulaSnapshot
from sample_validation import SampleRecord
from standard_formulas import (
    compute_standard,
    contamination_factors,
    sub_index,
    unit_weight,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IndexResult:
    sample_id: str
    index_id: str
    value: Optional[float]
    classification: str


@dataclass(frozen=True)
class SampleIndices:
    sample: SampleRecord
    values: Dict[str, Optional[float]]
    contamination_factors: Dict[str, Optional[float]]

    def results(self, classifier) -> List[IndexResult]:
        return [
            IndexResult(self.sample.sample_id, index_id, self.values[index_id],
                        classifier.classify(index_id, self.values[index_id]))
            for index_id in INDEX_IDS
        ]


def build_environment(concentrations: Mapping[str, float],
                      standards: Mapping[str, StandardValue],
                      factors: Mapping[str, Optional[float]]) -> Dict[str, float]:
    """Variables an override formula can see for one sample.

    Per-metal variables exist only for metals present in the sample. Wi and
    Qi are bound together and only when Qi is defined; CF only when the
    background is non-zero.
    """
    env: Dict[str, float] = {}
    present = [m for m in METALS if m in concentrations and m in standards]
    for metal in present:
        conc = concentrations[metal]
        standard = standards[metal]
        env[f"Ci_{metal}"] = conc
        env[f"Si_{metal}"] = standard.permissible_limit
        env[f"Ii_{metal}"] = standard.ideal_value
        env[f"Cb_{metal}"] = standard.background
        qi = sub_index(conc, standard)
        wi = unit_weight(standard)
        if qi is not None and wi is not None:
            env[f"Qi_{metal}"] = qi
            env[f"Wi_{metal}"] = wi
        if factors.get(metal) is not None:
            env[f"CF_{metal}"] = factors[metal]
    env['n'] = float(len(present))
    return env


def compute_sample(sample: SampleRecord,
                   snapshot: FormulaSnapshot,
                   standards: Mapping[str, StandardValue]) -> SampleIndices:
    """All five indices for one sample; failures become None"""
    concentrations = sample.concentrations
    # CF first: Cd and PLI are reductions of it
    factors = contamination_factors(concentrations, standards)
    environment = None

    values: Dict[str, Optional[float]] = {}
    for index_id in INDEX_IDS:
        definition = snapshot[index_id]
        if definition.is_override:
            if environment is None:
                environment = build_environment(concentrations, standards, factors)
            values[index_id] = evaluate_or_none(definition.compiled, environment)
        else:
            value = compute_standard(index_id, concentrations, standards, factors)
            values[index_id] = value if value is not None and math.isfinite(value) else None
    return SampleIndices(sample=sample, values=values, contamination_factors=factors)


def compute_dataset(samples: Sequence[SampleRecord],
                    snapshot: FormulaSnapshot,
                    standards: Mapping[str, StandardValue],
                    n_jobs: int = 1,
                    backend: str = 'threading') -> List[SampleIndices]:
    """Compute every sample, in parallel when n_jobs != 1.

    Results come back in input order regardless of completion order.
    Overrides in the snapshot that were never compiled are compiled
    first; a bad one raises ParseError before any sample runs.
    """
    snapshot = FormulaSnapshot.resolve(snapshot)
    if n_jobs == 1 or len(samples) < 2:
        results = [compute_sample(sample, snapshot, standards) for sample in samples]
    else:
        logger.info(f"Computing {len(samples)} samples on {n_jobs} workers ({backend})")
        results = Parallel(n_jobs=n_jobs, backend=backend)(
            delayed(compute_sample)(sample, snapshot, standards)
            for sample in samples
        )
    return sorted(results, key=lambda r: r.sample.position)
