"""
Engine facade consumed by the presentation layer.

Two surfaces are exposed: formula management (set / validate / reset / list) and
``compute_dataset``. A compute call works on one snapshot of the formula
definitions taken when it starts; later overrides never leak into a run in
progress. Apart from a caller-supplied formula snapshot that fails to
compile, the only exception that leaves ``compute_dataset`` is SchemaError.
"""
import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence

import pandas as pd

from aggregation import aggregate, dataset_indices
from classification import Classifier
from engine_settings import INDEX_IDS, INDEX_LABELS, ReferenceData, Settings, build_reference
from formula_expressions import CompiledFormula
from formula_store import FormulaDefinition, FormulaOverrideStore, FormulaSnapshot
from index_computer import SampleIndices, compute_dataset as compute_samples
from sample_validation import parse_samples

logger = logging.getLogger(__name__)


def _value_entry(value: Optional[float], classification: str) -> Dict[str, Any]:
    return {'value': value, 'classification': classification}


class PollutionIndexEngine:
    def __init__(self, reference: Optional[ReferenceData] = None,
                 store: Optional[FormulaOverrideStore] = None,
                 n_jobs: int = 1, backend: str = 'threading'):
        self.reference = reference or build_reference()
        self.classifier = Classifier(self.reference.thresholds)
        self.store = store or FormulaOverrideStore(self.reference.formula_overrides)
        self.n_jobs = n_jobs
        self.backend = backend

    @classmethod
    def from_settings(cls, settings: Settings) -> 'PollutionIndexEngine':
        return cls(reference=settings.reference, n_jobs=settings.n_jobs,
                   backend=settings.parallel_backend)

    # Formula management

    def set_formula(self, index_id: str, expression: str) -> FormulaDefinition:
        return self.store.set(index_id, expression)

    def validate_formula(self, index_id: str, expression: str) -> CompiledFormula:
        """Compile without storing; raises ParseError or UnknownIndexError"""
        return self.store.validate(index_id, expression)

    def reset_formula(self, index_id: str) -> FormulaDefinition:
        return self.store.reset(index_id)

    def list_formulas(self) -> List[FormulaDefinition]:
        return self.store.list()

    def snapshot(self) -> FormulaSnapshot:
        return self.store.snapshot()

    # Computation

    def _resolve_snapshot(self, formulas: Optional[Mapping[str, Any]]) -> FormulaSnapshot:
        if formulas is None:
            return self.store.snapshot()
        return FormulaSnapshot.resolve(formulas)

    def compute_dataset(self, raw_rows: Any,
                        formula_snapshot: Optional[Mapping[str, Any]] = None,
                        columns: Optional[Sequence[str]] = None) -> Dict[str, Any]:
        """Validate rows, compute every index and build the result payload.

        ``formula_snapshot`` maps index ids to FormulaDefinitions or formula
        text; it is compiled up front and raises ParseError or
        UnknownIndexError when it cannot be. Raises SchemaError when a
        required column is missing; every other problem degrades to row
        warnings or null index values.
        """
        snapshot = self._resolve_snapshot(formula_snapshot)
        validated = parse_samples(raw_rows, columns=columns)
        logger.info(f"Computing indices for {len(validated.samples)} samples")

        computed = compute_samples(validated.samples, snapshot, self.reference.standards,
                                   n_jobs=self.n_jobs, backend=self.backend)
        return self._build_result(computed, validated, snapshot)

    def _build_result(self, computed: List[SampleIndices], validated, snapshot: FormulaSnapshot) -> Dict[str, Any]:
        primary = self.reference.primary_index
        tiers = [
            {index_id: self.classifier.classify(index_id, item.values[index_id]) for index_id in INDEX_IDS}
            for item in computed
        ]
        summary = aggregate(tiers, primary_index=primary)
        overall = dataset_indices([item.values for item in computed], self.classifier)

        locations = []
        for item, sample_tiers in zip(computed, tiers):
            sample = item.sample
            locations.append({
                'id': sample.sample_id,
                'name': sample.name,
                'lat': sample.lat,
                'lng': sample.lng,
                'date': sample.sample_date,
                'primaryIndexValue': item.values[primary],
                'classification': sample_tiers[primary],
                'indices': {
                    INDEX_LABELS[index_id]: _value_entry(item.values[index_id], sample_tiers[index_id])
                    for index_id in INDEX_IDS
                },
                'contaminationFactors': dict(item.contamination_factors),
            })

        logger.info(
            f"Analysis completed: {summary.total_samples} samples, "
            f"{summary.unsafe} unsafe, {summary.not_computable} not computable"
        )
        return {
            'summary': summary.to_dict(),
            'indices': {
                INDEX_LABELS[index_id]: _value_entry(*overall[index_id]) for index_id in INDEX_IDS
            },
            'locations': locations,
            'warnings': [w.to_dict() for w in validated.warnings],
            'ignoredColumns': list(validated.ignored_columns),
            'formulas': [
                {k: v for k, v in snapshot[index_id].to_dict().items() if k != 'declaredVariables'}
                for index_id in INDEX_IDS
            ],
        }


def export_indices_csv(result: Mapping[str, Any]) -> str:
    """Dataset-level Index,Value,Classification table"""
    frame = pd.DataFrame(
        [(label, entry['value'], entry['classification']) for label, entry in result['indices'].items()],
        columns=['Index', 'Value', 'Classification'],
    )
    return frame.to_csv(index=False, float_format='%.2f')


def export_locations_csv(result: Mapping[str, Any]) -> str:
    """One row per location with every index value and the primary tier"""
    rows = []
    for location in result['locations']:
        row = {
            'sample_id': location['id'],
            'name': location['name'],
            'lat': location['lat'],
            'lng': location['lng'],
            'date': location['date'],
        }
        for label, entry in location['indices'].items():
            row[label] = entry['value']
        row['classification'] = location['classification']
        rows.append(row)
    columns = ['sample_id', 'name', 'lat', 'lng', 'date'] + [INDEX_LABELS[i] for i in INDEX_IDS] + ['classification']
    return pd.DataFrame(rows, columns=columns).to_csv(index=False)
