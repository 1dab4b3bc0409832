"""
Closed-form pollution indices.

Every function returns ``None`` when the index is not computable for the
sample (no applicable metal, zero background, negative geometric-mean
factor). Absent metals are skipped and never count towards n.

The aggregate helpers ``total``, ``product``, ``arithmetic_mean`` and
``geometric_mean`` are shared with the formula evaluator, so the canonical
expression of an index reproduces the closed form exactly.
"""
from typing import Dict, Iterable, List, Mapping, Optional

import numpy as np

from engine_settings import INDEX_IDS, INDEX_LABELS, METALS, StandardValue

# Per-metal variable families each index may reference in an override
VARIABLE_FAMILIES = {
    'hpi': ('Ci', 'Si', 'Ii', 'Wi', 'Qi'),
    'hei': ('Ci', 'Si'),
    'mpi': ('Ci', 'Si'),
    'cf_cd': ('Ci', 'Cb', 'CF'),
    'pli': ('Ci', 'Cb', 'CF'),
}

VARIABLE_DESCRIPTIONS = {
    'Ci': 'metal concentration (mg/L)',
    'Si': 'permissible limit / MAC (mg/L)',
    'Ii': 'ideal value (mg/L)',
    'Cb': 'background concentration (mg/L)',
    'Wi': 'unit weight 1/Si',
    'Qi': 'sub-index 100 x (Ci - Ii) / (Si - Ii)',
    'CF': 'contamination factor Ci/Cb',
    'n': 'number of metals present in the sample',
}

INDEX_INFO = {
    'hpi': {
        'name': 'Heavy Metal Pollution Index',
        'description': 'Weighted arithmetic mean of sub-indices relative to ideal and permissible values',
        'formula': 'HPI = Σ(Wi × Qi) / Σ(Wi)',
    },
    'hei': {
        'name': 'Heavy Metal Evaluation Index',
        'description': 'Sum of concentration-to-standard ratios',
        'formula': 'HEI = Σ(Ci / Si)',
    },
    'mpi': {
        'name': 'Metal Pollution Index',
        'description': 'Geometric mean of concentration-to-standard ratios',
        'formula': 'MPI = (C1/S1 × C2/S2 × ... × Cn/Sn)^(1/n)',
    },
    'cf_cd': {
        'name': 'Contamination Factor & Degree',
        'description': 'Per-metal contamination factors summed into the contamination degree',
        'formula': 'CF = Ci / Cb; Cd = Σ(CFi)',
    },
    'pli': {
        'name': 'Pollution Load Index',
        'description': 'Geometric mean of contamination factors',
        'formula': 'PLI = (CF1 × CF2 × ... × CFn)^(1/n)',
    },
}


def total(values: List[float]) -> float:
    return float(np.sum(values))


def product(values: List[float]) -> float:
    return float(np.prod(values))


def arithmetic_mean(values: List[float]) -> float:
    return float(np.mean(values))


def geometric_mean(values: List[float]) -> Optional[float]:
    """n-th root of the product; None for an empty list or a negative factor"""
    if not values or any(v < 0 for v in values):
        return None
    return product(values) ** (1.0 / len(values))


def sub_index(conc: float, standard: StandardValue) -> Optional[float]:
    """Qi = 100 x (Ci - Ii) / (Si - Ii)"""
    span = standard.permissible_limit - standard.ideal_value
    if span == 0:
        return None
    return 100.0 * (conc - standard.ideal_value) / span


def unit_weight(standard: StandardValue) -> Optional[float]:
    """Wi = 1 / Si"""
    if standard.permissible_limit <= 0:
        return None
    return 1.0 / standard.permissible_limit


def standard_ratio(conc: float, standard: StandardValue) -> Optional[float]:
    if standard.permissible_limit <= 0:
        return None
    return conc / standard.permissible_limit


def contamination_factor(conc: float, standard: StandardValue) -> Optional[float]:
    """CF = Ci / Cbi, not computable for a zero background"""
    if standard.background <= 0:
        return None
    return conc / standard.background


def _present(concentrations: Mapping[str, float],
             standards: Mapping[str, StandardValue]) -> Iterable[str]:
    # Canonical metal order keeps sums independent of input column order
    return [m for m in METALS if m in concentrations and m in standards]


def heavy_metal_pollution_index(concentrations: Mapping[str, float],
                                standards: Mapping[str, StandardValue]) -> Optional[float]:
    weighted = []
    weights = []
    for metal in _present(concentrations, standards):
        qi = sub_index(concentrations[metal], standards[metal])
        wi = unit_weight(standards[metal])
        if qi is None or wi is None:
            continue
        weighted.append(wi * qi)
        weights.append(wi)
    if not weights:
        return None
    denominator = total(weights)
    if denominator == 0:
        return None
    return total(weighted) / denominator


def _ratios(concentrations: Mapping[str, float],
            standards: Mapping[str, StandardValue]) -> List[float]:
    ratios = []
    for metal in _present(concentrations, standards):
        ratio = standard_ratio(concentrations[metal], standards[metal])
        if ratio is not None:
            ratios.append(ratio)
    return ratios


def heavy_metal_evaluation_index(concentrations: Mapping[str, float],
                                 standards: Mapping[str, StandardValue]) -> Optional[float]:
    ratios = _ratios(concentrations, standards)
    if not ratios:
        return None
    return total(ratios)


def metal_pollution_index(concentrations: Mapping[str, float],
                          standards: Mapping[str, StandardValue]) -> Optional[float]:
    return geometric_mean(_ratios(concentrations, standards))


def contamination_factors(concentrations: Mapping[str, float],
                          standards: Mapping[str, StandardValue]) -> Dict[str, Optional[float]]:
    """CF per present metal; None marks a metal whose CF is not computable"""
    return {
        metal: contamination_factor(concentrations[metal], standards[metal])
        for metal in _present(concentrations, standards)
    }


def contamination_degree(factors: Mapping[str, Optional[float]]) -> Optional[float]:
    values = [factors[m] for m in METALS if factors.get(m) is not None]
    if not values:
        return None
    return total(values)


def pollution_load_index(factors: Mapping[str, Optional[float]]) -> Optional[float]:
    return geometric_mean([factors[m] for m in METALS if factors.get(m) is not None])


def compute_standard(index_id: str,
                     concentrations: Mapping[str, float],
                     standards: Mapping[str, StandardValue],
                     factors: Mapping[str, Optional[float]]) -> Optional[float]:
    """Built-in value of one index; CF must already be computed for the sample"""
    if index_id == 'hpi':
        return heavy_metal_pollution_index(concentrations, standards)
    if index_id == 'hei':
        return heavy_metal_evaluation_index(concentrations, standards)
    if index_id == 'mpi':
        return metal_pollution_index(concentrations, standards)
    if index_id == 'cf_cd':
        return contamination_degree(factors)
    if index_id == 'pli':
        return pollution_load_index(factors)
    raise KeyError(f"Unknown index id: {index_id}")


def declared_variables(index_id: str) -> frozenset:
    families = VARIABLE_FAMILIES[index_id]
    names = {f"{family}_{metal}" for family in families for metal in METALS}
    names.add('n')
    return frozenset(names)


def canonical_expression(index_id: str) -> str:
    """The built-in formula of an index written in the override language"""
    if index_id == 'hpi':
        weighted = ', '.join(f"Wi_{m} * Qi_{m}" for m in METALS)
        weights = ', '.join(f"Wi_{m}" for m in METALS)
        return f"sum({weighted}) / sum({weights})"
    if index_id == 'hei':
        return 'sum(' + ', '.join(f"Ci_{m} / Si_{m}" for m in METALS) + ')'
    if index_id == 'mpi':
        return 'geomean(' + ', '.join(f"Ci_{m} / Si_{m}" for m in METALS) + ')'
    if index_id == 'cf_cd':
        return 'sum(' + ', '.join(f"CF_{m}" for m in METALS) + ')'
    if index_id == 'pli':
        return 'geomean(' + ', '.join(f"CF_{m}" for m in METALS) + ')'
    raise KeyError(f"Unknown index id: {index_id}")


def describe_indices() -> Dict[str, Dict[str, object]]:
    """Index metadata served to the presentation layer"""
    return {
        INDEX_LABELS[index_id]: {
            'id': index_id,
            **INDEX_INFO[index_id],
            'canonicalExpression': canonical_expression(index_id),
            'variables': {
                family: VARIABLE_DESCRIPTIONS[family]
                for family in VARIABLE_FAMILIES[index_id] + ('n',)
            },
        }
        for index_id in INDEX_IDS
    }
