# Reference data and runtime configuration for the pollution index engine
import os
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional

import yaml

from classification import MODERATE, SAFE, UNSAFE, ThresholdBand, build_bands, validate_thresholds
from engine_errors import ConfigurationError

logger = logging.getLogger(__name__)

# Fixed set of metals the engine understands, in canonical order
METALS = ('As', 'Cd', 'Cr', 'Cu', 'Fe', 'Mn', 'Ni', 'Pb', 'Zn')

INDEX_IDS = ('hpi', 'hei', 'mpi', 'cf_cd', 'pli')
INDEX_LABELS = {
    'hpi': 'HPI',
    'hei': 'HEI',
    'mpi': 'MPI',
    'cf_cd': 'Cd',
    'pli': 'PLI',
}

# Permissible limits Si in mg/L (drinking water MAC values)
PERMISSIBLE_LIMITS = {
    'As': 0.05,   # Arsenic
    'Cd': 0.01,   # Cadmium
    'Cr': 0.05,   # Chromium
    'Cu': 1.5,    # Copper
    'Fe': 0.3,    # Iron
    'Mn': 0.3,    # Manganese
    'Ni': 0.02,   # Nickel
    'Pb': 0.01,   # Lead
    'Zn': 15.0,   # Zinc
}

# Ideal values Ii in mg/L
IDEAL_VALUES = {metal: 0.0 for metal in METALS}

# Geogenic groundwater background concentrations Cbi in mg/L
BACKGROUND_VALUES = {
    'As': 0.005,
    'Cd': 0.001,
    'Cr': 0.01,
    'Cu': 0.05,
    'Fe': 0.1,
    'Mn': 0.05,
    'Ni': 0.01,
    'Pb': 0.005,
    'Zn': 0.1,
}

# (tier, exclusive upper bound); None closes the table at +inf
THRESHOLDS = {
    'hpi': [(SAFE, 50.0), (MODERATE, 100.0), (UNSAFE, None)],
    'hei': [(SAFE, 10.0), (MODERATE, 20.0), (UNSAFE, None)],
    'mpi': [(SAFE, 1.0), (MODERATE, 6.0), (UNSAFE, None)],
    'cf_cd': [(SAFE, 8.0), (MODERATE, 16.0), (UNSAFE, None)],
    'pli': [(SAFE, 1.0), (MODERATE, 2.0), (UNSAFE, None)],
}

PRIMARY_INDEX = 'hpi'


@dataclass(frozen=True)
class StandardValue:
    permissible_limit: float
    ideal_value: float
    background: float


@dataclass(frozen=True)
class ReferenceData:
    """Process-wide reference tables, read-only once loaded"""
    standards: Dict[str, StandardValue]
    thresholds: Dict[str, List[ThresholdBand]]
    primary_index: str = PRIMARY_INDEX
    formula_overrides: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Settings:
    reference: ReferenceData
    n_jobs: int = 1
    parallel_backend: str = 'threading'
    log_level: str = 'INFO'
    max_upload_mb: int = 10
    host: str = '0.0.0.0'
    port: int = 5000
    debug: bool = False


def _as_float(value: Any, where: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{where} must be a number, got {value!r}")


def _build_standards(overrides: Dict[str, Any]) -> Dict[str, StandardValue]:
    unknown = sorted(set(overrides) - set(METALS))
    if unknown:
        raise ConfigurationError(f"Standards given for unsupported metal(s): {', '.join(unknown)}")

    standards = {}
    for metal in METALS:
        entry = overrides.get(metal) or {}
        if not isinstance(entry, dict):
            raise ConfigurationError(f"Standards for {metal} must be a mapping")
        value = StandardValue(
            permissible_limit=_as_float(entry.get('permissible_limit', PERMISSIBLE_LIMITS[metal]),
                                        f"standards.{metal}.permissible_limit"),
            ideal_value=_as_float(entry.get('ideal_value', IDEAL_VALUES[metal]),
                                  f"standards.{metal}.ideal_value"),
            background=_as_float(entry.get('background', BACKGROUND_VALUES[metal]),
                                 f"standards.{metal}.background"),
        )
        if value.permissible_limit <= 0:
            raise ConfigurationError(f"standards.{metal}.permissible_limit must be positive")
        # A zero background is allowed; CF for that metal is then not computable
        if value.background < 0 or value.ideal_value < 0:
            raise ConfigurationError(f"standards.{metal} values must not be negative")
        standards[metal] = value
    return standards


def _build_thresholds(overrides: Dict[str, Any]) -> Dict[str, List[ThresholdBand]]:
    unknown = sorted(set(overrides) - set(INDEX_IDS))
    if unknown:
        raise ConfigurationError(f"Thresholds given for unknown index(es): {', '.join(unknown)}")

    thresholds = {}
    for index_id in INDEX_IDS:
        if index_id in overrides:
            raw = overrides[index_id]
            if not isinstance(raw, list):
                raise ConfigurationError(f"Thresholds for '{index_id}' must be a list of bands")
            table = []
            for band in raw:
                if not isinstance(band, dict):
                    raise ConfigurationError(f"Threshold bands for '{index_id}' must be mappings")
                upper = band.get('upper')
                table.append((band.get('tier'),
                             None if upper is None else _as_float(upper, f"thresholds.{index_id}.upper")))
        else:
            table = THRESHOLDS[index_id]
        bands = build_bands(table)
        validate_thresholds(index_id, bands)
        thresholds[index_id] = bands
    return thresholds


def build_reference(config: Optional[Dict[str, Any]] = None) -> ReferenceData:
    """Merge a parsed configuration mapping over the built-in defaults"""
    config = config or {}
    primary_index = config.get('primary_index', PRIMARY_INDEX)
    if primary_index not in INDEX_IDS:
        raise ConfigurationError(f"Unknown primary index: {primary_index}")

    formula_overrides = config.get('formula_overrides') or {}
    unknown = sorted(set(formula_overrides) - set(INDEX_IDS))
    if unknown:
        raise ConfigurationError(f"Formula overrides given for unknown index(es): {', '.join(unknown)}")

    return ReferenceData(
        standards=_build_standards(config.get('standards') or {}),
        thresholds=_build_thresholds(config.get('thresholds') or {}),
        primary_index=primary_index,
        formula_overrides={k: str(v) for k, v in formula_overrides.items()},
    )


def load_reference(path: Optional[str] = None) -> ReferenceData:
    """Load reference data from a YAML file, falling back to the defaults"""
    if not path:
        return build_reference()
    try:
        with open(path, 'r', encoding='utf-8') as f:
            loaded = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Failed to read reference file {path}: {e}")
    if not isinstance(loaded, dict):
        raise ConfigurationError(f"Reference file {path} must contain a mapping")
    logger.info(f"Loaded reference data from {path}")
    return build_reference(loaded)


def load_settings() -> Settings:
    """Read settings from the environment"""
    reference = load_reference(os.environ.get('METALSENSE_REFERENCE_FILE'))
    primary = os.environ.get('METALSENSE_PRIMARY_INDEX')
    if primary:
        if primary not in INDEX_IDS:
            raise ConfigurationError(f"Unknown primary index: {primary}")
        reference = replace(reference, primary_index=primary)

    try:
        n_jobs = int(os.environ.get('METALSENSE_N_JOBS', '1'))
        max_upload_mb = int(os.environ.get('METALSENSE_MAX_UPLOAD_MB', '10'))
        port = int(os.environ.get('FLASK_PORT') or os.environ.get('PORT', '5000'))
    except ValueError as e:
        raise ConfigurationError(f"Invalid numeric setting: {e}")

    return Settings(
        reference=reference,
        n_jobs=n_jobs,
        parallel_backend=os.environ.get('METALSENSE_PARALLEL_BACKEND', 'threading'),
        log_level=os.environ.get('METALSENSE_LOG_LEVEL', 'INFO').upper(),
        max_upload_mb=max_upload_mb,
        host=os.environ.get('FLASK_HOST', '0.0.0.0'),
        port=port,
        debug=os.environ.get('FLASK_DEBUG', '0') == '1',
    )
