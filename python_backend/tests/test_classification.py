import math

import pytest

from classification import (
    MODERATE,
    NOT_APPLICABLE,
    SAFE,
    TIER_RANK,
    UNSAFE,
    Classifier,
    ThresholdBand,
    build_bands,
    validate_thresholds,
)
from engine_errors import ConfigurationError
from engine_settings import build_reference

CLASSIFIER = Classifier(build_reference().thresholds)


@pytest.mark.parametrize('index_id, value, tier', [
    ('hpi', 0.0, SAFE),
    ('hpi', 49.999, SAFE),
    ('hpi', 50.0, MODERATE),
    ('hpi', 99.99, MODERATE),
    ('hpi', 100.0, UNSAFE),
    ('hei', 10.0, MODERATE),
    ('hei', 20.0, UNSAFE),
    ('mpi', 0.5, SAFE),
    ('mpi', 6.0, UNSAFE),
    ('cf_cd', 7.9, SAFE),
    ('cf_cd', 16.0, UNSAFE),
    ('pli', 1.0, MODERATE),
    ('pli', 2.0, UNSAFE),
    ('hpi', -5.0, SAFE),
])
def test_band_boundaries(index_id, value, tier):
    assert CLASSIFIER.classify(index_id, value) == tier


def test_not_computable_values():
    assert CLASSIFIER.classify('hpi', None) == NOT_APPLICABLE
    assert CLASSIFIER.classify('hpi', math.nan) == NOT_APPLICABLE
    assert CLASSIFIER.classify('hpi', math.inf) == NOT_APPLICABLE
    assert CLASSIFIER.classify('hpi', -math.inf) == NOT_APPLICABLE


def test_unknown_index():
    with pytest.raises(KeyError):
        CLASSIFIER.classify('wqi', 1.0)


def test_classification_is_monotone():
    for index_id in ('hpi', 'hei', 'mpi', 'cf_cd', 'pli'):
        previous = -1
        for step in range(0, 2500):
            rank = TIER_RANK[CLASSIFIER.classify(index_id, step / 10)]
            assert rank >= previous
            previous = rank


def test_build_bands_are_contiguous():
    bands = build_bands([(SAFE, 1), (MODERATE, 2), (UNSAFE, None)])
    assert bands[0].lower == -math.inf
    assert bands[1] == ThresholdBand(MODERATE, 1.0, 2.0)
    assert bands[2].upper == math.inf


@pytest.mark.parametrize('table', [
    [(SAFE, 10), (UNSAFE, 5), (UNSAFE, None)],
    [(UNSAFE, 10), (SAFE, None)],
    [('Critical', 10), (UNSAFE, None)],
    [(SAFE, 10), (MODERATE, 20)],
    [],
])
def test_invalid_tables_are_rejected(table):
    with pytest.raises(ConfigurationError):
        validate_thresholds('hpi', build_bands(table))


def test_gaps_and_overlaps_are_rejected():
    gap = [
        ThresholdBand(SAFE, -math.inf, 10.0),
        ThresholdBand(UNSAFE, 12.0, math.inf),
    ]
    with pytest.raises(ConfigurationError):
        validate_thresholds('hpi', gap)
    with pytest.raises(ConfigurationError):
        validate_thresholds('hpi', [ThresholdBand(SAFE, 0.0, math.inf)])


def test_single_tier_table_is_valid():
    validate_thresholds('hpi', build_bands([(UNSAFE, None)]))


def test_invalid_configured_thresholds():
    with pytest.raises(ConfigurationError):
        build_reference({'thresholds': {'hpi': [{'tier': SAFE, 'upper': 50}, {'tier': SAFE, 'upper': 40},
                                                 {'tier': UNSAFE}]}})
    with pytest.raises(ConfigurationError):
        build_reference({'thresholds': {'wqi': []}})
