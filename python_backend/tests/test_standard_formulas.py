import pytest

from engine_settings import METALS, build_reference
from standard_formulas import (
    canonical_expression,
    contamination_degree,
    contamination_factors,
    declared_variables,
    geometric_mean,
    heavy_metal_evaluation_index,
    heavy_metal_pollution_index,
    metal_pollution_index,
    pollution_load_index,
)

STANDARDS = build_reference().standards


def test_hei_and_mpi_two_metals_at_limit():
    conc = {'As': 0.05, 'Cd': 0.01}
    assert heavy_metal_evaluation_index(conc, STANDARDS) == pytest.approx(2.0)
    assert metal_pollution_index(conc, STANDARDS) == pytest.approx(1.0)


def test_hpi_weighted_mean_of_sub_indices():
    # Qi = 100 for As at its limit, 50 for Pb at half its limit
    conc = {'As': 0.05, 'Pb': 0.005}
    w_as, w_pb = 1 / 0.05, 1 / 0.01
    expected = (w_as * 100 + w_pb * 50) / (w_as + w_pb)
    assert heavy_metal_pollution_index(conc, STANDARDS) == pytest.approx(expected)


def test_hpi_uses_ideal_values():
    reference = build_reference({'standards': {'Fe': {'ideal_value': 0.1}}})
    # Qi = 100 * (0.2 - 0.1) / (0.3 - 0.1) = 50
    assert heavy_metal_pollution_index({'Fe': 0.2}, reference.standards) == pytest.approx(50.0)


def test_hpi_skips_metal_whose_limit_equals_ideal_value():
    reference = build_reference({'standards': {'Fe': {'ideal_value': 0.3}}})
    assert heavy_metal_pollution_index({'Fe': 0.2}, reference.standards) is None
    assert heavy_metal_pollution_index({'Fe': 0.2, 'As': 0.05}, reference.standards) == pytest.approx(100.0)


def test_no_metals_present_is_not_computable():
    assert heavy_metal_pollution_index({}, STANDARDS) is None
    assert heavy_metal_evaluation_index({}, STANDARDS) is None
    assert metal_pollution_index({}, STANDARDS) is None
    assert contamination_degree({}) is None
    assert pollution_load_index({}) is None


def test_unit_contamination_factors_give_unit_pli():
    factors = {metal: 1.0 for metal in ('As', 'Cu', 'Zn', 'Pb')}
    assert pollution_load_index(factors) == pytest.approx(1.0)
    assert contamination_degree(factors) == pytest.approx(4.0)


def test_zero_background_makes_cf_not_computable():
    reference = build_reference({'standards': {'As': {'background': 0.0}}})
    factors = contamination_factors({'As': 0.01, 'Pb': 0.01}, reference.standards)
    assert factors['As'] is None
    assert factors['Pb'] == pytest.approx(2.0)
    assert contamination_degree(factors) == pytest.approx(2.0)
    assert pollution_load_index(factors) == pytest.approx(2.0)

    only_as = contamination_factors({'As': 0.01}, reference.standards)
    assert contamination_degree(only_as) is None
    assert pollution_load_index(only_as) is None


def test_geometric_mean_guards():
    assert geometric_mean([]) is None
    assert geometric_mean([4.0, -1.0]) is None
    assert geometric_mean([4.0, 9.0]) == pytest.approx(6.0)
    assert geometric_mean([0.0, 9.0]) == 0.0


def test_canonical_expressions_only_use_declared_variables():
    for index_id in ('hpi', 'hei', 'mpi', 'cf_cd', 'pli'):
        text = canonical_expression(index_id)
        declared = declared_variables(index_id)
        for metal in METALS:
            assert metal in text
        assert 'n' in declared
    assert canonical_expression('hei').startswith('sum(Ci_As / Si_As')
    assert 'CF_Zn' in declared_variables('pli')
    assert 'Qi_As' not in declared_variables('hei')
