import os

import pytest

from classification import MODERATE, SAFE, UNSAFE
from engine_errors import ConfigurationError
from engine_settings import PERMISSIBLE_LIMITS, build_reference, load_reference, load_settings

REFERENCE_FILE = os.path.join(os.path.dirname(__file__), '..', '..', 'config', 'reference_data.yml')


def test_defaults():
    reference = build_reference()
    assert reference.primary_index == 'hpi'
    assert reference.standards['As'].permissible_limit == PERMISSIBLE_LIMITS['As']
    assert reference.standards['Pb'].ideal_value == 0.0
    assert [band.tier for band in reference.thresholds['hpi']] == [SAFE, MODERATE, UNSAFE]
    assert reference.formula_overrides == {}


def test_bundled_reference_file_matches_defaults():
    assert load_reference(REFERENCE_FILE) == build_reference()


def test_yaml_overrides_merge_over_defaults(tmp_path):
    path = tmp_path / 'reference.yml'
    path.write_text(
        "standards:\n"
        "  Pb: {permissible_limit: 0.015}\n"
        "thresholds:\n"
        "  mpi:\n"
        "    - {tier: Safe, upper: 2}\n"
        "    - {tier: Unsafe}\n"
        "primary_index: mpi\n"
        "formula_overrides:\n"
        "  hei: 'sum(Ci_Pb / Si_Pb)'\n",
        encoding='utf-8',
    )
    reference = load_reference(str(path))
    assert reference.standards['Pb'].permissible_limit == 0.015
    assert reference.standards['Pb'].background == 0.005
    assert reference.standards['As'].permissible_limit == 0.05
    assert [band.upper for band in reference.thresholds['mpi']] == [2.0, float('inf')]
    assert reference.primary_index == 'mpi'
    assert reference.formula_overrides == {'hei': 'sum(Ci_Pb / Si_Pb)'}


@pytest.mark.parametrize('config', [
    {'standards': {'Hg': {'permissible_limit': 0.001}}},
    {'standards': {'As': {'permissible_limit': 0}}},
    {'standards': {'As': {'background': -1}}},
    {'standards': {'As': {'permissible_limit': 'high'}}},
    {'standards': {'As': 0.05}},
    {'thresholds': {'hpi': [{'tier': UNSAFE, 'upper': 10}, {'tier': SAFE}]}},
    {'thresholds': {'hpi': 'Safe'}},
    {'thresholds': {'hpi': ['Safe']}},
    {'primary_index': 'wqi'},
    {'formula_overrides': {'wqi': '1'}},
])
def test_invalid_reference_data(config):
    with pytest.raises(ConfigurationError):
        build_reference(config)


def test_unreadable_reference_file(tmp_path):
    with pytest.raises(ConfigurationError):
        load_reference(str(tmp_path / 'missing.yml'))
    broken = tmp_path / 'broken.yml'
    broken.write_text('standards: [unclosed', encoding='utf-8')
    with pytest.raises(ConfigurationError):
        load_reference(str(broken))
    listing = tmp_path / 'list.yml'
    listing.write_text('- 1\n- 2\n', encoding='utf-8')
    with pytest.raises(ConfigurationError):
        load_reference(str(listing))


def test_settings_from_environment(monkeypatch):
    monkeypatch.delenv('METALSENSE_REFERENCE_FILE', raising=False)
    monkeypatch.setenv('METALSENSE_PRIMARY_INDEX', 'pli')
    monkeypatch.setenv('METALSENSE_N_JOBS', '4')
    monkeypatch.setenv('FLASK_PORT', '5055')
    monkeypatch.setenv('FLASK_DEBUG', '1')
    settings = load_settings()
    assert settings.reference.primary_index == 'pli'
    assert settings.n_jobs == 4
    assert settings.port == 5055
    assert settings.debug is True
    assert settings.parallel_backend == 'threading'


def test_invalid_environment(monkeypatch):
    monkeypatch.delenv('METALSENSE_REFERENCE_FILE', raising=False)
    monkeypatch.setenv('METALSENSE_PRIMARY_INDEX', 'wqi')
    with pytest.raises(ConfigurationError):
        load_settings()
    monkeypatch.delenv('METALSENSE_PRIMARY_INDEX')
    monkeypatch.setenv('METALSENSE_N_JOBS', 'many')
    with pytest.raises(ConfigurationError):
        load_settings()
