import threading

import pytest

from engine_errors import ParseError, UnknownIndexError
from engine_settings import INDEX_IDS
from formula_store import FormulaDefinition, FormulaOverrideStore, FormulaSnapshot
from standard_formulas import canonical_expression, declared_variables


def test_defaults_are_canonical_expressions():
    store = FormulaOverrideStore()
    definitions = store.list()
    assert [d.index_id for d in definitions] == list(INDEX_IDS)
    for definition in definitions:
        assert not definition.is_override
        assert definition.compiled is None
        assert definition.expression == canonical_expression(definition.index_id)


def test_set_and_reset():
    store = FormulaOverrideStore()
    definition = store.set('hei', 'sum(Ci_As / Si_As)')
    assert definition.is_override
    assert definition.compiled is not None
    assert store.get('hei').expression == 'sum(Ci_As / Si_As)'

    reset = store.reset('hei')
    assert not reset.is_override
    assert store.get('hei').expression == canonical_expression('hei')


def test_rejected_override_keeps_previous_definition():
    store = FormulaOverrideStore()
    store.set('mpi', 'geomean(Ci_As / Si_As)')
    with pytest.raises(ParseError):
        store.set('mpi', 'geomean(Ci_As / Si_As')
    with pytest.raises(ParseError):
        # CF is not visible to MPI
        store.set('mpi', 'sum(CF_As)')
    assert store.get('mpi').expression == 'geomean(Ci_As / Si_As)'


def test_unknown_index():
    store = FormulaOverrideStore()
    with pytest.raises(UnknownIndexError):
        store.set('wqi', '1')
    with pytest.raises(UnknownIndexError):
        store.reset('wqi')
    with pytest.raises(KeyError):
        store.get('wqi')


def test_snapshot_is_isolated_from_later_changes():
    store = FormulaOverrideStore()
    before = store.snapshot()
    store.set('hpi', 'mean(Qi_As)')
    after = store.snapshot()

    assert isinstance(before, FormulaSnapshot)
    assert not before['hpi'].is_override
    assert after['hpi'].expression == 'mean(Qi_As)'
    assert set(after) == set(INDEX_IDS)
    assert len(after) == len(INDEX_IDS)


def test_overrides_are_independent_per_index():
    store = FormulaOverrideStore()
    store.set('pli', 'geomean(CF_As)')
    store.set('cf_cd', 'sum(CF_As, CF_Pb)')
    store.reset('pli')
    assert not store.get('pli').is_override
    assert store.get('cf_cd').is_override


def test_initial_overrides():
    store = FormulaOverrideStore({'hei': 'sum(Ci_Pb / Si_Pb)'})
    assert store.get('hei').is_override
    assert not store.get('hpi').is_override

    with pytest.raises(ParseError):
        FormulaOverrideStore({'hei': 'sum('})


def test_to_dict():
    data = FormulaOverrideStore().get('cf_cd').to_dict()
    assert data['indexId'] == 'cf_cd'
    assert data['label'] == 'Cd'
    assert data['isOverride'] is False
    assert 'CF_As' in data['declaredVariables']
    assert 'n' in data['declaredVariables']


def test_concurrent_writers_leave_a_valid_definition():
    store = FormulaOverrideStore()
    expressions = [f"sum(Ci_As / Si_As) * {k}" for k in range(1, 9)]

    def writer(text):
        for _ in range(20):
            store.set('hei', text)
            store.snapshot()

    threads = [threading.Thread(target=writer, args=(text,)) for text in expressions]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert store.get('hei').expression in expressions


def test_validate_compiles_without_storing():
    store = FormulaOverrideStore()
    compiled = store.validate('hei', 'sum(Ci_As / Si_As)')
    assert compiled.variables == {'Ci_As', 'Si_As'}
    assert not store.get('hei').is_override

    with pytest.raises(ParseError) as info:
        store.validate('hei', 'sum(Ci_As / Hg)')
    assert info.value.position == 12
    with pytest.raises(UnknownIndexError):
        store.validate('wqi', '1')


def test_resolve_compiles_plain_text_and_uncompiled_definitions():
    uncompiled = FormulaDefinition('hei', '42', True, declared_variables('hei'))
    snapshot = FormulaSnapshot.resolve({'hei': uncompiled, 'pli': 'geomean(CF_As)'})
    assert set(snapshot) == set(INDEX_IDS)
    assert snapshot['hei'].compiled is not None
    assert snapshot['pli'].is_override
    assert snapshot['pli'].compiled.variables == {'CF_As'}
    assert not snapshot['hpi'].is_override


def test_resolve_rejects_bad_entries():
    with pytest.raises(ParseError):
        FormulaSnapshot.resolve({'hei': 'sum('})
    with pytest.raises(ParseError):
        FormulaSnapshot.resolve({'hei': FormulaDefinition('hei', 'sum(Hg)', True, frozenset({'Hg'}))})
    with pytest.raises(ParseError):
        FormulaSnapshot.resolve({'hei': 42})
    with pytest.raises(UnknownIndexError):
        FormulaSnapshot.resolve({'wqi': '1'})


def test_resolve_keeps_compiled_store_definitions():
    store = FormulaOverrideStore({'mpi': 'geomean(Ci_As / Si_As)'})
    snapshot = store.snapshot()
    assert FormulaSnapshot.resolve(snapshot)['mpi'] is snapshot['mpi']
