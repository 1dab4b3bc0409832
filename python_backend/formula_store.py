# Per-index formula overrides shared between requests
import logging
import threading
from collections import abc
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Mapping, Optional

from engine_errors import UnknownIndexError
from engine_settings import INDEX_IDS, INDEX_LABELS
from formula_expressions import CompiledFormula, compile_formula
from standard_formulas import canonical_expression, declared_variables

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FormulaDefinition:
    index_id: str
    expression: str
    is_override: bool
    declared_variables: frozenset
    compiled: Optional[CompiledFormula] = None

    @property
    def label(self) -> str:
        return INDEX_LABELS[self.index_id]

    def to_dict(self) -> Dict[str, object]:
        return {
            'indexId': self.index_id,
            'label': self.label,
            'expression': self.expression,
            'isOverride': self.is_override,
            'declaredVariables': sorted(self.declared_variables),
        }


def standard_definition(index_id: str) -> FormulaDefinition:
    return FormulaDefinition(
        index_id=index_id,
        expression=canonical_expression(index_id),
        is_override=False,
        declared_variables=declared_variables(index_id),
    )


def _check_index(index_id: str):
    if index_id not in INDEX_IDS:
        raise UnknownIndexError(index_id)


def validate_expression(index_id: str, expression: str) -> CompiledFormula:
    """Compile override text for one index without storing it; raises ParseError"""
    _check_index(index_id)
    return compile_formula(expression, declared_variables(index_id))


def override_definition(index_id: str, expression: str) -> FormulaDefinition:
    return FormulaDefinition(
        index_id=index_id,
        expression=expression,
        is_override=True,
        declared_variables=declared_variables(index_id),
        compiled=validate_expression(index_id, expression),
    )


def _resolve_entry(index_id: str, entry: Any) -> FormulaDefinition:
    if entry is None:
        return standard_definition(index_id)
    if isinstance(entry, FormulaDefinition):
        if not entry.is_override:
            return standard_definition(index_id)
        if (entry.compiled is not None and entry.index_id == index_id
                and entry.declared_variables == declared_variables(index_id)):
            return entry
        return override_definition(index_id, entry.expression)
    # Plain formula text; anything else is rejected by the compiler
    return override_definition(index_id, entry)


class FormulaSnapshot(abc.Mapping):
    """Immutable view of all index definitions taken at one instant"""

    def __init__(self, definitions: Mapping[str, FormulaDefinition]):
        self._definitions = dict(definitions)

    def __getitem__(self, index_id: str) -> FormulaDefinition:
        return self._definitions[index_id]

    def __iter__(self) -> Iterator[str]:
        return iter(self._definitions)

    def __len__(self) -> int:
        return len(self._definitions)

    @classmethod
    def standard(cls) -> 'FormulaSnapshot':
        return cls({index_id: standard_definition(index_id) for index_id in INDEX_IDS})

    @classmethod
    def resolve(cls, formulas: Mapping[str, Any]) -> 'FormulaSnapshot':
        """Build a complete snapshot from caller-supplied formulas.

        Values may be FormulaDefinitions or plain formula text. Override
        text that was never compiled is compiled here, so a bad formula
        raises ParseError instead of silently falling back to the standard
        one. Indices left out use their standard definition.
        """
        for index_id in formulas:
            _check_index(index_id)
        return cls({index_id: _resolve_entry(index_id, formulas.get(index_id)) for index_id in INDEX_IDS})


class FormulaOverrideStore:
    """Holds the active formula of every index.

    ``set`` compiles the new text before swapping it in, so a rejected
    override leaves the previous definition active. All mutations and
    snapshots are serialized by one lock.
    """

    def __init__(self, overrides: Optional[Mapping[str, str]] = None):
        self._lock = threading.Lock()
        self._definitions = {index_id: standard_definition(index_id) for index_id in INDEX_IDS}
        for index_id, expression in (overrides or {}).items():
            self.set(index_id, expression)

    def validate(self, index_id: str, expression: str) -> CompiledFormula:
        return validate_expression(index_id, expression)

    def set(self, index_id: str, expression: str) -> FormulaDefinition:
        # Raises ParseError; nothing is stored in that case
        definition = override_definition(index_id, expression)
        with self._lock:
            self._definitions[index_id] = definition
        logger.info(f"Formula override set for {INDEX_LABELS[index_id]}: {expression[:80]}")
        return definition

    def reset(self, index_id: str) -> FormulaDefinition:
        _check_index(index_id)
        definition = standard_definition(index_id)
        with self._lock:
            self._definitions[index_id] = definition
        logger.info(f"Formula for {INDEX_LABELS[index_id]} reset to default")
        return definition

    def get(self, index_id: str) -> FormulaDefinition:
        _check_index(index_id)
        with self._lock:
            return self._definitions[index_id]

    def list(self) -> List[FormulaDefinition]:
        with self._lock:
            return [self._definitions[index_id] for index_id in INDEX_IDS]

    def snapshot(self) -> FormulaSnapshot:
        with self._lock:
            return FormulaSnapshot(self._definitions)
