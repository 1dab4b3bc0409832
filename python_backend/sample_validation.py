"""
Ingestion of raw sample rows.

Structural problems (a required column is missing) reject the whole
dataset with SchemaError. Problems in a single row (bad coordinates, a
non-numeric or negative concentration, an empty id) exclude only that row
and are reported as RowWarning. A blank concentration cell means the metal
was not measured for that sample.
"""
import io
import math
import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, NamedTuple, Optional, Sequence, Union

import pandas as pd

from engine_errors import SchemaError, UnsupportedMetalError
from engine_settings import METALS

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ('sample_id', 'lat', 'lng')

COLUMN_ALIASES = {
    'sample_id': ('sample_id', 'id', 'sampleid'),
    'lat': ('lat', 'latitude'),
    'lng': ('lng', 'lon', 'long', 'longitude'),
    'date': ('date', 'sample_date', 'sampling_date'),
    'name': ('name', 'location', 'site', 'site_name'),
}

# Elements commonly reported next to the supported panel; ignored when present
OTHER_ELEMENTS = {'Hg', 'Co', 'Al', 'Se', 'Sb', 'Ba', 'Mo', 'Sr', 'U', 'V', 'B', 'Ag', 'Be', 'Tl', 'Sn'}


@dataclass(frozen=True)
class SampleRecord:
    sample_id: str
    lat: float
    lng: float
    concentrations: Mapping[str, float]
    sample_date: Optional[str] = None
    name: Optional[str] = None
    position: int = 0

    def __post_init__(self):
        object.__setattr__(self, 'concentrations', MappingProxyType(dict(self.concentrations)))

    def __reduce__(self):
        # mappingproxy cannot be pickled; rebuild from a plain dict
        return (SampleRecord, (self.sample_id, self.lat, self.lng, dict(self.concentrations),
                               self.sample_date, self.name, self.position))


@dataclass(frozen=True)
class RowWarning:
    row_index: int
    reason: str
    excluded: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {'rowIndex': self.row_index, 'reason': self.reason, 'excluded': self.excluded}


class ValidationResult(NamedTuple):
    samples: List[SampleRecord]
    warnings: List[RowWarning]
    ignored_columns: List[str]


def _normalize(column: Any) -> str:
    return str(column).strip().lower()


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ''
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        return False


def _to_number(value: Any) -> Optional[float]:
    """Finite float or None"""
    if isinstance(value, bool):
        return None
    try:
        number = float(str(value).strip()) if isinstance(value, str) else float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _text(value: Any) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def _resolve_columns(columns: Iterable[Any], required_metals: Sequence[str]):
    """Map logical fields and metals to the actual column labels"""
    fields: Dict[str, Any] = {}
    metals: Dict[str, Any] = {}
    ignored: List[str] = []
    by_alias = {alias: field for field, aliases in COLUMN_ALIASES.items() for alias in aliases}
    by_metal = {}
    for metal in METALS:
        by_metal[metal.lower()] = metal
        by_metal[f"c_{metal.lower()}"] = metal

    for column in columns:
        key = _normalize(column)
        if key in by_alias and by_alias[key] not in fields:
            fields[by_alias[key]] = column
        elif key in by_metal and by_metal[key] not in metals:
            metals[by_metal[key]] = column
        else:
            ignored.append(str(column))

    missing = [f for f in REQUIRED_FIELDS if f not in fields]
    missing += [m for m in required_metals if m not in metals]
    if missing:
        raise SchemaError(missing)

    other = [c for c in ignored if c.strip() in OTHER_ELEMENTS or c.strip()[2:] in OTHER_ELEMENTS]
    if other:
        logger.warning(f"Ignoring concentration columns outside the supported metal set: {other}")
    return fields, metals, ignored


def _to_frame(raw_rows: Any, columns: Optional[Sequence[str]] = None) -> pd.DataFrame:
    if isinstance(raw_rows, pd.DataFrame):
        return raw_rows
    rows = list(raw_rows or [])
    if columns is None:
        return pd.DataFrame(rows, dtype=object)
    columns = list(columns)
    width = len(columns)
    ragged = {}
    cells = []
    for position, values in enumerate(rows):
        if isinstance(values, Mapping):
            values = [values.get(column) for column in columns]
        values = list(values)
        if len(values) > width:
            ragged[position] = len(values)
            values = []
        cells.append(values + [None] * (width - len(values)))
    frame = pd.DataFrame(cells, columns=columns, dtype=object)
    frame.attrs['ragged_rows'] = ragged
    return frame


# Placeholder cell written over rows with more fields than the header
_RAGGED_MARKER = '\x00ragged-row:'


def _as_text(source: Union[str, bytes, io.IOBase]) -> str:
    if hasattr(source, 'read'):
        source = source.read()
    if isinstance(source, bytes):
        try:
            return source.decode('utf-8-sig')
        except UnicodeDecodeError as e:
            raise SchemaError([], message=f"CSV input is not valid UTF-8 text (undecodable byte at offset {e.start})")
    return source


def _unique_labels(header: Sequence[Any]) -> List[str]:
    labels = []
    seen: Dict[str, int] = {}
    for i, cell in enumerate(header):
        label = f"Unnamed: {i}" if _is_blank(cell) else str(cell).strip()
        if label in seen:
            seen[label] += 1
            label = f"{label}.{seen[label]}"
        else:
            seen[label] = 0
        labels.append(label)
    return labels


def read_samples_csv(source: Union[str, bytes, io.IOBase]) -> pd.DataFrame:
    """Read CSV text, bytes or a file object keeping every cell as text.

    Undecodable bytes or a missing header reject the input with SchemaError.
    A data row with more fields than the header stays in place as an empty
    row and is listed in ``frame.attrs['ragged_rows']`` (position -> field
    count) so that parse_samples reports it as an excluded row.
    """
    text = _as_text(source)
    try:
        width = pd.read_csv(io.StringIO(text), header=None, nrows=1, dtype=str, engine='python').shape[1]
    except pd.errors.EmptyDataError:
        raise SchemaError(list(REQUIRED_FIELDS) + list(METALS), message='CSV input has no header row')

    def flag_ragged(fields: List[str]) -> List[str]:
        return [f"{_RAGGED_MARKER}{len(fields)}"] * width

    # header=None keeps a long first data row from being read as an index column
    try:
        raw = pd.read_csv(io.StringIO(text), header=None, dtype=str, skipinitialspace=True,
                          engine='python', on_bad_lines=flag_ragged)
    except pd.errors.ParserError as e:
        raise SchemaError([], message=f"CSV input could not be parsed: {e}")

    frame = raw.iloc[1:].reset_index(drop=True)
    frame.columns = _unique_labels(list(raw.iloc[0]))

    first = frame.iloc[:, 0].astype(object)
    mask = first.map(lambda cell: isinstance(cell, str) and cell.startswith(_RAGGED_MARKER)).to_numpy(dtype=bool)
    ragged = {int(pos): int(first.iat[pos][len(_RAGGED_MARKER):]) for pos in mask.nonzero()[0]}
    if ragged:
        logger.warning(f"{len(ragged)} CSV row(s) have more fields than the header")
        frame.loc[mask, :] = None
    frame.attrs['ragged_rows'] = ragged
    return frame


def _coordinate(row_reasons: List[str], label: str, value: Any, bound: float) -> Optional[float]:
    if _is_blank(value):
        row_reasons.append(f"missing {label}")
        return None
    number = _to_number(value)
    if number is None:
        row_reasons.append(f"non-numeric {label} {value!r}")
        return None
    if not -bound <= number <= bound:
        row_reasons.append(f"{label} {number} out of range [-{bound:g}, {bound:g}]")
        return None
    return number


def parse_samples(raw_rows: Any,
                  columns: Optional[Sequence[str]] = None,
                  required_metals: Sequence[str] = METALS) -> ValidationResult:
    """Validate raw rows into SampleRecords.

    raw_rows may be a DataFrame, a list of mappings, or a list of sequences
    together with ``columns``. Output keeps input order; ``row_index`` in
    warnings is the 0-based position of the row in the input.
    """
    unsupported = [m for m in required_metals if m not in METALS]
    if unsupported:
        raise UnsupportedMetalError(unsupported)

    frame = _to_frame(raw_rows, columns)
    fields, metal_columns, ignored = _resolve_columns(frame.columns, required_metals)

    row_warnings: List[RowWarning] = []
    valid: List[Dict[str, Any]] = []
    ragged = frame.attrs.get('ragged_rows', {})

    for position, row in enumerate(frame.itertuples(index=False, name=None)):
        if position in ragged:
            row_warnings.append(RowWarning(
                position, f"row has {ragged[position]} fields, header has {len(frame.columns)}"
            ))
            continue
        values = dict(zip(frame.columns, row))
        reasons: List[str] = []

        raw_id = values[fields['sample_id']]
        sample_id = None if _is_blank(raw_id) else _text(raw_id)
        if sample_id is None:
            reasons.append('missing sample_id')

        lat = _coordinate(reasons, 'lat', values[fields['lat']], 90.0)
        lng = _coordinate(reasons, 'lng', values[fields['lng']], 180.0)

        concentrations: Dict[str, float] = {}
        for metal in METALS:
            if metal not in metal_columns:
                continue
            value = values[metal_columns[metal]]
            if _is_blank(value):
                continue
            number = _to_number(value)
            if number is None:
                reasons.append(f"non-numeric {metal} value {value!r}")
            elif number < 0:
                reasons.append(f"negative {metal} concentration {number}")
            else:
                concentrations[metal] = number

        if reasons:
            row_warnings.append(RowWarning(position, '; '.join(reasons)))
            continue

        sample_date = None
        if 'date' in fields and not _is_blank(values[fields['date']]):
            sample_date = _text(values[fields['date']])
        name = None
        if 'name' in fields and not _is_blank(values[fields['name']]):
            name = _text(values[fields['name']])

        valid.append({
            'sample_id': sample_id,
            'lat': lat,
            'lng': lng,
            'concentrations': concentrations,
            'sample_date': sample_date,
            'name': name,
            'position': position,
        })

    samples = []
    original_ids = {entry['sample_id'] for entry in valid}
    seen = set()
    for entry in valid:
        sample_id = entry['sample_id']
        if sample_id in seen:
            suffix = 2
            while f"{sample_id}-{suffix}" in seen or f"{sample_id}-{suffix}" in original_ids:
                suffix += 1
            renamed = f"{sample_id}-{suffix}"
            row_warnings.append(RowWarning(
                entry['position'],
                f"duplicate sample_id '{sample_id}' renamed to '{renamed}'",
                excluded=False,
            ))
            entry['sample_id'] = renamed
        seen.add(entry['sample_id'])
        samples.append(SampleRecord(**entry))

    row_warnings.sort(key=lambda w: w.row_index)
    excluded = sum(1 for w in row_warnings if w.excluded)
    logger.info(f"Validated {len(frame)} rows: {len(samples)} samples accepted, {excluded} excluded")
    return ValidationResult(samples, row_warnings, ignored)
