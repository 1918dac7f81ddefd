"""
IPEDS Label Parser and Table Annotator

Reads the Stata .do program NCES ships with each complete data file and
applies its labels to the raw CSV without needing Stata:

    label variable unitid "Unique identification number of the institution"
    label define label_control 1 "Public"
    label define label_control 2 "Private not-for-profit", add

'label variable' lines become variable labels (descriptions), 'label define
label_<field>' lines become value labels. The result is written as a Stata
.dta file carrying both.

Per-field rules, in order:
    1. Boolean columns (all 'T'/'F' read as logical) go back to 'T'/'F' text
    2. All-missing columns never get value labels
    3. Value labels need numeric keys and a numeric column
    4. Repeated labels or values drop the value labels
    5. Otherwise description and value labels are both attached
"""

from __future__ import annotations
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple, Union

import numpy as np
import pandas as pd

from ipeds_files import IpedsError

logger = logging.getLogger(__name__)

# One pattern per kind of declaration; everything else in a .do file is ignored
VARIABLE_LINE = re.compile(r'^label\s+variable\s+(\w+)(?=\s|$)(.*)$', re.IGNORECASE)
VALUE_LINE = re.compile(r'^label\s+define\s+label_(\w+)\s+(\S+)(.*)$', re.IGNORECASE)
QUOTED_TEXT = re.compile(r'"(.*?)"')
INTEGER_TOKEN = re.compile(r'^-?\d+$')

# NCES writes apostrophes as '^' inside quoted text
ESCAPED_APOSTROPHE = '^'

# Stata limits variable labels to 80 characters
MAX_VARIABLE_LABEL = 80

STATA_VERSION = 118

# Names Stata will not accept as variable names; pandas would rename them
# on export and drop the labels keyed by the old name
STATA_RESERVED = frozenset((
    "aggregate", "array", "boolean", "break", "byte", "case", "catch", "class",
    "colvector", "complex", "const", "continue", "default", "delegate", "delete",
    "do", "double", "else", "eltypedef", "end", "enum", "explicit", "export",
    "external", "float", "for", "friend", "function", "global", "goto", "if",
    "inline", "int", "local", "long", "NULL", "pragma", "protected", "quad",
    "rowvector", "short", "typedef", "typename", "virtual", "_all", "_N",
    "_skip", "_b", "_pi", "str#", "in", "_pred", "strL", "_coef", "_cons",
    "_se", "with", "_n",
))
INVALID_NAME_CHARS = re.compile(r"[^A-Za-z0-9_]")
MAX_NAME_LENGTH = 32

# Diagnostics that mean labels were lost or moved
WARNING_CONDITIONS = ("duplicate_labels", "column_renamed")


class MissingSourceError(IpedsError):
    """The extracted data CSV or .do file for a file name is not there."""


@dataclass
class LabelDefinition:
    field_name: str
    description: Optional[str] = None
    value_labels: List[Tuple[Union[int, str], str]] = field(default_factory=list)

    @property
    def has_numeric_keys(self) -> bool:
        return bool(self.value_labels) and all(isinstance(v, int) for v, _ in self.value_labels)

    def has_duplicates(self) -> bool:
        labels = [label for _, label in self.value_labels]
        values = [value for value, _ in self.value_labels]
        return len(set(labels)) != len(labels) or len(set(values)) != len(values)


class Outcome(Enum):
    FULL = "full"
    DESCRIPTION_ONLY = "description_only"
    NONE = "none"


@dataclass
class FieldAnnotation:
    field_name: str
    outcome: Outcome
    description: Optional[str] = None
    value_labels: Dict[int, str] = field(default_factory=dict)


@dataclass
class LabelDiagnostic:
    identifier: str
    field_name: str
    condition: str
    detail: str = ""


@dataclass
class AnnotatedTable:
    identifier: str
    frame: pd.DataFrame
    annotations: Dict[str, FieldAnnotation] = field(default_factory=dict)
    diagnostics: List[LabelDiagnostic] = field(default_factory=list)

    @property
    def variable_labels(self) -> Dict[str, str]:
        return {name: a.description for name, a in self.annotations.items() if a.description}

    @property
    def value_labels(self) -> Dict[str, Dict[int, str]]:
        return {name: a.value_labels for name, a in self.annotations.items()
                if a.outcome is Outcome.FULL}


def _quoted(text: str) -> Optional[str]:
    m = QUOTED_TEXT.search(text)
    if not m:
        return None
    return m.group(1).replace(ESCAPED_APOSTROPHE, "'")


def _raw_value(token: str) -> Union[int, str]:
    if INTEGER_TOKEN.match(token):
        return int(token)
    return token.strip('"')


def parse_do_file(text: str, field_names: Iterable[str]) -> Dict[str, LabelDefinition]:
    """
    Collect label declarations for the given fields.

    Field names are compared case-insensitively. A repeated 'label variable'
    line overrides the earlier one; 'label define' lines accumulate in file
    order. Every requested field gets a definition, possibly empty.
    """
    definitions = {name.lower(): LabelDefinition(name.lower()) for name in field_names}

    for line in text.splitlines():
        m = VARIABLE_LINE.match(line)
        if m:
            definition = definitions.get(m.group(1).lower())
            if definition is not None:
                definition.description = _quoted(m.group(2))
            continue

        m = VALUE_LINE.match(line)
        if m:
            definition = definitions.get(m.group(1).lower())
            if definition is not None:
                label = _quoted(m.group(3))
                definition.value_labels.append((_raw_value(m.group(2)), label or ""))

    return definitions


def read_do_file(path: Path) -> str:
    # Older .do files are Windows-1252 rather than UTF-8
    raw = path.read_bytes()
    try:
        return raw.decode('utf-8-sig')
    except UnicodeDecodeError:
        return raw.decode('cp1252', errors='replace')


def read_ipeds_csv(path: Path) -> pd.DataFrame:
    """
    Load an IPEDS data CSV with lower-case column names.

    NCES occasionally repeats a column (EF2022A); only the first copy is kept.
    """
    read_opts = dict(encoding='utf-8-sig', encoding_errors='replace')
    header = pd.read_csv(path, header=None, nrows=1, dtype=str, **read_opts).iloc[0].tolist()
    names = [str(name).strip().lower() for name in header]

    keep = []
    seen = set()
    for position, name in enumerate(names):
        if name in seen:
            logger.warning(f"{path.name}: dropping repeated column {name}")
            continue
        seen.add(name)
        keep.append(position)

    frame = pd.read_csv(path, header=0, usecols=keep, low_memory=False, **read_opts)
    frame.columns = [names[position] for position in keep]
    return frame


def _is_boolean(series: pd.Series) -> bool:
    if pd.api.types.is_bool_dtype(series):
        return True
    if series.dtype == object:
        values = series.dropna()
        return len(values) > 0 and all(isinstance(v, (bool, np.bool_)) for v in values)
    return False


def annotate_column(series: pd.Series, definition: LabelDefinition,
                    identifier: str) -> Tuple[pd.Series, FieldAnnotation, List[LabelDiagnostic]]:
    name = definition.field_name
    description = definition.description
    diagnostics = []

    def note(condition: str, detail: str) -> None:
        diagnostics.append(LabelDiagnostic(identifier, name, condition, detail))

    if description and len(description) > MAX_VARIABLE_LABEL:
        note("label_truncated", f"description shortened from {len(description)} characters")
        description = description[:MAX_VARIABLE_LABEL]

    if _is_boolean(series):
        series = series.map({True: 'T', False: 'F'}).astype(object)
        note("boolean_coerced", "column read as logical, converted back to T/F text")

    description_only = FieldAnnotation(
        name, Outcome.DESCRIPTION_ONLY if description else Outcome.NONE, description)

    if series.isna().all():
        if definition.value_labels:
            note("all_missing", "no value labels applied to an all-missing column")
        return series, description_only, diagnostics

    if not definition.value_labels:
        return series, description_only, diagnostics

    if not definition.has_numeric_keys:
        note("non_numeric_labels", "value labels use string codes, kept description only")
        return series, description_only, diagnostics

    if not pd.api.types.is_numeric_dtype(series) or pd.api.types.is_bool_dtype(series):
        note("non_numeric_column", f"column is {series.dtype}, kept description only")
        return series, description_only, diagnostics

    if definition.has_duplicates():
        note("duplicate_labels", "repeated value labels, kept description only")
        return series, description_only, diagnostics

    labels = {int(value): label for value, label in definition.value_labels}
    return series, FieldAnnotation(name, Outcome.FULL, description, labels), diagnostics


def stata_name(name: str, taken: Iterable[str] = ()) -> str:
    """
    The variable name a column will have in the .dta file.

    Characters outside [A-Za-z0-9_] become '_', names that start with a digit
    or are reserved words get a leading '_', and the result is cut to 32
    characters. A name already in `taken` is prefixed with '_' until free.
    """
    taken = set(taken)
    new_name = INVALID_NAME_CHARS.sub('_', name) or '_'
    if new_name[0].isdigit() or new_name in STATA_RESERVED:
        new_name = '_' + new_name
    new_name = new_name[:MAX_NAME_LENGTH]
    while new_name in taken:
        new_name = ('_' + new_name)[:MAX_NAME_LENGTH]
    return new_name


def annotate_frame(frame: pd.DataFrame, definitions: Dict[str, LabelDefinition],
                   identifier: str) -> AnnotatedTable:
    """
    Apply parsed labels column by column.

    Columns Stata cannot hold under their IPEDS name (e.g. 'in') are renamed
    here, so their labels travel with the new name into the .dta.
    """
    frame = frame.copy()
    renames = {}
    annotations = {}
    all_diagnostics = []

    for name in frame.columns:
        definition = definitions.get(name.lower(), LabelDefinition(name.lower()))
        series, annotation, diagnostics = annotate_column(frame[name], definition, identifier)
        frame[name] = series

        kept = [n for n in frame.columns if n != name and n not in renames]
        target = stata_name(name, taken=kept + list(renames.values()))
        if target != name:
            renames[name] = target
            annotation.field_name = target
            diagnostics.insert(0, LabelDiagnostic(
                identifier, name, "column_renamed", f"not a valid Stata name, written as {target}"))

        annotations[target] = annotation
        all_diagnostics.extend(diagnostics)

    table = AnnotatedTable(identifier, frame.rename(columns=renames), annotations, all_diagnostics)

    for d in table.diagnostics:
        level = logging.WARNING if d.condition in WARNING_CONDITIONS else logging.INFO
        logger.log(level, f"FYI: {d.identifier} variable {d.field_name}: {d.detail}")
    return table


def _stata_ready(frame: pd.DataFrame) -> pd.DataFrame:
    """Make object columns exportable: all text, and never entirely empty."""
    frame = frame.copy()
    for name in frame.columns:
        column = frame[name]
        if column.dtype != object:
            continue
        if column.isna().all():
            frame[name] = column.fillna('')
        elif not all(isinstance(v, str) for v in column.dropna()):
            frame[name] = column.map(lambda v: v if pd.isna(v) else str(v))
    return frame


def write_artifact(table: AnnotatedTable, path: Path) -> Path:
    """
    Write the labelled .dta atomically.

    The file is written next to its destination as '<name>.part' and moved
    into place in one step; an interrupted write leaves no .dta behind.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.with_suffix(path.suffix + '.part')
    try:
        _stata_ready(table.frame).to_stata(
            temp_path,
            write_index=False,
            version=STATA_VERSION,
            data_label=table.identifier[:MAX_VARIABLE_LABEL],
            variable_labels=table.variable_labels,
            value_labels=table.value_labels,
        )
        temp_path.replace(path)
    finally:
        if temp_path.exists():
            temp_path.unlink()
    return path


def find_member(folder: Path, name: str) -> Path:
    """Locate an extracted file by name, ignoring case."""
    wanted = name.lower()
    if folder.exists():
        for path in folder.iterdir():
            if path.name.lower() == wanted:
                return path
    raise MissingSourceError(f"{name} not found in {folder}")


def label_file(identifier: str, data_dir: Path, do_dir: Path) -> AnnotatedTable:
    """Build the annotated table for one IPEDS file from its extracted sources."""
    stem = identifier.lower()
    data_path = find_member(data_dir, f"{stem}_data_stata.csv")
    do_path = find_member(do_dir, f"{stem}.do")

    frame = read_ipeds_csv(data_path)
    definitions = parse_do_file(read_do_file(do_path), frame.columns)
    return annotate_frame(frame, definitions, identifier)
