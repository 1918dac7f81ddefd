"""
Reading labelled IPEDS files back

Helpers for analysis code that consumes data/<name>.dta:
- read_artifact: frame plus its variable and value labels
- decode_values: swap coded values for their labels
- merge_artifacts: join several files on the institution id (unitid)

Example:
    merged = merge_artifacts(["HD2023", "EF2023A", "F2223_F1A"], "data")
"""

from __future__ import annotations
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, Union

import pandas as pd

from ipeds_files import ARTIFACT_SUFFIX

logger = logging.getLogger(__name__)

# Institution id shared by every IPEDS survey component
ENTITY_KEY = "unitid"


@dataclass
class LabelledFrame:
    frame: pd.DataFrame
    variable_labels: Dict[str, str] = field(default_factory=dict)
    value_labels: Dict[str, Dict[int, str]] = field(default_factory=dict)


def read_artifact(path: Union[str, Path]) -> LabelledFrame:
    with pd.read_stata(path, iterator=True, convert_categoricals=False) as reader:
        frame = reader.read()
        variable_labels = {k: v for k, v in reader.variable_labels().items() if v}
        # The writer names every value label set after its column
        value_labels = {k: v for k, v in reader.value_labels().items() if k in frame.columns}
    return LabelledFrame(frame, variable_labels, value_labels)


def decode_values(labelled: LabelledFrame) -> pd.DataFrame:
    """Replace coded values with their labels; codes without a label are kept."""
    frame = labelled.frame.copy()
    for name, labels in labelled.value_labels.items():
        frame[name] = frame[name].map(lambda v: labels.get(v, v) if pd.notna(v) else v)
    return frame


def merge_artifacts(identifiers: Iterable[str], data_dir: Union[str, Path],
                    key: str = ENTITY_KEY, how: str = "inner") -> LabelledFrame:
    """
    Join several labelled files on the institution key.

    Columns repeated across files keep the first file's name; later copies
    get a '_<file name>' suffix.
    """
    data_dir = Path(data_dir)
    merged = None
    for identifier in identifiers:
        part = read_artifact(data_dir / f"{identifier}{ARTIFACT_SUFFIX}")
        if key not in part.frame.columns:
            raise KeyError(f"{identifier} has no {key} column")

        if merged is None:
            merged = part
            continue

        suffix = f"_{identifier.lower()}"
        renamed = {c: f"{c}{suffix}" for c in part.frame.columns
                   if c != key and c in merged.frame.columns}
        frame = merged.frame.merge(part.frame.rename(columns=renamed), on=key, how=how)
        for old, new in renamed.items():
            if old in part.variable_labels:
                part.variable_labels[new] = part.variable_labels.pop(old)
            if old in part.value_labels:
                part.value_labels[new] = part.value_labels.pop(old)

        merged = LabelledFrame(
            frame,
            {**part.variable_labels, **merged.variable_labels},
            {**part.value_labels, **merged.value_labels},
        )
        logger.info(f"Merged {identifier}: {len(frame)} rows")

    if merged is None:
        raise ValueError("No files to merge")
    return merged
