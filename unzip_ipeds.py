"""
IPEDS Archive Extractor and Workspace Cleaner

- Unzips every archive in the zip-* folders into the matching unzip-* folder
- Replaces data files with their revised (_rv) release when NCES ships one
- Copies data dictionaries into the persistent dictionaries/ folder
- Removes the zip-*/unzip-* folders once the labelled files are written
"""

from __future__ import annotations
import logging
import re
import shutil
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Tuple

from ipeds_files import ARCHIVE_CLASSES, DATA, DICTIONARIES, IpedsError, Layout

logger = logging.getLogger(__name__)

# NCES marks revised releases with _rv / _RV in the member name,
# e.g. hd2022_rv_data_stata.csv replaces hd2022_data_stata.csv
REVISED_MARKER = re.compile(r'_rv', re.IGNORECASE)


class ExtractionError(IpedsError):
    """A staged archive is not a readable zip file."""


@dataclass
class ExtractResult:
    extracted: List[Path] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)   # identifier -> reason
    revisions: List[Tuple[str, str]] = field(default_factory=list)  # (revised, canonical)
    dictionaries: List[Path] = field(default_factory=list)


def unzip_archive(archive_path: Path, target_dir: Path) -> List[str]:
    """Extract one archive, returning the member names."""
    try:
        with zipfile.ZipFile(archive_path) as zf:
            names = zf.namelist()
            zf.extractall(target_dir)
    except zipfile.BadZipFile as e:
        raise ExtractionError(f"{archive_path.name} is not a valid zip archive: {e}") from e
    return names


def canonical_name(name: str) -> str:
    return REVISED_MARKER.sub('', name, count=1)


def reconcile_revisions(data_dir: Path) -> List[Tuple[str, str]]:
    """
    Promote revised data files to their canonical names.

    For every file containing the revision marker, the unmarked original is
    removed (if present) and the revised file takes its name. Each revised
    file owns a distinct canonical name, so processing order does not matter.
    """
    replaced = []
    if not data_dir.exists():
        return replaced

    for revised in sorted(p for p in data_dir.iterdir() if p.is_file()):
        if not REVISED_MARKER.search(revised.name):
            continue
        original = revised.with_name(canonical_name(revised.name))
        if original.exists():
            original.unlink()
        revised.rename(original)
        logger.info(f"Using revised {revised.name} as {original.name}")
        replaced.append((revised.name, original.name))
    return replaced


def copy_dictionaries(source_dir: Path, target_dir: Path) -> List[Path]:
    """Copy extracted dictionaries over, keeping any already present."""
    copied = []
    if not source_dir.exists():
        return copied

    target_dir.mkdir(parents=True, exist_ok=True)
    for path in sorted(source_dir.rglob('*')):
        if not path.is_file():
            continue
        destination = target_dir / path.relative_to(source_dir)
        if destination.exists():
            continue
        destination.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(path, destination)
        copied.append(destination)
    return copied


def extract_archives(layout: Layout) -> ExtractResult:
    """
    Unzip everything staged in the zip-* folders.

    A corrupt archive is deleted so the next run downloads it again, and the
    file it belongs to (named after the archive stem) is reported as failed.
    """
    result = ExtractResult()

    for archive in ARCHIVE_CLASSES:
        zip_dir = layout.zip_dir(archive)
        if not zip_dir.exists():
            continue
        target_dir = layout.unzip_dir(archive)
        target_dir.mkdir(parents=True, exist_ok=True)

        for archive_path in sorted(zip_dir.glob('*.zip')):
            try:
                names = unzip_archive(archive_path, target_dir)
            except ExtractionError as e:
                logger.error(str(e))
                archive_path.unlink()
                result.failed.setdefault(archive_path.stem, str(e))
                continue
            result.extracted.extend(target_dir / name for name in names)

    result.revisions = reconcile_revisions(layout.unzip_dir(DATA))
    result.dictionaries = copy_dictionaries(layout.unzip_dir(DICTIONARIES), layout.dictionaries_dir)
    if result.dictionaries:
        logger.info(f"Copied {len(result.dictionaries)} dictionaries to {layout.dictionaries_dir}")
    return result


def clean_workspace(layout: Layout) -> List[Path]:
    """Remove the staging and extraction folders; data/ and dictionaries/ stay."""
    removed = []
    for folder in layout.staging_dirs():
        if folder.exists():
            shutil.rmtree(folder)
            removed.append(folder)
    return removed
