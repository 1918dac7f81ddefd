"""
IPEDS File Resolver

Maps IPEDS complete-data file names (e.g. HD2023, EF2022A, F2223_F1A) to the
NCES download URLs and the local folders the pipeline works in.

Folder layout (relative to the working directory):
    zip-data/, zip-do-files/, zip-dictionaries/        downloaded archives
    unzip-data/, unzip-do-files/, unzip-dictionaries/  extracted contents
    data/                                              labelled .dta files
    dictionaries/                                      NCES data dictionaries
"""

from __future__ import annotations
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Union

logger = logging.getLogger(__name__)

# NCES data center: every complete data file lives here as <name><suffix>
BASE_URL = "https://nces.ed.gov/ipeds/datacenter/data/"

# Extension of the final labelled artifact
ARTIFACT_SUFFIX = ".dta"

# Pattern for a valid IPEDS file name (letters, digits, underscores)
IDENTIFIER_PATTERN = re.compile(r'^[A-Za-z0-9_]+$')


class IpedsError(Exception):
    """Base class for per-file failures; the pipeline records these and moves on."""


@dataclass(frozen=True)
class ArchiveClass:
    key: str          # short name used in logs and reports
    url_suffix: str   # appended to the identifier to build the URL
    zip_dir: str      # staging folder for the downloaded .zip
    unzip_dir: str    # folder the archive is extracted into


DATA = ArchiveClass("data", "_Data_Stata.zip", "zip-data", "unzip-data")
DO_FILES = ArchiveClass("do-files", "_Stata.zip", "zip-do-files", "unzip-do-files")
DICTIONARIES = ArchiveClass("dictionaries", "_Dict.zip", "zip-dictionaries", "unzip-dictionaries")

# Download order within one identifier
ARCHIVE_CLASSES = (DATA, DO_FILES, DICTIONARIES)


@dataclass(frozen=True)
class Layout:
    """All folders of one working directory."""
    root: Path

    @property
    def data_dir(self) -> Path:
        return self.root / "data"

    @property
    def dictionaries_dir(self) -> Path:
        return self.root / "dictionaries"

    def zip_dir(self, archive: ArchiveClass) -> Path:
        return self.root / archive.zip_dir

    def unzip_dir(self, archive: ArchiveClass) -> Path:
        return self.root / archive.unzip_dir

    def staging_dirs(self) -> List[Path]:
        """Transient folders, i.e. everything the cleaner may remove."""
        dirs = [self.zip_dir(a) for a in ARCHIVE_CLASSES]
        dirs += [self.unzip_dir(a) for a in ARCHIVE_CLASSES]
        return dirs

    def ensure(self) -> None:
        # Errors here are fatal: nothing can run without writable storage
        for folder in self.staging_dirs() + [self.data_dir, self.dictionaries_dir]:
            folder.mkdir(parents=True, exist_ok=True)


@dataclass
class IpedsFile:
    identifier: str
    artifact_path: Path
    archive_paths: Dict[str, Path] = field(default_factory=dict)  # class key -> staging .zip
    urls: Dict[str, str] = field(default_factory=dict)            # class key -> download URL

    @property
    def stem(self) -> str:
        """Case-folded name used to find the extracted members."""
        return self.identifier.lower()

    def is_done(self) -> bool:
        return self.artifact_path.exists()


def build_url(base_url: str, identifier: str, archive: ArchiveClass) -> str:
    return f"{base_url}{identifier}{archive.url_suffix}"


def resolve_files(identifiers: Iterable[str], layout: Layout,
                  base_url: str = BASE_URL) -> List[IpedsFile]:
    """
    Resolve URLs and local paths for each identifier.
    Order is preserved; repeated identifiers are only resolved once.
    """
    files = []
    seen = set()
    for raw in identifiers:
        identifier = raw.strip()
        if not IDENTIFIER_PATTERN.match(identifier):
            raise ValueError(f"Not a valid IPEDS file name: {raw!r}")
        if identifier.lower() in seen:
            logger.warning(f"{identifier} is listed more than once, resolving it once")
            continue
        seen.add(identifier.lower())

        entry = IpedsFile(
            identifier=identifier,
            artifact_path=layout.data_dir / f"{identifier}{ARTIFACT_SUFFIX}",
        )
        for archive in ARCHIVE_CLASSES:
            entry.archive_paths[archive.key] = layout.zip_dir(archive) / f"{identifier}.zip"
            entry.urls[archive.key] = build_url(base_url, identifier, archive)
        files.append(entry)
    return files


def read_selection(path: Union[str, Path]) -> List[str]:
    """
    Read a list of IPEDS file names from a text file.

    One name per line. Blank lines and '#' comments are ignored, and quotes or
    trailing commas are stripped so a list pasted from a script still works:

        "HD2023",
        "IC2023",   # institutional characteristics
        EF2023A
    """
    identifiers = []
    with open(path, 'r', encoding='utf-8') as f:
        for line in f:
            line = line.split('#', 1)[0]
            for token in line.split(','):
                token = token.strip().strip('"\'').strip()
                if token:
                    identifiers.append(token)
    return identifiers
