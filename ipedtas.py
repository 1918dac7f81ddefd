#!/usr/bin/env python3
"""
IPEDtaS: automatically download labelled IPEDS .dta files

Downloads IPEDS complete data files from NCES and applies variable and value
labels using the label declarations in the Stata .do files NCES publishes
alongside them. Stata itself is not needed.

Steps:
    1) Resolve URLs and folders for the requested file names
    2) Download data, .do and dictionary archives (skipping finished files)
    3) Unzip, swap in revised (_rv) data, copy dictionaries to dictionaries/
    4) Parse each .do file and write data/<name>.dta with its labels
    5) Remove the zip-*/unzip-* working folders

Usage:
    # A few files
    python ipedtas.py HD2023 IC2023 EF2023A

    # A longer selection kept in a text file (one name per line)
    python ipedtas.py --files-from selection.txt --workdir ipeds

    # Keep the working folders and write an audit of label decisions
    python ipedtas.py HD2023 --keep-staging --diagnostics label_diagnostics.csv
"""

from __future__ import annotations
import argparse
import csv
import json
import logging
import sys
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from tqdm import tqdm

from fetch_ipeds import DEFAULT_PAUSE, DEFAULT_TIMEOUT, PoliteSession, RequestPacer, fetch_archives
from ipeds_files import BASE_URL, DATA, DO_FILES, IpedsError, Layout, read_selection, resolve_files
from label_ipeds import LabelDiagnostic, Outcome, label_file, write_artifact
from unzip_ipeds import clean_workspace, extract_archives

logger = logging.getLogger(__name__)


@dataclass
class PipelineConfig:
    workdir: Path = Path(".")
    base_url: str = BASE_URL
    pause: float = DEFAULT_PAUSE
    timeout: float = DEFAULT_TIMEOUT[1]
    retries: int = 0
    keep_staging: bool = False
    show_progress: bool = True


@dataclass
class RunReport:
    requested: List[str] = field(default_factory=list)
    written: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)            # .dta already existed
    failed: Dict[str, str] = field(default_factory=dict)        # identifier -> reason
    outcomes: Dict[str, Dict[str, Outcome]] = field(default_factory=dict)
    diagnostics: List[LabelDiagnostic] = field(default_factory=list)
    requests: int = 0
    bytes_downloaded: int = 0
    elapsed_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return not self.failed

    def summary(self) -> Dict:
        conditions: Dict[str, int] = {}
        for d in self.diagnostics:
            conditions[d.condition] = conditions.get(d.condition, 0) + 1
        return {
            'requested': self.requested,
            'written': self.written,
            'skipped_existing': self.skipped,
            'failed': self.failed,
            'requests': self.requests,
            'bytes_downloaded': self.bytes_downloaded,
            'elapsed_seconds': round(self.elapsed_seconds, 1),
            'diagnostics_by_condition': conditions,
            'outcomes': {
                identifier: {name: outcome.value for name, outcome in fields.items()}
                for identifier, fields in self.outcomes.items()
            },
        }


def run_pipeline(identifiers: Iterable[str], config: Optional[PipelineConfig] = None,
                 session=None, pacer: Optional[RequestPacer] = None) -> RunReport:
    """
    Download and label the given IPEDS files.

    Failures of one file (download, corrupt archive, missing or unreadable
    sources) are recorded in the report and do not stop the others.
    """
    config = config or PipelineConfig()
    start = time.time()

    layout = Layout(Path(config.workdir))
    layout.ensure()
    files = resolve_files(identifiers, layout, config.base_url)
    report = RunReport(requested=[f.identifier for f in files])

    own_session = session is None
    if own_session:
        session = PoliteSession(max_retries=config.retries,
                                timeout=(DEFAULT_TIMEOUT[0], config.timeout))
    pacer = pacer or RequestPacer(config.pause)
    try:
        fetched = fetch_archives(files, session, pacer, show_progress=config.show_progress)
    finally:
        if own_session:
            session.close()
    report.failed.update(fetched.failed)
    report.requests = pacer.requests
    report.bytes_downloaded = fetched.bytes_downloaded

    extracted = extract_archives(layout)
    corrupt = {stem.lower(): reason for stem, reason in extracted.failed.items()}

    for entry in tqdm(files, desc="Labelling", unit="files", disable=not config.show_progress):
        if entry.identifier in report.failed:
            continue
        if entry.is_done():
            report.skipped.append(entry.identifier)
            continue
        if entry.stem in corrupt:
            report.failed[entry.identifier] = corrupt[entry.stem]
            continue

        try:
            table = label_file(entry.identifier, layout.unzip_dir(DATA), layout.unzip_dir(DO_FILES))
            logger.info(f"Saving {entry.artifact_path}")
            write_artifact(table, entry.artifact_path)
        except (IpedsError, OSError, ValueError) as e:
            logger.error(f"{entry.identifier}: labelling failed: {e}")
            report.failed[entry.identifier] = str(e)
            continue

        report.written.append(entry.identifier)
        report.diagnostics.extend(table.diagnostics)
        report.outcomes[entry.identifier] = {
            name: annotation.outcome for name, annotation in table.annotations.items()
        }

    if not config.keep_staging:
        clean_workspace(layout)

    report.elapsed_seconds = time.time() - start
    return report


def write_diagnostics(path: Path, diagnostics: List[LabelDiagnostic]) -> None:
    """Write label decisions as CSV for auditing."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fieldnames = ['identifier', 'field_name', 'condition', 'detail']
    with open(path, 'w', newline='', encoding='utf-8') as f:
        writer = csv.DictWriter(f, fieldnames=fieldnames)
        writer.writeheader()
        for d in diagnostics:
            writer.writerow(asdict(d))


def write_summary(path: Path, report: RunReport) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'w', encoding='utf-8') as f:
        json.dump(report.summary(), f, indent=2)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Download IPEDS complete data files and label them from the NCES .do files",
        epilog="Example: python ipedtas.py HD2023 IC2023 --workdir ipeds",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument('files', nargs='*',
                        help='IPEDS file names, e.g. HD2023 EF2023A F2223_F1A')
    parser.add_argument('--files-from', type=Path,
                        help='Text file listing IPEDS file names (one per line)')
    parser.add_argument('--workdir', type=Path, default=Path('.'),
                        help='Folder holding data/, dictionaries/ and the working folders')
    parser.add_argument('--base-url', default=BASE_URL,
                        help='NCES data center base URL')
    parser.add_argument('--pause', type=float, default=DEFAULT_PAUSE,
                        help='Seconds between requests')
    parser.add_argument('--timeout', type=float, default=DEFAULT_TIMEOUT[1],
                        help='Read timeout per download in seconds')
    parser.add_argument('--retries', type=int, default=0,
                        help='Retries for transient HTTP errors (default: single attempt)')
    parser.add_argument('--keep-staging', action='store_true',
                        help='Keep zip-*/unzip-* folders after the run')
    parser.add_argument('--summary', type=Path,
                        help='Write a JSON run summary here')
    parser.add_argument('--diagnostics', type=Path,
                        help='Write label decisions (CSV) here')
    parser.add_argument('--no-progress', action='store_true',
                        help='Disable progress bars')
    parser.add_argument('--log-level', default='INFO',
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'])
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(level=getattr(logging, args.log_level),
                        format='%(asctime)s - %(levelname)s - %(message)s')

    identifiers = list(args.files)
    if args.files_from:
        identifiers += read_selection(args.files_from)
    if not identifiers:
        parser.error("no IPEDS files given (pass names or --files-from)")

    config = PipelineConfig(
        workdir=args.workdir,
        base_url=args.base_url,
        pause=args.pause,
        timeout=args.timeout,
        retries=args.retries,
        keep_staging=args.keep_staging,
        show_progress=not args.no_progress,
    )
    logger.info(f"Processing {len(identifiers)} IPEDS files in {config.workdir.resolve()}")

    report = run_pipeline(identifiers, config)

    if args.summary:
        write_summary(args.summary, report)
        logger.info(f"Summary written: {args.summary}")
    if args.diagnostics:
        write_diagnostics(args.diagnostics, report.diagnostics)
        logger.info(f"Diagnostics written: {args.diagnostics}")

    logger.info("=" * 60)
    logger.info(f"Written: {len(report.written)}  Skipped (existing): {len(report.skipped)}  "
                f"Failed: {len(report.failed)}")
    for identifier, reason in report.failed.items():
        logger.info(f"  FAILED {identifier}: {reason}")
    logger.info("=" * 60)

    return 0 if report.ok else 1


def cli() -> None:
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("\n[INTERRUPTED] Process cancelled by user")
        sys.exit(130)


if __name__ == "__main__":
    cli()
