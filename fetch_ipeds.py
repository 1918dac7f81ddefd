"""
IPEDS Archive Fetcher

Downloads the three archives NCES publishes for every complete data file:
    <name>_Data_Stata.zip   raw data as CSV
    <name>_Stata.zip        Stata .do program with the label declarations
    <name>_Dict.zip         data dictionary (xlsx/html)

Rules:
- A file whose labelled .dta already exists is skipped entirely
- An archive already sitting in its zip-* folder is not downloaded again,
  so an interrupted run picks up where it stopped
- One attempt per archive; a failure marks that file as failed and the
  batch moves on to the next file
- A fixed pause separates every two requests (NCES asks for gentle clients)
"""

from __future__ import annotations
import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

import requests
from requests.adapters import HTTPAdapter
from tqdm import tqdm
from urllib3.util.retry import Retry

from ipeds_files import ARCHIVE_CLASSES, IpedsError, IpedsFile

logger = logging.getLogger(__name__)

# Seconds to wait between two successive requests
DEFAULT_PAUSE = 3.0

# (connect, read) timeouts; some archives are large and NCES can be slow
DEFAULT_TIMEOUT = (15, 300)

CHUNK_SIZE = 65536


class FetchError(IpedsError):
    """An archive could not be downloaded."""


class PoliteSession:
    def __init__(self, max_retries: int = 0, backoff_factor: float = 1.0,
                 timeout: Tuple[float, float] = DEFAULT_TIMEOUT):
        self.session = requests.Session()
        self.timeout = timeout

        # Zero retries by default: each archive gets a single attempt
        retry_strategy = Retry(
            total=max_retries,
            status_forcelist=[429, 500, 502, 503, 504],
            backoff_factor=backoff_factor,
            allowed_methods=["HEAD", "GET"],
            raise_on_status=False,
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        self.session.mount("https://", adapter)
        self.session.mount("http://", adapter)

        self.session.headers.update({
            "User-Agent": "Mozilla/5.0 (compatible; IPEDtaS/1.0; Education Research)",
            "Accept": "*/*",
        })

    def get(self, url: str, **kwargs) -> requests.Response:
        kwargs.setdefault('timeout', self.timeout)
        return self.session.get(url, **kwargs)

    def close(self) -> None:
        self.session.close()


class RequestPacer:
    """
    Enforces a minimum gap between the end of one request and the start of
    the next. Shared by every request of a run.
    """

    def __init__(self, pause: float = DEFAULT_PAUSE,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep):
        self.pause = pause
        self.requests = 0
        self._clock = clock
        self._sleep = sleep
        self._last_finished: Optional[float] = None

    def wait(self) -> None:
        if self._last_finished is None:
            return
        remaining = self.pause - (self._clock() - self._last_finished)
        if remaining > 0:
            self._sleep(remaining)

    @contextmanager
    def paced(self):
        self.wait()
        self.requests += 1
        try:
            yield
        finally:
            self._last_finished = self._clock()


@dataclass
class FetchResult:
    downloaded: List[Tuple[str, str]] = field(default_factory=list)  # (identifier, class key)
    reused: List[Tuple[str, str]] = field(default_factory=list)      # archive already staged
    skipped: List[str] = field(default_factory=list)                 # artifact already exists
    failed: Dict[str, str] = field(default_factory=dict)             # identifier -> reason
    bytes_downloaded: int = 0


def download_archive(session, url: str, destination: Path, pacer: RequestPacer) -> int:
    """
    Stream one archive to disk.

    Data goes to '<destination>.part' first and is renamed when complete, so
    a broken transfer never looks like a finished archive. Returns the
    number of bytes written, raises FetchError on any failure.
    """
    destination.parent.mkdir(parents=True, exist_ok=True)
    temp_path = destination.with_suffix(destination.suffix + '.part')

    with pacer.paced():
        try:
            with session.get(url, stream=True) as response:
                if response.status_code != 200:
                    raise FetchError(f"HTTP {response.status_code} for {url}")
                bytes_written = 0
                with open(temp_path, 'wb') as f:
                    for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                        if chunk:
                            f.write(chunk)
                            bytes_written += len(chunk)
        except requests.RequestException as e:
            temp_path.unlink(missing_ok=True)
            raise FetchError(f"Failed to download {url}: {e}") from e
        except OSError as e:
            # local write failures (disk full, permissions) fail this file only
            temp_path.unlink(missing_ok=True)
            raise FetchError(f"Could not write {temp_path.name}: {e}") from e
        except FetchError:
            temp_path.unlink(missing_ok=True)
            raise

    try:
        temp_path.replace(destination)
    except OSError as e:
        temp_path.unlink(missing_ok=True)
        raise FetchError(f"Could not move {temp_path.name} into place: {e}") from e
    return bytes_written


def fetch_archives(files: List[IpedsFile], session, pacer: RequestPacer,
                   show_progress: bool = True) -> FetchResult:
    """Download every missing archive of every file that has no .dta yet."""
    result = FetchResult()

    for entry in tqdm(files, desc="Downloading", unit="files", disable=not show_progress):
        if entry.is_done():
            logger.debug(f"{entry.identifier}: {entry.artifact_path} exists, skipping download")
            result.skipped.append(entry.identifier)
            continue

        for archive in ARCHIVE_CLASSES:
            destination = entry.archive_paths[archive.key]
            if destination.exists():
                result.reused.append((entry.identifier, archive.key))
                continue

            url = entry.urls[archive.key]
            logger.info(f"Downloading {entry.identifier} to {destination.parent.name}")
            try:
                size = download_archive(session, url, destination, pacer)
            except FetchError as e:
                logger.error(f"{entry.identifier}: {e}")
                result.failed[entry.identifier] = str(e)
                break  # the rest of this file's archives are useless without this one

            result.downloaded.append((entry.identifier, archive.key))
            result.bytes_downloaded += size

    return result
