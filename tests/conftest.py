"""
Shared fixtures: a fake NCES site served from memory.

FakeSession mimics the small part of requests.Session the fetcher uses
(get(..., stream=True) as a context manager with iter_content).
"""

import io
import zipfile
from typing import Dict, Union

import pytest

import requests

BASE_URL = "https://nces.example.test/ipeds/datacenter/data/"


def make_zip(members: Dict[str, Union[str, bytes]]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, 'w') as zf:
        for name, content in members.items():
            zf.writestr(name, content)
    return buffer.getvalue()


class FakeResponse:
    def __init__(self, status_code: int = 200, payload: bytes = b"") -> None:
        self.status_code = status_code
        self._payload = payload

    def __enter__(self) -> "FakeResponse":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        return None

    def iter_content(self, chunk_size: int):
        for start in range(0, len(self._payload), chunk_size):
            yield self._payload[start:start + chunk_size]


class FakeSession:
    """Serves payloads by URL; unknown URLs are 404s, exceptions are raised."""

    def __init__(self, routes: Dict[str, Union[bytes, Exception]]) -> None:
        self.routes = routes
        self.calls = []

    def get(self, url: str, **kwargs) -> FakeResponse:
        self.calls.append(url)
        payload = self.routes.get(url)
        if payload is None:
            return FakeResponse(404)
        if isinstance(payload, Exception):
            raise payload
        return FakeResponse(200, payload)

    def close(self) -> None:
        return None


DO_FILE = '''insheet unitid control stabbr enrtot empty inst using "a2023_data_stata.csv", comma clear
label data "A2023"
label variable unitid "Unique identification number of the institution"
label variable control "Control"
label variable control "Control of institution"
label define label_control 1 "Public"
label define label_control 2 "Private not-for-profit", add
label define label_control 3 "Private for-profit", add
label define label_control -3 "{Item not available}", add
label values control label_control
label variable stabbr "State abbreviation"
label define label_stabbr AL "Alabama"
label define label_stabbr AK "Alaska", add
label variable enrtot "Total enrollment"
label variable empty "Unused item"
label define label_empty 1 "Yes"
label variable inst "Institution^s name"
tab control
summarize enrtot
'''

ORIGINAL_CSV = '''UNITID,CONTROL,STABBR,ENRTOT,EMPTY,INST
100654,1,AL,1,,Alabama A&M University
100663,2,AK,2,,Alaska Pacific University
'''

REVISED_CSV = '''UNITID,CONTROL,STABBR,ENRTOT,EMPTY,INST
100654,1,AL,6001,,Alabama A&M University
100663,2,AK,21639,,Alaska Pacific University
'''


@pytest.fixture
def a2023_routes() -> Dict[str, bytes]:
    """Complete, well-formed A2023 archives with a revised data file."""
    return {
        f"{BASE_URL}A2023_Data_Stata.zip": make_zip({
            "a2023_data_stata.csv": ORIGINAL_CSV,
            "a2023_rv_data_stata.csv": REVISED_CSV,
        }),
        f"{BASE_URL}A2023_Stata.zip": make_zip({"a2023.do": DO_FILE}),
        f"{BASE_URL}A2023_Dict.zip": make_zip({"a2023.xlsx": b"dictionary"}),
    }


@pytest.fixture
def connection_error() -> Exception:
    return requests.exceptions.ConnectionError("simulated outage")
