"""Reader for ``.racecheck`` result files.

The timing software exports one text file per event::

    Maratón Test
    ;1|10K
    ;SEXO|NOMBRE|CHIP|DORSAL|MODALIDAD|CATEGORIA|POSICION|TIEMPO
    M|Ana Pérez|A1|001|10K|SENIOR|1|00:35:10
    ...

The first line is the event name. ``;<n>|<race>`` lines open a race block,
``;COL|COL|...`` lines set the header for the rows that follow and every other
non-empty line is a ``|`` separated row.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Optional

from .errors import MalformedResultsFile
from .utils import normalize_header, parse_int

logger = logging.getLogger(__name__)

FIELD_SEPARATOR = "|"
DIRECTIVE_PREFIX = ";"

_RACE_MARKER = re.compile(r"^\d+$")

# search column -> accepted header names (normalized)
FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "bib": ("DORSAL", "BIB"),
    "name": ("NOMBRE", "NAME"),
    "chip": ("CHIP",),
    "category": ("CATEGORIA", "CATEGORY"),
    "distance": ("MODALIDAD", "DISTANCE", "DISTANCIA"),
    "sex": ("SEXO", "SEX"),
    "city": ("CIUDAD", "CITY"),
    "team": ("EQUIPO", "TEAM", "CLUB"),
    "position": ("POSICION", "POSITION", "POS"),
}


@dataclass
class ParsedRow:
    race_name: Optional[str]
    data: dict[str, str]


@dataclass
class ParsedResults:
    event_name: str
    columns: list[str] = field(default_factory=list)
    rows: list[ParsedRow] = field(default_factory=list)
    line_count: int = 0
    skipped: int = 0

    @property
    def unique_distances(self) -> list[str]:
        return _distinct(self.rows, "distance")

    @property
    def unique_categories(self) -> list[str]:
        return _distinct(self.rows, "category")


def decode_content(content: bytes) -> str:
    try:
        return content.decode("utf-8-sig")
    except UnicodeDecodeError:
        # older exports are written in Latin-1
        return content.decode("latin-1")


def parse_results_file(content: bytes | str) -> ParsedResults:
    text = decode_content(content) if isinstance(content, bytes) else content
    lines = text.splitlines()
    if not lines or not lines[0].strip():
        raise MalformedResultsFile("event name in header cannot be empty")

    result = ParsedResults(event_name=lines[0].strip(), line_count=len(lines))
    headers: list[str] = []
    race_name: Optional[str] = None
    seen_header = False

    for lineno, line in enumerate(lines[1:], start=2):
        if not line.strip():
            continue

        if line.startswith(DIRECTIVE_PREFIX) and FIELD_SEPARATOR in line:
            parts = line[len(DIRECTIVE_PREFIX):].split(FIELD_SEPARATOR)
            if len(parts) >= 2 and _RACE_MARKER.match(parts[0].strip()):
                race_name = parts[1].strip() or None
                headers = []
                continue
            headers = [p.strip() for p in parts]
            if any(not h for h in headers):
                raise MalformedResultsFile(f"empty column name in header on line {lineno}")
            if len(set(headers)) != len(headers):
                raise MalformedResultsFile(f"duplicate column name in header on line {lineno}")
            seen_header = True
            for h in headers:
                if h not in result.columns:
                    result.columns.append(h)
            continue

        if not headers:
            continue

        values = line.split(FIELD_SEPARATOR)
        if len(values) != len(headers):
            result.skipped += 1
            logger.debug("skipping line %d: %d fields for %d columns", lineno, len(values), len(headers))
            continue

        result.rows.append(ParsedRow(race_name=race_name, data=dict(zip(headers, values))))

    if not seen_header:
        raise MalformedResultsFile("no header row found in results file")
    return result


def extract_fields(data: dict[str, str]) -> dict:
    """Pick the searchable columns out of one row using FIELD_ALIASES."""
    by_header = {normalize_header(k): v for k, v in data.items()}
    out: dict = {}
    for fieldname, aliases in FIELD_ALIASES.items():
        value = ""
        for alias in aliases:
            if alias in by_header:
                value = by_header[alias].strip()
                break
        out[fieldname] = value
    out["position"] = parse_int(out["position"])
    return out


def _distinct(rows: list[ParsedRow], fieldname: str) -> list[str]:
    values = {extract_fields(r.data)[fieldname] for r in rows}
    values.discard("")
    return sorted(values)
