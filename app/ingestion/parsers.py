# Feed body -> ordered raw records with source line numbers.
import base64
import binascii
import csv
import io
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Protocol

from openpyxl import load_workbook

from app.core.exceptions import FeedParseError
from app.schemas.feed import FeedDocument

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ParsedRecord:
    line_number: int
    values: Dict[str, Any]


class FeedParser(Protocol):
    def parse(self, document: FeedDocument) -> List[ParsedRecord]:
        ...


def _to_str(x):
    if x is None:
        return None
    if isinstance(x, datetime):
        return x.date().isoformat() if x.time() == datetime.min.time() else x.isoformat()
    if isinstance(x, float) and x.is_integer():
        return str(int(x))
    s = str(x).strip()
    return s or None


def _compact(row: Dict[str, Any]) -> Dict[str, Any]:
    # blank cells count as absent so record defaults apply
    return {k: v for k, v in row.items() if k and v is not None}


class JsonFeedParser:
    """Rows inline in ``records``; line numbers are 1-based positions."""

    def parse(self, document: FeedDocument) -> List[ParsedRecord]:
        if document.records is None:
            raise FeedParseError("json feed has no records")
        parsed = []
        for line_number, row in enumerate(document.records, start=1):
            if not isinstance(row, dict):
                raise FeedParseError(f"Line {line_number}: expected an object, got {type(row).__name__}")
            parsed.append(ParsedRecord(line_number, dict(row)))
        return parsed


class CsvFeedParser:
    """Header row first; line numbers are the physical CSV line of each row."""

    def parse(self, document: FeedDocument) -> List[ParsedRecord]:
        if not document.content:
            raise FeedParseError("csv feed is empty")
        reader = csv.DictReader(io.StringIO(document.content.lstrip("\ufeff")), strict=True)
        if not reader.fieldnames:
            raise FeedParseError("csv feed has no header row")
        header = [h.strip() if h else h for h in reader.fieldnames]
        if len(set(header)) != len(header):
            raise FeedParseError(f"csv header has duplicate columns: {header}")
        reader.fieldnames = header

        parsed = []
        try:
            for row in reader:
                if None in row:
                    raise FeedParseError(f"Line {reader.line_num}: more values than header columns")
                values = _compact({k: _to_str(v) for k, v in row.items()})
                if values:
                    parsed.append(ParsedRecord(reader.line_num, values))
        except csv.Error as e:
            raise FeedParseError(f"Line {reader.line_num}: {e}") from e
        return parsed


class XlsxFeedParser:
    """First sheet, header in row 1, data from row 2. ``content`` is base64."""

    def parse(self, document: FeedDocument) -> List[ParsedRecord]:
        try:
            raw = base64.b64decode(document.content or "", validate=True)
        except (binascii.Error, ValueError) as e:
            raise FeedParseError(f"xlsx content is not valid base64: {e}") from e
        try:
            wb = load_workbook(io.BytesIO(raw), read_only=True, data_only=True)
        except Exception as e:
            raise FeedParseError(f"Unreadable workbook: {e}") from e

        try:
            sheet = wb.active
            rows = sheet.iter_rows(values_only=True)
            header_row = next(rows, None)
            if not header_row or not any(header_row):
                raise FeedParseError("xlsx feed has no header row")
            header = [_to_str(c) for c in header_row]

            parsed = []
            for row_idx, row in enumerate(rows, start=2):
                values = _compact({
                    header[i]: _to_str(cell)
                    for i, cell in enumerate(row)
                    if i < len(header)
                })
                if values:
                    parsed.append(ParsedRecord(row_idx, values))
            return parsed
        finally:
            wb.close()


PARSERS: Dict[str, FeedParser] = {
    "json": JsonFeedParser(),
    "csv": CsvFeedParser(),
    "xlsx": XlsxFeedParser(),
}


def parse_feed(document: FeedDocument) -> List[ParsedRecord]:
    parser = PARSERS.get(document.format)
    if parser is None:
        raise FeedParseError(f"Unsupported feed format: {document.format}")
    records = parser.parse(document)
    logger.debug(f"Parsed {len(records)} {document.feed_type.value} records from {document.format}")
    return records
