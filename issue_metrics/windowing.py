from __future__ import annotations

import codecs
import csv
import re
from contextlib import closing
from dataclasses import dataclass, replace
from typing import BinaryIO, Callable, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

from .config import settings
from .errors import MalformedSource, SourceUnavailable
from .logging_utils import get_logger
from .object_store import ObjectStore
from .records import StructuredRecord, map_row
from .schemas import SourceRef

# Jira exports carry long descriptions in a single quoted cell.
csv.field_size_limit(16 * 1024 * 1024)

logger = get_logger(__name__)

_LINE_END = re.compile(r"\r\n|\r|\n")

RowMapper = Callable[[Mapping[str, str]], StructuredRecord]


@dataclass(frozen=True)
class WindowResult:
    records: List[StructuredRecord]
    consumed_count: int
    has_more: bool


def _split_lines(text: str) -> Tuple[List[str], str]:
    """Cut ``text`` after each line terminator and return the unterminated tail separately."""
    lines: List[str] = []
    start = 0
    for match in _LINE_END.finditer(text):
        lines.append(text[start : match.end()])
        start = match.end()
    return lines, text[start:]


def _iter_text_lines(body: BinaryIO, chunk_bytes: int) -> Iterator[str]:
    decoder = codecs.getincrementaldecoder("utf-8-sig")()
    pending = ""
    while True:
        chunk = body.read(chunk_bytes)
        if not chunk:
            break
        try:
            pending += decoder.decode(chunk)
        except UnicodeDecodeError as exc:
            raise MalformedSource(f"source is not valid UTF-8 text: {exc}") from exc
        lines, pending = _split_lines(pending)
        # A trailing "\r" may be the first half of a "\r\n" split across chunks.
        if lines and lines[-1].endswith("\r"):
            pending = lines.pop() + pending
        yield from lines
    try:
        pending += decoder.decode(b"", final=True)
    except UnicodeDecodeError as exc:
        raise MalformedSource(f"source is not valid UTF-8 text: {exc}") from exc
    lines, tail = _split_lines(pending)
    yield from lines
    if tail:
        yield tail


def _is_blank(row: Sequence[str]) -> bool:
    return not any(cell.strip() for cell in row)


def _row_to_mapping(header: Sequence[str], row: Sequence[str]) -> Dict[str, str]:
    # Short rows pad with "", cells past the header are dropped.
    return {
        column: row[index].strip() if index < len(row) else ""
        for index, column in enumerate(header)
    }


def iter_rows(body: BinaryIO, *, chunk_bytes: Optional[int] = None) -> Iterator[Dict[str, str]]:
    """Yield every data row of a delimited text stream as a column -> value mapping."""
    lines = _iter_text_lines(body, chunk_bytes or settings.stream_chunk_bytes)
    reader = csv.reader(lines)
    try:
        header = next(reader, None)
        while header is not None and _is_blank(header):
            header = next(reader, None)
        if header is None:
            raise MalformedSource("source has no header row")
        columns = [cell.strip() for cell in header]
        for row in reader:
            if _is_blank(row):
                continue
            yield _row_to_mapping(columns, row)
    except csv.Error as exc:
        raise MalformedSource(f"unable to tokenize source: {exc}") from exc


def _keyed(record: StructuredRecord, source: SourceRef, row_number: int) -> StructuredRecord:
    # Rows without an issue key are stored under their data row number.
    if record.issue_key:
        return record
    fallback = f"row-{row_number}"
    logger.warning(
        "record_mapper.missing_key source=%s/%s row=%s fallback_key=%s",
        source.container,
        source.key,
        row_number,
        fallback,
    )
    return replace(record, issue_key=fallback)


def open_source(store: ObjectStore, source: SourceRef) -> BinaryIO:
    body = store.get(source.container, source.key)
    if body is None:
        raise SourceUnavailable(f"No body for object {source.container}/{source.key}")
    return body


def read_window(
    store: ObjectStore,
    source: SourceRef,
    start_row: int,
    window_size: int,
    *,
    mapper: RowMapper = map_row,
    chunk_bytes: Optional[int] = None,
) -> WindowResult:
    """Parse up to ``window_size`` records beginning at 1-based data row ``start_row``.

    ``has_more`` is true exactly when the window filled, so a source whose
    remaining row count is a multiple of ``window_size`` ends with one extra
    call that returns no records.
    """
    if start_row < 1:
        raise ValueError("start_row must be >= 1")
    if window_size < 1:
        raise ValueError("window_size must be >= 1")

    records: List[StructuredRecord] = []
    with closing(open_source(store, source)) as body:
        rows = iter_rows(body, chunk_bytes=chunk_bytes)
        with closing(rows):
            for row_number, raw in enumerate(rows, start=1):
                if row_number < start_row:
                    continue
                records.append(_keyed(mapper(raw), source, row_number))
                if len(records) >= window_size:
                    break

    consumed = len(records)
    has_more = consumed == window_size
    logger.debug(
        "row_window.read source=%s/%s start_row=%s consumed=%s has_more=%s",
        source.container,
        source.key,
        start_row,
        consumed,
        has_more,
    )
    return WindowResult(records=records, consumed_count=consumed, has_more=has_more)
