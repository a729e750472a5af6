"""
Delimited record encoding for the bulk loader.

Rows are streamed as CSV-style lines:
- NULL is written as the null marker, unquoted (empty by default)
- booleans are written as 0/1, values of BIT columns as their integer value
- values of binary columns are written as hex digits behind the adapter's
  binary prefix (``\\x`` for PostgreSQL bytea, none for MySQL, which
  decodes them with UNHEX)
- values containing the delimiter, a quote, CR or LF are quoted, with
  embedded quotes doubled
- empty strings and strings equal to the null marker are quoted so they stay
  distinct from NULL

The encoding of bytes follows the column type, never the value: a one-byte
BLOB value is still written as hex.
"""

import io
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Any, Iterable, Iterator, List, Optional, Sequence

from sqlalchemy import Table
from sqlalchemy.types import TypeEngine

TEXT = 'text'
BIT = 'bit'
BINARY = 'binary'


def column_kind(column_type: TypeEngine) -> str:
    """Classify a column type as BIT, BINARY or TEXT for encoding."""
    if type(column_type).__name__.upper() == 'BIT':
        return BIT
    try:
        python_type = column_type.python_type
    except NotImplementedError:
        return TEXT
    if issubclass(python_type, (bytes, bytearray)):
        return BINARY
    return TEXT


def table_column_kinds(table: Table, columns: Sequence[str]) -> List[str]:
    return [column_kind(table.c[name].type) for name in columns]


class DelimitedRecordEncoder:

    def __init__(self, delimiter: str = ',', quote: str = '"', null_marker: str = '',
                 line_terminator: str = '\n', column_kinds: Optional[Sequence[str]] = None,
                 binary_prefix: str = '\\x'):
        """
        Args:
            column_kinds: Per-position BIT / BINARY / TEXT kinds of the target
                columns; bytes in a position without a kind are hex encoded
            binary_prefix: Written before the hex digits of binary values
        """
        self.delimiter = delimiter
        self.quote = quote
        self.null_marker = null_marker
        self.line_terminator = line_terminator
        self.column_kinds = list(column_kinds) if column_kinds is not None else None
        self.binary_prefix = binary_prefix
        self._specials = (delimiter, quote, '\n', '\r')

    def encode_value(self, value: Any, kind: Optional[str] = None) -> str:
        if value is None:
            return self.null_marker
        if isinstance(value, bool):
            return '1' if value else '0'
        if isinstance(value, (bytes, bytearray, memoryview)):
            raw = bytes(value)
            if kind == BIT:
                return str(int.from_bytes(raw, 'big'))
            return self.quote_text(self.binary_prefix + raw.hex())
        if isinstance(value, datetime):
            text = value.isoformat(sep=' ')
        elif isinstance(value, (date, time)):
            text = value.isoformat()
        elif isinstance(value, timedelta):
            text = self._format_timedelta(value)
        elif isinstance(value, Decimal):
            text = format(value, 'f')
        else:
            text = str(value)
        return self.quote_text(text)

    def quote_text(self, text: str) -> str:
        needs_quotes = (
            text == ''
            or text == self.null_marker
            or any(special in text for special in self._specials)
        )
        if not needs_quotes:
            return text
        escaped = text.replace(self.quote, self.quote * 2)
        return f"{self.quote}{escaped}{self.quote}"

    @staticmethod
    def _format_timedelta(value: timedelta) -> str:
        total = int(value.total_seconds())
        sign = '-' if total < 0 else ''
        total = abs(total)
        hours, remainder = divmod(total, 3600)
        minutes, seconds = divmod(remainder, 60)
        return f"{sign}{hours:02d}:{minutes:02d}:{seconds:02d}"

    def encode_row(self, row: Sequence[Any]) -> str:
        if self.column_kinds is None:
            values = (self.encode_value(v) for v in row)
        else:
            values = (self.encode_value(v, kind) for v, kind in zip(row, self.column_kinds))
        return self.delimiter.join(values) + self.line_terminator

    def iter_lines(self, rows: Iterable[Sequence[Any]]) -> Iterator[str]:
        for row in rows:
            yield self.encode_row(row)


class EncodedRowStream(io.TextIOBase):
    """
    File-like reader over encoded rows, pulled lazily from an iterator.

    Used as the input of COPY ... FROM STDIN so a window never has to be
    held in memory as one string.
    """

    def __init__(self, rows: Iterable[Sequence[Any]], encoder: DelimitedRecordEncoder):
        super().__init__()
        self._lines = encoder.iter_lines(rows)
        self._buffer = ''
        self.rows_written = 0

    def readable(self) -> bool:
        return True

    def _fill(self, size: int) -> None:
        while size < 0 or len(self._buffer) < size:
            try:
                self._buffer += next(self._lines)
                self.rows_written += 1
            except StopIteration:
                break

    def read(self, size: Optional[int] = -1) -> str:
        size = -1 if size is None else size
        self._fill(size)
        if size < 0:
            chunk, self._buffer = self._buffer, ''
        else:
            chunk, self._buffer = self._buffer[:size], self._buffer[size:]
        return chunk

    def readline(self, size: Optional[int] = -1) -> str:
        while '\n' not in self._buffer:
            before = len(self._buffer)
            self._fill(before + 1)
            if len(self._buffer) == before:
                break
        index = self._buffer.find('\n')
        end = len(self._buffer) if index < 0 else index + 1
        if size is not None and size >= 0:
            end = min(end, size)
        line, self._buffer = self._buffer[:end], self._buffer[end:]
        return line
