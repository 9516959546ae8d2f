"""Fixed-column decoding shared by the SP3 and IONEX readers.

Both formats place every field at a fixed character span, and adjacent
numeric fields may touch with no separating blank (e.g. a negative SP3
coordinate filling all 14 columns). Fields are therefore always cut out by
explicit ``(start, length)`` spans, never by splitting on whitespace.
Offsets are 0-based.

Two kinds of failure are kept apart:

* :class:`StructuralMismatch` - a marker/label is not where the format
  version puts it. Always fatal.
* :class:`NumericConversionFailure` - the marker was fine but the bytes of a
  numeric field are not a number.
"""

from __future__ import annotations

import gzip
import logging
import math
import pathlib
from contextlib import contextmanager
from typing import Iterator, Optional

logger = logging.getLogger(__name__)


# =============================================================================
# Errors
# =============================================================================


class GnssFileError(Exception):
    """Base class for every failure raised while reading SP3 / IONEX files."""

    def __init__(self, message: str, filename: Optional[str] = None, line_nr: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.filename = filename
        self.line_nr = line_nr

    def locate(self, filename: Optional[str], line_nr: Optional[int]) -> "GnssFileError":
        """Fill in the file position if the raiser did not know it."""
        if self.filename is None:
            self.filename = filename
        if self.line_nr is None:
            self.line_nr = line_nr
        return self

    def __str__(self) -> str:
        where = []
        if self.filename:
            where.append(str(self.filename))
        if self.line_nr:
            where.append(f"line {self.line_nr}")
        if where:
            return f"{self.message} ({', '.join(where)})"
        return self.message


class OpenFailure(GnssFileError, OSError):
    """The file could not be opened or read."""


class StructuralMismatch(GnssFileError, ValueError):
    """An expected marker or label is missing from its line."""


class UnsupportedFormatVersion(StructuralMismatch):
    """The file declares a format version this reader does not handle."""


class NumericConversionFailure(GnssFileError, ValueError):
    """The characters of a numeric field do not form a number."""


class UnexpectedEndOfStream(GnssFileError, EOFError):
    """Physical end of file reached before the format's terminal marker."""


class SatelliteIdentifierMismatch(GnssFileError, ValueError):
    """A velocity record does not belong to the position record before it."""


class OutOfDomainQuery(GnssFileError, ValueError):
    """An interpolation was requested outside the file's time or space span."""


# =============================================================================
# Field decoding
# =============================================================================


def read_token(line: str, start: int, length: int) -> str:
    """Return the raw characters of a field (short lines give short tokens)."""
    return line[start:start + length]


def read_marker(line: str, offset: int, expected: str) -> bool:
    """True if ``expected`` appears verbatim at ``offset``."""
    return line.startswith(expected, offset)


def require_marker(line: str, offset: int, expected: str, what: str = "") -> None:
    if not read_marker(line, offset, expected):
        found = read_token(line, offset, len(expected))
        raise StructuralMismatch(
            f"Expected {expected!r} at column {offset + 1}{' (' + what + ')' if what else ''}, found {found!r}"
        )


def _plain_number(token: str) -> bool:
    # int()/float() also take digit separators and non-ASCII digits
    return token.isascii() and "_" not in token


def read_int(line: str, start: int, length: int, default: Optional[int] = None) -> int:
    """Decode an integer field.

    A blank field returns ``default`` when one is given; otherwise it is a
    :class:`NumericConversionFailure` like any other unparsable content.
    """
    token = read_token(line, start, length)
    if not token.strip():
        if default is not None:
            return default
        raise NumericConversionFailure(f"Blank integer field at columns {start + 1}-{start + length}")
    try:
        if not _plain_number(token):
            raise ValueError(token)
        return int(token)
    except ValueError:
        raise NumericConversionFailure(
            f"Invalid integer {token!r} at columns {start + 1}-{start + length}"
        ) from None


def read_optional_int(line: str, start: int, length: int) -> Optional[int]:
    """Like :func:`read_int` but a blank field decodes to ``None``."""
    token = read_token(line, start, length)
    if not token.strip():
        return None
    return read_int(line, start, length)


def read_float(line: str, start: int, length: int, default: Optional[float] = None) -> float:
    """Decode a finite floating point field (Fortran ``D`` exponents accepted)."""
    token = read_token(line, start, length)
    if not token.strip():
        if default is not None:
            return default
        raise NumericConversionFailure(f"Blank numeric field at columns {start + 1}-{start + length}")
    try:
        if not _plain_number(token):
            raise ValueError(token)
        value = float(token.replace("D", "E").replace("d", "e"))
    except ValueError:
        raise NumericConversionFailure(
            f"Invalid number {token!r} at columns {start + 1}-{start + length}"
        ) from None
    if not math.isfinite(value):
        raise NumericConversionFailure(f"Non-finite number {token!r} at columns {start + 1}-{start + length}")
    return value


# =============================================================================
# Line reader
# =============================================================================


class LineReader:
    """Forward-only line source with one line of look-ahead.

    Keeps a single remembered offset (the header/data boundary) so a full
    scan of the data section can be restarted; nothing else ever seeks.
    Each reader owns its file handle and its look-ahead buffer.
    """

    def __init__(self, path: str | pathlib.Path, encoding: str = "utf-8"):
        self.path = pathlib.Path(path)
        self.filename = str(self.path)
        try:
            if self.path.suffix.lower() == ".gz":
                self._fh = gzip.open(self.path, "rt", encoding=encoding, errors="ignore", newline="")
            else:
                self._fh = self.path.open("r", encoding=encoding, errors="ignore", newline="")
        except OSError as exc:
            raise OpenFailure(f"Cannot open file: {exc.strerror or exc}", self.filename) from exc
        self.line_nr = 0
        self._peeked: Optional[tuple[Optional[str], int]] = None
        self._data_start: Optional[tuple[int, int]] = None

    def _read_raw(self) -> Optional[str]:
        try:
            raw = self._fh.readline()
        except OSError as exc:
            raise OpenFailure(f"Cannot read file: {exc}", self.filename, self.line_nr + 1) from exc
        if raw == "":
            return None
        return raw.rstrip("\r\n")

    def readline(self) -> Optional[str]:
        """Consume and return the next line, ``None`` at physical EOF."""
        if self._peeked is not None:
            line, _ = self._peeked
            self._peeked = None
        else:
            line = self._read_raw()
        if line is not None:
            self.line_nr += 1
        return line

    def peek(self) -> Optional[str]:
        """Return the next line without consuming it."""
        if self._peeked is None:
            offset = self._fh.tell()
            self._peeked = (self._read_raw(), offset)
        return self._peeked[0]

    def tell(self) -> int:
        """Offset of the next unread line."""
        if self._peeked is not None:
            return self._peeked[1]
        return self._fh.tell()

    def mark_data_start(self) -> int:
        """Remember the current position as the start of the data section."""
        self._data_start = (self.tell(), self.line_nr)
        return self._data_start[0]

    @property
    def data_start(self) -> Optional[int]:
        return None if self._data_start is None else self._data_start[0]

    def rewind(self) -> None:
        """Seek back to the remembered data-section offset."""
        if self._data_start is None:
            raise RuntimeError("No data-section offset recorded yet")
        offset, line_nr = self._data_start
        self._fh.seek(offset)
        self._peeked = None
        self.line_nr = line_nr
        logger.debug("%s: rewound to data offset %d (line %d)", self.filename, offset, line_nr + 1)

    @contextmanager
    def located(self) -> Iterator[None]:
        """Attach file name and current line number to errors raised inside."""
        try:
            yield
        except GnssFileError as exc:
            exc.locate(self.filename, self.line_nr)
            raise

    def close(self) -> None:
        self._fh.close()

    @property
    def closed(self) -> bool:
        return self._fh.closed

    def __enter__(self) -> "LineReader":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()
