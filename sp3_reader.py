"""Read SP3 (c/d) precise orbit and clock files.

The header is decoded once when the file is opened; data are then pulled
one epoch at a time, so only the current epoch's records are ever held in
memory::

    with Sp3File("igs21000.sp3") as sp3:
        print(sp3.header.first_epoch, sp3.header.num_of_sats)
        for epoch in sp3:
            for rec in epoch:
                print(epoch.epoch, rec.satellite, rec.state.position)

Units are those of the file: positions in km, clocks in microseconds.
Velocities (dm/s in the file) are stored in km/s and clock rates
(1e-4 microseconds/s) in microseconds/s.
"""

from __future__ import annotations

import logging
import pathlib
from dataclasses import dataclass, field
from typing import Iterator, List, Optional, Sequence

import numpy as np
import pandas as pd

from fixed_columns import (
    GnssFileError,
    LineReader,
    NumericConversionFailure,
    SatelliteIdentifierMismatch,
    StructuralMismatch,
    UnexpectedEndOfStream,
    UnsupportedFormatVersion,
    read_float,
    read_int,
    read_marker,
    read_optional_int,
    read_token,
    require_marker,
)
from gnss_epochs import Epoch
from satellite_types import (
    ClockFlag,
    SatelliteClock,
    SatelliteId,
    SatelliteState,
    SatelliteSystem,
    StateFlag,
)

logger = logging.getLogger(__name__)

# =============================================================================
# Format constants
# =============================================================================

SUPPORTED_VERSIONS = ("c", "d")

# A bad or absent satellite position is recorded as 0.000000 for x, y and z.
BAD_POS_VALUE = 0.0
POS_TOLERANCE = 1e-10
# A bad or absent clock (or clock rate) is any value >= this.
BAD_CLK_VALUE = 999999.0
# Accuracy exponents >= this mean "unknown or too large to represent".
BAD_EXP_VALUE = 99

# Satellite / accuracy header lines: 3-character slots from column 10 to 60.
SAT_START_IDX = 9
SAT_STOP_IDX = 60
SLOTS_PER_LINE = (SAT_STOP_IDX - SAT_START_IDX) // 3

TIME_SYSTEMS = ("GPS", "GLO", "GAL", "QZS", "BDT", "IRN", "TAI", "UTC")

# The %c satellite-system letter normally sits in column 4, some producers
# shift it to column 5.
SYSTEM_CHAR_COLUMNS = (3, 4)

# (start, length) of x, y, z, clock on P and V records; the fields may touch.
VALUE_FIELDS = ((4, 14), (18, 14), (32, 14), (46, 14))
EXPONENT_FIELDS = ((61, 2), (64, 2), (67, 2), (70, 3))
CLOCK_EVENT_COL = 74
CLOCK_PRED_COL = 75
MANEUVER_COL = 78
ORBIT_PRED_COL = 79

DM_PER_S_TO_KM_PER_S = 1e-4
CLOCK_RATE_TO_US_PER_S = 1e-4


# =============================================================================
# Data containers
# =============================================================================


@dataclass(frozen=True)
class Sp3Header:
    """File-level metadata of an SP3 file."""

    version: str
    pos_vel_flag: str
    first_epoch: Epoch
    last_epoch: Epoch
    interval: int  # seconds
    num_of_epochs: int
    data_used: str
    coordinate_system: str
    orbit_type: str
    agency: str
    gps_week: int
    seconds_of_week: float
    mjd: int
    satellites: tuple[SatelliteId, ...]
    accuracy_codes: tuple[int, ...]
    satellite_system: SatelliteSystem
    time_system: str
    base_pos: float
    base_clk: float
    comments: tuple[str, ...] = ()

    @property
    def num_of_sats(self) -> int:
        return len(self.satellites)

    def accuracy(self, sat: SatelliteId) -> int:
        """Header accuracy code of ``sat`` (raises ``KeyError`` if not listed)."""
        try:
            return self.accuracy_codes[self.satellites.index(sat)]
        except ValueError:
            raise KeyError(str(sat)) from None


@dataclass(slots=True)
class SatelliteRecord:
    satellite: SatelliteId
    state: SatelliteState
    clock: SatelliteClock


@dataclass
class Sp3Epoch:
    """All satellite records of one epoch, in file order."""

    epoch: Epoch
    records: List[SatelliteRecord] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.records)

    def __iter__(self) -> Iterator[SatelliteRecord]:
        return iter(self.records)

    @property
    def satellites(self) -> list[SatelliteId]:
        return [r.satellite for r in self.records]

    @property
    def states(self) -> list[SatelliteState]:
        return [r.state for r in self.records]

    @property
    def clocks(self) -> list[SatelliteClock]:
        return [r.clock for r in self.records]

    def get(self, sat: SatelliteId | str) -> Optional[SatelliteRecord]:
        if isinstance(sat, str):
            sat = SatelliteId.from_token(sat)
        for rec in self.records:
            if rec.satellite == sat:
                return rec
        return None


# =============================================================================
# Decoding helpers
# =============================================================================


def _read_epoch_fields(line: str) -> Epoch:
    """Decode the ``YYYY MM DD hh mm ss.ssssssss`` block at column 4."""
    year = read_int(line, 3, 4)
    month = read_int(line, 8, 2)
    day = read_int(line, 11, 2)
    hour = read_int(line, 14, 2)
    minute = read_int(line, 17, 2)
    seconds = read_float(line, 20, 11)
    try:
        return Epoch.from_calendar(year, month, day, hour, minute, seconds)
    except ValueError as exc:
        raise NumericConversionFailure(f"Invalid epoch: {exc}") from None


def _read_satellite(line: str, start: int) -> SatelliteId:
    token = read_token(line, start, 3)
    try:
        return SatelliteId.from_token(token)
    except ValueError as exc:
        raise StructuralMismatch(str(exc)) from None


def _is_absent(x: float, y: float, z: float) -> bool:
    return all(abs(v - BAD_POS_VALUE) <= POS_TOLERANCE for v in (x, y, z))


def _std_deviation(base: float, exponent: Optional[int]) -> Optional[float]:
    """``base ** exponent``, or ``None`` when the accuracy is unknown."""
    if exponent is None or exponent >= BAD_EXP_VALUE or base <= 0.0:
        return None
    return base ** exponent


def _std_triplet(base: float, exponents: Sequence[Optional[int]]) -> Optional[tuple[float, float, float]]:
    sdevs = [_std_deviation(base, e) for e in exponents]
    if any(s is None for s in sdevs):
        return None
    return tuple(sdevs)  # type: ignore[return-value]


def _next_line(lines: LineReader, what: str) -> str:
    line = lines.readline()
    if line is None:
        raise UnexpectedEndOfStream(f"File ends before the {what}")
    return line


def _slot_tokens(line: str, wanted: int) -> list[str]:
    """Up to ``wanted`` 3-character slots from a '+ ' / '++' line."""
    tokens = []
    for start in range(SAT_START_IDX, SAT_STOP_IDX, 3):
        if len(tokens) >= wanted:
            break
        tokens.append(read_token(line, start, 3).ljust(3))
    return tokens


def _resolve_system(line: str) -> SatelliteSystem:
    for column in SYSTEM_CHAR_COLUMNS:
        system = SatelliteSystem.lookup(read_token(line, column, 1))
        if system is not None:
            return system
    raise StructuralMismatch(
        f"Cannot resolve satellite system from '%c' line: {line[:10]!r}"
    )


# =============================================================================
# Header
# =============================================================================


def read_sp3_header(lines: LineReader) -> Sp3Header:
    """Parse the SP3 header from the top of ``lines``.

    On return the reader sits on the first epoch line and the header/data
    boundary has been recorded with :meth:`LineReader.mark_data_start`.

    Raises
    ------
    StructuralMismatch
        A header line does not carry its marker.
    UnsupportedFormatVersion
        The version character is not ``c`` or ``d``.
    NumericConversionFailure
        A header field is not a number, or the interval is fractional.
    """
    with lines.located():
        # Line 1: version, start epoch, number of epochs, descriptors --------
        line = _next_line(lines, "first header line")
        require_marker(line, 0, "#", "SP3 header line 1")
        version = read_token(line, 1, 1)
        if version not in SUPPORTED_VERSIONS:
            raise UnsupportedFormatVersion(f"Unsupported SP3 version {version!r}")
        pos_vel_flag = read_token(line, 2, 1)
        first_epoch = _read_epoch_fields(line)
        num_of_epochs = read_int(line, 32, 7)
        data_used = read_token(line, 40, 5).strip()
        coordinate_system = read_token(line, 46, 5).strip()
        orbit_type = read_token(line, 52, 3).strip()
        agency = read_token(line, 56, 4).strip()

        # Line 2: GPS week, interval, MJD -------------------------------------
        line = _next_line(lines, "second header line")
        require_marker(line, 0, "##", "SP3 header line 2")
        gps_week = read_int(line, 3, 4)
        seconds_of_week = read_float(line, 8, 15)
        interval_sec = read_float(line, 24, 14)
        mjd = read_int(line, 39, 5)
        if abs(interval_sec - round(interval_sec)) > 1e-8:
            raise NumericConversionFailure(f"Epoch interval {interval_sec!r} is not an integer number of seconds")
        interval = int(round(interval_sec))

        # '+ ' lines: number of satellites and their ids ----------------------
        line = _next_line(lines, "satellite list")
        require_marker(line, 0, "+ ", "satellite list")
        num_of_sats = read_int(line, 3, 3)
        satellites: list[SatelliteId] = []
        while read_marker(line, 0, "+ "):
            wanted = num_of_sats - len(satellites)
            for token in _slot_tokens(line, wanted):
                satellites.append(_read_satellite(token, 0))
            extra = [t for t in _slot_tokens(line, SLOTS_PER_LINE)[max(wanted, 0):] if t.strip(" 0")]
            if extra:
                logger.warning(
                    "SP3 header: ignoring satellites beyond the declared %d: %s", num_of_sats, " ".join(extra)
                )
            line = _next_line(lines, "satellite accuracy lines")
        if len(satellites) != num_of_sats:
            raise StructuralMismatch(
                f"Header declares {num_of_sats} satellites but lists {len(satellites)}"
            )

        # '++' lines: accuracy codes ------------------------------------------
        require_marker(line, 0, "++", "satellite accuracy")
        accuracy: list[int] = []
        while read_marker(line, 0, "++"):
            for token in _slot_tokens(line, num_of_sats - len(accuracy)):
                accuracy.append(read_int(token, 0, 3, default=0))
            line = _next_line(lines, "'%c' lines")
        if len(accuracy) != num_of_sats:
            raise StructuralMismatch(
                f"Header lists {len(accuracy)} accuracy codes for {num_of_sats} satellites"
            )

        # '%c' lines: satellite and time system -------------------------------
        require_marker(line, 0, "%c", "file type")
        satellite_system = _resolve_system(line)
        time_system = read_token(line, 9, 3).strip()
        if time_system not in TIME_SYSTEMS:
            logger.warning("SP3 header: unknown time system %r", time_system)
        line = _next_line(lines, "second '%c' line")
        require_marker(line, 0, "%c", "second '%c' line")

        # '%f' lines: base for position / clock accuracy -----------------------
        line = _next_line(lines, "'%f' lines")
        require_marker(line, 0, "%f", "accuracy bases")
        base_pos = read_float(line, 3, 10)
        base_clk = read_float(line, 14, 12)
        line = _next_line(lines, "second '%f' line")
        require_marker(line, 0, "%f", "second '%f' line")

        # '%i' lines ----------------------------------------------------------
        for _ in range(2):
            line = _next_line(lines, "'%i' lines")
            require_marker(line, 0, "%i", "'%i' line")

        # '/*' comments -------------------------------------------------------
        comments: list[str] = []
        while True:
            peeked = lines.peek()
            if peeked is None or not peeked.startswith("/"):
                break
            line = lines.readline()
            require_marker(line, 0, "/*", "comment")
            comments.append(line[2:].strip())

        lines.mark_data_start()

    header = Sp3Header(
        version=version,
        pos_vel_flag=pos_vel_flag,
        first_epoch=first_epoch,
        last_epoch=first_epoch.add_seconds(interval * num_of_epochs),
        interval=interval,
        num_of_epochs=num_of_epochs,
        data_used=data_used,
        coordinate_system=coordinate_system,
        orbit_type=orbit_type,
        agency=agency,
        gps_week=gps_week,
        seconds_of_week=seconds_of_week,
        mjd=mjd,
        satellites=tuple(satellites),
        accuracy_codes=tuple(accuracy),
        satellite_system=satellite_system,
        time_system=time_system,
        base_pos=base_pos,
        base_clk=base_clk,
        comments=tuple(comments),
    )
    logger.debug(
        "SP3 header: version=%s first=%s epochs=%d interval=%ds sats=%d system=%s",
        version, first_epoch, num_of_epochs, interval, len(satellites), satellite_system.name,
    )
    return header


# =============================================================================
# Reader
# =============================================================================


class Sp3File:
    """An open SP3 file: header plus a forward-only epoch stream.

    Parameters
    ----------
    path : str | pathlib.Path
        SP3 file (``.gz`` compressed files are read transparently).
    encoding : str
        Text encoding; undecodable bytes are ignored.

    Raises
    ------
    OpenFailure, StructuralMismatch, UnsupportedFormatVersion,
    NumericConversionFailure, UnexpectedEndOfStream
        If the file cannot be opened or its header is invalid. No reader
        object is returned in that case.
    """

    def __init__(self, path: str | pathlib.Path, *, encoding: str = "utf-8"):
        self.path = pathlib.Path(path)
        self._lines = LineReader(self.path, encoding=encoding)
        try:
            self.header = read_sp3_header(self._lines)
        except GnssFileError:
            self._lines.close()
            raise
        self._at_eof = False

    # -- resource handling -----------------------------------------------------

    def close(self) -> None:
        self._lines.close()

    def __enter__(self) -> "Sp3File":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @property
    def end_of_header(self) -> int:
        """Stream offset of the first data line."""
        return self._lines.data_start

    @property
    def at_eof(self) -> bool:
        return self._at_eof

    def rewind(self) -> None:
        """Restart the epoch stream from the first epoch."""
        self._lines.rewind()
        self._at_eof = False

    # -- epoch stream ----------------------------------------------------------

    def next_epoch(self) -> Optional[Sp3Epoch]:
        """Read the next epoch block.

        Returns ``None`` once the ``EOF`` line has been read.

        Raises
        ------
        UnexpectedEndOfStream
            The file ends without an ``EOF`` line.
        StructuralMismatch
            A line is neither an epoch line nor ``EOF``, or the epoch holds
            more records than the header declares.
        NumericConversionFailure
            A numeric field of the epoch line or of a record is invalid.
        SatelliteIdentifierMismatch
            A velocity record belongs to a different satellite than the
            position record before it.
        """
        if self._at_eof:
            return None
        lines = self._lines
        with lines.located():
            line = lines.readline()
            if line is None:
                raise UnexpectedEndOfStream("SP3 file ends without an 'EOF' line")
            if read_marker(line, 0, "EOF"):
                self._at_eof = True
                logger.debug("%s: reached EOF marker", self.path.name)
                return None
            require_marker(line, 0, "*", "epoch line")
            block = Sp3Epoch(_read_epoch_fields(line))

            while True:
                peeked = lines.peek()
                if peeked is None:
                    raise UnexpectedEndOfStream("SP3 file ends without an 'EOF' line")
                if peeked.startswith("P"):
                    if len(block.records) >= self.header.num_of_sats:
                        lines.readline()
                        raise StructuralMismatch(
                            f"Epoch {block.epoch} holds more than the {self.header.num_of_sats} declared satellites"
                        )
                    block.records.append(self._read_position(lines.readline()))
                elif peeked.startswith("V"):
                    line = lines.readline()
                    self._apply_velocity(line, block.records[-1] if block.records else None)
                elif peeked.startswith(("EP", "EV")):
                    lines.readline()
                else:
                    break

        logger.debug("%s: epoch %s, %d records", self.path.name, block.epoch, len(block))
        return block

    def __iter__(self) -> Iterator[Sp3Epoch]:
        while True:
            block = self.next_epoch()
            if block is None:
                return
            yield block

    def _read_position(self, line: str) -> SatelliteRecord:
        sat = _read_satellite(line, 1)
        x, y, z, clk = (read_float(line, start, width) for start, width in VALUE_FIELDS)
        exponents = [read_optional_int(line, start, width) for start, width in EXPONENT_FIELDS]

        state_flags = StateFlag.NO_VELOCITY
        clock_flags = ClockFlag.NO_VELOCITY
        if _is_absent(x, y, z):
            state_flags |= StateFlag.BAD_OR_ABSENT
        if clk >= BAD_CLK_VALUE:
            clock_flags |= ClockFlag.BAD_OR_ABSENT

        pos_sdev = _std_triplet(self.header.base_pos, exponents[:3])
        if pos_sdev is None:
            state_flags |= StateFlag.UNKNOWN_ACCURACY
        clk_sdev = _std_deviation(self.header.base_clk, exponents[3])
        if clk_sdev is None:
            clock_flags |= ClockFlag.UNKNOWN_ACCURACY

        if read_token(line, CLOCK_EVENT_COL, 1) == "E":
            clock_flags |= ClockFlag.DISCONTINUITY
        if read_token(line, CLOCK_PRED_COL, 1) == "P":
            clock_flags |= ClockFlag.PREDICTION
        if read_token(line, MANEUVER_COL, 1) == "M":
            state_flags |= StateFlag.MANEUVER
        if read_token(line, ORBIT_PRED_COL, 1) == "P":
            state_flags |= StateFlag.PREDICTION

        return SatelliteRecord(
            satellite=sat,
            state=SatelliteState(x, y, z, flags=state_flags, sdev=pos_sdev),
            clock=SatelliteClock(clk, flags=clock_flags, sdev=clk_sdev),
        )

    def _apply_velocity(self, line: str, record: Optional[SatelliteRecord]) -> None:
        sat = _read_satellite(line, 1)
        if record is None:
            raise SatelliteIdentifierMismatch(f"Velocity record for {sat} has no preceding position record")
        if sat != record.satellite:
            raise SatelliteIdentifierMismatch(
                f"Velocity record for {sat} follows position record for {record.satellite}"
            )
        # decode everything before touching the record
        vx, vy, vz, rate = (read_float(line, start, width) for start, width in VALUE_FIELDS)
        exponents = [read_optional_int(line, start, width) for start, width in EXPONENT_FIELDS]

        velocity = None
        if not _is_absent(vx, vy, vz):
            velocity = (vx * DM_PER_S_TO_KM_PER_S, vy * DM_PER_S_TO_KM_PER_S, vz * DM_PER_S_TO_KM_PER_S)
        clock_rate = None if rate >= BAD_CLK_VALUE else rate * CLOCK_RATE_TO_US_PER_S

        record.state.apply_velocity(velocity, _std_triplet(self.header.base_pos, exponents[:3]))
        record.clock.apply_rate(clock_rate, _std_deviation(self.header.base_clk, exponents[3]))

    # -- pandas view -----------------------------------------------------------

    def to_dataframe(self) -> pd.DataFrame:
        """Stream the whole data section into a tidy DataFrame.

        One row per satellite per epoch with columns ``sat``, ``gps_time``
        (naive datetime in the file's time system), ``x_km``, ``y_km``,
        ``z_km``, ``clk_us``, ``vx_kms``, ``vy_kms``, ``vz_kms``,
        ``clk_rate``, ``state_flags`` and ``clock_flags`` (integer bit
        values). Absent positions / clocks are NaN.
        """
        self.rewind()
        rows = []
        for block in self:
            when = block.epoch.to_datetime()
            for rec in block:
                st, ck = rec.state, rec.clock
                pos = (np.nan,) * 3 if st.absent else (st.x, st.y, st.z)
                vel = (np.nan,) * 3 if st.vx is None else (st.vx, st.vy, st.vz)
                rows.append(
                    (
                        str(rec.satellite), when, *pos,
                        np.nan if ck.absent else ck.bias,
                        *vel,
                        np.nan if ck.rate is None else ck.rate,
                        st.flags.value, ck.flags.value,
                    )
                )
        df = pd.DataFrame(
            rows,
            columns=[
                "sat", "gps_time", "x_km", "y_km", "z_km", "clk_us",
                "vx_kms", "vy_kms", "vz_kms", "clk_rate", "state_flags", "clock_flags",
            ],
        )
        df["gps_time"] = pd.to_datetime(df["gps_time"])
        return df


def read_sp3_dataframe(sp3_paths: str | pathlib.Path | list[str | pathlib.Path]) -> pd.DataFrame:
    """Read one or several SP3 files into a single DataFrame.

    Files are concatenated and sorted by satellite and time, ready for
    :pyfunc:`pandas.merge_asof`. See :meth:`Sp3File.to_dataframe` for the
    columns.
    """
    if not isinstance(sp3_paths, (list, tuple)):
        sp3_paths = [sp3_paths]

    frames = []
    for path in map(pathlib.Path, sp3_paths):
        with Sp3File(path) as sp3:
            frames.append(sp3.to_dataframe())

    if not frames or all(f.empty for f in frames):
        raise RuntimeError("No satellite records found in SP3 file(s).")

    df = pd.concat(frames, ignore_index=True)
    df.sort_values(["sat", "gps_time"], inplace=True, kind="mergesort")
    df.reset_index(drop=True, inplace=True)
    return df


# -----------------------------------------------------------------------------
# CLI helper (kept for quick checks)
# -----------------------------------------------------------------------------


if __name__ == "__main__":
    import argparse
    import sys

    parser = argparse.ArgumentParser(description="Summarise the epochs of an SP3 file.")
    parser.add_argument("sp3", help="Path to the SP3 file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log every epoch read.")
    args = parser.parse_args()
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING)

    try:
        with Sp3File(args.sp3) as sp3:
            hdr = sp3.header
            print(f"{args.sp3}: SP3-{hdr.version} {hdr.agency} {hdr.orbit_type} {hdr.coordinate_system}")
            print(f"  epochs: {hdr.num_of_epochs}  ({hdr.first_epoch}  ->  {hdr.last_epoch}, {hdr.interval}s)")
            print(f"  satellites: {hdr.num_of_sats}  -> {', '.join(map(str, hdr.satellites[:8]))}"
                  f"{'...' if hdr.num_of_sats > 8 else ''}")
            n_epochs = n_absent = 0
            for block in sp3:
                n_epochs += 1
                n_absent += sum(rec.state.absent for rec in block)
            print(f"  read {n_epochs} epochs, {n_absent} absent positions")
    except GnssFileError as exc:
        sys.exit(f"Error: {exc}")
