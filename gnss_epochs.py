"""Epochs for SP3 / IONEX records.

An :class:`Epoch` is a Modified Julian Day plus the milliseconds elapsed in
that day. Both parts are integers, so equality is exact and ordering or
arithmetic never accumulate floating point error. Millisecond resolution is
all SP3 and IONEX need.
"""

from __future__ import annotations

import datetime
from dataclasses import dataclass
from typing import Union

import astropy.time as atime
import numpy as np

MJD_EPOCH = datetime.datetime(1858, 11, 17)
GPS_EPOCH = datetime.datetime(1980, 1, 6)
GPS_EPOCH_MJD = 44244  # 1980-01-06 00:00:00
MS_PER_DAY = 86_400_000
SECONDS_PER_WEEK = 604_800

# Offsets (seconds) that map a GNSS system time onto GPS seconds.
_GPS_LIKE_OFFSETS = {"GPS": 0.0, "GAL": 0.0, "QZS": 0.0, "IRN": 0.0, "BDT": 14.0}


@dataclass(frozen=True, order=True)
class Epoch:
    """A point in time at millisecond resolution."""

    mjd: int
    msec: int = 0

    def __post_init__(self) -> None:
        days, msec = divmod(int(self.msec), MS_PER_DAY)
        object.__setattr__(self, "mjd", int(self.mjd) + days)
        object.__setattr__(self, "msec", msec)

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def from_calendar(
        cls,
        year: int,
        month: int,
        day: int,
        hour: int = 0,
        minute: int = 0,
        seconds: float = 0.0,
    ) -> "Epoch":
        """Build an epoch from calendar fields.

        Raises
        ------
        ValueError
            If the date is invalid, a time field is out of range, or
            ``seconds`` carries more than millisecond precision.
        """
        if not (0 <= hour < 24 and 0 <= minute < 60 and 0.0 <= seconds < 61.0):
            raise ValueError(f"time of day out of range: {hour}:{minute}:{seconds}")
        millis = round(seconds * 1000.0)
        if abs(seconds * 1000.0 - millis) > 1e-6:
            raise ValueError(f"seconds {seconds!r} exceed millisecond resolution")
        mjd = datetime.date(year, month, day).toordinal() - MJD_EPOCH.toordinal()
        return cls(mjd, (hour * 3600 + minute * 60) * 1000 + millis)

    @classmethod
    def from_datetime(cls, dt: datetime.datetime) -> "Epoch":
        """Convert a ``datetime`` (timezone information is dropped)."""
        dt = dt.replace(tzinfo=None)
        mjd = dt.toordinal() - MJD_EPOCH.toordinal()
        msec = (dt.hour * 3600 + dt.minute * 60 + dt.second) * 1000 + round(dt.microsecond / 1000)
        return cls(mjd, msec)

    @classmethod
    def from_gps_week(cls, week: int, tow: float) -> "Epoch":
        """Epoch from GPS week and time-of-week (no leap seconds applied)."""
        return cls(GPS_EPOCH_MJD, 0).add_seconds(int(week) * SECONDS_PER_WEEK + float(tow))

    # ------------------------------------------------------------------
    # Arithmetic
    # ------------------------------------------------------------------

    def add_seconds(self, seconds: Union[int, float]) -> "Epoch":
        """Return the epoch ``seconds`` later (negative values go back)."""
        return Epoch(self.mjd, self.msec + round(seconds * 1000))

    def __sub__(self, other: "Epoch") -> float:
        """Difference in seconds."""
        if not isinstance(other, Epoch):
            return NotImplemented
        return ((self.mjd - other.mjd) * MS_PER_DAY + (self.msec - other.msec)) / 1000.0

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    @property
    def seconds_of_day(self) -> float:
        return self.msec / 1000.0

    def to_datetime(self) -> datetime.datetime:
        """Naive ``datetime`` in whatever time scale the epoch was read in."""
        return MJD_EPOCH + datetime.timedelta(days=self.mjd, milliseconds=self.msec)

    def to_datetime64(self) -> np.datetime64:
        return np.datetime64(self.to_datetime(), "ms")

    def gps_seconds(self) -> float:
        """Seconds since the GPS epoch, 1980-01-06 00:00:00."""
        return (self.mjd - GPS_EPOCH_MJD) * 86400.0 + self.msec / 1000.0

    def gps_week_tow(self) -> tuple[int, float]:
        """GPS week and seconds of week."""
        week, tow = divmod(self.gps_seconds(), SECONDS_PER_WEEK)
        return int(week), tow

    def to_astropy(self, time_system: str = "GPS") -> atime.Time:
        """Return an :class:`astropy.time.Time` for this epoch.

        ``time_system`` is the SP3/IONEX time system tag the epoch was read
        in: ``GPS``, ``GAL``, ``QZS``, ``IRN`` and ``BDT`` are continuous
        GNSS scales tied to GPS time; ``TAI`` and ``UTC`` map onto the
        astropy scales of the same name; ``GLO`` is UTC(SU) = UTC + 3h.
        """
        system = time_system.strip().upper()
        if system in _GPS_LIKE_OFFSETS:
            return atime.Time(self.gps_seconds() + _GPS_LIKE_OFFSETS[system], format="gps")
        if system == "TAI":
            return atime.Time(self.to_datetime(), scale="tai")
        if system in ("UTC", "UT"):
            return atime.Time(self.to_datetime(), scale="utc")
        if system == "GLO":
            return atime.Time(self.to_datetime() - datetime.timedelta(hours=3), scale="utc")
        raise ValueError(f"Unsupported time system: {time_system!r}")

    def __str__(self) -> str:
        return self.to_datetime().isoformat(timespec="milliseconds")
