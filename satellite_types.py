"""
Satellite identifiers and per-epoch satellite state / clock containers.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Optional

import numpy as np


class SatelliteSystem(enum.Enum):
    GPS = "G"
    GLONASS = "R"
    GALILEO = "E"
    BEIDOU = "C"
    QZSS = "J"
    IRNSS = "I"
    SBAS = "S"
    LEO = "L"
    MIXED = "M"

    @classmethod
    def lookup(cls, char: str) -> Optional["SatelliteSystem"]:
        """Return the system for a one-letter code, ``None`` if unknown."""
        try:
            return cls(char.upper())
        except ValueError:
            return None


@dataclass(frozen=True, order=True)
class SatelliteId:
    """System + PRN, e.g. ``G01``."""

    system: str
    prn: int

    @classmethod
    def from_token(cls, token: str) -> "SatelliteId":
        """Parse a 3-character token such as ``'G01'``, ``'R24'`` or ``' 05'``.

        A blank system letter is GPS (SP3-a convention).

        Raises
        ------
        ValueError
            If the token is not a satellite identifier.
        """
        if len(token) != 3:
            raise ValueError(f"Satellite token must have 3 characters, got {token!r}")
        char = token[0] if token[0] != " " else "G"
        system = SatelliteSystem.lookup(char)
        if system is None or system is SatelliteSystem.MIXED:
            raise ValueError(f"Unknown satellite system in token {token!r}")
        digits = token[1:].strip()
        if not digits.isdigit() or int(digits) == 0:
            raise ValueError(f"Invalid PRN in satellite token {token!r}")
        return cls(system.value, int(digits))

    @property
    def satellite_system(self) -> SatelliteSystem:
        return SatelliteSystem(self.system)

    def __str__(self) -> str:
        return f"{self.system}{self.prn:02d}"


class StateFlag(enum.Flag):
    NO_VELOCITY = enum.auto()
    BAD_OR_ABSENT = enum.auto()
    UNKNOWN_ACCURACY = enum.auto()
    NO_VELOCITY_ACCURACY = enum.auto()
    MANEUVER = enum.auto()
    PREDICTION = enum.auto()


class ClockFlag(enum.Flag):
    NO_VELOCITY = enum.auto()
    BAD_OR_ABSENT = enum.auto()
    UNKNOWN_ACCURACY = enum.auto()
    NO_VELOCITY_ACCURACY = enum.auto()
    DISCONTINUITY = enum.auto()
    PREDICTION = enum.auto()


Triplet = tuple[float, float, float]


@dataclass(slots=True)
class SatelliteState:
    """Position (km) and optional velocity (km/s) of one satellite at one epoch.

    Standard deviations are ``base ** exponent`` as declared in the file:
    mm for position, 1e-4 mm/s for velocity. ``None`` means not available.
    """

    x: float
    y: float
    z: float
    flags: StateFlag = StateFlag.NO_VELOCITY
    sdev: Optional[Triplet] = None
    vx: Optional[float] = None
    vy: Optional[float] = None
    vz: Optional[float] = None
    sdev_velocity: Optional[Triplet] = None

    @property
    def position(self) -> np.ndarray:
        return np.array([self.x, self.y, self.z])

    @property
    def velocity(self) -> Optional[np.ndarray]:
        if self.vx is None:
            return None
        return np.array([self.vx, self.vy, self.vz])

    @property
    def absent(self) -> bool:
        return bool(self.flags & StateFlag.BAD_OR_ABSENT)

    def apply_velocity(self, velocity: Optional[Triplet], sdev: Optional[Triplet]) -> None:
        """Attach a decoded velocity record.

        ``velocity=None`` (absent in the file) leaves the components untouched
        and sets ``NO_VELOCITY``; ``sdev=None`` (unknown accuracy) keeps the
        current standard deviations and sets ``NO_VELOCITY_ACCURACY``.
        """
        if velocity is None:
            self.flags |= StateFlag.NO_VELOCITY
        else:
            self.vx, self.vy, self.vz = velocity
            self.flags &= ~StateFlag.NO_VELOCITY
        if sdev is None:
            self.flags |= StateFlag.NO_VELOCITY_ACCURACY
        else:
            self.sdev_velocity = sdev


@dataclass(slots=True)
class SatelliteClock:
    """Clock correction (microseconds), optional rate (microseconds/second)."""

    bias: float
    flags: ClockFlag = ClockFlag.NO_VELOCITY
    sdev: Optional[float] = None
    rate: Optional[float] = None
    sdev_rate: Optional[float] = None

    @property
    def absent(self) -> bool:
        return bool(self.flags & ClockFlag.BAD_OR_ABSENT)

    def apply_rate(self, rate: Optional[float], sdev: Optional[float]) -> None:
        """Clock counterpart of :meth:`SatelliteState.apply_velocity`."""
        if rate is None:
            self.flags |= ClockFlag.NO_VELOCITY
        else:
            self.rate = rate
            self.flags &= ~ClockFlag.NO_VELOCITY
        if sdev is None:
            self.flags |= ClockFlag.NO_VELOCITY_ACCURACY
        else:
            self.sdev_rate = sdev
