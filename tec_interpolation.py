"""Interpolate TEC values from an IONEX map stream.

Point queries ``(longitude, latitude, epoch)`` are answered by bilinear
interpolation inside the enclosing grid cell of a map, followed by linear
interpolation in time between the two maps bracketing the epoch. Maps are
streamed in file order and at most two are held at any time, so memory
use does not grow with the file.

Usage:
    from ionex_reader import IonexFile
    from tec_interpolation import TecInterpolator

    with IonexFile("codg0010.20i") as inx:
        for value in TecInterpolator(inx).interpolate([(23.7, 37.9)], time_step=300):
            print(value.epoch, value.tec)
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Iterator, NamedTuple, Optional, Sequence

import numpy as np
import pandas as pd

from fixed_columns import OutOfDomainQuery, UnexpectedEndOfStream
from gnss_epochs import Epoch
from ionex_reader import FULL_CIRCLE, IONEX_NO_VALUE, GridAxis, IonexFile, TecMap

logger = logging.getLogger(__name__)

# A query coordinate within this many tenths of a grid node is on that node.
_ON_NODE_TOLERANCE = 1e-6


class TecValue(NamedTuple):
    epoch: Epoch
    longitude: float
    latitude: float
    tec: float  # TECU, NaN if the grid has no value there


# =============================================================================
# Pure interpolation kernels
# =============================================================================


def bilinear(v00: float, v10: float, v01: float, v11: float, p: float, q: float) -> float:
    """Bilinear interpolation on the unit square.

    ``vij`` is the value at corner ``(i, j)``; ``p`` and ``q`` are the
    fractional offsets along the first and second axis. Corners with zero
    weight do not contribute, so a missing value (NaN) on the far side of
    a grid line does not spoil a query lying on that line.
    """
    weighted = (
        ((1.0 - p) * (1.0 - q), v00),
        (p * (1.0 - q), v10),
        ((1.0 - p) * q, v01),
        (p * q, v11),
    )
    return sum(w * v for w, v in weighted if w != 0.0)


def interpolate_in_time(
    epoch: Epoch,
    earlier_epoch: Epoch,
    earlier_value,
    later_epoch: Optional[Epoch] = None,
    later_value=None,
):
    """Linear interpolation between two bracketing map values.

    A query coincident with ``earlier_epoch`` returns ``earlier_value``
    unchanged. Works element-wise on numpy arrays.
    """
    if epoch == earlier_epoch:
        return earlier_value
    if later_epoch is None:
        raise ValueError("A later map is needed unless the epoch matches the earlier one")
    weight = (epoch - earlier_epoch) / (later_epoch - earlier_epoch)
    return earlier_value + (later_value - earlier_value) * weight


def _axis_cell(axis: GridAxis, value: float, *, periodic: bool, name: str) -> tuple[int, int, float]:
    """Locate ``value`` on ``axis``: (lower index, upper index, fraction).

    Values on a 0.1 grid are handled with integer division; a value on a
    grid node gives fraction 0 and lower == upper.
    """
    scaled = value * 10.0
    nearest = round(scaled)
    if abs(scaled - nearest) < _ON_NODE_TOLERANCE:
        scaled = nearest

    # single-node axis (start == stop, zero step)
    if axis.step10 == 0:
        if scaled != axis.start10:
            raise OutOfDomainQuery(
                f"{name} {value} outside the grid {axis.start}/{axis.stop}/{axis.step}"
            )
        return 0, 0, 0.0

    if periodic:
        if axis.step10 > 0:
            scaled = axis.start10 + (scaled - axis.start10) % FULL_CIRCLE
        else:
            scaled = axis.start10 - (axis.start10 - scaled) % FULL_CIRCLE

    if isinstance(scaled, int):
        lower, rem = divmod(scaled - axis.start10, axis.step10)
        frac = rem / axis.step10
    else:
        pos = (scaled - axis.start10) / axis.step10
        lower = math.floor(pos)
        frac = pos - lower

    last = axis.count - 1
    if frac == 0.0 and 0 <= lower <= last:
        return lower, lower, 0.0
    upper = lower + 1
    if periodic and upper > last:
        upper -= FULL_CIRCLE // abs(axis.step10)
    if lower < 0 or lower > last or not 0 <= upper <= last:
        raise OutOfDomainQuery(
            f"{name} {value} outside the grid {axis.start}/{axis.stop}/{axis.step}"
        )
    return lower, upper, frac


@dataclass(frozen=True)
class _Cell:
    lat0: int
    lat1: int
    p: float
    lon0: int
    lon1: int
    q: float


# =============================================================================
# Engine
# =============================================================================


class _MapWindow:
    """The (at most) two maps bracketing the current query epoch."""

    def __init__(self, ionex: IonexFile, spatial):
        self._ionex = ionex
        self._spatial = spatial
        self.earlier = self._pull()
        if self.earlier is None:
            raise UnexpectedEndOfStream("IONEX file holds no TEC map", ionex.path.name)
        self.later = self._pull()

    def _pull(self) -> Optional[tuple[TecMap, np.ndarray]]:
        tec_map = self._ionex.next_map()
        if tec_map is None:
            return None
        return tec_map, self._spatial(tec_map)

    def advance_to(self, epoch: Epoch) -> None:
        while self.later is not None and self.later[0].epoch <= epoch:
            self.earlier, self.later = self.later, self._pull()
            logger.debug("window advanced to map #%d (%s)", self.earlier[0].index, self.earlier[0].epoch)
        earlier_epoch = self.earlier[0].epoch
        if epoch < earlier_epoch or (epoch > earlier_epoch and self.later is None):
            raise OutOfDomainQuery(f"No TEC maps bracket epoch {epoch}")

    def value_at(self, epoch: Epoch) -> np.ndarray:
        self.advance_to(epoch)
        earlier_map, earlier_values = self.earlier
        if epoch == earlier_map.epoch:
            return earlier_values
        later_map, later_values = self.later
        return interpolate_in_time(epoch, earlier_map.epoch, earlier_values, later_map.epoch, later_values)


class TecInterpolator:
    """Answer (longitude, latitude, epoch) TEC queries against an IONEX file.

    Parameters
    ----------
    ionex : IonexFile
        Open file; its stream is consumed by :meth:`interpolate`.
    height : float | None
        Height level (km) to use for 3-D files. Must be a grid level; it may
        be omitted for 2-D files.
    """

    def __init__(self, ionex: IonexFile, height: Optional[float] = None):
        self.ionex = ionex
        self.header = ionex.header
        hgt_axis = self.header.height
        if height is None:
            if not self.header.is_2d:
                raise OutOfDomainQuery("A height level is required for a 3-D IONEX file", ionex.path.name)
            self._hgt_idx = 0
        else:
            idx = hgt_axis.index_of(int(round(height * 10.0)))
            if idx is None:
                raise OutOfDomainQuery(
                    f"Height {height} km is not a grid level of {hgt_axis.start}/{hgt_axis.stop}/{hgt_axis.step}",
                    ionex.path.name,
                )
            self._hgt_idx = idx

    def locate(self, longitude: float, latitude: float) -> _Cell:
        """Grid cell enclosing a point; raises :class:`OutOfDomainQuery` outside the grid."""
        lat0, lat1, p = _axis_cell(self.header.latitude, latitude, periodic=False, name="Latitude")
        lon0, lon1, q = _axis_cell(
            self.header.longitude, longitude, periodic=self.header.wrap_longitude, name="Longitude"
        )
        return _Cell(lat0, lat1, p, lon0, lon1, q)

    def spatial_values(self, tec_map: TecMap, cells: Sequence[_Cell]) -> np.ndarray:
        """TEC (TECU) of ``tec_map`` at each cell; raw values are interpolated, then scaled."""
        grid = tec_map.values[self._hgt_idx].astype(float)
        grid[tec_map.values[self._hgt_idx] == IONEX_NO_VALUE] = np.nan
        out = np.empty(len(cells))
        for i, c in enumerate(cells):
            out[i] = bilinear(
                grid[c.lat0, c.lon0], grid[c.lat1, c.lon0], grid[c.lat0, c.lon1], grid[c.lat1, c.lon1], c.p, c.q
            )
        return out * 10.0 ** tec_map.exponent

    def value_at(self, tec_map: TecMap, longitude: float, latitude: float) -> float:
        """Spatially interpolated TEC of one map at one point."""
        return float(self.spatial_values(tec_map, [self.locate(longitude, latitude)])[0])

    def interpolate(
        self,
        points: Sequence[tuple[float, float]],
        time_from: Optional[Epoch] = None,
        time_to: Optional[Epoch] = None,
        time_step: int = 0,
    ) -> Iterator[TecValue]:
        """Lazily interpolate TEC at ``points`` over ``[time_from, time_to]``.

        Parameters
        ----------
        points : sequence of (longitude, latitude)
            Query points in degrees.
        time_from, time_to : Epoch | None
            Query window; defaults to the header's first / last map epoch.
        time_step : int
            Seconds between query epochs. ``0`` uses the epochs of the maps
            in the file.

        Returns
        -------
        Iterator[TecValue]
            Time-ordered results, point order within an epoch. The iterator
            consumes the file's map stream once; it cannot be restarted.

        Raises
        ------
        OutOfDomainQuery
            Immediately, if the window or a point lies outside the file's
            declared span.
        """
        hdr = self.header
        time_from = hdr.first_epoch if time_from is None else time_from
        time_to = hdr.last_epoch if time_to is None else time_to
        if time_from < hdr.first_epoch or time_to > hdr.last_epoch:
            raise OutOfDomainQuery(
                f"Query window {time_from} -> {time_to} outside the file span "
                f"{hdr.first_epoch} -> {hdr.last_epoch}",
                self.ionex.path.name,
            )
        if time_from > time_to:
            raise ValueError(f"Query window starts after it ends: {time_from} > {time_to}")
        if time_step < 0:
            raise ValueError(f"Negative time step: {time_step}")

        points = [(float(lon), float(lat)) for lon, lat in points]
        cells = [self.locate(lon, lat) for lon, lat in points]
        logger.debug(
            "interpolating %d points, %s -> %s, step %ss", len(points), time_from, time_to, time_step or "native"
        )
        if time_step == 0:
            return self._native_epochs(points, cells, time_from, time_to)
        return self._stepped_epochs(points, cells, time_from, time_to, time_step)

    def _native_epochs(self, points, cells, time_from: Epoch, time_to: Epoch) -> Iterator[TecValue]:
        self.ionex.rewind()
        for tec_map in self.ionex:
            if tec_map.epoch < time_from:
                continue
            if tec_map.epoch > time_to:
                return
            values = self.spatial_values(tec_map, cells)
            for (lon, lat), tec in zip(points, values):
                yield TecValue(tec_map.epoch, lon, lat, float(tec))

    def _stepped_epochs(self, points, cells, time_from: Epoch, time_to: Epoch, time_step: int) -> Iterator[TecValue]:
        self.ionex.rewind()
        window = _MapWindow(self.ionex, lambda tec_map: self.spatial_values(tec_map, cells))
        epoch = time_from
        while epoch <= time_to:
            values = window.value_at(epoch)
            for (lon, lat), tec in zip(points, values):
                yield TecValue(epoch, lon, lat, float(tec))
            epoch = epoch.add_seconds(time_step)

    def to_dataframe(self, points, time_from=None, time_to=None, time_step: int = 0) -> pd.DataFrame:
        """Collect :meth:`interpolate` into a DataFrame (``epoch``, ``lon``, ``lat``, ``tec``)."""
        rows = [
            (v.epoch.to_datetime(), v.longitude, v.latitude, v.tec)
            for v in self.interpolate(points, time_from, time_to, time_step)
        ]
        df = pd.DataFrame(rows, columns=["epoch", "lon", "lat", "tec"])
        df["epoch"] = pd.to_datetime(df["epoch"])
        return df
