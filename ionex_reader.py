"""Read IONEX (IONosphere map EXchange, v1.0/1.1) TEC grid files.

Header records carry their label in columns 61-80; data blocks hold one TEC
map per epoch, each map being one latitude row per
``LAT/LON1/LON2/DLON/H`` record followed by the row's integer samples
(16 per line, I5). RMS and height maps that follow the TEC maps are
skipped.

Grid coordinates are recorded with 0.1 degree (0.1 km for heights)
precision, so they are kept here as integers in tenths; all grid index
arithmetic is integer arithmetic.
"""

from __future__ import annotations

import logging
import pathlib
from dataclasses import dataclass
from typing import Iterator, Optional

import numpy as np
import xarray as xr

from fixed_columns import (
    GnssFileError,
    LineReader,
    NumericConversionFailure,
    StructuralMismatch,
    UnexpectedEndOfStream,
    UnsupportedFormatVersion,
    read_float,
    read_int,
    read_token,
)
from gnss_epochs import Epoch

logger = logging.getLogger(__name__)

SUPPORTED_VERSIONS = (1.0, 1.1)

LABEL_START = 60
LABEL_WIDTH = 20
VALUES_PER_LINE = 16
VALUE_WIDTH = 5
IONEX_NO_VALUE = 9999
DEFAULT_EXPONENT = -1
FULL_CIRCLE = 3600  # tenths of a degree

_REQUIRED_LABELS = (
    "EPOCH OF FIRST MAP",
    "EPOCH OF LAST MAP",
    "INTERVAL",
    "# OF MAPS IN FILE",
    "MAP DIMENSION",
    "HGT1 / HGT2 / DHGT",
    "LAT1 / LAT2 / DLAT",
    "LON1 / LON2 / DLON",
)


def _label(line: str) -> str:
    return read_token(line, LABEL_START, LABEL_WIDTH).strip()


def _tenths(value: float) -> int:
    return int(round(value * 10.0))


# =============================================================================
# Grid / header containers
# =============================================================================


@dataclass(frozen=True)
class GridAxis:
    """One grid axis ``start/stop/step``, stored in tenths of a unit."""

    start10: int
    stop10: int
    step10: int

    @classmethod
    def from_values(cls, start: float, stop: float, step: float) -> "GridAxis":
        axis = cls(_tenths(start), _tenths(stop), _tenths(step))
        if axis.step10 == 0:
            if axis.start10 != axis.stop10:
                raise StructuralMismatch(f"Grid {start}/{stop} has a zero step")
        elif (axis.stop10 - axis.start10) * axis.step10 < 0:
            raise StructuralMismatch(f"Grid step {step} does not lead from {start} to {stop}")
        return axis

    @property
    def start(self) -> float:
        return self.start10 / 10.0

    @property
    def stop(self) -> float:
        return self.stop10 / 10.0

    @property
    def step(self) -> float:
        return self.step10 / 10.0

    @property
    def count(self) -> int:
        if self.step10 == 0:
            return 1
        return round((self.stop10 - self.start10) / self.step10) + 1

    def values(self) -> np.ndarray:
        return (self.start10 + self.step10 * np.arange(self.count)) / 10.0

    def index_of(self, value10: int) -> Optional[int]:
        """Index of the grid node at ``value10`` tenths, ``None`` if off-grid."""
        if self.step10 == 0:
            return 0 if value10 == self.start10 else None
        idx, rem = divmod(value10 - self.start10, self.step10)
        if rem != 0 or not 0 <= idx < self.count:
            return None
        return idx


@dataclass(frozen=True)
class IonexHeader:
    version: float
    file_type: str
    satellite_system: str
    program: str
    run_by: str
    date: str
    first_epoch: Epoch
    last_epoch: Epoch
    interval: int  # seconds, 0 if variable
    num_maps: int
    map_dimension: int
    height: GridAxis  # km
    latitude: GridAxis  # degrees
    longitude: GridAxis  # degrees
    exponent: int = DEFAULT_EXPONENT
    mapping_function: str = ""
    elevation_cutoff: float = 0.0
    base_radius: float = 0.0
    num_stations: Optional[int] = None
    num_satellites: Optional[int] = None
    comments: tuple[str, ...] = ()
    wrap_longitude: bool = False

    @property
    def is_2d(self) -> bool:
        return self.height.step10 == 0

    @property
    def grid_shape(self) -> tuple[int, int, int]:
        return self.height.count, self.latitude.count, self.longitude.count


def _read_epoch6(line: str) -> Epoch:
    """``EPOCH OF ...`` records: six I6 fields."""
    fields = [read_int(line, 6 * i, 6) for i in range(6)]
    try:
        return Epoch.from_calendar(*fields)
    except ValueError as exc:
        raise NumericConversionFailure(f"Invalid epoch: {exc}") from None


def _read_axis(line: str) -> GridAxis:
    """``2X,3F6.1`` grid definition."""
    return GridAxis.from_values(read_float(line, 2, 6), read_float(line, 8, 6), read_float(line, 14, 6))


def _next_line(lines: LineReader, what: str) -> str:
    line = lines.readline()
    if line is None:
        raise UnexpectedEndOfStream(f"IONEX file ends inside the {what}")
    return line


def read_ionex_header(lines: LineReader, *, wrap_longitude: bool = False) -> IonexHeader:
    """Parse the header; on return ``lines`` sits just after ``END OF HEADER``.

    ``wrap_longitude`` makes the longitude axis periodic; it requires a grid
    spanning the full circle.
    """
    fields: dict = {"comments": []}
    with lines.located():
        line = _next_line(lines, "header")
        if _label(line) != "IONEX VERSION / TYPE":
            raise StructuralMismatch(f"First line is not 'IONEX VERSION / TYPE': {_label(line)!r}")
        version = read_float(line, 0, 8)
        if version not in SUPPORTED_VERSIONS:
            raise UnsupportedFormatVersion(f"Unsupported IONEX version {version}")
        file_type = read_token(line, 20, 1)
        if file_type != "I":
            raise StructuralMismatch(f"File type {file_type!r} is not 'I'")
        fields["satellite_system"] = read_token(line, 40, 20).strip()

        line = _next_line(lines, "header")
        if _label(line) != "PGM / RUN BY / DATE":
            raise StructuralMismatch(f"Second line is not 'PGM / RUN BY / DATE': {_label(line)!r}")
        fields["program"] = read_token(line, 0, 20).strip()
        fields["run_by"] = read_token(line, 20, 20).strip()
        fields["date"] = read_token(line, 40, 20).strip()

        while True:
            line = _next_line(lines, "header")
            label = _label(line)
            if label == "END OF HEADER":
                break
            if label in ("COMMENT", "DESCRIPTION"):
                fields["comments"].append(read_token(line, 0, LABEL_START).rstrip())
            elif label == "EPOCH OF FIRST MAP":
                fields[label] = _read_epoch6(line)
            elif label == "EPOCH OF LAST MAP":
                fields[label] = _read_epoch6(line)
            elif label in ("INTERVAL", "# OF MAPS IN FILE", "MAP DIMENSION"):
                fields[label] = read_int(line, 0, 6)
            elif label == "EXPONENT":
                fields["exponent"] = read_int(line, 0, 6)
            elif label == "# OF STATIONS":
                fields["num_stations"] = read_int(line, 0, 6)
            elif label == "# OF SATELLITES":
                fields["num_satellites"] = read_int(line, 0, 6)
            elif label == "MAPPING FUNCTION":
                fields["mapping_function"] = read_token(line, 2, 4).strip()
            elif label == "ELEVATION CUTOFF":
                fields["elevation_cutoff"] = read_float(line, 0, 8)
            elif label == "BASE RADIUS":
                fields["base_radius"] = read_float(line, 0, 8)
            elif label in ("HGT1 / HGT2 / DHGT", "LAT1 / LAT2 / DLAT", "LON1 / LON2 / DLON"):
                fields[label] = _read_axis(line)
            elif label.startswith("START OF AUX DATA"):
                _skip_block(lines, "END OF AUX DATA")
            else:
                logger.debug("IONEX header: ignoring %r", label)

        missing = [name for name in _REQUIRED_LABELS if name not in fields]
        if missing:
            raise StructuralMismatch(f"IONEX header lacks {', '.join(missing)}")

        longitude = fields["LON1 / LON2 / DLON"]
        if wrap_longitude and abs(longitude.stop10 - longitude.start10) + abs(longitude.step10) < FULL_CIRCLE:
            raise ValueError("Longitude wraparound needs a grid covering the full circle")

        lines.mark_data_start()

    header = IonexHeader(
        version=version,
        file_type=file_type,
        satellite_system=fields["satellite_system"],
        program=fields["program"],
        run_by=fields["run_by"],
        date=fields["date"],
        first_epoch=fields["EPOCH OF FIRST MAP"],
        last_epoch=fields["EPOCH OF LAST MAP"],
        interval=fields["INTERVAL"],
        num_maps=fields["# OF MAPS IN FILE"],
        map_dimension=fields["MAP DIMENSION"],
        height=fields["HGT1 / HGT2 / DHGT"],
        latitude=fields["LAT1 / LAT2 / DLAT"],
        longitude=longitude,
        exponent=fields.get("exponent", DEFAULT_EXPONENT),
        mapping_function=fields.get("mapping_function", ""),
        elevation_cutoff=fields.get("elevation_cutoff", 0.0),
        base_radius=fields.get("base_radius", 0.0),
        num_stations=fields.get("num_stations"),
        num_satellites=fields.get("num_satellites"),
        comments=tuple(fields["comments"]),
        wrap_longitude=wrap_longitude,
    )
    if (header.map_dimension == 2) != header.is_2d:
        logger.warning(
            "IONEX header: MAP DIMENSION %d disagrees with height grid %s/%s/%s",
            header.map_dimension, header.height.start, header.height.stop, header.height.step,
        )
    if header.interval and header.num_maps > 1:
        expected = header.first_epoch.add_seconds(header.interval * (header.num_maps - 1))
        if expected != header.last_epoch:
            logger.warning(
                "IONEX header: last map epoch %s, but %d maps every %ds from %s end at %s",
                header.last_epoch, header.num_maps, header.interval, header.first_epoch, expected,
            )
    logger.debug(
        "IONEX header: %s -> %s every %ds, %d maps, grid %s, exponent %d",
        header.first_epoch, header.last_epoch, header.interval, header.num_maps,
        header.grid_shape, header.exponent,
    )
    return header


def _skip_block(lines: LineReader, end_label: str) -> None:
    while True:
        line = _next_line(lines, end_label.replace("END", "block ending with"))
        if _label(line).startswith(end_label):
            return


# =============================================================================
# Maps
# =============================================================================


@dataclass
class TecMap:
    """One TEC map: raw integer samples indexed ``[height, latitude, longitude]``.

    The physical value of a sample is ``raw * 10 ** exponent`` TECU;
    ``IONEX_NO_VALUE`` marks a missing sample.
    """

    index: int
    epoch: Epoch
    exponent: int
    values: np.ndarray
    header: IonexHeader

    def raw(self, lat_idx: int, lon_idx: int, hgt_idx: int = 0) -> int:
        return int(self.values[hgt_idx, lat_idx, lon_idx])

    def tec(self) -> np.ndarray:
        """Physical TEC values, NaN where the file has no value."""
        out = self.values.astype(float) * 10.0 ** self.exponent
        out[self.values == IONEX_NO_VALUE] = np.nan
        return out

    def to_dataarray(self) -> xr.DataArray:
        """The map as an :class:`xarray.DataArray` (height dim dropped for 2-D files)."""
        hdr = self.header
        da = xr.DataArray(
            self.tec(),
            dims=("height", "lat", "lon"),
            coords={
                "height": hdr.height.values(),
                "lat": hdr.latitude.values(),
                "lon": hdr.longitude.values(),
            },
            name="tec",
            attrs={"units": "TECU", "epoch": str(self.epoch), "map_index": self.index},
        )
        if hdr.is_2d:
            da = da.isel(height=0, drop=True)
        return da


class IonexFile:
    """An open IONEX file: header plus a forward-only TEC map stream.

    Parameters
    ----------
    path : str | pathlib.Path
        IONEX file (``.gz`` compressed files are read transparently).
    wrap_longitude : bool
        Treat longitude as periodic when interpolating (full-circle grids).
    encoding : str
        Text encoding; undecodable bytes are ignored.
    """

    def __init__(self, path: str | pathlib.Path, *, wrap_longitude: bool = False, encoding: str = "utf-8"):
        self.path = pathlib.Path(path)
        self._lines = LineReader(self.path, encoding=encoding)
        try:
            self.header = read_ionex_header(self._lines, wrap_longitude=wrap_longitude)
        except (GnssFileError, ValueError):
            self._lines.close()
            raise
        self._at_eof = False

    def close(self) -> None:
        self._lines.close()

    def __enter__(self) -> "IonexFile":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @property
    def end_of_header(self) -> int:
        return self._lines.data_start

    def rewind(self) -> None:
        """Restart the map stream from the first map."""
        self._lines.rewind()
        self._at_eof = False

    def next_map(self) -> Optional[TecMap]:
        """Read the next TEC map; ``None`` after ``END OF FILE``.

        Raises
        ------
        UnexpectedEndOfStream
            The file ends without ``END OF FILE``.
        StructuralMismatch
            A block or row record is missing or misplaced.
        NumericConversionFailure
            A sample or coordinate is not a number.
        """
        if self._at_eof:
            return None
        lines = self._lines
        with lines.located():
            while True:
                line = lines.readline()
                if line is None:
                    raise UnexpectedEndOfStream("IONEX file ends without 'END OF FILE'")
                label = _label(line)
                if label == "END OF FILE":
                    self._at_eof = True
                    return None
                if label == "START OF TEC MAP":
                    break
                if label == "START OF RMS MAP":
                    _skip_block(lines, "END OF RMS MAP")
                elif label == "START OF HEIGHT MAP":
                    _skip_block(lines, "END OF HEIGHT MAP")
                elif line.strip():
                    raise StructuralMismatch(f"Expected 'START OF TEC MAP', found {label!r}")
            tec_map = self._read_tec_map(read_int(line, 0, 6))
        logger.debug("%s: TEC map #%d at %s", self.path.name, tec_map.index, tec_map.epoch)
        return tec_map

    def __iter__(self) -> Iterator[TecMap]:
        while True:
            tec_map = self.next_map()
            if tec_map is None:
                return
            yield tec_map

    def _read_tec_map(self, index: int) -> TecMap:
        hdr = self.header
        lines = self._lines
        line = _next_line(lines, "TEC map")
        if _label(line) != "EPOCH OF CURRENT MAP":
            raise StructuralMismatch(f"Expected 'EPOCH OF CURRENT MAP', found {_label(line)!r}")
        epoch = _read_epoch6(line)

        n_hgt, n_lat, n_lon = hdr.grid_shape
        values = np.full((n_hgt, n_lat, n_lon), IONEX_NO_VALUE, dtype=np.int32)
        filled = np.zeros((n_hgt, n_lat), dtype=bool)
        exponent = hdr.exponent

        while True:
            line = _next_line(lines, "TEC map")
            label = _label(line)
            if label == "END OF TEC MAP":
                if read_int(line, 0, 6) != index:
                    raise StructuralMismatch(f"'END OF TEC MAP' does not close map #{index}")
                break
            if label == "EXPONENT":
                exponent = read_int(line, 0, 6)
                continue
            if label != "LAT/LON1/LON2/DLON/H":
                raise StructuralMismatch(f"Expected a 'LAT/LON1/LON2/DLON/H' record, found {label!r}")

            lat10 = _tenths(read_float(line, 2, 6))
            row_lon = GridAxis.from_values(read_float(line, 8, 6), read_float(line, 14, 6), read_float(line, 20, 6))
            hgt10 = _tenths(read_float(line, 26, 6))
            lat_idx = hdr.latitude.index_of(lat10)
            hgt_idx = hdr.height.index_of(hgt10)
            if lat_idx is None or hgt_idx is None:
                raise StructuralMismatch(f"Row at lat {lat10 / 10} / height {hgt10 / 10} is off the header grid")
            if row_lon != hdr.longitude:
                raise StructuralMismatch("Row longitude span differs from the header grid")

            row = values[hgt_idx, lat_idx]
            for first in range(0, n_lon, VALUES_PER_LINE):
                line = _next_line(lines, "TEC map")
                for k in range(min(VALUES_PER_LINE, n_lon - first)):
                    row[first + k] = read_int(line, k * VALUE_WIDTH, VALUE_WIDTH)
            filled[hgt_idx, lat_idx] = True

        if not filled.all():
            raise StructuralMismatch(f"TEC map #{index} is missing {int((~filled).sum())} latitude rows")
        return TecMap(index=index, epoch=epoch, exponent=exponent, values=values, header=hdr)

    def to_dataset(self) -> xr.Dataset:
        """Load every TEC map into one :class:`xarray.Dataset` (``time`` dimension).

        Unlike the map stream this holds the whole file in memory.
        """
        self.rewind()
        arrays = [m.to_dataarray().expand_dims(time=[m.epoch.to_datetime64()]) for m in self]
        if not arrays:
            raise RuntimeError(f"No TEC maps found in {self.path}")
        ds = xr.concat(arrays, dim="time").to_dataset(name="tec")
        ds.attrs.update(
            {
                "exponent": self.header.exponent,
                "base_radius_km": self.header.base_radius,
                "mapping_function": self.header.mapping_function,
            }
        )
        return ds
