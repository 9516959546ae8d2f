"""inxtr - interpolate and report TEC values from an IONEX file.

Reads an IONEX file and prints interpolated TEC for a lat/lon grid of points
over a time window as CSV on stdout.

References: IONEX: The IONosphere Map EXchange Format Version 1,
S. Schaer, W. Gurtner, J. Feltens.

Example:

$ inxtr -i codg0010.20i --start 2020/01/01T06:00:00 --stop 12:00:00 \
        --interval 900 --lat 30/40/2.5 --lon 20/30/5
"""

from __future__ import annotations

import argparse
import logging
import re
import sys
from typing import Optional, Sequence

import numpy as np

from fixed_columns import GnssFileError
from gnss_epochs import Epoch
from ionex_reader import IonexFile
from tec_interpolation import TecInterpolator

logger = logging.getLogger("inxtr")

_DATETIME_RE = re.compile(r"^(\d{4})/(\d{1,2})/(\d{1,2})[T ](\d{1,2}):(\d{1,2}):(\d{1,2}(?:\.\d*)?)$")
_TIME_RE = re.compile(r"^(\d{1,2}):(\d{1,2}):(\d{1,2}(?:\.\d*)?)$")


def resolve_geo_range(text: str) -> tuple[float, float, float]:
    """Resolve a ``from/to/step`` range string."""
    parts = text.split("/")
    if len(parts) != 3:
        raise ValueError(f"Range must look like from/to/step, got {text!r}")
    start, stop, step = (float(p) for p in parts)
    if step == 0.0 and start != stop:
        raise ValueError(f"Zero step in range {text!r}")
    if step != 0.0 and (stop - start) * step < 0:
        raise ValueError(f"Step of range {text!r} does not lead from {start} to {stop}")
    return start, stop, step


def range_values(start: float, stop: float, step: float) -> np.ndarray:
    """Nodes of an inclusive range."""
    if step == 0.0:
        return np.array([start])
    count = int(np.floor((stop - start) / step + 1e-9)) + 1
    return start + step * np.arange(count)


def resolve_str_date(text: str, reference: Epoch) -> Epoch:
    """Resolve ``YYYY/MM/DDTHH:MM:SS`` or ``HH:MM:SS``.

    A bare time of day is taken on the day of ``reference``.
    """
    m = _DATETIME_RE.match(text.strip())
    if m:
        y, mo, d, h, mi = (int(g) for g in m.groups()[:5])
        return Epoch.from_calendar(y, mo, d, h, mi, float(m.group(6)))
    m = _TIME_RE.match(text.strip())
    if m:
        h, mi = int(m.group(1)), int(m.group(2))
        seconds = float(m.group(3))
        if not (h < 24 and mi < 60 and seconds < 60.0):
            raise ValueError(f"Invalid time of day {text!r}")
        return Epoch(reference.mjd, 0).add_seconds(h * 3600 + mi * 60 + seconds)
    raise ValueError(f"Cannot resolve a date from {text!r}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="inxtr",
        description="Interpolate TEC values from an IONEX file for a region and time window.",
        epilog="Ranges default to the grid and time span declared in the IONEX header.",
    )
    parser.add_argument("-i", "--ionex", required=True, help="Input IONEX file.")
    parser.add_argument("--start", help="First epoch, YYYY/MM/DDTHH:MM:SS or HH:MM:SS.")
    parser.add_argument("--stop", help="Last epoch, YYYY/MM/DDTHH:MM:SS or HH:MM:SS.")
    parser.add_argument(
        "--interval", type=int, default=0,
        help="Seconds between output epochs; 0 (default) reports at the map epochs.",
    )
    parser.add_argument("--lat", help="Latitude range from/to/step (degrees).")
    parser.add_argument("--lon", help="Longitude range from/to/step (degrees).")
    parser.add_argument("--dlat", type=float, help="Override the latitude step.")
    parser.add_argument("--dlon", type=float, help="Override the longitude step.")
    parser.add_argument("--height", type=float, help="Height level (km) for 3-D files.")
    parser.add_argument("--wrap", action="store_true", help="Treat longitude as periodic.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log progress to stderr.")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    if args.interval < 0:
        print("ERROR. Invalid time interval (<0).", file=sys.stderr)
        return 1

    try:
        with IonexFile(args.ionex, wrap_longitude=args.wrap) as inx:
            hdr = inx.header
            try:
                start = hdr.first_epoch if args.start is None else resolve_str_date(args.start, hdr.first_epoch)
                stop = hdr.last_epoch if args.stop is None else resolve_str_date(args.stop, hdr.first_epoch)
                lat = (hdr.latitude.start, hdr.latitude.stop, hdr.latitude.step) if args.lat is None \
                    else resolve_geo_range(args.lat)
                lon = (hdr.longitude.start, hdr.longitude.stop, hdr.longitude.step) if args.lon is None \
                    else resolve_geo_range(args.lon)
                if args.dlat is not None:
                    lat = resolve_geo_range(f"{lat[0]}/{lat[1]}/{args.dlat}")
                if args.dlon is not None:
                    lon = resolve_geo_range(f"{lon[0]}/{lon[1]}/{args.dlon}")
            except ValueError as exc:
                print(f"ERROR. {exc}", file=sys.stderr)
                return 1

            points = [(lo, la) for la in range_values(*lat) for lo in range_values(*lon)]
            logger.info("%s: %d points, %s -> %s", args.ionex, len(points), start, stop)

            interpolator = TecInterpolator(inx, height=args.height)
            df = interpolator.to_dataframe(points, start, stop, args.interval)
    except (GnssFileError, ValueError) as exc:
        print(f"ERROR. {exc}", file=sys.stderr)
        return 1

    df.to_csv(sys.stdout, index=False, float_format="%.4f")
    return 0


if __name__ == "__main__":
    sys.exit(main())
