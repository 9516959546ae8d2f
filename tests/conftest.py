"""Builders for small, column-exact SP3 and IONEX documents."""

import pytest


# =============================================================================
# SP3
# =============================================================================

GPS_SYSTEM_LINE = "%c G  cc GPS ccc cccc cccc cccc cccc ccccc ccccc ccccc ccccc"


def _field(value, width):
    return " " * width if value is None else f"{value:{width}d}"


def sp3_header(
    sats=("G01", "G02", "G03"),
    first=(2020, 1, 1, 0, 0, 0.0),
    n_epochs=2,
    interval=900.0,
    version="c",
    accuracy=None,
    system_line=GPS_SYSTEM_LINE,
    base_pos=1.25,
    base_clk=1.025,
    declared=None,
    comments=("synthetic orbit for tests",),
):
    y, mo, d, h, mi, s = first
    declared = len(sats) if declared is None else declared
    accuracy = [7] * len(sats) if accuracy is None else accuracy
    lines = [
        f"#{version}P{y:4d} {mo:2d} {d:2d} {h:2d} {mi:2d} {s:11.8f} {n_epochs:7d} ORBIT IGS14 FIT  IGS",
        f"## 2086 {259200.0:15.8f} {interval:14.8f} 58849 0.0000000000000",
    ]
    tokens = list(sats) + ["  0"] * (-len(sats) % 17 or (17 if not sats else 0))
    for i in range(0, len(tokens), 17):
        prefix = f"+  {declared:3d}   " if i == 0 else "+        "
        lines.append(prefix + "".join(tokens[i:i + 17]))
    codes = list(accuracy) + [0] * (len(tokens) - len(accuracy))
    for i in range(0, len(codes), 17):
        lines.append("++       " + "".join(f"{a:3d}" for a in codes[i:i + 17]))
    lines += [
        system_line,
        "%c cc cc ccc ccc cccc cccc cccc cccc ccccc ccccc ccccc ccccc",
        f"%f {base_pos:10.7f} {base_clk:12.9f}  0.00000000000  0.000000000000000",
        "%f  0.0000000  0.000000000  0.00000000000  0.000000000000000",
        "%i    0    0    0    0      0      0      0      0         0",
        "%i    0    0    0    0      0      0      0      0         0",
    ]
    lines += [f"/* {c}" for c in comments]
    return lines


def epoch_line(y, mo, d, h, mi, s=0.0):
    return f"*  {y:4d} {mo:2d} {d:2d} {h:2d} {mi:2d} {s:11.8f}"


def record_line(kind, sat, x, y, z, clk, exps=(7, 6, 7, 18), flags="    "):
    ex, ey, ez, ec = exps
    ce, cp, man, op = flags
    return (
        f"{kind}{sat}{x:14.6f}{y:14.6f}{z:14.6f}{clk:14.6f} "
        f"{_field(ex, 2)} {_field(ey, 2)} {_field(ez, 2)} {_field(ec, 3)} {ce}{cp}  {man}{op}"
    )


def p_line(sat, x, y, z, clk, exps=(7, 6, 7, 18), flags="    "):
    return record_line("P", sat, x, y, z, clk, exps, flags)


def v_line(sat, vx, vy, vz, rate, exps=(10, 10, 10, 20)):
    return record_line("V", sat, vx, vy, vz, rate, exps)


def sample_sp3_lines():
    return sp3_header() + [
        epoch_line(2020, 1, 1, 0, 0),
        p_line("G01", -11044.805800, -10475.672500, 21929.418200, 189.163300),
        v_line("G01", -22948.425100, 5763.481100, -8803.277500, -0.300000),
        p_line("G02", 0.0, 0.0, 0.0, 999999.999999, exps=(99, 99, 99, 999)),
        p_line("G03", 13127.123456, -9876.543210, 20000.000000, -3.456789,
               exps=(99, 5, 5, 99), flags="EPMP"),
        "EP  55   55   55     222 1234567 -1234567 5999999      -30      21 -1230000",
        epoch_line(2020, 1, 1, 0, 15),
        p_line("G01", -11500.000000, -10300.000000, 21800.000000, 189.170000),
        p_line("G03", 13100.000000, -9900.000000, 20010.000000, -3.456790),
        "EOF",
    ]


def write_lines(path, lines):
    path.write_text("\n".join(lines) + "\n")
    return path


@pytest.fixture
def sp3_path(tmp_path):
    return write_lines(tmp_path / "igs20863.sp3", sample_sp3_lines())


# =============================================================================
# IONEX
# =============================================================================


def ionex_line(content, label=""):
    return f"{content:<60}{label:<20}".rstrip()


def _epoch6(fields):
    return "".join(f"{v:6d}" for v in fields)


def _axis(a, b, c):
    return f"  {a:6.1f}{b:6.1f}{c:6.1f}"


def ionex_header(
    lat=(87.5, -87.5, -2.5),
    lon=(-180.0, 180.0, 5.0),
    hgt=(450.0, 450.0, 0.0),
    first=(2020, 1, 1, 0, 0, 0),
    last=(2020, 1, 2, 0, 0, 0),
    interval=3600,
    n_maps=25,
    exponent=-1,
    version="1.0",
    aux=False,
    drop=(),
):
    dim = 2 if hgt[2] == 0 else 3
    records = [
        (f"{version:>8}            IONOSPHERE MAPS     GPS", "IONEX VERSION / TYPE"),
        (f"{'TESTPGM':<20}{'UNITTEST':<20}{'01-JAN-20 00:00':<20}", "PGM / RUN BY / DATE"),
        ("Synthetic global ionosphere maps", "DESCRIPTION"),
        (_epoch6(first), "EPOCH OF FIRST MAP"),
        (_epoch6(last), "EPOCH OF LAST MAP"),
        (f"{interval:6d}", "INTERVAL"),
        (f"{n_maps:6d}", "# OF MAPS IN FILE"),
        ("  COSZ", "MAPPING FUNCTION"),
        (f"{0.0:8.1f}", "ELEVATION CUTOFF"),
        ("", "OBSERVABLES USED"),
        (f"{306:6d}", "# OF STATIONS"),
        (f"{32:6d}", "# OF SATELLITES"),
        (f"{6371.0:8.1f}", "BASE RADIUS"),
        (f"{dim:6d}", "MAP DIMENSION"),
        (_axis(*hgt), "HGT1 / HGT2 / DHGT"),
        (_axis(*lat), "LAT1 / LAT2 / DLAT"),
        (_axis(*lon), "LON1 / LON2 / DLON"),
        (f"{exponent:6d}", "EXPONENT"),
        ("TEC values in 0.1 TECU; 9999, if no value available", "COMMENT"),
    ]
    lines = [ionex_line(c, lbl) for c, lbl in records if lbl not in drop]
    if aux:
        lines += [
            ionex_line("DIFFERENTIAL CODE BIASES", "START OF AUX DATA"),
            ionex_line("   G01    -8.123     0.012", "PRN / BIAS / RMS"),
            ionex_line("DIFFERENTIAL CODE BIASES", "END OF AUX DATA"),
        ]
    lines.append(ionex_line("", "END OF HEADER"))
    return lines


def _grid_values(axis):
    start, stop, step = axis
    if step == 0:
        return [start]
    n = round((stop - start) / step) + 1
    return [start + i * step for i in range(n)]


def map_block(kind, index, epoch, grid, lat, lon, hgt, exponent=None):
    """``grid`` is indexed [height][lat][lon]."""
    lines = [
        ionex_line(f"{index:6d}", f"START OF {kind} MAP"),
        ionex_line(_epoch6(epoch), "EPOCH OF CURRENT MAP"),
    ]
    if exponent is not None:
        lines.append(ionex_line(f"{exponent:6d}", "EXPONENT"))
    for h_idx, h in enumerate(_grid_values(hgt)):
        for l_idx, la in enumerate(_grid_values(lat)):
            lines.append(ionex_line(f"  {la:6.1f}{lon[0]:6.1f}{lon[1]:6.1f}{lon[2]:6.1f}{h:6.1f}",
                                    "LAT/LON1/LON2/DLON/H"))
            row = grid[h_idx][l_idx]
            for i in range(0, len(row), 16):
                lines.append("".join(f"{v:5d}" for v in row[i:i + 16]))
    lines.append(ionex_line(f"{index:6d}", f"END OF {kind} MAP"))
    return lines


def make_ionex(
    grids,
    lat=(0.0, 1.0, 1.0),
    lon=(0.0, 1.0, 1.0),
    hgt=(450.0, 450.0, 0.0),
    first=(2020, 1, 1, 0, 0, 0),
    interval=900,
    exponent=-1,
    map_exponents=None,
    rms=False,
    end_of_file=True,
    **header_kw,
):
    """IONEX lines with one TEC map per entry of ``grids`` (2-D grids are lifted to one height)."""
    grids = [g if isinstance(g[0][0], list) else [g] for g in grids]
    epochs = []
    y, mo, d, h, mi, s = first
    for i in range(len(grids)):
        total = h * 3600 + mi * 60 + s + i * interval
        epochs.append((y, mo, d + total // 86400, (total % 86400) // 3600, (total % 3600) // 60, total % 60))
    lines = ionex_header(lat=lat, lon=lon, hgt=hgt, first=epochs[0], last=epochs[-1],
                         interval=interval, n_maps=len(grids), exponent=exponent, **header_kw)
    for i, (grid, epoch) in enumerate(zip(grids, epochs), start=1):
        exp = None if map_exponents is None else map_exponents[i - 1]
        lines += map_block("TEC", i, epoch, grid, lat, lon, hgt, exponent=exp)
    if rms:
        for i, (grid, epoch) in enumerate(zip(grids, epochs), start=1):
            lines += map_block("RMS", i, epoch, grid, lat, lon, hgt)
    if end_of_file:
        lines.append(ionex_line("", "END OF FILE"))
    return lines


@pytest.fixture
def write_ionex(tmp_path):
    def _write(lines, name="codg0010.20i"):
        return write_lines(tmp_path / name, lines)
    return _write
