"""Spatial and temporal TEC interpolation."""

import math

import numpy as np
import pytest

from conftest import make_ionex
from fixed_columns import OutOfDomainQuery
from gnss_epochs import Epoch
from ionex_reader import IONEX_NO_VALUE, IonexFile
from tec_interpolation import TecInterpolator, bilinear, interpolate_in_time

T0 = Epoch.from_calendar(2020, 1, 1)


def _constant(raw):
    return [[raw, raw], [raw, raw]]


@pytest.fixture
def two_map_file(write_ionex):
    """Unit grid, maps at 00:00 and 00:15 holding 10 and 20 TECU everywhere."""
    return write_ionex(make_ionex([_constant(100), _constant(200)]))


@pytest.fixture
def global_file(write_ionex):
    """Full-circle grid whose samples grow by 1 TECU per 5 degrees of longitude."""
    row = list(range(0, 730, 10))
    grid = [row, row, row]
    return write_ionex(make_ionex([grid, grid], lat=(10.0, 0.0, -5.0), lon=(-180.0, 180.0, 5.0)))


class TestKernels:
    def test_bilinear_cell_centre(self):
        assert bilinear(0.0, 0.0, 0.0, 4.0, 0.5, 0.5) == pytest.approx(1.0)

    def test_bilinear_on_node_ignores_missing_corners(self):
        assert bilinear(3.0, math.nan, math.nan, math.nan, 0.0, 0.0) == 3.0
        assert bilinear(3.0, 5.0, math.nan, math.nan, 0.5, 0.0) == pytest.approx(4.0)

    def test_bilinear_with_missing_corner(self):
        assert math.isnan(bilinear(3.0, 5.0, 7.0, math.nan, 0.5, 0.5))

    def test_time_interpolation(self):
        later = T0.add_seconds(900)
        assert interpolate_in_time(T0.add_seconds(450), T0, 10.0, later, 20.0) == pytest.approx(15.0)
        assert interpolate_in_time(T0.add_seconds(225), T0, 10.0, later, 20.0) == pytest.approx(12.5)

    def test_time_interpolation_on_earlier_epoch(self):
        assert interpolate_in_time(T0, T0, 10.0) == 10.0
        with pytest.raises(ValueError):
            interpolate_in_time(T0.add_seconds(1), T0, 10.0)

    def test_time_interpolation_is_elementwise(self):
        later = T0.add_seconds(900)
        out = interpolate_in_time(T0.add_seconds(300), T0, np.array([0.0, 3.0]), later, np.array([3.0, 6.0]))
        np.testing.assert_allclose(out, [1.0, 4.0])


class TestSpatial:
    def test_cell_centre(self, write_ionex):
        path = write_ionex(make_ionex([[[0, 0], [0, 40]]]))
        with IonexFile(path) as inx:
            interp = TecInterpolator(inx)
            tec_map = inx.next_map()
            assert interp.value_at(tec_map, 0.5, 0.5) == pytest.approx(1.0)
            assert interp.value_at(tec_map, 1.0, 1.0) == pytest.approx(4.0)
            assert interp.value_at(tec_map, 0.75, 1.0) == pytest.approx(3.0)

    def test_missing_sample(self, write_ionex):
        path = write_ionex(make_ionex([[[10, 20], [30, IONEX_NO_VALUE]]]))
        with IonexFile(path) as inx:
            interp = TecInterpolator(inx)
            tec_map = inx.next_map()
            assert math.isnan(interp.value_at(tec_map, 0.5, 0.5))
            assert math.isnan(interp.value_at(tec_map, 1.0, 1.0))
            assert interp.value_at(tec_map, 0.0, 0.0) == pytest.approx(1.0)
            assert interp.value_at(tec_map, 0.5, 0.0) == pytest.approx(1.5)

    def test_single_latitude_row(self, write_ionex):
        path = write_ionex(make_ionex([[[10, 20]]], lat=(30.0, 30.0, 0.0)))
        with IonexFile(path) as inx:
            interp = TecInterpolator(inx)
            tec_map = inx.next_map()
            assert interp.value_at(tec_map, 0.5, 30.0) == pytest.approx(1.5)
            assert interp.value_at(tec_map, 1.0, 30.0) == pytest.approx(2.0)
            with pytest.raises(OutOfDomainQuery):
                interp.locate(0.5, 31.0)

    def test_locate_descending_latitude(self, global_file):
        with IonexFile(global_file) as inx:
            cell = TecInterpolator(inx).locate(-177.5, 7.5)
        assert (cell.lat0, cell.lat1, cell.p) == (0, 1, pytest.approx(0.5))
        assert (cell.lon0, cell.lon1, cell.q) == (0, 1, pytest.approx(0.5))

    def test_points_outside_grid(self, global_file):
        with IonexFile(global_file) as inx:
            interp = TecInterpolator(inx)
            with pytest.raises(OutOfDomainQuery):
                interp.locate(0.0, 11.0)
            with pytest.raises(OutOfDomainQuery):
                interp.locate(0.0, -0.5)
            with pytest.raises(OutOfDomainQuery):
                interp.locate(182.5, 5.0)

    def test_longitude_wrap(self, global_file):
        with IonexFile(global_file, wrap_longitude=True) as inx:
            interp = TecInterpolator(inx)
            tec_map = inx.next_map()
            assert interp.value_at(tec_map, 185.0, 5.0) == pytest.approx(1.0)
            assert interp.value_at(tec_map, 182.5, 5.0) == pytest.approx(0.5)
            assert interp.value_at(tec_map, -535.0, 5.0) == pytest.approx(1.0)
            assert interp.value_at(tec_map, 12.5, 5.0) == interp.value_at(tec_map, 372.5, 5.0)

    def test_height_level_required_for_3d(self, write_ionex):
        grid = [[[1, 2], [3, 4]], [[50, 60], [70, 80]]]
        path = write_ionex(make_ionex([grid], hgt=(100.0, 200.0, 100.0)))
        with IonexFile(path) as inx:
            with pytest.raises(OutOfDomainQuery):
                TecInterpolator(inx)
            with pytest.raises(OutOfDomainQuery):
                TecInterpolator(inx, height=150.0)
            interp = TecInterpolator(inx, height=200.0)
            assert interp.value_at(inx.next_map(), 0.0, 0.0) == pytest.approx(5.0)


class TestInterpolate:
    def test_stepped_epochs(self, two_map_file):
        with IonexFile(two_map_file) as inx:
            values = list(TecInterpolator(inx).interpolate([(0.5, 0.5)], T0, T0.add_seconds(900), 450))
        assert [v.epoch for v in values] == [T0, T0.add_seconds(450), T0.add_seconds(900)]
        assert [v.tec for v in values] == pytest.approx([10.0, 15.0, 20.0])
        assert (values[0].longitude, values[0].latitude) == (0.5, 0.5)

    def test_query_on_map_epoch_is_that_map(self, two_map_file):
        with IonexFile(two_map_file) as inx:
            interp = TecInterpolator(inx)
            first = interp.value_at(inx.next_map(), 0.25, 0.75)
            (value,) = interp.interpolate([(0.25, 0.75)], T0, T0, 60)
        assert value.tec == first

    def test_native_epochs(self, two_map_file):
        with IonexFile(two_map_file) as inx:
            values = list(TecInterpolator(inx).interpolate([(0.0, 0.0), (1.0, 1.0)]))
        assert len(values) == 4
        assert [v.epoch for v in values] == [T0, T0, T0.add_seconds(900), T0.add_seconds(900)]
        assert [v.tec for v in values] == pytest.approx([10.0, 10.0, 20.0, 20.0])

    def test_native_epochs_inside_window(self, two_map_file):
        with IonexFile(two_map_file) as inx:
            values = list(TecInterpolator(inx).interpolate([(0.0, 0.0)], T0.add_seconds(1), T0.add_seconds(900)))
        assert [v.epoch for v in values] == [T0.add_seconds(900)]

    def test_point_order_within_epoch(self, global_file):
        points = [(-175.0, 5.0), (-180.0, 5.0), (-170.0, 0.0)]
        with IonexFile(global_file) as inx:
            values = list(TecInterpolator(inx).interpolate(points, time_step=900))
        assert [(v.longitude, v.latitude) for v in values[:3]] == points
        assert [v.tec for v in values[:3]] == pytest.approx([1.0, 0.0, 2.0])

    def test_window_outside_file_span(self, two_map_file):
        with IonexFile(two_map_file) as inx:
            interp = TecInterpolator(inx)
            with pytest.raises(OutOfDomainQuery):
                interp.interpolate([(0.5, 0.5)], T0.add_seconds(-1), T0.add_seconds(900), 60)
            with pytest.raises(OutOfDomainQuery):
                interp.interpolate([(0.5, 0.5)], T0, T0.add_seconds(901), 60)

    def test_point_outside_grid_fails_before_iteration(self, two_map_file):
        with IonexFile(two_map_file) as inx:
            with pytest.raises(OutOfDomainQuery):
                TecInterpolator(inx).interpolate([(0.5, 0.5), (2.0, 0.5)], time_step=60)

    def test_invalid_window(self, two_map_file):
        with IonexFile(two_map_file) as inx:
            interp = TecInterpolator(inx)
            with pytest.raises(ValueError):
                interp.interpolate([(0.5, 0.5)], T0.add_seconds(900), T0, 60)
            with pytest.raises(ValueError):
                interp.interpolate([(0.5, 0.5)], time_step=-60)

    def test_results_are_lazy(self, two_map_file):
        with IonexFile(two_map_file) as inx:
            results = TecInterpolator(inx).interpolate([(0.5, 0.5)], time_step=300)
            assert iter(results) is results
            assert next(results).tec == pytest.approx(10.0)
            assert next(results).tec == pytest.approx(10.0 + 10.0 / 3.0)

    def test_interpolate_twice(self, two_map_file):
        with IonexFile(two_map_file) as inx:
            interp = TecInterpolator(inx)
            first = [v.tec for v in interp.interpolate([(0.5, 0.5)], time_step=300)]
            second = [v.tec for v in interp.interpolate([(0.5, 0.5)], time_step=300)]
        assert first == second
        assert len(first) == 4

    def test_gap_between_maps(self, write_ionex):
        lines = make_ionex([_constant(100), _constant(200)], interval=3600)
        with IonexFile(write_ionex(lines)) as inx:
            values = list(TecInterpolator(inx).interpolate([(0.5, 0.5)], time_step=1200))
        assert [v.tec for v in values] == pytest.approx([10.0, 10.0 + 10.0 / 3.0, 10.0 + 20.0 / 3.0, 20.0])

    def test_to_dataframe(self, two_map_file):
        with IonexFile(two_map_file) as inx:
            df = TecInterpolator(inx).to_dataframe([(0.5, 0.5), (1.0, 0.0)], time_step=450)
        assert list(df.columns) == ["epoch", "lon", "lat", "tec"]
        assert len(df) == 6
        assert df["tec"].tolist() == pytest.approx([10.0, 10.0, 15.0, 15.0, 20.0, 20.0])
        assert df["epoch"].iloc[2].minute == 7
