from __future__ import annotations

import math

import numpy as np
import pytest

from canopysim.errors import ComputationCancelled, InvalidDesign
from canopysim.geometry import Room
from canopysim.solver import CanopyGrid, mark_in_surface, solve_field
from canopysim.sources import Catalog, Distribution, SourceInstance, SourceModel
from canopysim.surfaces import GrowSurface

BULB = SourceModel(
    "bulb", "bare bulb", flux=400.0 * math.pi, power=100.0,
    coverage_area=4.0, reference_height=1.0, distribution=Distribution.of("isotropic"),
)
CATALOG = Catalog.of(BULB)


@pytest.fixture
def metric_grid():
    # 1 m cells over a 10 m x 4 m room, canopy on the floor
    return CanopyGrid.for_room(Room(10.0, 4.0, 5.0, unit="m"), 1.0, 0.0)


def test_grid_cell_centres():
    grid = CanopyGrid.for_room(Room(66.0, 22.0, 10.0), 4.0, 3.0)
    assert grid.shape == (6, 17)
    assert grid.xs[0] == 2.0 and grid.xs[1] == 6.0
    assert grid.ys[-1] == 22.0
    assert grid.height == 3.0


def test_grid_rejects_bad_resolution():
    with pytest.raises(ValueError):
        CanopyGrid.for_room(Room(10.0, 10.0, 10.0), 0.0, 3.0)


def test_in_surface_mask_inclusive():
    grid = CanopyGrid.for_room(Room(4.0, 2.0, 3.0), 1.0, 1.0)
    # x edge at 1.5 passes through the second column of centres
    grid = mark_in_surface(grid, [GrowSurface("GS-001", 0.0, 0.0, 1.5, 1.0)])
    assert grid.in_surface.tolist() == [[True, True, False, False], [False, False, False, False]]


def test_inverse_square_point_source(metric_grid):
    src = SourceInstance("S-001", 0.5, 0.5, 1.0, "bulb")
    grid = solve_field(metric_grid, [src], CATALOG, "m")
    # flux / (4π d²) with flux = 400π: 100 at 1 m, 50 at sqrt(2) m
    assert grid.values[0, 0] == pytest.approx(100.0)
    assert grid.values[0, 1] == pytest.approx(50.0)
    assert grid.values[1, 1] == pytest.approx(100.0 / 3.0)


def test_monotonic_falloff(metric_grid):
    src = SourceInstance("S-001", 0.5, 0.5, 2.0, "bulb")
    row = solve_field(metric_grid, [src], CATALOG, "m").values[0]
    assert np.all(np.diff(row) < 0)


def test_feet_are_converted_to_metres():
    grid = CanopyGrid.for_room(Room(10.0, 10.0, 10.0, unit="ft"), 1.0, 0.0)
    src = SourceInstance("S-001", 0.5, 0.5, 1.0, "bulb")
    value = solve_field(grid, [src], CATALOG, "ft").values[0, 0]
    assert value == pytest.approx(100.0 / 0.3048 ** 2)


def test_distance_floor_keeps_field_finite(metric_grid):
    src = SourceInstance("S-001", 0.5, 0.5, 0.0, "bulb")
    grid = solve_field(metric_grid, [src], CATALOG, "m", min_distance=0.05)
    assert np.all(np.isfinite(grid.values))
    assert grid.values[0, 0] == pytest.approx(400.0 * math.pi / (4 * math.pi * 0.05 ** 2))


def test_superposition_and_dimming_linearity(metric_grid):
    a = SourceInstance("S-001", 2.5, 1.5, 2.0, "bulb")
    b = SourceInstance("S-002", 7.5, 2.5, 2.0, "bulb")
    both = solve_field(metric_grid, [a, b], CATALOG, "m").values
    only_a = solve_field(metric_grid, [a], CATALOG, "m").values
    only_b = solve_field(metric_grid, [b], CATALOG, "m").values
    assert np.allclose(both, only_a + only_b)

    half = solve_field(metric_grid, [a.dimmed(0.5), b.dimmed(0.5)], CATALOG, "m").values
    assert np.allclose(half, 0.5 * both)


def test_disabled_and_empty_designs_are_dark(metric_grid):
    off = SourceInstance("S-001", 2.5, 1.5, 2.0, "bulb", enabled=False)
    assert not solve_field(metric_grid, [off], CATALOG, "m").values.any()
    assert not solve_field(metric_grid, [], CATALOG, "m").values.any()


def test_lambertian_dark_above_source(metric_grid):
    panel = SourceModel("panel", "panel", flux=1000.0, power=300.0, coverage_area=4.0, reference_height=1.0)
    src = SourceInstance("S-001", 5.0, 2.0, -1.0, "panel")
    grid = solve_field(metric_grid, [src], Catalog.of(panel), "m")
    assert not grid.values.any()


def test_unknown_model_reference(metric_grid):
    src = SourceInstance("S-001", 2.5, 1.5, 2.0, "missing")
    with pytest.raises(InvalidDesign):
        solve_field(metric_grid, [src], CATALOG, "m")


def test_solve_returns_new_grid(metric_grid):
    src = SourceInstance("S-001", 2.5, 1.5, 2.0, "bulb")
    solved = solve_field(metric_grid, [src], CATALOG, "m")
    assert solved is not metric_grid
    assert not metric_grid.values.any()


def test_parallel_rows_match_serial(metric_grid):
    srcs = [SourceInstance(f"S-{i:03d}", 1.0 + 2 * i, 2.0, 1.5, "bulb") for i in range(4)]
    serial = solve_field(metric_grid, srcs, CATALOG, "m", workers=1).values
    threaded = solve_field(metric_grid, srcs, CATALOG, "m", workers=3).values
    assert np.allclose(serial, threaded)


def test_cancel_token_aborts_solve(metric_grid):
    src = SourceInstance("S-001", 2.5, 1.5, 2.0, "bulb")
    with pytest.raises(ComputationCancelled):
        solve_field(metric_grid, [src], CATALOG, "m", cancel=lambda: True)


def test_cancel_checked_per_row(metric_grid):
    src = SourceInstance("S-001", 2.5, 1.5, 2.0, "bulb")
    calls = []

    def cancel():
        calls.append(1)
        return len(calls) > 2

    with pytest.raises(ComputationCancelled):
        solve_field(metric_grid, [src], CATALOG, "m", cancel=cancel)
    assert len(calls) == 3
