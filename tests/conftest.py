from __future__ import annotations

import pytest

from canopysim.env import EngineSettings
from canopysim.geometry import Room, Site
from canopysim.sources import Catalog
from canopysim.surfaces import LayoutConfig


@pytest.fixture
def catalog():
    return Catalog.builtin()


@pytest.fixture
def spydr(catalog):
    return catalog["spydr-2p"]


@pytest.fixture
def flower_room():
    """66' x 22' x 10' room, no obstacles."""
    return Site(Room(66.0, 22.0, 10.0, unit="ft"))


@pytest.fixture
def bench_config():
    """4' x 4' benches packed edge to edge, 4' perimeter clearance."""
    return LayoutConfig(surface_length=4.0, surface_width=4.0, aisle_width=0.0, clearance=4.0)


@pytest.fixture
def coarse_settings():
    # 4' cells centred under a 4' source pitch
    return EngineSettings(
        canopy_resolution=4.0,
        canopy_height=3.0,
        placement_profile="sparse",
        max_iterations=20,
        min_distance_m=0.05,
        photoperiod_hours=12.0,
        solver_workers=1,
    )
