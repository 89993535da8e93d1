from __future__ import annotations

import pytest

from canopysim.placement import DensityProfile, plan_sources, required_sources
from canopysim.sources import SourceModel
from canopysim.surfaces import GrowSurface, generate_surfaces


def test_profile_parsing():
    assert DensityProfile.parse("Dense") is DensityProfile.DENSE
    assert DensityProfile.parse(DensityProfile.SPARSE) is DensityProfile.SPARSE
    with pytest.raises(ValueError):
        DensityProfile.parse("packed")


def test_required_count(spydr):
    assert required_sources(320.0, spydr) == 20
    assert required_sources(320.0, spydr, DensityProfile.DENSE.area_factor) == 40
    assert required_sources(321.0, spydr) == 21
    assert required_sources(0.0, spydr) == 0


def test_default_tables_get_exactly_required(flower_room, spydr):
    surfaces = generate_surfaces(flower_room)
    sources, meta = plan_sources(surfaces, spydr, "sparse", canopy_height=3.0)
    assert meta["required"] == 20
    assert meta["placed"] == len(sources) == 20
    assert len(meta["rings"]) == 20
    for s in sources:
        assert any(g.contains(s.x, s.y) for g in surfaces)
        assert s.z == pytest.approx(5.0)
        assert s.enabled and s.dimming == 1.0
        assert s.model_id == "spydr-2p"
    assert sources[0].id == "S-001"
    assert [(s.y, s.x) for s in sources] == sorted((s.y, s.x) for s in sources)


def test_packed_benches_exact_lattice(flower_room, bench_config, spydr):
    surfaces = generate_surfaces(flower_room, bench_config)
    sources, meta = plan_sources(surfaces, spydr, DensityProfile.SPARSE, canopy_height=3.0)
    assert meta["pitch"] == pytest.approx((4.0, 4.0))
    assert meta["lattice"] == (14, 3)
    assert meta["shrink_steps"] == 0 and meta["thinned"] == 0
    assert len(sources) == 42
    assert sorted({s.x for s in sources}) == [6.0 + 4.0 * i for i in range(14)]
    assert sorted({s.y for s in sources}) == [6.0, 10.0, 14.0]


def test_dense_profile_doubles_requirement(flower_room, spydr):
    surfaces = generate_surfaces(flower_room)
    sparse, _ = plan_sources(surfaces, spydr, "sparse")
    dense, meta = plan_sources(surfaces, spydr, "dense")
    assert meta["required"] == 40
    assert len(dense) == meta["placed"] == 40
    assert len(sparse) == 20
    assert len({s.id for s in dense}) == 40
    assert all(any(g.contains(s.x, s.y) for g in surfaces) for s in dense)


def test_pitch_shrinks_until_requirement_met():
    model = SourceModel("small", "small", flux=500.0, power=200.0, coverage_area=4.0, reference_height=2.0)
    # two thin strips at the ends of the bbox; coarse lattices land in the gap
    strips = [GrowSurface("GS-001", 0.0, 0.0, 0.5, 8.0), GrowSurface("GS-002", 7.5, 0.0, 0.5, 8.0)]
    sources, meta = plan_sources(strips, model, "sparse")
    assert meta["required"] == 2
    assert meta["shrink_steps"] > 0
    assert meta["lattice"][0] >= 8
    assert meta["placed"] == len(sources) == 2
    assert meta["thinned"] > 0
    assert sorted(s.x for s in sources) == [0.5, 7.5]


def test_rings_follow_lattice_edges(flower_room, bench_config, spydr):
    surfaces = generate_surfaces(flower_room, bench_config)
    sources, meta = plan_sources(surfaces, spydr, "sparse")
    rings = dict(zip((s.id for s in sources), meta["rings"]))
    inner = {s.id for s in sources if s.y == 10.0 and 6.0 < s.x < 58.0}
    assert len(inner) == 12
    assert all(rings[i] == 1 for i in inner)
    assert sum(1 for r in rings.values() if r == 0) == 30


def test_inset_pulls_lattice_to_the_edges(flower_room, bench_config, spydr):
    surfaces = generate_surfaces(flower_room, bench_config)
    sources, meta = plan_sources(surfaces, spydr, "sparse", inset=0.0)
    assert len(sources) == 42
    xs = sorted({s.x for s in sources})
    assert xs[0] == pytest.approx(4.0) and xs[-1] == pytest.approx(60.0)
    assert sorted({s.y for s in sources}) == pytest.approx([4.0, 10.0, 16.0])
    with pytest.raises(ValueError):
        plan_sources(surfaces, spydr, "sparse", inset=0.75)


def test_mount_height_and_ceiling(spydr):
    surfaces = [GrowSurface("GS-001", 0.0, 0.0, 4.0, 4.0)]
    sources, meta = plan_sources(surfaces, spydr, "sparse", canopy_height=3.0, mount_height=4.0)
    assert sources[0].z == pytest.approx(7.0)
    sources, meta = plan_sources(surfaces, spydr, "sparse", canopy_height=3.0, mount_height=9.0, ceiling=10.0)
    assert sources[0].z == pytest.approx(10.0)
    assert meta["mount_height"] == pytest.approx(7.0)


def test_no_surfaces_no_sources(spydr):
    sources, meta = plan_sources([], spydr)
    assert sources == []
    assert meta["required"] == 0
