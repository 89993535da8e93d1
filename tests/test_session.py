from __future__ import annotations

import threading

import pytest

from canopysim.errors import InvalidDesign
from canopysim.records import Layout
from canopysim.session import DesignSession, SolveResult
from canopysim.sources import SourceInstance


@pytest.fixture
def session(flower_room, catalog, coarse_settings, bench_config):
    s = DesignSession(flower_room, catalog, coarse_settings)
    s.generate_surfaces(bench_config)
    s.place_sources("spydr-2p")
    return s


def test_edits_mark_dirty_and_recompute_lazily(session):
    assert session.dirty
    before = session.metrics
    assert not session.dirty
    assert session.metrics is before

    session.set_dimming("S-001", 0.5)
    assert session.dirty
    after = session.metrics
    assert not session.dirty
    assert after.average < before.average
    assert after.total_power == pytest.approx(before.total_power - 0.5 * 645.0)


def test_grid_and_metrics_agree(session):
    grid = session.grid
    assert session.metrics.average == pytest.approx(float(grid.values[grid.in_surface].mean()))


def test_source_edits(session):
    n = len(session.sources)
    session.add_source(SourceInstance("S-999", 30.0, 10.0, 5.0, "spydr-2p"))
    assert len(session.sources) == n + 1
    with pytest.raises(InvalidDesign):
        session.add_source(SourceInstance("S-999", 30.0, 10.0, 5.0, "spydr-2p"))
    with pytest.raises(InvalidDesign):
        session.add_source(SourceInstance("S-998", 30.0, 10.0, 5.0, "unknown-lamp"))

    moved = session.move_source("S-999", 31.0, 11.0)
    assert (moved.x, moved.y, moved.z) == (31.0, 11.0, 5.0)
    assert not session.set_enabled("S-999", False).enabled
    assert session.remove_source("S-999").id == "S-999"
    assert len(session.sources) == n

    with pytest.raises(InvalidDesign):
        session.move_source("S-404", 0.0, 0.0)
    with pytest.raises(InvalidDesign):
        session.set_dimming("S-001", 2.0)


def test_disabling_everything_darkens_field(session):
    for s in list(session.sources):
        session.set_enabled(s.id, False)
    m = session.metrics
    assert m.average == 0.0 and m.sources == 0


def test_replace_layout_snapshot(session):
    snap = session.layout
    session.replace_layout(Layout(snap.grow_surfaces, snap.source_instances[:10]))
    assert len(session.sources) == 10
    assert len(snap.source_instances) == 42


def test_request_solve_delivers(session):
    delivered = []
    req = session.request_solve(delivered.append)
    result = req.wait(timeout=30)
    assert isinstance(result, SolveResult)
    assert delivered == [result]
    assert result.metrics.sources == 42
    assert not session.dirty


def test_only_latest_request_delivers(session):
    delivered = []
    done = threading.Event()

    def on_result(r):
        delivered.append(r)
        done.set()

    # hold the session so neither worker can snapshot before both are queued
    with session.editing():
        first = session.request_solve(on_result)
        session.set_dimming("S-001", 0.25)
        second = session.request_solve(on_result)

    assert first.wait(timeout=30) is None
    latest = second.wait(timeout=30)
    assert done.wait(timeout=30)
    assert latest is not None
    assert delivered == [latest]
    assert latest.generation == second.generation > first.generation
    assert latest.layout.source_instances[0].dimming == 0.25


def test_worker_errors_surface_on_wait(session):
    session.sources.append(SourceInstance("S-500", 1.0, 1.0, 5.0, "ghost"))
    req = session.request_solve()
    with pytest.raises(InvalidDesign):
        req.wait(timeout=30)


def _gated(monkeypatch, session, name):
    """Make session.<name> block until released; returns (entered, release)."""
    entered, release = threading.Event(), threading.Event()
    original = getattr(session, name)

    def wrapper(*args, **kwargs):
        entered.set()
        release.wait(timeout=30)
        return original(*args, **kwargs)

    monkeypatch.setattr(session, name, wrapper)
    return entered, release


def test_request_superseded_while_solving(session, monkeypatch):
    delivered = []
    entered, release = _gated(monkeypatch, session, "compute")

    first = session.request_solve(delivered.append)
    assert entered.wait(timeout=30)
    session.set_dimming("S-001", 0.25)
    second = session.request_solve(delivered.append)
    release.set()

    assert first.wait(timeout=30) is None
    latest = second.wait(timeout=30)
    assert latest is not None
    assert delivered == [latest]
    assert latest.layout.source_instances[0].dimming == 0.25


def test_request_superseded_after_solving(session, monkeypatch):
    delivered = []
    entered, release = _gated(monkeypatch, session, "_store")

    # the first worker has a finished field in hand when the second request lands
    first = session.request_solve(delivered.append)
    assert entered.wait(timeout=30)
    session.set_dimming("S-001", 0.25)
    second = session.request_solve(delivered.append)
    release.set()

    assert first.wait(timeout=30) is None
    assert first.result is None
    latest = second.wait(timeout=30)
    assert delivered == [latest]
    assert latest.generation == second.generation
    assert session.metrics.average == pytest.approx(latest.metrics.average)
