"""
canopysim.session

Caller-owned design state: surfaces, sources, and the lazily recomputed
grid / metrics. Every edit marks the session dirty.

Background solves are generation-numbered. A new request bumps the
generation, and any older solve still running sees its cancel token trip at
the next row boundary. Only the newest request ever delivers a result;
superseded ones resolve to None.
"""

from __future__ import annotations

import contextlib
import logging
import threading
from dataclasses import dataclass, replace
from typing import Callable, Iterator, List, Optional, Tuple

from .env import EngineSettings
from .errors import ComputationCancelled, InvalidDesign
from .geometry import Site
from .metrics import Metrics, aggregate
from .placement import DensityProfile, plan_sources
from .records import Layout
from .solver import CanopyGrid, mark_in_surface, solve_field
from .sources import Catalog, SourceInstance
from .surfaces import GrowSurface, LayoutConfig, generate_surfaces

logger = logging.getLogger(__name__)


@dataclass
class SolveResult:
    generation: int
    layout: Layout
    grid: CanopyGrid
    metrics: Metrics


class SolveRequest:
    """Handle for one background solve."""

    def __init__(self, generation: int):
        self.generation = generation
        self.result: Optional[SolveResult] = None
        self.error: Optional[BaseException] = None
        self._done = threading.Event()

    def done(self) -> bool:
        return self._done.is_set()

    def wait(self, timeout: float | None = None) -> Optional[SolveResult]:
        if not self._done.wait(timeout):
            raise TimeoutError(f"solve request #{self.generation} still running")
        if self.error is not None:
            raise self.error
        return self.result


class DesignSession:
    def __init__(self, site: Site, catalog: Catalog | None = None, settings: EngineSettings | None = None):
        self.site = site
        self.catalog = catalog if catalog is not None else Catalog.builtin()
        self.settings = settings or EngineSettings.from_env()
        self.surfaces: List[GrowSurface] = []
        self.sources: List[SourceInstance] = []
        self._lock = threading.RLock()
        self._version = 0
        self._dirty = True
        self._grid: Optional[CanopyGrid] = None
        self._metrics: Optional[Metrics] = None
        self.scheduler = SolveScheduler(self)

    # ── state ────────────────────────────────────────────────────────────────
    @property
    def dirty(self) -> bool:
        return self._dirty

    def _touch(self) -> None:
        self._version += 1
        self._dirty = True

    @contextlib.contextmanager
    def editing(self) -> Iterator["DesignSession"]:
        """Apply a batch of edits atomically with respect to background solves."""
        with self._lock:
            yield self

    def snapshot(self) -> Tuple[int, Layout]:
        with self._lock:
            return self._version, self.layout

    @property
    def layout(self) -> Layout:
        with self._lock:
            return Layout(list(self.surfaces), list(self.sources))

    # ── edits ────────────────────────────────────────────────────────────────
    def generate_surfaces(self, config: LayoutConfig | None = None) -> List[GrowSurface]:
        surfaces = generate_surfaces(self.site, config)
        with self._lock:
            self.surfaces = surfaces
            self._touch()
        return list(surfaces)

    def place_sources(
        self,
        model_id: str,
        profile: DensityProfile | str | None = None,
        mount_height: float | None = None,
    ) -> List[SourceInstance]:
        model = self.catalog.require(model_id)
        with self._lock:
            instances, meta = plan_sources(
                self.surfaces, model,
                profile if profile is not None else self.settings.placement_profile,
                self.settings.canopy_height,
                mount_height=mount_height,
                ceiling=self.site.room.height,
            )
            self.sources = instances
            self._touch()
        return list(instances)

    def _index(self, source_id: str) -> int:
        for i, s in enumerate(self.sources):
            if s.id == source_id:
                return i
        raise InvalidDesign(f"no source with id {source_id!r}", {"source": source_id})

    def add_source(self, instance: SourceInstance) -> None:
        self.catalog.require(instance.model_id)
        with self._lock:
            if any(s.id == instance.id for s in self.sources):
                raise InvalidDesign(f"duplicate source id {instance.id!r}", {"source": instance.id})
            self.sources.append(instance)
            self._touch()

    def move_source(self, source_id: str, x: float, y: float, z: float | None = None) -> SourceInstance:
        with self._lock:
            i = self._index(source_id)
            self.sources[i] = self.sources[i].moved(x, y, z)
            self._touch()
            return self.sources[i]

    def set_dimming(self, source_id: str, level: float) -> SourceInstance:
        with self._lock:
            i = self._index(source_id)
            self.sources[i] = self.sources[i].dimmed(level)
            self._touch()
            return self.sources[i]

    def set_enabled(self, source_id: str, enabled: bool) -> SourceInstance:
        with self._lock:
            i = self._index(source_id)
            self.sources[i] = replace(self.sources[i], enabled=bool(enabled))
            self._touch()
            return self.sources[i]

    def remove_source(self, source_id: str) -> SourceInstance:
        with self._lock:
            s = self.sources.pop(self._index(source_id))
            self._touch()
            return s

    def replace_layout(self, layout: Layout) -> None:
        for s in layout.source_instances:
            self.catalog.require(s.model_id)
        with self._lock:
            self.surfaces = list(layout.grow_surfaces)
            self.sources = list(layout.source_instances)
            self._touch()

    # ── results ──────────────────────────────────────────────────────────────
    def compute(self, layout: Layout, cancel: Callable[[], bool] | None = None) -> Tuple[CanopyGrid, Metrics]:
        s = self.settings
        grid = mark_in_surface(
            CanopyGrid.for_room(self.site.room, s.canopy_resolution, s.canopy_height),
            layout.grow_surfaces,
        )
        grid = solve_field(
            grid, layout.source_instances, self.catalog, self.site.unit,
            min_distance=s.min_distance_m, workers=s.solver_workers, cancel=cancel,
        )
        metrics = aggregate(grid, layout.source_instances, self.catalog, self.site.floor_area, s.photoperiod_hours)
        return grid, metrics

    def _store(self, version: int, grid: CanopyGrid, metrics: Metrics) -> None:
        with self._lock:
            if version == self._version:
                self._grid, self._metrics = grid, metrics
                self._dirty = False

    def _refresh(self) -> None:
        if self._dirty or self._grid is None:
            version, layout = self.snapshot()
            grid, metrics = self.compute(layout)
            self._store(version, grid, metrics)

    @property
    def grid(self) -> CanopyGrid:
        with self._lock:
            self._refresh()
            return self._grid

    @property
    def metrics(self) -> Metrics:
        with self._lock:
            self._refresh()
            return self._metrics

    def request_solve(self, on_result: Callable[[SolveResult], None] | None = None) -> SolveRequest:
        return self.scheduler.submit(on_result)


class SolveScheduler:
    """Runs session solves on daemon threads; newer requests supersede older ones."""

    def __init__(self, session: DesignSession):
        self.session = session
        self._gen_lock = threading.Lock()
        self._generation = 0

    @property
    def generation(self) -> int:
        return self._generation

    def _is_stale(self, generation: int) -> bool:
        return generation != self._generation

    def submit(self, on_result: Callable[[SolveResult], None] | None = None) -> SolveRequest:
        with self._gen_lock:
            self._generation += 1
            req = SolveRequest(self._generation)
        threading.Thread(target=self._run, args=(req, on_result), daemon=True).start()
        return req

    def _run(self, req: SolveRequest, on_result) -> None:
        gen = req.generation
        try:
            version, layout = self.session.snapshot()
            grid, metrics = self.session.compute(layout, cancel=lambda: self._is_stale(gen))
            self.session._store(version, grid, metrics)
            # submit() takes the same lock, so no newer request can slip in
            # between this check and the callback.
            with self._gen_lock:
                if self._is_stale(gen):
                    raise ComputationCancelled("solve finished after being superseded")
                req.result = SolveResult(gen, layout, grid, metrics)
                if on_result is not None:
                    on_result(req.result)
        except ComputationCancelled:
            logger.debug(f"Solve request #{gen} superseded; dropping result")
            req.result = None
        except Exception as e:
            logger.exception(f"Solve request #{gen} failed")
            req.error = e
        finally:
            req._done.set()
