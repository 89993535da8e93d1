"""
canopysim.optimize

Iterative tuning of placement density, mounting height and dimming.

Each evaluation = plan sources -> solve field -> aggregate, and counts
against a fixed budget. Levers, in preference order:

  uniformity short : densify (kept only if U improves); then bounded search
                     over mounting height on ring-balanced layouts
  average short    : densify; lower the mounting height; raise dimming (<= 1)
  average over     : dimming *= target / avg   (exact, the field is linear)

Ring balancing pulls the lattice towards the canopy edges and gives each
lattice ring its own dimming level. The field is linear in those levels, so
one solve per ring gives a basis B (cells x rings) and the levels come from
a Chebyshev solve:

  maximise t   s.t.   B w >= t,   mean(B w) = target,   w >= MIN_RING_LEVEL

then w is scaled down if any level ends above 1.

A lever only ever moves one way within a run. When no lever is left for the
current shortfall, or the budget runs out, the best state seen (smallest
normalised residual) is returned as TargetUnreachable.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
from scipy.optimize import linprog, minimize_scalar

from .env import EngineSettings
from .errors import TargetUnreachableError
from .geometry import Site
from .metrics import Metrics, aggregate
from .placement import CELL_CENTRED, DensityProfile, plan_sources
from .records import Layout
from .solver import CanopyGrid, mark_in_surface, solve_field
from .sources import Catalog, SourceInstance, SourceModel
from .surfaces import GrowSurface

logger = logging.getLogger(__name__)

HEIGHT_STEP = 0.75
MIN_HEIGHT_FRACTION = 0.25
BALANCED_INSET = 0.125
MIN_RING_LEVEL = 0.05


@dataclass(frozen=True)
class Targets:
    """Average and/or uniformity goal; a ``None`` term is not tuned for."""

    average: Optional[float] = None
    uniformity: Optional[float] = 0.8
    tolerance_avg: float = 0.0
    tolerance_uniformity: float = 0.0
    photoperiod_hours: float = 12.0

    def __post_init__(self):
        if self.average is None and self.uniformity is None:
            raise ValueError("at least one of average or uniformity must be targeted")
        if self.average is not None and not (self.average > 0):
            raise ValueError("target average intensity must be positive")
        if self.uniformity is not None and not (0.0 <= self.uniformity <= 1.0):
            raise ValueError("target uniformity must be in [0, 1]")
        if self.tolerance_avg < 0 or self.tolerance_uniformity < 0:
            raise ValueError("tolerances must be non-negative")

    def average_low(self, m: Metrics) -> bool:
        return self.average is not None and m.average < self.average - self.tolerance_avg

    def average_high(self, m: Metrics) -> bool:
        return self.average is not None and m.average > self.average + self.tolerance_avg

    def average_ok(self, m: Metrics) -> bool:
        return not (self.average_low(m) or self.average_high(m))

    def uniformity_ok(self, m: Metrics) -> bool:
        return self.uniformity is None or m.uniformity >= self.uniformity - self.tolerance_uniformity

    def met(self, m: Metrics) -> bool:
        return self.average_ok(m) and self.uniformity_ok(m)

    def residual(self, m: Metrics) -> float:
        r = 0.0
        if self.average is not None:
            r += max(0.0, abs(m.average - self.average) - self.tolerance_avg) / self.average
        if self.uniformity is not None:
            r += max(0.0, (self.uniformity - self.tolerance_uniformity) - m.uniformity)
        return r

    def delta(self, m: Metrics) -> Dict[str, float]:
        return {
            "average": 0.0 if self.average is None else m.average - self.average,
            "uniformity": 0.0 if self.uniformity is None else m.uniformity - self.uniformity,
        }


@dataclass
class Converged:
    layout: Layout
    metrics: Metrics
    grid: CanopyGrid
    iterations: int
    history: List[Dict[str, Any]] = field(default_factory=list)
    converged = True

    def raise_for_status(self) -> None:
        return None


@dataclass
class TargetUnreachable:
    layout: Layout
    metrics: Metrics
    grid: CanopyGrid
    delta: Dict[str, float]
    iterations: int
    history: List[Dict[str, Any]] = field(default_factory=list)
    reason: str = ""
    converged = False

    def raise_for_status(self) -> None:
        raise TargetUnreachableError(
            f"targets not reached after {self.iterations} evaluations: {self.reason} "
            f"(Δavg={self.delta['average']:+.1f}, ΔU={self.delta['uniformity']:+.3f})",
            best=self,
            delta=self.delta,
        )


def balance_rings(
    grid: CanopyGrid,
    sources: Sequence[SourceInstance],
    rings: Sequence[int],
    catalog: Catalog,
    unit: str = "ft",
    target_mean: Optional[float] = None,
    *,
    min_distance: float = 0.05,
    workers: int = 1,
) -> Dict[int, float]:
    """Per-ring dimming levels in (0, 1] that maximise min/avg over the canopy.

    With ``target_mean`` the levels also pin the canopy average to it when
    the sources can reach it; otherwise the brightest ring runs at 1.
    """
    ring_ids = sorted(set(rings))
    mask = grid.in_surface
    if not ring_ids or not mask.any():
        return {r: 1.0 for r in ring_ids}

    columns = []
    for r in ring_ids:
        members = [s for s, ri in zip(sources, rings) if ri == r]
        field_r = solve_field(grid, members, catalog, unit, min_distance=min_distance, workers=workers)
        columns.append(field_r.values[mask])
    B = np.column_stack(columns)
    K = B.shape[1]
    mean_row = B.mean(axis=0)
    full_mean = float(mean_row.sum())
    if full_mean <= 0:
        return {r: 1.0 for r in ring_ids}

    c = np.zeros(K + 1)
    c[-1] = -1.0
    A_ub = np.hstack([-B, np.ones((B.shape[0], 1))])
    b_ub = np.zeros(B.shape[0])
    A_eq = np.hstack([mean_row, [0.0]])[None, :]
    bounds = [(MIN_RING_LEVEL, None)] * K + [(0.0, None)]

    w = None
    goals = [target_mean, full_mean] if target_mean is not None else [full_mean]
    for mu in goals:
        res = linprog(c, A_ub=A_ub, b_ub=b_ub, A_eq=A_eq, b_eq=[float(mu)], bounds=bounds, method="highs")
        if res.success:
            w = np.asarray(res.x[:K], dtype=float)
            break
        logger.debug(f"Ring balance at mean {mu:.1f} failed: {res.message}")
    if w is None:
        logger.warning("Ring balance solve failed; keeping uniform levels")
        return {r: 1.0 for r in ring_ids}

    top = float(w.max())
    if top > 1.0:
        w = w / top
    return {r: float(min(1.0, max(v, 0.0))) for r, v in zip(ring_ids, w)}


@dataclass
class _State:
    profile: DensityProfile
    height: float
    dimming: float
    balanced: bool = False


@dataclass
class _Eval:
    state: _State
    layout: Layout
    grid: CanopyGrid
    metrics: Metrics


class _BudgetExhausted(Exception):
    pass


class _TargetsHit(Exception):
    pass


class _Run:
    def __init__(self, site: Site, surfaces, model: SourceModel, targets: Targets,
                 settings: EngineSettings, catalog: Catalog):
        self.site = site
        self.surfaces = list(surfaces)
        self.model = model
        self.targets = targets
        self.settings = settings
        self.catalog = catalog
        self.budget = max(1, int(settings.max_iterations))
        self.evals = 0
        self.history: List[Dict[str, Any]] = []
        self.best: Optional[_Eval] = None
        self.hit: Optional[_Eval] = None
        self.base_grid = mark_in_surface(
            CanopyGrid.for_room(site.room, settings.canopy_resolution, settings.canopy_height),
            self.surfaces,
        )

    def _solve(self, sources) -> CanopyGrid:
        return solve_field(
            self.base_grid, sources, self.catalog, self.site.unit,
            min_distance=self.settings.min_distance_m, workers=self.settings.solver_workers,
        )

    def _levels(self, state: _State) -> Tuple[List[SourceInstance], Dict[str, Any], Dict[int, float]]:
        sources, meta = plan_sources(
            self.surfaces, self.model, state.profile, self.settings.canopy_height,
            mount_height=state.height, ceiling=self.site.room.height,
            inset=BALANCED_INSET if state.balanced else CELL_CENTRED,
        )
        weights: Dict[int, float] = {}
        if state.balanced:
            weights = balance_rings(
                self.base_grid, sources, meta["rings"], self.catalog, self.site.unit, self.targets.average,
                min_distance=self.settings.min_distance_m, workers=self.settings.solver_workers,
            )
            sources = [
                s.dimmed(min(1.0, weights[r] * state.dimming)) for s, r in zip(sources, meta["rings"])
            ]
        elif state.dimming != 1.0:
            sources = [s.dimmed(state.dimming) for s in sources]
        return sources, meta, weights

    def evaluate(self, state: _State) -> _Eval:
        if self.evals >= self.budget:
            raise _BudgetExhausted()
        self.evals += 1
        sources, meta, weights = self._levels(state)
        grid = self._solve(sources)
        m = aggregate(grid, sources, self.catalog, self.site.floor_area, self.targets.photoperiod_hours)
        ev = _Eval(replace(state), Layout(list(self.surfaces), sources), grid, m)

        self.history.append({
            "iteration": self.evals,
            "profile": state.profile.value,
            "mount_height": meta["mount_height"],
            "dimming": state.dimming,
            "balanced": state.balanced,
            "ring_levels": dict(weights),
            "sources": m.sources,
            "average": m.average,
            "uniformity": m.uniformity,
        })
        rings = " rings=" + ",".join(f"{weights[r]:.2f}" for r in sorted(weights)) if weights else ""
        logger.info(
            f"[opt {self.evals}/{self.budget}] {state.profile.value} h={meta['mount_height']:.2f} "
            f"dim={state.dimming:.3f}{rings} n={m.sources} avg={m.average:.1f} U={m.uniformity:.3f}"
        )
        if self.best is None or self.targets.residual(m) < self.targets.residual(self.best.metrics):
            self.best = ev
        if self.hit is None and self.targets.met(m):
            self.hit = ev
        return ev


def optimize(
    site: Site,
    surfaces: List[GrowSurface],
    model: SourceModel,
    targets: Targets,
    settings: EngineSettings | None = None,
    catalog: Catalog | None = None,
) -> Converged | TargetUnreachable:
    settings = settings or EngineSettings.from_env()
    catalog = catalog if catalog is not None else Catalog.of(model)
    run = _Run(site, surfaces, model, targets, settings, catalog)

    h_max = max(float(site.room.height) - float(settings.canopy_height), 0.0)
    h_min = min(MIN_HEIGHT_FRACTION * model.reference_height, h_max)
    state = _State(
        profile=DensityProfile.parse(settings.placement_profile),
        height=min(model.reference_height, h_max),
        dimming=1.0,
    )
    densified = state.profile is DensityProfile.DENSE
    height_dir: Optional[str] = None
    dim_dir: Optional[str] = None
    reason = "iteration budget exhausted"

    def search_height() -> _Eval:
        tried: List[_Eval] = []

        def objective(h: float) -> float:
            ev = run.evaluate(replace(state, height=float(h), dimming=1.0, balanced=True))
            tried.append(ev)
            if run.hit is not None:
                raise _TargetsHit()
            return targets.residual(ev.metrics)

        try:
            minimize_scalar(objective, bounds=(h_min, h_max), method="bounded",
                            options={"maxiter": run.budget - run.evals, "xatol": 1e-3 * max(h_max, 1.0)})
        except (_BudgetExhausted, _TargetsHit):
            pass
        if not tried:
            raise _BudgetExhausted()
        if run.hit is not None:
            return run.hit
        return min(tried, key=lambda ev: targets.residual(ev.metrics))

    try:
        current = run.evaluate(state)
        while run.hit is None:
            m = current.metrics
            if not targets.uniformity_ok(m):
                if not densified:
                    densified = True
                    trial = run.evaluate(replace(state, profile=DensityProfile.DENSE))
                    if trial.metrics.uniformity > m.uniformity:
                        current, state = trial, replace(trial.state)
                    continue
                elif height_dir is None and h_max > h_min:
                    height_dir = "searched"
                    current = search_height()
                    state = replace(current.state)
                    continue
                elif targets.average_high(m) and dim_dir != "up":
                    # uniformity is out of reach; still land the average
                    dim_dir = "down"
                    state.dimming = state.dimming * targets.average / m.average
                else:
                    reason = "uniformity levers exhausted"
                    break
            elif targets.average_low(m):
                if not densified:
                    densified = True
                    state.profile = DensityProfile.DENSE
                elif height_dir in (None, "down") and state.height > h_min + 1e-9:
                    height_dir = "down"
                    state.height = max(h_min, state.height * HEIGHT_STEP)
                elif dim_dir in (None, "up") and state.dimming < 1.0 and m.average > 0:
                    dim_dir = "up"
                    state.dimming = min(1.0, state.dimming * targets.average / m.average)
                else:
                    reason = "average levers exhausted"
                    break
            elif targets.average_high(m):
                if dim_dir == "up" or m.average <= 0:
                    reason = "dimming lever exhausted"
                    break
                dim_dir = "down"
                state.dimming = state.dimming * targets.average / m.average
            current = run.evaluate(state)
    except _BudgetExhausted:
        pass

    if run.hit is not None:
        ev = run.hit
        logger.info(f"Converged after {run.evals} evaluations: avg={ev.metrics.average:.1f} U={ev.metrics.uniformity:.3f}")
        return Converged(ev.layout, ev.metrics, ev.grid, run.evals, run.history)

    ev = run.best
    delta = targets.delta(ev.metrics)
    logger.warning(
        f"Targets unreachable after {run.evals} evaluations ({reason}); best avg={ev.metrics.average:.1f} "
        f"U={ev.metrics.uniformity:.3f}"
    )
    return TargetUnreachable(ev.layout, ev.metrics, ev.grid, delta, run.evals, run.history, reason)
