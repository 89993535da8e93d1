"""
canopysim.solver

Irradiance field solver.

Each enabled source contributes, at every canopy cell centre,

  E = flux * dimming * D(θ) / (4π * max(d², ε²))      [µmol/m²/s]

with d the 3-D distance in metres and θ the angle from the source's downward
axis. Contributions add linearly; no occlusion, no reflections.

Rows (y) are independent, so the solve is partitioned per row and optionally
fanned out over a joblib thread pool. Every row checks the cancel token
before it starts.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, replace
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
from joblib import Parallel, delayed

from .env import unit_scale
from .errors import ComputationCancelled, InvalidDesign
from .geometry import EPS, Room
from .sources import Catalog, Distribution, SourceInstance
from .surfaces import GrowSurface

logger = logging.getLogger(__name__)

CancelToken = Callable[[], bool]

FOUR_PI = 4.0 * math.pi


@dataclass
class CanopyGrid:
    resolution: float
    bounds: Tuple[float, float, float, float]
    height: float
    xs: np.ndarray
    ys: np.ndarray
    values: np.ndarray
    in_surface: np.ndarray

    @classmethod
    def for_room(
        cls,
        room: Room,
        resolution: float,
        canopy_height: float,
        bounds: Optional[Tuple[float, float, float, float]] = None,
    ) -> "CanopyGrid":
        if not (resolution > 0):
            raise ValueError("canopy grid resolution must be positive")
        x0, y0, x1, y1 = bounds if bounds is not None else room.bounds
        nx = max(1, int(math.ceil((x1 - x0) / resolution - EPS)))
        ny = max(1, int(math.ceil((y1 - y0) / resolution - EPS)))
        xs = x0 + (np.arange(nx) + 0.5) * resolution
        ys = y0 + (np.arange(ny) + 0.5) * resolution
        return cls(
            resolution=float(resolution),
            bounds=(float(x0), float(y0), float(x1), float(y1)),
            height=float(canopy_height),
            xs=xs,
            ys=ys,
            values=np.zeros((ny, nx), dtype=float),
            in_surface=np.zeros((ny, nx), dtype=bool),
        )

    @property
    def shape(self) -> Tuple[int, int]:
        return self.values.shape

    def surface_values(self) -> np.ndarray:
        return self.values[self.in_surface]


def mark_in_surface(grid: CanopyGrid, surfaces: Sequence[GrowSurface]) -> CanopyGrid:
    X, Y = np.meshgrid(grid.xs, grid.ys)
    mask = np.zeros(X.shape, dtype=bool)
    for s in surfaces:
        mask |= (X >= s.x - EPS) & (X <= s.x1 + EPS) & (Y >= s.y - EPS) & (Y <= s.y1 + EPS)
    return replace(grid, in_surface=mask)


@dataclass
class _SourceBlock:
    """Enabled sources sharing one distribution, packed as arrays (metres)."""
    distribution: Distribution
    x: np.ndarray
    y: np.ndarray
    z: np.ndarray
    flux: np.ndarray


def _pack_sources(
    sources: Sequence[SourceInstance], catalog: Catalog, scale: float
) -> List[_SourceBlock]:
    groups: Dict[str, List[SourceInstance]] = {}
    for s in sources:
        model = catalog.require(s.model_id)
        if not (0.0 <= s.dimming <= 1.0):
            raise InvalidDesign(f"{s.id}: dimming level {s.dimming} outside [0, 1]", {"source": s.id})
        if not s.enabled or s.dimming <= 0 or model.flux <= 0:
            continue
        groups.setdefault(s.model_id, []).append(s)

    blocks: List[_SourceBlock] = []
    for model_id, members in groups.items():
        model = catalog[model_id]
        blocks.append(_SourceBlock(
            distribution=model.distribution,
            x=np.array([s.x for s in members], dtype=float) * scale,
            y=np.array([s.y for s in members], dtype=float) * scale,
            z=np.array([s.z for s in members], dtype=float) * scale,
            flux=np.array([model.flux * s.dimming for s in members], dtype=float),
        ))
    return blocks


def _solve_row(
    y_m: float,
    xs_m: np.ndarray,
    z_m: float,
    blocks: Sequence[_SourceBlock],
    eps2: float,
    cancel: Optional[CancelToken],
) -> np.ndarray:
    if cancel is not None and cancel():
        raise ComputationCancelled("solve superseded by a newer request")
    row = np.zeros(xs_m.shape, dtype=float)
    for b in blocks:
        dx = xs_m[None, :] - b.x[:, None]
        dy = (y_m - b.y)[:, None]
        dz = (b.z - z_m)[:, None]
        d2 = np.maximum(dx * dx + dy * dy + dz * dz, eps2)
        cos_t = np.clip(dz / np.sqrt(d2), -1.0, 1.0)
        D = b.distribution(np.arccos(cos_t))
        row += np.sum(b.flux[:, None] * D / (FOUR_PI * d2), axis=0)
    return row


def solve_field(
    grid: CanopyGrid,
    sources: Sequence[SourceInstance],
    catalog: Catalog,
    unit: str = "ft",
    *,
    min_distance: float = 0.05,
    workers: int = 1,
    cancel: Optional[CancelToken] = None,
) -> CanopyGrid:
    """Return a copy of `grid` with the superposed intensity field filled in."""
    scale = unit_scale(unit)
    blocks = _pack_sources(sources, catalog, scale)
    ny, nx = grid.values.shape

    if cancel is not None and cancel():
        raise ComputationCancelled("solve superseded by a newer request")

    if not blocks:
        return replace(grid, values=np.zeros((ny, nx), dtype=float))

    xs_m = grid.xs * scale
    z_m = grid.height * scale
    eps2 = float(min_distance) ** 2

    if workers and workers > 1 and ny > 1:
        rows = Parallel(n_jobs=workers, prefer="threads")(
            delayed(_solve_row)(float(y) * scale, xs_m, z_m, blocks, eps2, cancel) for y in grid.ys
        )
    else:
        rows = [_solve_row(float(y) * scale, xs_m, z_m, blocks, eps2, cancel) for y in grid.ys]

    values = np.vstack(rows) if rows else np.zeros((ny, nx), dtype=float)
    logger.debug(
        f"Solved {ny}x{nx} grid for {sum(len(b.flux) for b in blocks)} enabled sources "
        f"(workers={workers})"
    )
    return replace(grid, values=values)
