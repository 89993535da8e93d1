"""
canopysim.surfaces

Grow-surface layout generator.

Raster sweep over candidate origins at (surface + aisle) stride, starting one
perimeter clearance in from the room's min corner:

  y0 = clearance, clearance + (width + cross_aisle), ...
    x0 = clearance, clearance + (length + aisle), ...

Rows are swept bottom-to-top and each row left-to-right, so identical inputs
always give the same surfaces in the same order. A candidate is kept iff it
fits the inset floor, clears every buffered obstacle, and does not overlap a
surface accepted before it.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import List, Optional, Sequence

from shapely.geometry import box

from .errors import NoFeasibleLayout
from .geometry import EPS, Site, _overlaps

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GrowSurface:
    id: str
    x: float
    y: float
    length: float
    width: float
    capacity: int = 0

    @property
    def x1(self) -> float:
        return self.x + self.length

    @property
    def y1(self) -> float:
        return self.y + self.width

    @property
    def area(self) -> float:
        return self.length * self.width

    def contains(self, px: float, py: float) -> bool:
        return (self.x - EPS <= px <= self.x1 + EPS) and (self.y - EPS <= py <= self.y1 + EPS)


@dataclass
class LayoutConfig:
    surface_length: float = 10.0
    surface_width: float = 4.0
    aisle_width: float = 4.0
    cross_aisle_width: Optional[float] = None
    clearance: float = 3.0
    obstacle_buffer: Optional[float] = None
    capacity_per_area: float = 1.0
    rotate: bool = False

    def footprint(self) -> tuple[float, float]:
        if self.rotate:
            return self.surface_width, self.surface_length
        return self.surface_length, self.surface_width

    def strides(self) -> tuple[float, float]:
        fl, fw = self.footprint()
        cross = self.aisle_width if self.cross_aisle_width is None else self.cross_aisle_width
        return fl + self.aisle_width, fw + cross


def total_surface_area(surfaces: Sequence[GrowSurface]) -> float:
    return float(sum(s.area for s in surfaces))


def surfaces_overlap(a: GrowSurface, b: GrowSurface) -> bool:
    return _overlaps(box(a.x, a.y, a.x1, a.y1), box(b.x, b.y, b.x1, b.y1))


def _axis_origins(start: float, stop: float, size: float, stride: float) -> List[float]:
    """Candidate origins o with o + size <= stop."""
    if stride <= 0:
        raise ValueError("surface footprint plus aisle must be positive")
    n = int(math.floor((stop - start - size) / stride + EPS)) + 1
    return [start + i * stride for i in range(max(0, n))]


def generate_surfaces(site: Site, config: LayoutConfig | None = None) -> List[GrowSurface]:
    """Tile the free floor with grow surfaces; raise NoFeasibleLayout if none fit."""
    config = config or LayoutConfig()
    fl, fw = config.footprint()
    if not (fl > 0 and fw > 0):
        raise ValueError("surface footprint must be positive")
    if config.aisle_width < 0 or (config.cross_aisle_width or 0.0) < 0 or config.clearance < 0:
        raise ValueError("aisle widths and clearance must be non-negative")
    sx, sy = config.strides()

    region = site.usable_region(config.clearance)
    region_tol = None if region.is_empty else region.buffer(EPS, join_style=2)
    minx, miny, maxx, maxy = site.floor.bounds
    c = config.clearance

    xs = _axis_origins(minx + c, maxx - c, fl, sx)
    ys = _axis_origins(miny + c, maxy - c, fw, sy)
    capacity = int(math.floor(fl * fw * config.capacity_per_area + EPS))

    accepted: List[GrowSurface] = []
    skipped_obstacle = 0
    skipped_region = 0
    for y0 in ys:
        for x0 in xs:
            x1, y1 = x0 + fl, y0 + fw
            cand = box(x0, y0, x1, y1)
            if region_tol is None or not region_tol.covers(cand):
                skipped_region += 1
                continue
            if site.rect_intersects_obstacle(x0, y0, x1, y1, config.obstacle_buffer):
                skipped_obstacle += 1
                continue
            if any(_overlaps(cand, box(s.x, s.y, s.x1, s.y1)) for s in accepted):
                continue
            accepted.append(GrowSurface(
                id=f"GS-{len(accepted) + 1:03d}",
                x=float(x0), y=float(y0), length=float(fl), width=float(fw),
                capacity=capacity,
            ))

    if not accepted:
        raise NoFeasibleLayout(
            "no grow surface fits the room with the given clearances and obstacles",
            {
                "candidates": len(xs) * len(ys),
                "blocked_by_obstacles": skipped_obstacle,
                "outside_floor": skipped_region,
                "config": config,
            },
        )

    logger.info(
        f"Placed {len(accepted)} grow surfaces ({fl:g}x{fw:g}, area {total_surface_area(accepted):.1f}); "
        f"skipped {skipped_obstacle} near obstacles, {skipped_region} outside usable floor"
    )
    return accepted
