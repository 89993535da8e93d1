"""
canopysim.placement

Light-source placement planner.

  required = ceil(canopy_area / (coverage_area * area_factor))

An nx x ny lattice with about `required` points is fitted to the aspect of
the grow surfaces' union bounding box:

  ny = round(sqrt(n * H / W)),  nx = ceil(n / ny)

Points sit `inset` pitches in from the bounding box edge (0.5 = cell
centres, 0 = on the edge). Lattice points outside every surface footprint
(aisles, cut-outs) are dropped. While fewer than `required` survive, n grows
so the pitch shrinks by about 5% per step. Surplus survivors are thinned
evenly in row-major order so exactly `required` sources are placed.

Every placed point carries a ring index, its lattice distance to the
nearest lattice edge: min(i, nx-1-i, j, ny-1-j).
"""

from __future__ import annotations

import logging
import math
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .geometry import EPS
from .sources import SourceInstance, SourceModel
from .surfaces import GrowSurface, total_surface_area

logger = logging.getLogger(__name__)

PITCH_SHRINK = 0.95
MAX_SHRINK_STEPS = 60
CELL_CENTRED = 0.5


class DensityProfile(Enum):
    SPARSE = "sparse"
    DENSE = "dense"

    @property
    def area_factor(self) -> float:
        return 1.0 if self is DensityProfile.SPARSE else 0.5

    @classmethod
    def parse(cls, value: "DensityProfile | str") -> "DensityProfile":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(f"unknown placement profile {value!r} (expected sparse or dense)") from None


def required_sources(canopy_area: float, model: SourceModel, area_factor: float = 1.0) -> int:
    if canopy_area <= 0:
        return 0
    return int(math.ceil(canopy_area / (model.coverage_area * area_factor) - EPS))


def lattice_shape(n: int, width: float, height: float) -> Tuple[int, int]:
    """(nx, ny) with nx * ny >= n and cells as square as the box allows."""
    if width <= EPS:
        return 1, n
    ny = min(n, max(1, int(round(math.sqrt(n * height / width)))))
    return int(math.ceil(n / ny)), ny


def _axis_points(lo: float, hi: float, n: int, inset: float) -> Tuple[List[float], float]:
    span = hi - lo
    if n == 1:
        return [lo + 0.5 * span], span
    pitch = span / (n - 1 + 2.0 * inset)
    return [lo + (inset + i) * pitch for i in range(n)], pitch


def _lattice(
    surfaces: Sequence[GrowSurface], nx: int, ny: int, inset: float
) -> Tuple[List[Tuple[float, float, int]], Tuple[float, float]]:
    minx = min(s.x for s in surfaces)
    miny = min(s.y for s in surfaces)
    maxx = max(s.x1 for s in surfaces)
    maxy = max(s.y1 for s in surfaces)
    xs, px = _axis_points(minx, maxx, nx, inset)
    ys, py = _axis_points(miny, maxy, ny, inset)
    pts: List[Tuple[float, float, int]] = []
    for j, y in enumerate(ys):
        for i, x in enumerate(xs):
            if any(s.contains(x, y) for s in surfaces):
                pts.append((x, y, min(i, nx - 1 - i, j, ny - 1 - j)))
    return pts, (px, py)


def _thin(pts: List[Any], keep: int) -> List[Any]:
    m = len(pts)
    if m <= keep:
        return list(pts)
    return [pts[(k * m) // keep] for k in range(keep)]


def mount_z(
    model: SourceModel,
    canopy_height: float,
    mount_height: Optional[float] = None,
    ceiling: Optional[float] = None,
) -> float:
    """Absolute source z: canopy + height above canopy, clamped to the ceiling."""
    above = model.reference_height if mount_height is None else float(mount_height)
    z = float(canopy_height) + above
    if ceiling is not None:
        z = min(z, float(ceiling))
    return z


def plan_sources(
    surfaces: Sequence[GrowSurface],
    model: SourceModel,
    profile: "DensityProfile | str" = DensityProfile.SPARSE,
    canopy_height: float = 3.0,
    mount_height: Optional[float] = None,
    ceiling: Optional[float] = None,
    inset: float = CELL_CENTRED,
) -> Tuple[List[SourceInstance], Dict[str, Any]]:
    """Place exactly ``required`` sources; returns (instances, meta).

    meta["rings"] lines up with the instances and feeds ring balancing in
    the optimizer.
    """
    profile = DensityProfile.parse(profile)
    if not (0.0 <= inset <= CELL_CENTRED):
        raise ValueError(f"lattice inset must lie in [0, {CELL_CENTRED}], got {inset}")
    af = profile.area_factor
    z = mount_z(model, canopy_height, mount_height, ceiling)

    meta: Dict[str, Any] = {
        "profile": profile.value,
        "area_factor": af,
        "mount_z": z,
        "mount_height": z - float(canopy_height),
        "model_id": model.id,
        "inset": float(inset),
    }

    area = total_surface_area(surfaces) if surfaces else 0.0
    required = required_sources(area, model, af)
    if required == 0:
        meta.update({"pitch": (0.0, 0.0), "lattice": (0, 0), "required": 0, "placed": 0,
                     "shrink_steps": 0, "rings": [], "canopy_area": area})
        return [], meta

    width = max(s.x1 for s in surfaces) - min(s.x for s in surfaces)
    height = max(s.y1 for s in surfaces) - min(s.y for s in surfaces)

    tried = set()
    pts: List[Tuple[float, float, int]] = []
    shape, pitch, steps = (0, 0), (0.0, 0.0), 0
    for step in range(MAX_SHRINK_STEPS + 1):
        n = int(math.ceil(required / PITCH_SHRINK ** (2 * step) - EPS))
        nx, ny = lattice_shape(n, width, height)
        if (nx, ny) in tried:
            continue
        tried.add((nx, ny))
        cand, cand_pitch = _lattice(surfaces, nx, ny, inset)
        if len(cand) > len(pts):
            pts, shape, pitch, steps = cand, (nx, ny), cand_pitch, step
        if len(cand) >= required:
            pts, shape, pitch, steps = cand, (nx, ny), cand_pitch, step
            break

    if len(pts) < required:
        logger.warning(
            f"Placement fell short after {MAX_SHRINK_STEPS} pitch reductions: {len(pts)} of {required} sources"
        )
    survivors = len(pts)
    pts = _thin(pts, required)

    instances = [
        SourceInstance(id=f"S-{i + 1:03d}", x=float(x), y=float(y), z=z, model_id=model.id)
        for i, (x, y, _) in enumerate(pts)
    ]

    meta.update({
        "pitch": pitch,
        "lattice": shape,
        "required": required,
        "placed": len(instances),
        "thinned": survivors - len(instances),
        "shrink_steps": steps,
        "rings": [r for _, _, r in pts],
        "canopy_area": area,
    })
    logger.info(
        f"Planned {len(instances)} x {model.id} ({profile.value}, lattice {shape[0]}x{shape[1]}, "
        f"pitch {pitch[0]:.3f}x{pitch[1]:.3f}, required {required}, z={z:.2f})"
    )
    return instances, meta
