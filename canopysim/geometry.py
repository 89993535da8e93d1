"""
canopysim.geometry

Room and obstacle model.

Coordinates are in room units with the origin at the room's min corner:
  x ∈ [0, length], y ∈ [0, width], z ∈ [0, height]

A room is a rectangle unless an explicit floor outline is supplied; the
outline must sit inside the length x width bounding rectangle. Obstacles
(columns, wall stubs, HVAC units) are axis-aligned footprints with an
exclusion buffer grown on every side with square corners.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple

from shapely.geometry import Point, Polygon, box
from shapely.geometry.base import BaseGeometry

from .env import unit_scale
from .errors import InvalidGeometry

logger = logging.getLogger(__name__)

EPS = 1e-9


@dataclass(frozen=True)
class Room:
    length: float
    width: float
    height: float
    unit: str = "ft"
    outline: Optional[Tuple[Tuple[float, float], ...]] = None

    @property
    def bounds(self) -> Tuple[float, float, float, float]:
        return (0.0, 0.0, float(self.length), float(self.width))


@dataclass(frozen=True)
class Obstacle:
    x: float
    y: float
    width: float
    depth: float
    buffer: float = 0.0
    name: str = ""
    kind: str = "column"

    def footprint(self, buffer: float | None = None) -> Tuple[float, float, float, float]:
        b = self.buffer if buffer is None else buffer
        return (self.x - b, self.y - b, self.x + self.width + b, self.y + self.depth + b)


def _overlaps(a: BaseGeometry, b: BaseGeometry) -> bool:
    # Interior overlap only; shared edges are fine.
    return a.intersects(b) and not a.touches(b)


def validate_room(room: Room) -> Polygon:
    """Return the floor polygon of a well-formed room or raise InvalidGeometry."""
    dims = {"length": room.length, "width": room.width, "height": room.height}
    bad = {k: v for k, v in dims.items() if not (v > 0)}
    if bad:
        raise InvalidGeometry(
            f"room dimensions must be positive: {', '.join(f'{k}={v}' for k, v in bad.items())}",
            {k: str(v) for k, v in bad.items()},
        )
    try:
        unit_scale(room.unit)
    except ValueError as e:
        raise InvalidGeometry(str(e), {"unit": str(room.unit)}) from None

    rect = box(0.0, 0.0, float(room.length), float(room.width))
    if room.outline is None:
        return rect

    if len(room.outline) < 3:
        raise InvalidGeometry("floor outline needs at least 3 vertices")
    floor = Polygon([(float(x), float(y)) for x, y in room.outline])
    if not floor.is_valid or floor.area <= 0:
        raise InvalidGeometry("floor outline is not a valid simple polygon")
    if not rect.buffer(EPS).covers(floor):
        raise InvalidGeometry(
            "floor outline extends outside the room rectangle",
            {"bounds": str(floor.bounds)},
        )
    return floor


def validate_obstacles(floor: Polygon, obstacles: Iterable[Obstacle]) -> None:
    region = floor.buffer(EPS)
    for idx, ob in enumerate(obstacles):
        label = ob.name or f"obstacle[{idx}]"
        if not (ob.width > 0 and ob.depth > 0):
            raise InvalidGeometry(f"{label}: footprint must be positive", {"obstacle": label})
        if ob.buffer < 0:
            raise InvalidGeometry(f"{label}: exclusion buffer must be non-negative", {"obstacle": label})
        if not region.covers(box(*ob.footprint(0.0))):
            raise InvalidGeometry(
                f"{label}: lies partially or fully outside the room",
                {"obstacle": label, "footprint": str(ob.footprint(0.0))},
            )


class Site:
    """Validated room + obstacles with the spatial queries used by the planners."""

    def __init__(self, room: Room, obstacles: Sequence[Obstacle] = ()):
        self.floor = validate_room(room)
        obstacles = list(obstacles)
        validate_obstacles(self.floor, obstacles)
        self.room = room
        self.obstacles: List[Obstacle] = obstacles
        logger.debug(
            f"Site ready: {room.length}x{room.width}x{room.height} {room.unit}, "
            f"{len(obstacles)} obstacles"
        )

    @property
    def unit(self) -> str:
        return self.room.unit

    @property
    def floor_area(self) -> float:
        return float(self.floor.area)

    def _buffered(self, buffer: float | None) -> List[Polygon]:
        return [box(*ob.footprint(buffer)) for ob in self.obstacles]

    def point_in_obstacle(self, x: float, y: float, buffer: float | None = None) -> bool:
        """True if (x, y) lies inside or on a buffered obstacle footprint."""
        p = Point(float(x), float(y))
        return any(poly.covers(p) for poly in self._buffered(buffer))

    def rect_intersects_obstacle(
        self, x0: float, y0: float, x1: float, y1: float, buffer: float | None = None
    ) -> bool:
        """True if the rectangle's interior overlaps any buffered obstacle."""
        r = box(x0, y0, x1, y1)
        return any(_overlaps(r, poly) for poly in self._buffered(buffer))

    def usable_region(self, clearance: float = 0.0) -> BaseGeometry:
        """Floor inset by a perimeter clearance (may be empty)."""
        c = float(clearance)
        if c <= 0:
            return self.floor
        if self.room.outline is None:
            L, W = float(self.room.length), float(self.room.width)
            if L - 2 * c <= 0 or W - 2 * c <= 0:
                return Polygon()
            return box(c, c, L - c, W - c)
        return self.floor.buffer(-c, join_style=2)
