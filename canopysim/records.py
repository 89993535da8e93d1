"""
canopysim.records

Neutral, transport-agnostic layout records.

Layout JSON (key order is preserved on export):

  {
    "version": 1,
    "units": "ft",
    "growSurfaces":    [{id, x, y, length, width, capacity}, ...],
    "sourceInstances": [{id, x, y, z, rotation, sourceModelRef,
                         dimmingLevel, enabled, circuitId}, ...],
    "grid": {resolution, bounds, height, nx, ny, values, inSurface}   # optional
  }

Only surfaces and sources are the durable design. The grid block is a
snapshot; on import it comes back as a CanopyGrid in grid_meta["grid"].
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import numpy as np

from .errors import InvalidDesign
from .solver import CanopyGrid
from .sources import SourceInstance
from .surfaces import GrowSurface

logger = logging.getLogger(__name__)

RECORD_VERSION = 1

_SURFACE_KEYS = ("id", "x", "y", "length", "width")
_SOURCE_KEYS = ("id", "x", "y", "z", "sourceModelRef")
_GRID_KEYS = ("resolution", "bounds", "height", "nx", "ny")


@dataclass
class Layout:
    grow_surfaces: List[GrowSurface] = field(default_factory=list)
    source_instances: List[SourceInstance] = field(default_factory=list)


def _surface_record(s: GrowSurface) -> Dict[str, Any]:
    return {"id": s.id, "x": s.x, "y": s.y, "length": s.length, "width": s.width, "capacity": s.capacity}


def _source_record(s: SourceInstance) -> Dict[str, Any]:
    return {
        "id": s.id,
        "x": s.x,
        "y": s.y,
        "z": s.z,
        "rotation": s.rotation,
        "sourceModelRef": s.model_id,
        "dimmingLevel": s.dimming,
        "enabled": s.enabled,
        "circuitId": s.circuit_id,
    }


def _grid_record(grid: CanopyGrid) -> Dict[str, Any]:
    ny, nx = grid.values.shape
    return {
        "resolution": grid.resolution,
        "bounds": list(grid.bounds),
        "height": grid.height,
        "nx": int(nx),
        "ny": int(ny),
        "values": [float(v) for v in grid.values.ravel()],
        "inSurface": [bool(v) for v in grid.in_surface.ravel()],
    }


def export_layout(layout: Layout, grid: Optional[CanopyGrid] = None, unit: str = "ft") -> Dict[str, Any]:
    record: Dict[str, Any] = {
        "version": RECORD_VERSION,
        "units": unit,
        "growSurfaces": [_surface_record(s) for s in layout.grow_surfaces],
        "sourceInstances": [_source_record(s) for s in layout.source_instances],
    }
    if grid is not None:
        record["grid"] = _grid_record(grid)
    return record


def _require_keys(entry: Any, keys: Tuple[str, ...], where: str) -> Mapping[str, Any]:
    if not isinstance(entry, Mapping):
        raise InvalidDesign(f"{where}: expected an object, got {type(entry).__name__}")
    missing = [k for k in keys if k not in entry]
    if missing:
        raise InvalidDesign(f"{where}: missing keys {missing}", {"missing": missing})
    return entry


def import_layout(record: Mapping[str, Any]) -> Tuple[Layout, Dict[str, Any]]:
    """Parse a layout record; returns (layout, grid_meta) where grid_meta may be empty."""
    if not isinstance(record, Mapping):
        raise InvalidDesign("layout record must be an object")
    for k in ("growSurfaces", "sourceInstances"):
        if not isinstance(record.get(k), list):
            raise InvalidDesign(f"layout record needs a '{k}' list", {"key": k})

    surfaces: List[GrowSurface] = []
    for i, e in enumerate(record["growSurfaces"]):
        e = _require_keys(e, _SURFACE_KEYS, f"growSurfaces[{i}]")
        surfaces.append(GrowSurface(
            id=str(e["id"]),
            x=float(e["x"]), y=float(e["y"]),
            length=float(e["length"]), width=float(e["width"]),
            capacity=int(e.get("capacity", 0)),
        ))

    sources: List[SourceInstance] = []
    for i, e in enumerate(record["sourceInstances"]):
        e = _require_keys(e, _SOURCE_KEYS, f"sourceInstances[{i}]")
        circuit = e.get("circuitId")
        sources.append(SourceInstance(
            id=str(e["id"]),
            x=float(e["x"]), y=float(e["y"]), z=float(e["z"]),
            model_id=str(e["sourceModelRef"]),
            rotation=float(e.get("rotation", 0.0)),
            dimming=float(e.get("dimmingLevel", 1.0)),
            enabled=bool(e.get("enabled", True)),
            circuit_id=None if circuit is None else str(circuit),
        ))

    grid_meta: Dict[str, Any] = {"units": record.get("units", "ft")}
    if record.get("grid") is not None:
        grid_meta.update(_parse_grid(record["grid"]))
    return Layout(surfaces, sources), grid_meta


def _parse_grid(entry: Any) -> Dict[str, Any]:
    """Grid block -> metadata plus a rebuilt ``CanopyGrid`` when values are present."""
    g = _require_keys(entry, _GRID_KEYS, "grid")
    try:
        meta: Dict[str, Any] = {
            "resolution": float(g["resolution"]),
            "bounds": tuple(float(v) for v in g["bounds"]),
            "height": float(g["height"]),
            "nx": int(g["nx"]),
            "ny": int(g["ny"]),
        }
    except (TypeError, ValueError) as e:
        raise InvalidDesign(f"grid: malformed value ({e})") from e
    nx, ny = meta["nx"], meta["ny"]
    if len(meta["bounds"]) != 4 or nx < 1 or ny < 1 or not (meta["resolution"] > 0):
        raise InvalidDesign("grid: bounds must hold 4 numbers, nx/ny and resolution must be positive", meta)
    if "values" not in g:
        return meta

    try:
        values = np.asarray(g["values"], dtype=float)
        in_surface = np.asarray(g.get("inSurface", [False] * values.size), dtype=bool)
    except (TypeError, ValueError) as e:
        raise InvalidDesign(f"grid: malformed cell data ({e})") from e
    if values.size != nx * ny or in_surface.size != nx * ny:
        raise InvalidDesign(
            f"grid: expected {nx * ny} cells, got {values.size} values and {in_surface.size} inSurface flags",
            {"nx": nx, "ny": ny},
        )
    x0, y0 = meta["bounds"][0], meta["bounds"][1]
    res = meta["resolution"]
    meta["grid"] = CanopyGrid(
        resolution=res,
        bounds=meta["bounds"],
        height=meta["height"],
        xs=x0 + (np.arange(nx) + 0.5) * res,
        ys=y0 + (np.arange(ny) + 0.5) * res,
        values=values.reshape(ny, nx),
        in_surface=in_surface.reshape(ny, nx),
    )
    return meta


def write_layout_json(path: Path | str, record: Mapping[str, Any]) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(record, indent=2))
    logger.info(
        f"Wrote layout → {path} ({len(record.get('growSurfaces', []))} surfaces, "
        f"{len(record.get('sourceInstances', []))} sources)"
    )
    return path


def read_layout_json(path: Path | str) -> Dict[str, Any]:
    return json.loads(Path(path).read_text())
