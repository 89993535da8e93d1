"""
canopysim.env

Environment-driven defaults shared by every engine module.

  CANOPY_RESOLUTION  – canopy grid cell size (room units)
  CANOPY_HEIGHT      – canopy plane height above floor (room units)
  PLACEMENT_PROFILE  – sparse | dense
  OPT_MAX_ITER       – optimization iteration budget
  MIN_DISTANCE_M     – source-to-cell distance floor (m)
  PHOTOPERIOD_H      – lights-on hours per day
  SOLVER_WORKERS     – joblib threads used by the field solver

Explicit arguments always win over these values.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parent.parent

FT_TO_M = 0.3048

UNIT_TO_M = {
    "ft": FT_TO_M,
    "m": 1.0,
}


def _env_float(name: str, default: float) -> float:
    v = os.environ.get(name)
    if v is None or str(v).strip() == "":
        return float(default)
    return float(v)


def _env_int(name: str, default: int) -> int:
    v = os.environ.get(name)
    if v is None or str(v).strip() == "":
        return int(default)
    return int(v)


def _env_str(name: str, default: str) -> str:
    v = os.environ.get(name)
    if v is None or str(v).strip() == "":
        return default
    return str(v).strip().lower()


def unit_scale(unit: str) -> float:
    """Metres per room unit."""
    try:
        return UNIT_TO_M[unit]
    except KeyError:
        raise ValueError(f"unknown unit system {unit!r} (expected one of {sorted(UNIT_TO_M)})") from None


@dataclass
class EngineSettings:
    canopy_resolution: float = 1.0
    canopy_height: float = 3.0
    placement_profile: str = "sparse"
    max_iterations: int = 20
    min_distance_m: float = 0.05
    photoperiod_hours: float = 12.0
    solver_workers: int = 1

    @classmethod
    def from_env(cls, **overrides) -> "EngineSettings":
        base = cls(
            canopy_resolution=_env_float("CANOPY_RESOLUTION", 1.0),
            canopy_height=_env_float("CANOPY_HEIGHT", 3.0),
            placement_profile=_env_str("PLACEMENT_PROFILE", "sparse"),
            max_iterations=_env_int("OPT_MAX_ITER", 20),
            min_distance_m=_env_float("MIN_DISTANCE_M", 0.05),
            photoperiod_hours=_env_float("PHOTOPERIOD_H", 12.0),
            solver_workers=_env_int("SOLVER_WORKERS", 1),
        )
        for k, v in overrides.items():
            if v is None:
                continue
            if not hasattr(base, k):
                raise TypeError(f"unknown engine setting {k!r}")
            setattr(base, k, v)
        return base
