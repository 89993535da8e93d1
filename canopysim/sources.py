"""
canopysim.sources

Light-source models, beam distributions and placed instances.

Distributions are tagged strategies: a kind plus its parameters, evaluated as
a pure function of the polar angle θ from the source's downward axis. Every
kind is normalised so that ∫ D(θ) dΩ = 4π, i.e. the propagation law

  flux · D(θ) / (4π d²)

emits exactly the model's flux whatever the beam shape.

  isotropic   D = 1
  lambertian  D = 4 cos θ                      (θ < 90°)
  sym         D = 2(m+1) cos^m θ               (m or fwhm)
  bat         D ∝ cos^m θ · (1 + k(1 - 4c + 4c²))   (batwing, numeric norm)
"""

from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, Mapping, Optional, Tuple

import numpy as np

from .errors import InvalidDesign

logger = logging.getLogger(__name__)

PI = math.pi
HALF_PI = 0.5 * math.pi


def _m_from_fwhm(deg: float) -> float:
    th = math.radians(deg * 0.5)
    c = max(math.cos(th), 1e-6)
    return math.log(0.5) / math.log(c)


def _downward_cos(theta: np.ndarray) -> np.ndarray:
    return np.where(theta < HALF_PI, np.cos(theta), 0.0)


def _shape_isotropic(theta: np.ndarray, params: Mapping[str, float]) -> np.ndarray:
    return np.ones_like(theta, dtype=float)


def _shape_lambertian(theta: np.ndarray, params: Mapping[str, float]) -> np.ndarray:
    return _downward_cos(theta)


def _shape_sym(theta: np.ndarray, params: Mapping[str, float]) -> np.ndarray:
    return _downward_cos(theta) ** params["m"]


def _shape_bat(theta: np.ndarray, params: Mapping[str, float]) -> np.ndarray:
    c = _downward_cos(theta)
    k = params.get("k", 0.75)
    return (c ** params["m"]) * (1.0 + k * (1.0 - 4.0 * c + 4.0 * c * c)) * (c > 0)


_SHAPES: Dict[str, Callable[[np.ndarray, Mapping[str, float]], np.ndarray]] = {
    "isotropic": _shape_isotropic,
    "lambertian": _shape_lambertian,
    "sym": _shape_sym,
    "bat": _shape_bat,
}


def _numeric_norm(shape: Callable[[np.ndarray], np.ndarray], samples: int = 4096) -> float:
    # 4π / ∫ shape dΩ, midpoint rule over θ ∈ [0, π]
    dth = PI / samples
    th = (np.arange(samples) + 0.5) * dth
    integral = 2.0 * PI * float(np.sum(shape(th) * np.sin(th)) * dth)
    return 0.0 if integral <= 0 else 4.0 * PI / integral


@dataclass(frozen=True)
class Distribution:
    kind: str = "lambertian"
    params: Tuple[Tuple[str, float], ...] = ()

    def __post_init__(self):
        if self.kind not in _SHAPES:
            raise ValueError(f"unknown distribution kind {self.kind!r} (expected one of {sorted(_SHAPES)})")
        p = dict(self.params)
        if self.kind in ("sym", "bat"):
            if "m" not in p:
                if "fwhm" not in p:
                    raise ValueError(f"{self.kind} distribution needs 'm' or 'fwhm'")
                p["m"] = _m_from_fwhm(float(p["fwhm"]))
            if p["m"] < 0:
                raise ValueError("cosine exponent m must be non-negative")
        object.__setattr__(self, "params", tuple(sorted((k, float(v)) for k, v in p.items())))
        object.__setattr__(self, "_norm", self._normalisation())

    @classmethod
    def of(cls, kind: str, **params: float) -> "Distribution":
        return cls(kind, tuple(params.items()))

    def _normalisation(self) -> float:
        p = dict(self.params)
        if self.kind == "isotropic":
            return 1.0
        if self.kind == "lambertian":
            return 4.0
        if self.kind == "sym":
            return 2.0 * (p["m"] + 1.0)
        return _numeric_norm(lambda th: _shape_bat(th, p))

    def __call__(self, theta) -> np.ndarray:
        th = np.asarray(theta, dtype=float)
        return self._norm * _SHAPES[self.kind](th, dict(self.params))

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, **dict(self.params)}

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "Distribution":
        d = dict(d)
        kind = d.pop("kind", "lambertian")
        return cls(kind, tuple((k, float(v)) for k, v in d.items()))


@dataclass(frozen=True)
class SourceModel:
    id: str
    name: str
    flux: float                      # µmol/s
    power: float                     # W
    coverage_area: float             # room units² at reference_height
    reference_height: float          # room units above canopy
    footprint: Tuple[float, float] = (1.0, 1.0)
    distribution: Distribution = field(default_factory=Distribution)

    def __post_init__(self):
        if self.flux < 0 or self.power < 0:
            raise ValueError(f"{self.id}: flux and power must be non-negative")
        if not (self.coverage_area > 0):
            raise ValueError(f"{self.id}: nominal coverage area must be positive")
        if not (self.reference_height > 0):
            raise ValueError(f"{self.id}: reference mounting height must be positive")

    @property
    def efficacy(self) -> float:
        """µmol/J"""
        return 0.0 if self.power <= 0 else self.flux / self.power

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "flux": self.flux,
            "power": self.power,
            "coverage_area": self.coverage_area,
            "reference_height": self.reference_height,
            "footprint": list(self.footprint),
            "distribution": self.distribution.to_dict(),
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "SourceModel":
        return cls(
            id=str(d["id"]),
            name=str(d.get("name", d["id"])),
            flux=float(d["flux"]),
            power=float(d["power"]),
            coverage_area=float(d["coverage_area"]),
            reference_height=float(d["reference_height"]),
            footprint=tuple(float(v) for v in d.get("footprint", (1.0, 1.0))),
            distribution=Distribution.from_dict(d.get("distribution", {"kind": "lambertian"})),
        )


@dataclass(frozen=True)
class SourceInstance:
    id: str
    x: float
    y: float
    z: float
    model_id: str
    rotation: float = 0.0
    dimming: float = 1.0
    enabled: bool = True
    circuit_id: Optional[str] = None

    def __post_init__(self):
        if not (0.0 <= self.dimming <= 1.0):
            raise InvalidDesign(
                f"{self.id}: dimming level {self.dimming} outside [0, 1]",
                {"source": self.id, "dimming": self.dimming},
            )

    def moved(self, x: float, y: float, z: float | None = None) -> "SourceInstance":
        return replace(self, x=float(x), y=float(y), z=self.z if z is None else float(z))

    def dimmed(self, level: float) -> "SourceInstance":
        return replace(self, dimming=float(level))


# Built-in catalog (feet-rated coverage; flux/power from manufacturer sheets)
BUILTIN_MODELS: Dict[str, Dict[str, Any]] = {
    "spydr-2p": {
        "name": "Fluence SPYDR 2p", "flux": 1700.0, "power": 645.0,
        "coverage_area": 16.0, "reference_height": 2.0, "footprint": (3.74, 1.74),
        "distribution": {"kind": "lambertian"},
    },
    "bar-8": {
        "name": "8-bar LED, 120° lens", "flux": 2200.0, "power": 800.0,
        "coverage_area": 25.0, "reference_height": 2.5, "footprint": (3.9, 3.6),
        "distribution": {"kind": "sym", "fwhm": 120.0},
    },
    "hps-1000": {
        "name": "1000 W DE HPS", "flux": 2100.0, "power": 1150.0,
        "coverage_area": 16.0, "reference_height": 3.0, "footprint": (2.2, 1.1),
        "distribution": {"kind": "bat", "m": 1.0, "k": 0.75},
    },
}


class Catalog(Mapping[str, SourceModel]):
    """Read-only mapping of model id -> SourceModel."""

    def __init__(self, models: Mapping[str, SourceModel] | None = None):
        self._models: Dict[str, SourceModel] = dict(models or {})

    def __getitem__(self, key: str) -> SourceModel:
        return self._models[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._models)

    def __len__(self) -> int:
        return len(self._models)

    def require(self, model_id: str) -> SourceModel:
        try:
            return self._models[model_id]
        except KeyError:
            raise InvalidDesign(
                f"unknown source model {model_id!r}", {"model": model_id, "known": sorted(self._models)}
            ) from None

    @classmethod
    def of(cls, *models: SourceModel) -> "Catalog":
        return cls({m.id: m for m in models})

    @classmethod
    def builtin(cls) -> "Catalog":
        return cls({k: SourceModel.from_dict({"id": k, **v}) for k, v in BUILTIN_MODELS.items()})

    @classmethod
    def from_json(cls, path: Path | str) -> "Catalog":
        data = json.loads(Path(path).read_text())
        rows = data.get("models", data) if isinstance(data, dict) else data
        models = [SourceModel.from_dict(r) for r in rows]
        logger.info(f"Loaded {len(models)} source models from {path}")
        return cls.of(*models)
