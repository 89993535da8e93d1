"""
canopysim.metrics

Aggregate metrics over the in-surface cells of a solved canopy grid.

All intensities are in µmol/m²/s. DLI is mol/m²/day:

  DLI = avg * photoperiod_h * 3600 / 1e6
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Sequence

import numpy as np

from .sources import Catalog, SourceInstance
from .solver import CanopyGrid


@dataclass(frozen=True)
class Metrics:
    average: float = 0.0
    minimum: float = 0.0
    maximum: float = 0.0
    uniformity: float = 0.0
    dli: float = 0.0
    power_density: float = 0.0
    total_flux: float = 0.0
    total_power: float = 0.0
    p05: float = 0.0
    p95: float = 0.0
    cv: float = 0.0
    cells: int = 0
    sources: int = 0

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def daily_light_integral(average: float, photoperiod_hours: float) -> float:
    return float(average) * float(photoperiod_hours) * 3600.0 / 1_000_000.0


def aggregate(
    grid: CanopyGrid,
    sources: Sequence[SourceInstance],
    catalog: Catalog,
    floor_area: float,
    photoperiod_hours: float = 12.0,
) -> Metrics:
    enabled = [s for s in sources if s.enabled]
    total_flux = 0.0
    total_power = 0.0
    for s in enabled:
        model = catalog.require(s.model_id)
        total_flux += model.flux * s.dimming
        total_power += model.power * s.dimming
    power_density = total_power / floor_area if floor_area > 0 else 0.0

    vals = np.asarray(grid.values, dtype=float)[np.asarray(grid.in_surface, dtype=bool)]
    if vals.size == 0 or not enabled:
        return Metrics(
            power_density=float(power_density),
            total_flux=float(total_flux),
            total_power=float(total_power),
            cells=int(vals.size),
            sources=len(enabled),
        )

    avg = float(np.mean(vals))
    vmin = float(np.min(vals))
    uniformity = 0.0 if avg <= 0 else float(np.clip(vmin / avg, 0.0, 1.0))
    cv = 0.0 if avg <= 0 else float(np.std(vals) / avg)

    return Metrics(
        average=avg,
        minimum=vmin,
        maximum=float(np.max(vals)),
        uniformity=uniformity,
        dli=daily_light_integral(avg, photoperiod_hours),
        power_density=float(power_density),
        total_flux=float(total_flux),
        total_power=float(total_power),
        p05=float(np.percentile(vals, 5)),
        p95=float(np.percentile(vals, 95)),
        cv=cv,
        cells=int(vals.size),
        sources=len(enabled),
    )


def format_metrics(m: Metrics, unit: str = "ft") -> str:
    """Human-readable multi-line block for logs."""
    lines: list[str] = []
    lines.append(
        "stats: "
        f"mean={m.average:.2f} min={m.minimum:.2f} max={m.maximum:.2f} "
        f"p05={m.p05:.2f} p95={m.p95:.2f}"
    )
    lines.append(f"ratios: min/mean={m.uniformity:.3f} cv={100.0 * m.cv:.1f}%")
    lines.append(f"dose: DLI={m.dli:.2f} mol/m²/day")
    lines.append(
        f"power: sources={m.sources} flux={m.total_flux:.1f} umol/s "
        f"watts={m.total_power:.1f} density={m.power_density:.2f} W/{unit}²"
    )
    return "\n".join(lines)
