"""Heatmap preview of a solved canopy grid (surfaces outlined, sources marked)."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Sequence

import matplotlib

matplotlib.use("Agg")
import matplotlib.pyplot as plt  # noqa: E402
import numpy as np  # noqa: E402
from matplotlib.patches import Rectangle  # noqa: E402

from .solver import CanopyGrid  # noqa: E402
from .sources import SourceInstance  # noqa: E402
from .surfaces import GrowSurface  # noqa: E402

logger = logging.getLogger(__name__)


def render_heatmap(
    grid: CanopyGrid,
    path: Path | str,
    sources: Sequence[SourceInstance] | None = None,
    surfaces: Sequence[GrowSurface] | None = None,
    *,
    unit: str = "ft",
    cmap: str = "jet",
    vmin: float | None = None,
    vmax: float | None = None,
    dpi: int = 150,
) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    x0, y0, _, _ = grid.bounds
    ny, nx = grid.values.shape
    xe = x0 + np.arange(nx + 1) * grid.resolution
    ye = y0 + np.arange(ny + 1) * grid.resolution

    fig, ax = plt.subplots(figsize=(10, max(3.0, 10.0 * (ye[-1] - ye[0]) / max(xe[-1] - xe[0], 1e-9))))
    pc = ax.pcolormesh(xe, ye, grid.values, cmap=cmap, shading="flat", vmin=vmin, vmax=vmax)
    fig.colorbar(pc, ax=ax, label="PPFD (µmol/m²/s)")

    for s in surfaces or ():
        ax.add_patch(Rectangle((s.x, s.y), s.length, s.width, fill=False, edgecolor="white", linewidth=1.0))
    if surfaces:
        ax.plot([], [], color="white", label=f"surfaces ({len(surfaces)})")

    on = [s for s in (sources or ()) if s.enabled]
    if on:
        ax.scatter([s.x for s in on], [s.y for s in on], marker="x", c="black", s=20,
                   label=f"sources ({len(on)})")
        ax.legend(loc="lower center", bbox_to_anchor=(0.5, 1.02), ncol=2, framealpha=0.9)

    ax.set_xlim(xe[0], xe[-1])
    ax.set_ylim(ye[0], ye[-1])
    ax.set_xlabel(f"X ({unit})")
    ax.set_ylabel(f"Y ({unit})")
    ax.set_aspect("equal", adjustable="box")
    fig.tight_layout()
    fig.savefig(path, dpi=dpi)
    plt.close(fig)
    logger.info(f"Saved heatmap → {path}")
    return path
