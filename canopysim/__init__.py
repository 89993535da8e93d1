"""Horticultural photometric layout and simulation engine."""

from .env import EngineSettings
from .errors import (
    CanopySimError,
    ComputationCancelled,
    InvalidDesign,
    InvalidGeometry,
    NoFeasibleLayout,
    TargetUnreachableError,
)
from .geometry import Obstacle, Room, Site
from .metrics import Metrics, aggregate, format_metrics
from .optimize import Converged, TargetUnreachable, Targets, balance_rings, optimize
from .placement import DensityProfile, plan_sources
from .records import Layout, export_layout, import_layout, read_layout_json, write_layout_json
from .session import DesignSession, SolveRequest, SolveResult, SolveScheduler
from .solver import CanopyGrid, mark_in_surface, solve_field
from .sources import Catalog, Distribution, SourceInstance, SourceModel
from .surfaces import GrowSurface, LayoutConfig, generate_surfaces

__version__ = "0.1.0"
