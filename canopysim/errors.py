"""Exception hierarchy for the canopy simulation engine."""

from __future__ import annotations

from typing import Any


class CanopySimError(Exception):
    """Base exception for all engine errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class InvalidGeometry(CanopySimError):
    """Room or obstacle geometry is malformed."""
    pass


class NoFeasibleLayout(CanopySimError):
    """Not a single grow surface fits the room with the given clearances."""
    pass


class InvalidDesign(CanopySimError):
    """A source instance or layout record violates its invariants."""
    pass


class ComputationCancelled(CanopySimError):
    """A solve was superseded by a newer request for the same session."""
    pass


class TargetUnreachableError(CanopySimError):
    """Raised by ``TargetUnreachable.raise_for_status()``.

    Carries the best observed result and the residual delta from target.
    """

    def __init__(self, message: str, best: Any = None, delta: dict[str, float] | None = None) -> None:
        super().__init__(message, {"delta": dict(delta or {})})
        self.best = best
        self.delta = dict(delta or {})
