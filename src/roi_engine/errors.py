"""Exception taxonomy for bounds, pixel fetching and shape conversion."""

from __future__ import annotations

from typing import List, Optional, Sequence, Tuple

__all__ = [
    "RoiEngineError",
    "EmptyInputError",
    "OutOfRangeError",
    "RemoteReadError",
    "UnsupportedShapeError",
    "FetchCancelledError",
]

# (axis, lo, hi, declared_size)
AxisViolation = Tuple[str, int, int, int]


class RoiEngineError(Exception):
    """Base class for all engine errors."""


class EmptyInputError(RoiEngineError, ValueError):
    """Bounds were requested on an empty shape sequence."""


class OutOfRangeError(RoiEngineError, IndexError):
    """One or more axis ranges fall outside the declared volume.

    Attributes
    ----------
    violations : list[tuple[str, int, int, int]]
        Every offending axis as ``(axis, lo, hi, declared_size)``.
    """

    def __init__(self, violations: Sequence[AxisViolation]) -> None:
        self.violations: List[AxisViolation] = list(violations)
        details = ", ".join(
            f"{axis}=[{lo}, {hi}] (size {size})" for axis, lo, hi, size in self.violations
        )
        super().__init__(f"Axis range out of bounds: {details}")

    @property
    def axes(self) -> List[str]:
        return [v[0] for v in self.violations]


class RemoteReadError(RoiEngineError, IOError):
    """A plane read failed; the whole volume fetch is aborted.

    Attributes
    ----------
    plane : tuple[int, int, int]
        Failing ``(t, z, c)`` coordinate in source space (a ``PlaneIndex``
        when raised by the stitcher).
    """

    def __init__(self, plane: Tuple[int, int, int], message: Optional[str] = None) -> None:
        self.plane = plane
        t, z, c = plane
        text = f"Cannot read plane t={t}, z={z}, c={c}"
        if message:
            text = f"{text}: {message}"
        super().__init__(text)


class UnsupportedShapeError(RoiEngineError, TypeError):
    """A local shape has no conversion and no decomposition rule."""


class FetchCancelledError(RoiEngineError):
    """A volume fetch was cancelled before completion."""
