"""5D bounds computation and axis-range validation.

Bounds are inclusive on both ends: a box from ``start`` to ``end`` covers
``end - start + 1`` samples per axis.

Conventions
-----------
- Axis order for coordinates is ``(x, y, c, z, t)``.
- Plane iteration order is T major, then Z, then C.
- Requested ranges outside the declared volume raise ``OutOfRangeError``;
  they are never clamped.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, Iterator, List, NamedTuple, Optional, Sequence, Tuple

from roi_engine.errors import EmptyInputError, OutOfRangeError
from roi_engine.shapes import ShapeModel

__all__ = [
    "AXES",
    "Coordinates",
    "PlaneIndex",
    "Bounds5D",
    "compute_bounds",
    "resolve_axis_range",
    "resolve_bounds",
    "check_bounds_within",
]

AXES = ("x", "y", "c", "z", "t")

AxisRange = Tuple[int, int]


class Coordinates(NamedTuple):
    x: int
    y: int
    c: int
    z: int
    t: int


class PlaneIndex(NamedTuple):
    """Address of one (X, Y) plane in a volume."""

    t: int
    z: int
    c: int


@dataclass(frozen=True)
class Bounds5D:
    """Inclusive 5D box from ``start`` to ``end``."""

    start: Coordinates
    end: Coordinates

    def __post_init__(self) -> None:
        start = Coordinates(*(int(v) for v in self.start))
        end = Coordinates(*(int(v) for v in self.end))
        for axis, lo, hi in zip(AXES, start, end):
            if lo > hi:
                raise ValueError(f"Bounds start exceeds end on axis {axis}: {lo} > {hi}")
        object.__setattr__(self, "start", start)
        object.__setattr__(self, "end", end)

    @classmethod
    def from_ranges(
        cls, x: AxisRange, y: AxisRange, c: AxisRange, z: AxisRange, t: AxisRange
    ) -> "Bounds5D":
        ranges = (x, y, c, z, t)
        return cls(
            Coordinates(*(r[0] for r in ranges)),
            Coordinates(*(r[1] for r in ranges)),
        )

    @property
    def size(self) -> Coordinates:
        return Coordinates(*(hi - lo + 1 for lo, hi in zip(self.start, self.end)))

    @property
    def plane_count(self) -> int:
        size = self.size
        return size.t * size.z * size.c

    def axis_range(self, axis: str) -> AxisRange:
        idx = AXES.index(axis)
        return self.start[idx], self.end[idx]

    def iter_planes(self) -> Iterator[PlaneIndex]:
        """Yield source-space ``(t, z, c)`` indices, T major then Z then C."""
        for t in range(self.start.t, self.end.t + 1):
            for z in range(self.start.z, self.end.z + 1):
                for c in range(self.start.c, self.end.c + 1):
                    yield PlaneIndex(t, z, c)


def _shape_extent(shape: ShapeModel) -> Tuple[Coordinates, Coordinates]:
    box = shape.bounding_box()
    x0 = math.floor(box.x)
    y0 = math.floor(box.y)
    # Inclusive end; a sub-pixel box still covers its start pixel.
    x1 = max(x0, math.floor(box.x + box.width - 1))
    y1 = max(y0, math.floor(box.y + box.height - 1))
    c, z, t = shape.plane
    return Coordinates(x0, y0, c, z, t), Coordinates(x1, y1, c, z, t)


def compute_bounds(shapes: Iterable[ShapeModel]) -> Bounds5D:
    """Return the minimal 5D box enclosing all shapes.

    Parameters
    ----------
    shapes : iterable of ShapeModel
        Shapes to enclose.

    Returns
    -------
    Bounds5D
        Per-axis minimum of starts and maximum of inclusive ends.

    Raises
    ------
    EmptyInputError
        If ``shapes`` is empty.
    """
    lo: Optional[List[int]] = None
    hi: Optional[List[int]] = None
    for shape in shapes:
        start, end = _shape_extent(shape)
        if lo is None or hi is None:
            lo, hi = list(start), list(end)
            continue
        lo = [min(a, b) for a, b in zip(lo, start)]
        hi = [max(a, b) for a, b in zip(hi, end)]
    if lo is None or hi is None:
        raise EmptyInputError("Cannot compute bounds of an empty shape sequence.")
    return Bounds5D(Coordinates(*lo), Coordinates(*hi))


def _axis_violation(
    requested: Optional[Sequence[int]], declared_size: int, axis: str
) -> Optional[Tuple[str, int, int, int]]:
    if requested is None:
        return None
    lo, hi = int(requested[0]), int(requested[1])
    if lo < 0 or hi >= declared_size or lo > hi:
        return (axis, lo, hi, int(declared_size))
    return None


def resolve_axis_range(
    requested: Optional[Sequence[int]], declared_size: int, axis: str = "x"
) -> AxisRange:
    """Resolve a requested ``[lo, hi]`` range for one axis.

    Parameters
    ----------
    requested : sequence of two ints, optional
        Inclusive range; None selects the whole axis.
    declared_size : int
        Size of the axis in the source volume.
    axis : str
        Axis name used in error reports.

    Returns
    -------
    tuple[int, int]
        ``(0, declared_size - 1)`` when omitted, else the validated range.
    """
    if requested is not None and len(requested) != 2:
        raise ValueError(f"Axis range for {axis} must have two values, got {requested!r}")
    violation = _axis_violation(requested, declared_size, axis)
    if violation is not None:
        raise OutOfRangeError([violation])
    if requested is None:
        if declared_size < 1:
            raise OutOfRangeError([(axis, 0, declared_size - 1, int(declared_size))])
        return 0, int(declared_size) - 1
    return int(requested[0]), int(requested[1])


def _declared_sizes(dimensions) -> Tuple[int, int, int, int, int]:
    return (
        int(dimensions.size_x),
        int(dimensions.size_y),
        int(dimensions.size_c),
        int(dimensions.size_z),
        int(dimensions.size_t),
    )


def resolve_bounds(
    dimensions,
    x: Optional[Sequence[int]] = None,
    y: Optional[Sequence[int]] = None,
    c: Optional[Sequence[int]] = None,
    z: Optional[Sequence[int]] = None,
    t: Optional[Sequence[int]] = None,
) -> Bounds5D:
    """Resolve per-axis requests against declared dimensions.

    Every axis is validated; all violations are reported together in a
    single ``OutOfRangeError``. Malformed requests (not two values) are
    checked on all axes first and reported together in a ``ValueError``.
    """
    requests = (x, y, c, z, t)
    malformed = [
        f"{axis}={requested!r}"
        for axis, requested in zip(AXES, requests)
        if requested is not None and len(requested) != 2
    ]
    if malformed:
        raise ValueError(f"Axis ranges must have two values: {', '.join(malformed)}")
    violations = []
    ranges = []
    for axis, requested, size in zip(AXES, requests, _declared_sizes(dimensions)):
        try:
            ranges.append(resolve_axis_range(requested, size, axis))
        except OutOfRangeError as exc:
            violations.extend(exc.violations)
    if violations:
        raise OutOfRangeError(violations)
    return Bounds5D.from_ranges(*ranges)


def check_bounds_within(bounds: Bounds5D, dimensions) -> Bounds5D:
    """Validate that ``bounds`` lies inside the declared volume and return it."""
    violations = []
    for axis, lo, hi, size in zip(AXES, bounds.start, bounds.end, _declared_sizes(dimensions)):
        violation = _axis_violation((lo, hi), size, axis)
        if violation is not None:
            violations.append(violation)
    if violations:
        raise OutOfRangeError(violations)
    return bounds
