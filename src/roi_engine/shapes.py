"""Shape models for 2D annotations positioned in a 5D image.

A :class:`ShapeModel` is an immutable value: a kind, a kind-specific
geometry payload, a concrete ``(c, z, t)`` plane, an optional text label and
an opaque style. Mutators return new shapes.

Conventions
-----------
- Coordinates are full-resolution pixel coordinates, x to the right and y down.
- Plane indices are 0-based and always concrete (no "all planes" wildcard).
- Colors are stored as ``#rrggbbaa`` strings.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field, replace
from typing import NamedTuple, Optional, Sequence, Tuple, Union

import numpy as np
from matplotlib import colors as mcolors

__all__ = [
    "ShapeKind",
    "Plane",
    "ShapeStyle",
    "BoundingBox2D",
    "RectangleGeometry",
    "EllipseGeometry",
    "LineGeometry",
    "PointGeometry",
    "PolygonGeometry",
    "TextGeometry",
    "MaskGeometry",
    "ShapeModel",
]


class ShapeKind(enum.Enum):
    RECTANGLE = "rectangle"
    ELLIPSE = "ellipse"
    LINE = "line"
    ARROW = "arrow"
    POINT = "point"
    POLYGON = "polygon"
    POLYLINE = "polyline"
    TEXT = "text"
    MASK = "mask"


class Plane(NamedTuple):
    """Channel, Z-plane and timepoint of a shape (0-based)."""

    c: int = 0
    z: int = 0
    t: int = 0


class BoundingBox2D(NamedTuple):
    x: float
    y: float
    width: float
    height: float


def _normalize_color(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    return mcolors.to_hex(value, keep_alpha=True)


@dataclass(frozen=True)
class ShapeStyle:
    """Display decorations carried through conversions untouched.

    ``marker_start``/``marker_end`` name line-end markers (e.g. ``"Arrow"``).
    """

    marker_start: Optional[str] = None
    marker_end: Optional[str] = None
    stroke_color: Optional[str] = None
    fill_color: Optional[str] = None
    stroke_width: Optional[float] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "stroke_color", _normalize_color(self.stroke_color))
        object.__setattr__(self, "fill_color", _normalize_color(self.fill_color))
        if self.stroke_width is not None:
            object.__setattr__(self, "stroke_width", float(self.stroke_width))


@dataclass(frozen=True)
class RectangleGeometry:
    x: float
    y: float
    width: float
    height: float


@dataclass(frozen=True)
class EllipseGeometry:
    """Ellipse given by its center and radii."""

    x: float
    y: float
    radius_x: float
    radius_y: float


@dataclass(frozen=True)
class LineGeometry:
    x1: float
    y1: float
    x2: float
    y2: float


@dataclass(frozen=True)
class PointGeometry:
    x: float
    y: float


@dataclass(frozen=True)
class PolygonGeometry:
    points: Tuple[Tuple[float, float], ...]

    def __post_init__(self) -> None:
        pts = tuple((float(x), float(y)) for x, y in self.points)
        if not pts:
            raise ValueError("Polygon geometry requires at least one point.")
        object.__setattr__(self, "points", pts)


@dataclass(frozen=True)
class TextGeometry:
    """Anchor (top-left) of a text label."""

    x: float
    y: float


@dataclass(frozen=True)
class MaskGeometry:
    """Binary mask placed on the rectangle ``(x, y, width, height)``.

    ``bits`` is stored as nested tuples (row-major, ``bits[row][col]``) so the
    geometry stays hashable and comparable; use :meth:`as_array` for numpy.
    """

    x: float
    y: float
    width: float
    height: float
    bits: Tuple[Tuple[bool, ...], ...] = field(default=())

    def __post_init__(self) -> None:
        arr = np.asarray(self.bits, dtype=bool)
        if arr.size and arr.ndim != 2:
            raise ValueError(f"Mask bits must be 2D, got shape {arr.shape}")
        object.__setattr__(self, "bits", tuple(tuple(bool(v) for v in row) for row in arr))

    def as_array(self) -> np.ndarray:
        if not self.bits:
            return np.zeros((0, 0), dtype=bool)
        return np.array(self.bits, dtype=bool)


Geometry = Union[
    RectangleGeometry,
    EllipseGeometry,
    LineGeometry,
    PointGeometry,
    PolygonGeometry,
    TextGeometry,
    MaskGeometry,
]

_GEOMETRY_FOR_KIND = {
    ShapeKind.RECTANGLE: RectangleGeometry,
    ShapeKind.ELLIPSE: EllipseGeometry,
    ShapeKind.LINE: LineGeometry,
    ShapeKind.ARROW: LineGeometry,
    ShapeKind.POINT: PointGeometry,
    ShapeKind.POLYGON: PolygonGeometry,
    ShapeKind.POLYLINE: PolygonGeometry,
    ShapeKind.TEXT: TextGeometry,
    ShapeKind.MASK: MaskGeometry,
}


@dataclass(frozen=True)
class ShapeModel:
    """A single 2D annotation on a concrete plane.

    Parameters
    ----------
    kind : ShapeKind
        Shape variant; selects the expected geometry type.
    geometry : Geometry
        Kind-specific payload.
    plane : Plane
        ``(c, z, t)`` indices, all default 0.
    text : str, optional
        Label shown with the shape (the text itself for TEXT shapes).
    style : ShapeStyle
        Opaque display decorations.
    shape_id : int, optional
        Server-assigned identity; None until persisted.
    """

    kind: ShapeKind
    geometry: Geometry
    plane: Plane = Plane()
    text: Optional[str] = None
    style: ShapeStyle = ShapeStyle()
    shape_id: Optional[int] = None

    def __post_init__(self) -> None:
        expected = _GEOMETRY_FOR_KIND[self.kind]
        if not isinstance(self.geometry, expected):
            raise TypeError(
                f"{self.kind.name} expects {expected.__name__}, got {type(self.geometry).__name__}"
            )
        plane = Plane(*(int(v) for v in self.plane))
        if min(plane) < 0:
            raise ValueError(f"Plane indices must be non-negative, got {tuple(plane)}")
        object.__setattr__(self, "plane", plane)

    # -- factories --------------------------------------------------------

    @classmethod
    def rectangle(cls, x: float, y: float, width: float, height: float, **kwargs) -> "ShapeModel":
        return cls(ShapeKind.RECTANGLE, RectangleGeometry(x, y, width, height), **kwargs)

    @classmethod
    def ellipse(cls, x: float, y: float, radius_x: float, radius_y: float, **kwargs) -> "ShapeModel":
        return cls(ShapeKind.ELLIPSE, EllipseGeometry(x, y, radius_x, radius_y), **kwargs)

    @classmethod
    def line(cls, x1: float, y1: float, x2: float, y2: float, **kwargs) -> "ShapeModel":
        return cls(ShapeKind.LINE, LineGeometry(x1, y1, x2, y2), **kwargs)

    @classmethod
    def arrow(
        cls,
        x1: float,
        y1: float,
        x2: float,
        y2: float,
        double_headed: bool = False,
        marker: str = "Arrow",
        **kwargs,
    ) -> "ShapeModel":
        """Arrow from ``(x1, y1)`` to a head at ``(x2, y2)``."""
        style = kwargs.pop("style", ShapeStyle())
        style = replace(style, marker_end=marker, marker_start=marker if double_headed else None)
        return cls(ShapeKind.ARROW, LineGeometry(x1, y1, x2, y2), style=style, **kwargs)

    @classmethod
    def point(cls, x: float, y: float, **kwargs) -> "ShapeModel":
        return cls(ShapeKind.POINT, PointGeometry(x, y), **kwargs)

    @classmethod
    def polygon(cls, points: Sequence[Tuple[float, float]], **kwargs) -> "ShapeModel":
        return cls(ShapeKind.POLYGON, PolygonGeometry(tuple(points)), **kwargs)

    @classmethod
    def polyline(cls, points: Sequence[Tuple[float, float]], **kwargs) -> "ShapeModel":
        return cls(ShapeKind.POLYLINE, PolygonGeometry(tuple(points)), **kwargs)

    @classmethod
    def text_label(cls, text: str, x: float, y: float, **kwargs) -> "ShapeModel":
        return cls(ShapeKind.TEXT, TextGeometry(x, y), text=text, **kwargs)

    @classmethod
    def mask(cls, x: float, y: float, bits, width: Optional[float] = None, height: Optional[float] = None, **kwargs) -> "ShapeModel":
        """Mask shape; width/height default to the bit array's size."""
        arr = np.asarray(bits, dtype=bool)
        if arr.ndim != 2:
            raise ValueError(f"Mask bits must be 2D, got shape {arr.shape}")
        w = float(arr.shape[1]) if width is None else width
        h = float(arr.shape[0]) if height is None else height
        return cls(ShapeKind.MASK, MaskGeometry(x, y, w, h, arr), **kwargs)

    # -- mutators ---------------------------------------------------------

    def with_plane(self, c: int = 0, z: int = 0, t: int = 0) -> "ShapeModel":
        return replace(self, plane=Plane(c, z, t))

    def with_text(self, text: Optional[str]) -> "ShapeModel":
        return replace(self, text=text)

    def with_style(self, style: ShapeStyle) -> "ShapeModel":
        return replace(self, style=style)

    def with_id(self, shape_id: Optional[int]) -> "ShapeModel":
        return replace(self, shape_id=shape_id)

    # -- geometry ---------------------------------------------------------

    @property
    def is_double_headed(self) -> bool:
        return self.kind is ShapeKind.ARROW and self.style.marker_start is not None

    def bounding_box(self) -> BoundingBox2D:
        """Return the axis-aligned 2D box ``(x, y, width, height)`` of the shape."""
        g = self.geometry
        kind = self.kind
        if kind is ShapeKind.RECTANGLE or kind is ShapeKind.MASK:
            return BoundingBox2D(g.x, g.y, g.width, g.height)
        if kind is ShapeKind.ELLIPSE:
            return BoundingBox2D(g.x - g.radius_x, g.y - g.radius_y, 2 * g.radius_x, 2 * g.radius_y)
        if kind is ShapeKind.LINE or kind is ShapeKind.ARROW:
            x0, x1 = sorted((g.x1, g.x2))
            y0, y1 = sorted((g.y1, g.y2))
            return BoundingBox2D(x0, y0, x1 - x0, y1 - y0)
        if kind is ShapeKind.POLYGON or kind is ShapeKind.POLYLINE:
            xs = [p[0] for p in g.points]
            ys = [p[1] for p in g.points]
            return BoundingBox2D(min(xs), min(ys), max(xs) - min(xs), max(ys) - min(ys))
        if kind is ShapeKind.POINT or kind is ShapeKind.TEXT:
            return BoundingBox2D(g.x, g.y, 0.0, 0.0)
        raise AssertionError(f"Unhandled shape kind: {kind}")
