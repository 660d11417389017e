"""Conversion between shape models and Matplotlib artists, with 4D grouping.

The local toolkit's 2D shape model is Matplotlib: each :class:`LocalShape`
wraps one artist together with the ROI metadata an image toolkit keeps next
to it (name, 1-based plane position, string properties, display group).

Kind mapping
------------
- rectangle -> ``patches.Rectangle``
- ellipse -> ``patches.Ellipse``
- line -> ``lines.Line2D`` with two points and a visible line
- arrow -> ``text.Annotation`` with an arrow (``->``, ``<-`` or ``<->``)
- point -> ``lines.Line2D`` with one point and no line
- polygon / polyline -> ``patches.Polygon`` (closed / open)
- text -> ``text.Text``
- mask -> ``image.AxesImage`` whose extent is the mask rectangle

Marker-only ``Line2D`` artists with several points and ``patches.PathPatch``
artists are composite: they are decomposed into primitives sharing name,
position, properties and group before conversion.

Conventions
-----------
- ``LocalShape.position`` is 1-based ``(c, z, t)``; 0 means "all planes" and
  maps to plane 0.
- Group ids live in a string property (``"ROI"`` by default); the server ROI
  id is written to ``"<property>_ID"``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

import numpy as np
from matplotlib.artist import Artist
from matplotlib.image import AxesImage
from matplotlib.lines import Line2D
from matplotlib.patches import Ellipse, PathPatch, Polygon, Rectangle
from matplotlib.text import Annotation, Text

from roi_engine.config import DEFAULT_CONFIG, EngineConfig, check_property
from roi_engine.config import id_property as roi_id_property
from roi_engine.errors import UnsupportedShapeError
from roi_engine.logger import get_logger
from roi_engine.roi import RoiAggregate
from roi_engine.shapes import (
    EllipseGeometry,
    LineGeometry,
    MaskGeometry,
    Plane,
    PointGeometry,
    PolygonGeometry,
    RectangleGeometry,
    ShapeKind,
    ShapeModel,
    ShapeStyle,
    TextGeometry,
)

__all__ = [
    "LocalShape",
    "to_local_shape",
    "from_local_shape",
    "decompose_local_shape",
    "local_to_shapes",
    "group_4d",
    "ungroup_4d",
]

LOGGER = get_logger(__name__)

_INTEGER_RE = re.compile(r"-?\d+")


@dataclass
class LocalShape:
    """A Matplotlib artist plus toolkit ROI metadata.

    Parameters
    ----------
    artist : matplotlib.artist.Artist
        Geometry carrier.
    name : str
        Display name.
    position : tuple[int, int, int]
        1-based ``(c, z, t)`` position; 0 means unset.
    properties : dict[str, str]
        Free-form string properties (group ids live here).
    group : int
        Display group for grouped coloring; 0 means none.
    exact_size : tuple[float, float], optional
        Mask width and height as given, before the artist's extent arithmetic.
    repeats_first_point : bool
        The polygon or polyline vertex list ends on its first point.
    """

    artist: Artist
    name: str = ""
    position: Tuple[int, int, int] = (0, 0, 0)
    properties: Dict[str, str] = field(default_factory=dict)
    group: int = 0
    stroke_color: Optional[str] = None
    fill_color: Optional[str] = None
    stroke_width: Optional[float] = None
    marker_start: Optional[str] = None
    marker_end: Optional[str] = None
    exact_size: Optional[Tuple[float, float]] = None
    repeats_first_point: bool = False

    def __post_init__(self) -> None:
        position = tuple(int(v) for v in self.position)
        if len(position) != 3 or min(position) < 0:
            raise ValueError(f"Position must be three non-negative ints, got {self.position!r}")
        self.position = position

    def get_property(self, key: str) -> Optional[str]:
        return self.properties.get(key)

    def set_property(self, key: str, value) -> None:
        self.properties[key] = str(value)

    @property
    def plane(self) -> Plane:
        c, z, t = self.position
        return Plane(max(0, c - 1), max(0, z - 1), max(0, t - 1))


# -- ShapeModel -> LocalShape -------------------------------------------------


def _patch_kwargs(style: ShapeStyle) -> dict:
    kwargs = {"fill": style.fill_color is not None}
    if style.stroke_color is not None:
        kwargs["edgecolor"] = style.stroke_color
    if style.fill_color is not None:
        kwargs["facecolor"] = style.fill_color
    if style.stroke_width is not None:
        kwargs["linewidth"] = style.stroke_width
    return kwargs


def _line_kwargs(style: ShapeStyle) -> dict:
    kwargs = {}
    if style.stroke_color is not None:
        kwargs["color"] = style.stroke_color
    if style.stroke_width is not None:
        kwargs["linewidth"] = style.stroke_width
    return kwargs


def _arrowstyle(style: ShapeStyle) -> str:
    head_start = style.marker_start is not None
    head_end = style.marker_end is not None
    if head_start and head_end:
        return "<->"
    if head_start:
        return "<-"
    if head_end:
        return "->"
    return "-"


def _build_artist(shape: ShapeModel) -> Artist:
    g = shape.geometry
    style = shape.style
    kind = shape.kind
    if kind is ShapeKind.RECTANGLE:
        return Rectangle((g.x, g.y), g.width, g.height, **_patch_kwargs(style))
    if kind is ShapeKind.ELLIPSE:
        return Ellipse((g.x, g.y), 2 * g.radius_x, 2 * g.radius_y, **_patch_kwargs(style))
    if kind is ShapeKind.LINE:
        return Line2D([g.x1, g.x2], [g.y1, g.y2], **_line_kwargs(style))
    if kind is ShapeKind.ARROW:
        arrowprops = {"arrowstyle": _arrowstyle(style), **_line_kwargs(style)}
        return Annotation("", xy=(g.x2, g.y2), xytext=(g.x1, g.y1), arrowprops=arrowprops)
    if kind is ShapeKind.POINT:
        return Line2D([g.x], [g.y], marker="+", linestyle="None", **_line_kwargs(style))
    if kind is ShapeKind.POLYGON:
        return Polygon(np.asarray(g.points, dtype=float), closed=True, **_patch_kwargs(style))
    if kind is ShapeKind.POLYLINE:
        return Polygon(np.asarray(g.points, dtype=float), closed=False, **_patch_kwargs(style))
    if kind is ShapeKind.TEXT:
        kwargs = {"color": style.stroke_color} if style.stroke_color is not None else {}
        return Text(g.x, g.y, shape.text or "", **kwargs)
    if kind is ShapeKind.MASK:
        bits = g.as_array()
        if bits.size == 0:
            raise UnsupportedShapeError("Cannot display a mask without bits.")
        image = AxesImage(
            None,
            extent=(g.x, g.x + g.width, g.y + g.height, g.y),
            origin="upper",
            interpolation="nearest",
        )
        image.set_data(bits.astype(np.uint8))
        return image
    raise AssertionError(f"Unhandled shape kind: {kind}")


def to_local_shape(shape: ShapeModel) -> LocalShape:
    """Convert a :class:`ShapeModel` into a :class:`LocalShape`."""
    c, z, t = shape.plane
    g = shape.geometry
    exact_size = (g.width, g.height) if shape.kind is ShapeKind.MASK else None
    repeats_first_point = isinstance(g, PolygonGeometry) and len(g.points) > 1 and g.points[0] == g.points[-1]
    return LocalShape(
        artist=_build_artist(shape),
        name=shape.text or "",
        position=(c + 1, z + 1, t + 1),
        stroke_color=shape.style.stroke_color,
        fill_color=shape.style.fill_color,
        stroke_width=shape.style.stroke_width,
        marker_start=shape.style.marker_start,
        marker_end=shape.style.marker_end,
        exact_size=exact_size,
        repeats_first_point=repeats_first_point,
    )


# -- LocalShape -> ShapeModel -------------------------------------------------


def _is_marker_only(line: Line2D) -> bool:
    return line.get_linestyle() in ("None", "none", " ", "")


def _line_points(line: Line2D) -> np.ndarray:
    xs = np.asarray(line.get_xdata(), dtype=float).ravel()
    ys = np.asarray(line.get_ydata(), dtype=float).ravel()
    return np.column_stack([xs, ys])


def _is_composite(artist: Artist) -> bool:
    if isinstance(artist, PathPatch):
        return True
    if isinstance(artist, Line2D):
        return _is_marker_only(artist) and len(_line_points(artist)) > 1
    return False


def _polygon_points(polygon: Polygon, repeats_first_point: bool = False) -> Tuple[Tuple[float, float], ...]:
    # Matplotlib appends the first vertex to closed polygons and strips it
    # from open ones.
    xy = np.asarray(polygon.get_xy(), dtype=float)
    ends_on_first = len(xy) > 1 and np.array_equal(xy[0], xy[-1])
    if polygon.get_closed() and ends_on_first and not repeats_first_point:
        xy = xy[:-1]
    elif not polygon.get_closed() and repeats_first_point and not ends_on_first:
        xy = np.vstack([xy, xy[:1]])
    return tuple((float(x), float(y)) for x, y in xy)


def _style_from_local(local: LocalShape, **markers) -> ShapeStyle:
    return ShapeStyle(
        marker_start=markers.get("marker_start", local.marker_start),
        marker_end=markers.get("marker_end", local.marker_end),
        stroke_color=local.stroke_color,
        fill_color=local.fill_color,
        stroke_width=local.stroke_width,
    )


def from_local_shape(local: LocalShape, arrow_marker: str = DEFAULT_CONFIG.arrow_marker) -> ShapeModel:
    """Convert a primitive :class:`LocalShape` into a :class:`ShapeModel`.

    Raises
    ------
    UnsupportedShapeError
        For composite artists (use :func:`decompose_local_shape` first),
        rotated rectangles/ellipses and artist types without a mapping.
    """
    artist = local.artist
    plane = local.plane
    text = local.name or None
    style = _style_from_local(local)
    if _is_composite(artist):
        raise UnsupportedShapeError(
            f"{type(artist).__name__} is composite; decompose it before conversion."
        )
    # Annotation subclasses Text; check it first.
    if isinstance(artist, Annotation):
        if artist.arrowprops is None:
            x, y = artist.get_position()
            return ShapeModel(ShapeKind.TEXT, TextGeometry(float(x), float(y)), plane, artist.get_text() or None, style)
        arrowstyle = str(artist.arrowprops.get("arrowstyle", "->"))
        head, _, tail = arrowstyle.partition("-")
        style = _style_from_local(
            local,
            marker_start=(local.marker_start or arrow_marker) if "<" in head else None,
            marker_end=(local.marker_end or arrow_marker) if ">" in tail else None,
        )
        (x1, y1), (x2, y2) = artist.xyann, artist.xy
        return ShapeModel(ShapeKind.ARROW, LineGeometry(float(x1), float(y1), float(x2), float(y2)), plane, text, style)
    if isinstance(artist, Text):
        x, y = artist.get_position()
        return ShapeModel(ShapeKind.TEXT, TextGeometry(float(x), float(y)), plane, artist.get_text() or None, style)
    if isinstance(artist, Rectangle):
        if getattr(artist, "angle", 0.0):
            raise UnsupportedShapeError("Rotated rectangles are not supported.")
        geometry = RectangleGeometry(
            float(artist.get_x()), float(artist.get_y()), float(artist.get_width()), float(artist.get_height())
        )
        return ShapeModel(ShapeKind.RECTANGLE, geometry, plane, text, style)
    if isinstance(artist, Ellipse):
        if getattr(artist, "angle", 0.0):
            raise UnsupportedShapeError("Rotated ellipses are not supported.")
        cx, cy = artist.center
        geometry = EllipseGeometry(float(cx), float(cy), float(artist.width) / 2, float(artist.height) / 2)
        return ShapeModel(ShapeKind.ELLIPSE, geometry, plane, text, style)
    if isinstance(artist, Polygon):
        kind = ShapeKind.POLYGON if artist.get_closed() else ShapeKind.POLYLINE
        return ShapeModel(kind, PolygonGeometry(_polygon_points(artist, local.repeats_first_point)), plane, text, style)
    if isinstance(artist, Line2D):
        points = _line_points(artist)
        if len(points) == 0:
            raise UnsupportedShapeError("Line2D without data points.")
        if len(points) == 1:
            x, y = points[0]
            return ShapeModel(ShapeKind.POINT, PointGeometry(float(x), float(y)), plane, text, style)
        if len(points) == 2:
            (x1, y1), (x2, y2) = points
            return ShapeModel(ShapeKind.LINE, LineGeometry(float(x1), float(y1), float(x2), float(y2)), plane, text, style)
        return ShapeModel(ShapeKind.POLYLINE, PolygonGeometry(tuple(map(tuple, points))), plane, text, style)
    if isinstance(artist, AxesImage):
        left, right, bottom, top = artist.get_extent()
        bits = np.asarray(artist.get_array()) != 0
        width, height = float(right - left), float(bottom - top)
        if local.exact_size is not None and np.allclose((width, height), local.exact_size):
            width, height = local.exact_size
        geometry = MaskGeometry(float(left), float(top), width, height, bits)
        return ShapeModel(ShapeKind.MASK, geometry, plane, text, style)
    raise UnsupportedShapeError(f"No conversion for {type(artist).__name__}.")


def _with_artist(local: LocalShape, artist: Artist) -> LocalShape:
    return LocalShape(
        artist=artist,
        name=local.name,
        position=local.position,
        properties=dict(local.properties),
        group=local.group,
        stroke_color=local.stroke_color,
        fill_color=local.fill_color,
        stroke_width=local.stroke_width,
        marker_start=local.marker_start,
        marker_end=local.marker_end,
    )


def decompose_local_shape(local: LocalShape) -> List[LocalShape]:
    """Split a composite shape into primitives; primitives are returned as-is."""
    artist = local.artist
    if isinstance(artist, PathPatch):
        parts = []
        for vertices in artist.get_path().to_polygons(closed_only=True):
            if len(vertices) > 1 and np.array_equal(vertices[0], vertices[-1]):
                vertices = vertices[:-1]
            if len(vertices) == 0:
                continue
            parts.append(_with_artist(local, Polygon(vertices, closed=True)))
        return parts
    if isinstance(artist, Line2D) and _is_composite(artist):
        return [
            _with_artist(local, Line2D([x], [y], marker="+", linestyle="None"))
            for x, y in _line_points(artist)
        ]
    return [local]


def local_to_shapes(local: LocalShape, arrow_marker: str = DEFAULT_CONFIG.arrow_marker) -> List[ShapeModel]:
    """Decompose ``local`` if needed and convert every primitive."""
    return [from_local_shape(part, arrow_marker) for part in decompose_local_shape(local)]


# -- 4D grouping --------------------------------------------------------------


def _parse_group_id(value: Optional[str]) -> Optional[int]:
    if value is None or not _INTEGER_RE.fullmatch(value):
        return None
    return int(value)


def group_4d(
    flat_shapes: Iterable[LocalShape],
    id_property: Optional[str] = None,
    strict: Optional[bool] = None,
    config: EngineConfig = DEFAULT_CONFIG,
) -> List[RoiAggregate]:
    """Rebuild ROIs from a flat list of local shapes.

    Shapes whose ``id_property`` holds the same integer are merged, in input
    order, into one ROI, whatever lies between them. Shapes without an
    integer id each become their own ROI. ROIs are returned in order of
    first appearance.

    Parameters
    ----------
    flat_shapes : iterable of LocalShape
        Shapes to group.
    id_property : str, optional
        Property holding the group id; None or blank selects ``"ROI"``.
    strict : bool, optional
        If True, the first conversion failure aborts the batch. If False,
        failing shapes are logged and skipped. Defaults to
        ``config.strict_conversion``.
    """
    prop = check_property(id_property)
    strict = config.strict_conversion if strict is None else strict
    by_id: Dict[int, RoiAggregate] = {}
    ordered: List[RoiAggregate] = []
    skipped = 0
    for index, local in enumerate(flat_shapes):
        try:
            shapes = local_to_shapes(local, config.arrow_marker)
        except UnsupportedShapeError as exc:
            if strict:
                raise
            skipped += 1
            LOGGER.warning("Skipping local shape %d (%r): %s", index, local.name, exc)
            continue
        group_id = _parse_group_id(local.get_property(prop))
        if group_id is None:
            roi = RoiAggregate()
            ordered.append(roi)
        else:
            roi = by_id.get(group_id)
            if roi is None:
                roi = RoiAggregate()
                by_id[group_id] = roi
                ordered.append(roi)
        roi.add_shapes(shapes)
    if skipped:
        LOGGER.warning("Skipped %d local shape(s) during grouping", skipped)
    return [roi for roi in ordered if len(roi)]


def ungroup_4d(
    rois: Iterable[RoiAggregate],
    id_property: Optional[str] = None,
    strict: Optional[bool] = None,
    max_groups: Optional[int] = None,
    config: EngineConfig = DEFAULT_CONFIG,
) -> List[LocalShape]:
    """Flatten ROIs into local shapes tagged with a sequential ROI number.

    The n-th ROI (from 1) writes ``n`` into ``id_property`` of each of its
    shapes and its server id (``-1`` if unsaved) into ``<id_property>_ID``.
    When fewer than ``max_groups`` ROIs are given, ``n`` is also used as the
    display group.
    """
    prop = check_property(id_property)
    server_prop = roi_id_property(prop)
    strict = config.strict_conversion if strict is None else strict
    ceiling = config.max_display_groups if max_groups is None else int(max_groups)
    rois = list(rois)
    use_groups = len(rois) < ceiling
    flat: List[LocalShape] = []
    for number, roi in enumerate(rois, start=1):
        for index, shape in enumerate(roi.shapes):
            try:
                local = to_local_shape(shape)
            except UnsupportedShapeError as exc:
                if strict:
                    raise
                LOGGER.warning("Skipping shape %d of ROI %d: %s", index, number, exc)
                continue
            local.name = roi.shape_label(index, number)
            local.set_property(server_prop, roi.roi_id if roi.roi_id is not None else -1)
            local.set_property(prop, number)
            if use_groups:
                local.group = number
            flat.append(local)
    return flat
