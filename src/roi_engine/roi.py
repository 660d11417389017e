"""ROI aggregate model, persistence hook and JSON/table I/O."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Protocol, Union

import pandas as pd

from roi_engine.bounds import Bounds5D, compute_bounds
from roi_engine.logger import get_logger
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
    "RoiAggregate",
    "RoiStore",
    "shape_to_dict",
    "shape_from_dict",
    "roi_to_dict",
    "roi_from_dict",
    "save_rois_json",
    "load_rois_json",
    "rois_to_dataframe",
]

LOGGER = get_logger(__name__)


class RoiStore(Protocol):
    """Remote persistence collaborator for ROIs."""

    def save_roi(self, roi: "RoiAggregate") -> "RoiAggregate":
        """Persist ``roi`` and return the server copy with ROI and shape ids."""
        ...

    def load_rois(self, image_id: int) -> List["RoiAggregate"]:
        ...


@dataclass
class RoiAggregate:
    """Ordered collection of shapes forming one Region of Interest.

    Insertion order is display order. Until persisted, shapes are identified
    by their position in ``shapes``.
    """

    shapes: List[ShapeModel] = field(default_factory=list)
    image_id: Optional[int] = None
    roi_id: Optional[int] = None
    name: Optional[str] = None

    def __post_init__(self) -> None:
        self.shapes = list(self.shapes)

    def __len__(self) -> int:
        return len(self.shapes)

    def __iter__(self) -> Iterator[ShapeModel]:
        return iter(list(self.shapes))

    def get_shapes(self) -> List[ShapeModel]:
        return list(self.shapes)

    def add_shape(self, shape: ShapeModel) -> None:
        if not isinstance(shape, ShapeModel):
            raise TypeError(f"Expected ShapeModel, got {type(shape).__name__}")
        self.shapes.append(shape)

    def add_shapes(self, shapes: Iterable[ShapeModel]) -> None:
        for shape in shapes:
            self.add_shape(shape)

    def remove_shape(self, shape: Union[int, ShapeModel]) -> ShapeModel:
        """Remove a shape by position or by value and return it."""
        if isinstance(shape, int):
            return self.shapes.pop(shape)
        idx = self.shapes.index(shape)
        return self.shapes.pop(idx)

    def set_image(self, image_id: int) -> None:
        """Associate the ROI with an image; the association cannot change once set."""
        if self.image_id is not None and self.image_id != image_id:
            raise ValueError(
                f"ROI already associated with image {self.image_id}; create a new ROI for image {image_id}."
            )
        self.image_id = image_id

    def bounds(self) -> Bounds5D:
        return compute_bounds(self.shapes)

    def shape_label(self, index: int, roi_number: Optional[int] = None) -> str:
        """Display name of a shape: its text, else ``"{roiId}-{shapeId}"``.

        Unsaved ROIs and shapes fall back to ``roi_number`` and the 1-based
        shape position.
        """
        shape = self.shapes[index]
        if shape.text:
            return shape.text
        roi_part = self.roi_id if self.roi_id is not None else (roi_number if roi_number is not None else -1)
        shape_part = shape.shape_id if shape.shape_id is not None else index + 1
        return f"{roi_part}-{shape_part}"

    def save(self, store: RoiStore) -> "RoiAggregate":
        """Persist through ``store`` and refresh ids from the returned copy."""
        if self.image_id is None:
            raise ValueError("ROI must be associated with an image before saving.")
        saved = store.save_roi(self)
        self.roi_id = saved.roi_id
        self.shapes = list(saved.shapes)
        LOGGER.info("Saved ROI %s on image %s (%d shapes)", self.roi_id, self.image_id, len(self.shapes))
        return self


def _geometry_to_dict(shape: ShapeModel) -> dict:
    g = shape.geometry
    if isinstance(g, PolygonGeometry):
        return {"points": [list(p) for p in g.points]}
    if isinstance(g, MaskGeometry):
        return {
            "x": g.x,
            "y": g.y,
            "width": g.width,
            "height": g.height,
            "bits": [[int(v) for v in row] for row in g.bits],
        }
    return dict(vars(g))


_GEOMETRY_LOADERS = {
    ShapeKind.RECTANGLE: lambda d: RectangleGeometry(d["x"], d["y"], d["width"], d["height"]),
    ShapeKind.ELLIPSE: lambda d: EllipseGeometry(d["x"], d["y"], d["radius_x"], d["radius_y"]),
    ShapeKind.LINE: lambda d: LineGeometry(d["x1"], d["y1"], d["x2"], d["y2"]),
    ShapeKind.ARROW: lambda d: LineGeometry(d["x1"], d["y1"], d["x2"], d["y2"]),
    ShapeKind.POINT: lambda d: PointGeometry(d["x"], d["y"]),
    ShapeKind.POLYGON: lambda d: PolygonGeometry(tuple(tuple(p) for p in d["points"])),
    ShapeKind.POLYLINE: lambda d: PolygonGeometry(tuple(tuple(p) for p in d["points"])),
    ShapeKind.TEXT: lambda d: TextGeometry(d["x"], d["y"]),
    ShapeKind.MASK: lambda d: MaskGeometry(d["x"], d["y"], d["width"], d["height"], d.get("bits", ())),
}


def shape_to_dict(shape: ShapeModel) -> dict:
    style = {k: v for k, v in vars(shape.style).items() if v is not None}
    return {
        "id": shape.shape_id,
        "kind": shape.kind.value,
        "geometry": _geometry_to_dict(shape),
        "plane": {"c": shape.plane.c, "z": shape.plane.z, "t": shape.plane.t},
        "text": shape.text,
        "style": style,
    }


def shape_from_dict(data: dict) -> ShapeModel:
    kind = ShapeKind(str(data.get("kind", "rectangle")))
    plane = data.get("plane", {})
    shape_id = data.get("id")
    return ShapeModel(
        kind=kind,
        geometry=_GEOMETRY_LOADERS[kind](data.get("geometry", {})),
        plane=Plane(int(plane.get("c", 0)), int(plane.get("z", 0)), int(plane.get("t", 0))),
        text=data.get("text"),
        style=ShapeStyle(**data.get("style", {})),
        shape_id=int(shape_id) if shape_id is not None else None,
    )


def roi_to_dict(roi: RoiAggregate) -> dict:
    return {
        "id": roi.roi_id,
        "name": roi.name,
        "image_id": roi.image_id,
        "shapes": [shape_to_dict(s) for s in roi.shapes],
    }


def roi_from_dict(data: dict) -> RoiAggregate:
    roi_id = data.get("id")
    image_id = data.get("image_id")
    return RoiAggregate(
        shapes=[shape_from_dict(s) for s in data.get("shapes", []) if isinstance(s, dict)],
        image_id=int(image_id) if image_id is not None else None,
        roi_id=int(roi_id) if roi_id is not None else None,
        name=data.get("name"),
    )


def save_rois_json(path: Path, rois: Iterable[RoiAggregate]) -> None:
    payload = {"rois": [roi_to_dict(r) for r in rois]}
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2)


def load_rois_json(path: Path) -> List[RoiAggregate]:
    path = Path(path)
    with path.open("r", encoding="utf-8") as f:
        data = json.load(f)
    rois = []
    for entry in data.get("rois", []):
        if isinstance(entry, dict):
            rois.append(roi_from_dict(entry))
    return rois


def rois_to_dataframe(rois: Iterable[RoiAggregate]) -> pd.DataFrame:
    """Summarize ROI shapes as a table, one row per shape."""
    cols = [
        "roi_index",
        "roi_id",
        "shape_index",
        "shape_id",
        "kind",
        "c",
        "z",
        "t",
        "x",
        "y",
        "width",
        "height",
        "text",
    ]
    rows = []
    for roi_index, roi in enumerate(rois):
        for shape_index, shape in enumerate(roi.shapes):
            box = shape.bounding_box()
            rows.append(
                {
                    "roi_index": roi_index,
                    "roi_id": roi.roi_id,
                    "shape_index": shape_index,
                    "shape_id": shape.shape_id,
                    "kind": shape.kind.value,
                    "c": shape.plane.c,
                    "z": shape.plane.z,
                    "t": shape.plane.t,
                    "x": box.x,
                    "y": box.y,
                    "width": box.width,
                    "height": box.height,
                    "text": shape.text or "",
                }
            )
    if not rows:
        return pd.DataFrame(columns=cols)
    return pd.DataFrame(rows, columns=cols)
