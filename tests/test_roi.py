"""Unit tests for the ROI aggregate, its persistence hook and I/O."""

import pytest

from roi_engine.bounds import Coordinates
from roi_engine.errors import EmptyInputError
from roi_engine.roi import (
    RoiAggregate,
    load_rois_json,
    roi_from_dict,
    roi_to_dict,
    rois_to_dataframe,
    save_rois_json,
)
from roi_engine.shapes import Plane, ShapeModel, ShapeStyle


class FakeStore:
    """Assigns sequential ids the way a server would."""

    def __init__(self):
        self.next_id = 100
        self.saved = []

    def save_roi(self, roi):
        self.saved.append(roi)
        shapes = []
        for shape in roi.shapes:
            self.next_id += 1
            shapes.append(shape.with_id(self.next_id))
        return RoiAggregate(shapes=shapes, image_id=roi.image_id, roi_id=len(self.saved))

    def load_rois(self, image_id):
        return [r for r in self.saved if r.image_id == image_id]


def _sample_roi():
    return RoiAggregate(
        shapes=[
            ShapeModel.rectangle(1, 2, 3, 4, plane=Plane(0, 1, 2), text="box"),
            ShapeModel.ellipse(10, 10, 2, 2, style=ShapeStyle(stroke_color="blue", stroke_width=2)),
            ShapeModel.arrow(0, 0, 5, 5, double_headed=True),
            ShapeModel.polyline([(0, 0), (3, 1), (4, 4)], plane=Plane(1, 0, 0)),
            ShapeModel.mask(2, 3, [[True, False], [False, True]]),
            ShapeModel.text_label("label", 7, 8),
        ],
        name="cells",
    )


class TestRoiAggregate:
    """Test the ROI shape collection."""

    def test_insertion_order_is_kept(self):
        """Shapes keep their insertion order."""
        roi = RoiAggregate()
        a = ShapeModel.point(1, 1)
        b = ShapeModel.point(2, 2)
        roi.add_shape(a)
        roi.add_shapes([b, a])
        assert roi.get_shapes() == [a, b, a]
        assert len(roi) == 3
        assert list(roi) == [a, b, a]

    def test_remove_by_index_and_value(self):
        """Shapes can be removed by position or by value."""
        a, b, c = ShapeModel.point(1, 1), ShapeModel.point(2, 2), ShapeModel.point(3, 3)
        roi = RoiAggregate([a, b, c])
        assert roi.remove_shape(0) == a
        assert roi.remove_shape(c) == c
        assert roi.get_shapes() == [b]
        with pytest.raises(ValueError):
            roi.remove_shape(a)
        with pytest.raises(IndexError):
            roi.remove_shape(5)

    def test_add_rejects_non_shapes(self):
        """Only shape models can be added."""
        with pytest.raises(TypeError):
            RoiAggregate().add_shape((1, 2))

    def test_get_shapes_returns_copy(self):
        """get_shapes returns a copy of the list."""
        roi = RoiAggregate([ShapeModel.point(1, 1)])
        roi.get_shapes().append(ShapeModel.point(2, 2))
        assert len(roi) == 1

    def test_image_association_is_set_once(self):
        """The image cannot change once set."""
        roi = RoiAggregate()
        roi.set_image(5)
        roi.set_image(5)
        with pytest.raises(ValueError):
            roi.set_image(6)
        roi.add_shape(ShapeModel.point(0, 0))
        roi.remove_shape(0)
        assert roi.image_id == 5

    def test_bounds(self):
        """ROI bounds enclose all of its shapes."""
        roi = RoiAggregate(
            [
                ShapeModel.rectangle(0, 0, 4, 4, plane=Plane(0, 0, 0)),
                ShapeModel.rectangle(2, 2, 4, 4, plane=Plane(1, 2, 3)),
            ]
        )
        bounds = roi.bounds()
        assert bounds.start == Coordinates(0, 0, 0, 0, 0)
        assert bounds.end == Coordinates(5, 5, 1, 2, 3)
        with pytest.raises(EmptyInputError):
            RoiAggregate().bounds()

    def test_shape_labels(self):
        """Labels use the text, else the ROI and shape ids."""
        roi = RoiAggregate([ShapeModel.point(0, 0, text="nucleus"), ShapeModel.point(1, 1)])
        assert roi.shape_label(0) == "nucleus"
        assert roi.shape_label(1, roi_number=3) == "3-2"
        roi.roi_id = 12
        roi.shapes[1] = roi.shapes[1].with_id(99)
        assert roi.shape_label(1, roi_number=3) == "12-99"


class TestPersistence:
    """Test saving through a RoiStore."""

    def test_save_refreshes_ids(self):
        """Saving refreshes the ROI and shape ids from the store."""
        store = FakeStore()
        roi = RoiAggregate([ShapeModel.point(0, 0), ShapeModel.point(1, 1)])
        roi.set_image(7)
        assert roi.save(store) is roi
        assert roi.roi_id == 1
        assert [s.shape_id for s in roi.shapes] == [101, 102]
        assert store.load_rois(7)[0].image_id == 7

    def test_save_requires_image(self):
        """Saving without an image is rejected."""
        with pytest.raises(ValueError):
            RoiAggregate([ShapeModel.point(0, 0)]).save(FakeStore())


def test_json_roundtrip(tmp_path) -> None:
    """ROIs survive a JSON save and load."""
    roi = _sample_roi()
    roi.set_image(3)
    path = tmp_path / "nested" / "rois.json"
    save_rois_json(path, [roi, RoiAggregate()])
    loaded = load_rois_json(path)
    assert len(loaded) == 2
    assert loaded[0].shapes == roi.shapes
    assert loaded[0].image_id == 3
    assert loaded[0].name == "cells"
    assert len(loaded[1]) == 0


def test_roi_from_dict_tolerates_missing_fields() -> None:
    """Missing fields take defaults and junk entries are skipped."""
    roi = roi_from_dict({"shapes": [{"kind": "point", "geometry": {"x": 1, "y": 2}}, "junk"]})
    assert roi.roi_id is None
    assert roi.shapes == [ShapeModel.point(1, 2)]
    assert roi_to_dict(roi)["shapes"][0]["plane"] == {"c": 0, "z": 0, "t": 0}


def test_rois_to_dataframe() -> None:
    """The table has one row per shape."""
    df = rois_to_dataframe([_sample_roi(), RoiAggregate([ShapeModel.point(4, 5)], roi_id=9)])
    assert len(df) == 7
    first = df.iloc[0]
    assert first["kind"] == "rectangle"
    assert (first["z"], first["t"]) == (1, 2)
    assert first["text"] == "box"
    last = df.iloc[-1]
    assert last["roi_index"] == 1
    assert last["roi_id"] == 9
    assert (last["x"], last["y"]) == (4, 5)

    empty = rois_to_dataframe([])
    assert empty.empty
    assert "shape_id" in empty.columns
