"""Unit tests for 5D bounds computation and axis-range validation."""

import pytest

from roi_engine.bounds import (
    Bounds5D,
    Coordinates,
    PlaneIndex,
    check_bounds_within,
    compute_bounds,
    resolve_axis_range,
    resolve_bounds,
)
from roi_engine.errors import EmptyInputError, OutOfRangeError
from roi_engine.pixels import PixelDimensions
from roi_engine.shapes import Plane, ShapeModel


def _dims(sx=512, sy=256, sc=3, sz=5, st=7):
    return PixelDimensions(sx, sy, sc, sz, st, 1, False, True)


class TestComputeBounds:
    """Bounds over shape sequences."""

    def test_single_rectangle_uses_inclusive_end(self):
        """A rectangle ends at x + width - 1 and y + height - 1."""
        rect = ShapeModel.rectangle(10, 20, 30, 40, plane=Plane(1, 2, 3))
        bounds = compute_bounds([rect])
        assert bounds.start == Coordinates(10, 20, 1, 2, 3)
        assert bounds.end == Coordinates(39, 59, 1, 2, 3)
        assert bounds.size == Coordinates(30, 40, 1, 1, 1)

    def test_combines_shapes_across_planes(self):
        """Bounds span every shape's plane on C, Z and T."""
        shapes = [
            ShapeModel.rectangle(10, 10, 5, 5, plane=Plane(0, 4, 1)),
            ShapeModel.ellipse(50, 60, 10, 5, plane=Plane(2, 1, 0)),
            ShapeModel.point(3, 100, plane=Plane(1, 2, 6)),
        ]
        bounds = compute_bounds(shapes)
        assert bounds.start == Coordinates(3, 10, 0, 1, 0)
        # Ellipse spans x in [40, 60], y in [55, 65].
        assert bounds.end == Coordinates(59, 100, 2, 4, 6)

    def test_ellipse_box(self):
        """An ellipse is bounded by center minus and plus its radii."""
        bounds = compute_bounds([ShapeModel.ellipse(20, 30, 4, 6)])
        assert bounds.start[:2] == (16, 24)
        assert bounds.end[:2] == (23, 35)

    def test_polygon_uses_point_extrema(self):
        """Polygon bounds come from the extreme vertices."""
        poly = ShapeModel.polygon([(5, 9), (12, 3), (8, 20)])
        bounds = compute_bounds([poly])
        assert bounds.start[:2] == (5, 3)
        assert bounds.end[:2] == (11, 19)

    def test_line_with_reversed_endpoints(self):
        """Line endpoints are ordered before computing the box."""
        bounds = compute_bounds([ShapeModel.line(30, 40, 10, 15)])
        assert bounds.start[:2] == (10, 15)
        assert bounds.end[:2] == (29, 39)

    def test_point_and_text_have_unit_extent(self):
        """Zero-size shapes still cover their anchor pixel."""
        bounds = compute_bounds([ShapeModel.point(7, 8)])
        assert bounds.start == bounds.end == Coordinates(7, 8, 0, 0, 0)
        text_bounds = compute_bounds([ShapeModel.text_label("cell", 4.5, 2.2)])
        assert text_bounds.size[:2] == (1, 1)

    def test_start_not_greater_than_end_and_contains_every_box(self):
        """Computed bounds are ordered and enclose every shape."""
        shapes = [
            ShapeModel.rectangle(0.5, 0.5, 0.2, 0.2),
            ShapeModel.polyline([(100, 3), (101, 4)], plane=Plane(0, 0, 2)),
            ShapeModel.mask(40, 41, [[True, False], [False, True]], plane=Plane(3, 0, 0)),
            ShapeModel.arrow(1, 2, 60, 70),
        ]
        bounds = compute_bounds(shapes)
        for lo, hi in zip(bounds.start, bounds.end):
            assert lo <= hi
        for shape in shapes:
            box = shape.bounding_box()
            assert bounds.start.x <= box.x
            assert bounds.start.y <= box.y
            assert box.x + box.width - 1 <= bounds.end.x
            assert box.y + box.height - 1 <= bounds.end.y

    def test_empty_input_raises(self):
        """Bounds of no shapes raise EmptyInputError."""
        with pytest.raises(EmptyInputError):
            compute_bounds([])

    def test_accepts_generators(self):
        """Any iterable of shapes is accepted."""
        bounds = compute_bounds(ShapeModel.point(i, i) for i in range(3))
        assert bounds.end[:2] == (2, 2)

    def test_extreme_coordinates_are_exact(self):
        """Very large coordinates are not clipped by a sentinel."""
        big = 2**40
        shapes = [
            ShapeModel.rectangle(-big, -big, 2, 2),
            ShapeModel.rectangle(big, big, 10, 10, plane=Plane(2**31, 2**31, 2**31)),
        ]
        bounds = compute_bounds(shapes)
        assert bounds.start == Coordinates(-big, -big, 0, 0, 0)
        assert bounds.end == Coordinates(big + 9, big + 9, 2**31, 2**31, 2**31)

    def test_negative_coordinates_floor(self):
        """Negative fractional coordinates floor toward minus infinity."""
        bounds = compute_bounds([ShapeModel.rectangle(-1.5, -0.5, 3, 2)])
        assert bounds.start[:2] == (-2, -1)
        assert bounds.end[:2] == (0, 0)


class TestResolveAxisRange:
    """Per-axis range resolution."""

    @pytest.mark.parametrize("size", [1, 2, 512])
    def test_omitted_range_covers_axis(self, size):
        """No request selects the whole axis."""
        assert resolve_axis_range(None, size) == (0, size - 1)

    def test_valid_range_is_returned(self):
        """A range inside the axis is returned as given."""
        assert resolve_axis_range([2, 4], 5) == (2, 4)
        assert resolve_axis_range((0, 0), 1) == (0, 0)

    @pytest.mark.parametrize("requested", [(-1, 1), (0, 5), (3, 2), (5, 5)])
    def test_invalid_range_raises(self, requested):
        """Ranges outside the axis or inverted raise OutOfRangeError."""
        with pytest.raises(OutOfRangeError) as excinfo:
            resolve_axis_range(requested, 5, axis="z")
        assert excinfo.value.axes == ["z"]

    def test_never_clamps(self):
        """Out-of-range requests are rejected, not clamped."""
        with pytest.raises(OutOfRangeError):
            resolve_axis_range([511, 513], 512)

    def test_wrong_arity_is_value_error(self):
        """A range without exactly two values is a ValueError."""
        with pytest.raises(ValueError):
            resolve_axis_range([1, 2, 3], 5)


class TestResolveBounds:
    """Five-axis resolution against declared dimensions."""

    def test_defaults_cover_whole_volume(self):
        """Omitted axes resolve to the full declared volume."""
        bounds = resolve_bounds(_dims())
        assert bounds.start == Coordinates(0, 0, 0, 0, 0)
        assert bounds.end == Coordinates(511, 255, 2, 4, 6)

    def test_cropped_request(self):
        """Explicit ranges produce the matching box size."""
        bounds = resolve_bounds(_dims(), x=[0, 2], y=[0, 2], c=[0, 2], z=[0, 2], t=[0, 2])
        assert bounds.size == Coordinates(3, 3, 3, 3, 3)

    @pytest.mark.parametrize("axis", ["x", "y", "c", "z", "t"])
    def test_each_axis_validated(self, axis):
        """Every axis is checked against its own size."""
        with pytest.raises(OutOfRangeError) as excinfo:
            resolve_bounds(_dims(), **{axis: [-1, 0]})
        assert excinfo.value.axes == [axis]

    def test_all_bad_axes_are_reported(self):
        """One error lists every offending axis."""
        with pytest.raises(OutOfRangeError) as excinfo:
            resolve_bounds(_dims(), x=[-1, 1], c=[0, 3], t=[0, 7])
        assert excinfo.value.axes == ["x", "c", "t"]
        assert ("c", 0, 3, 3) in excinfo.value.violations

    def test_malformed_requests_reported_on_every_axis(self):
        """Wrong-length ranges are reported for all axes before range checks."""
        with pytest.raises(ValueError) as excinfo:
            resolve_bounds(_dims(), x=[0, 1, 2], y=[-1, 0], t=[3])
        message = str(excinfo.value)
        assert "x=[0, 1, 2]" in message
        assert "t=[3]" in message
        assert not isinstance(excinfo.value, OutOfRangeError)

    def test_check_bounds_within(self):
        """Computed bounds are checked against the declared volume."""
        inside = Bounds5D(Coordinates(0, 0, 0, 0, 0), Coordinates(10, 10, 2, 4, 6))
        assert check_bounds_within(inside, _dims()) is inside
        outside = Bounds5D(Coordinates(0, 0, 0, 0, 0), Coordinates(600, 10, 2, 5, 6))
        with pytest.raises(OutOfRangeError) as excinfo:
            check_bounds_within(outside, _dims())
        assert excinfo.value.axes == ["x", "z"]


class TestBounds5D:
    """Test the inclusive 5D box value."""

    def test_rejects_inverted_axis(self):
        """Start greater than end on any axis is rejected."""
        with pytest.raises(ValueError):
            Bounds5D(Coordinates(5, 0, 0, 0, 0), Coordinates(4, 0, 0, 0, 0))

    def test_plane_iteration_order(self):
        """Planes are visited T first, then Z, then C."""
        bounds = Bounds5D.from_ranges((0, 0), (0, 0), (0, 1), (3, 4), (1, 2))
        planes = list(bounds.iter_planes())
        assert bounds.plane_count == 8
        assert planes[:3] == [PlaneIndex(1, 3, 0), PlaneIndex(1, 3, 1), PlaneIndex(1, 4, 0)]
        assert planes[-1] == PlaneIndex(2, 4, 1)
