import os

import matplotlib
import numpy as np
import pytest

from roi_engine.pixels import PixelDimensions, sample_dtype


def pytest_addoption(parser):
    parser.addoption(
        "--run-slow",
        action="store_true",
        default=False,
        help="Run slow tests (large synthetic volumes).",
    )


def pytest_configure(config):
    config.addinivalue_line("markers", "slow: tests that stitch large synthetic volumes")


def pytest_collection_modifyitems(config, items):
    run_slow = config.getoption("--run-slow")
    selected_marker = config.getoption("-m")
    marker_includes_slow = selected_marker and "slow" in selected_marker

    if run_slow or marker_includes_slow:
        return

    skip_slow = pytest.mark.skip(reason="Use --run-slow or -m slow to run slow tests.")
    for item in items:
        if "slow" in item.keywords:
            item.add_marker(skip_slow)


os.environ.setdefault("MPLBACKEND", "Agg")
matplotlib.use(os.environ.get("MPLBACKEND", "Agg"), force=True)


class SyntheticSource:
    """In-memory PixelSource serving planes of a (T, Z, C, Y, X) array.

    Records every read as ``(c, z, t, x, y, width, height)`` and can be told
    to fail on a given ``(t, z, c)``.
    """

    def __init__(self, volume, little_endian=True, fail_at=None, pixel_size=None):
        self.volume = np.asarray(volume)
        self.little_endian = little_endian
        self.fail_at = fail_at
        self.calls = []
        self.pixel_size = pixel_size
        dtype = self.volume.dtype
        self.wire_dtype = sample_dtype(
            dtype.itemsize, dtype.kind == "f", little_endian, dtype.kind == "i"
        )

    def declared_dimensions(self):
        size_t, size_z, size_c, size_y, size_x = self.volume.shape
        dtype = self.volume.dtype
        kwargs = {}
        if self.pixel_size is not None:
            kwargs = {
                "pixel_size_x": self.pixel_size,
                "pixel_size_y": self.pixel_size,
                "pixel_size_z": 1.0,
                "unit": "micron",
            }
        return PixelDimensions(
            size_x,
            size_y,
            size_c,
            size_z,
            size_t,
            dtype.itemsize,
            dtype.kind == "f",
            self.little_endian,
            is_signed=dtype.kind == "i",
            **kwargs,
        )

    def read_plane(self, c, z, t, x, y, width, height):
        self.calls.append((c, z, t, x, y, width, height))
        if self.fail_at is not None and (t, z, c) == tuple(self.fail_at):
            raise TimeoutError("plane read timed out")
        plane = self.volume[t, z, c, y : y + height, x : x + width]
        return plane.astype(self.wire_dtype).tobytes()


@pytest.fixture
def make_source():
    return SyntheticSource


@pytest.fixture
def ramp_volume():
    """uint16 volume of shape (T=3, Z=2, C=2, Y=4, X=5) with unique values."""
    return np.arange(3 * 2 * 2 * 4 * 5, dtype=np.uint16).reshape(3, 2, 2, 4, 5) * 7 + 11
