"""Plane-by-plane reconstruction of 5D pixel volumes from a remote source.

A :class:`PixelSource` serves raw bytes for one rectangular (X, Y) plane at a
time. :class:`TileStitcher` requests every plane inside a :class:`Bounds5D`,
decodes it to the declared sample type and assembles a
``(T, Z, C, Y, X)`` numpy array while tracking the exact global min/max.

Conventions
-----------
- Planes are fetched T major, then Z, then C; samples are row-major.
- Volume indices are relative to ``bounds.start``; errors report
  source-space ``(t, z, c)`` coordinates.
- A failed plane aborts the whole fetch: no partial volume is returned.
"""

from __future__ import annotations

import threading
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from itertools import islice
from pathlib import Path
from typing import Deque, Iterator, List, NamedTuple, Optional, Protocol, Sequence, Tuple, Union

import numpy as np
import tifffile as tif

from roi_engine.bounds import (
    Bounds5D,
    Coordinates,
    PlaneIndex,
    check_bounds_within,
    compute_bounds,
    resolve_bounds,
)
from roi_engine.errors import FetchCancelledError, RemoteReadError
from roi_engine.logger import get_logger
from roi_engine.roi import RoiAggregate

__all__ = [
    "CancelToken",
    "PixelDimensions",
    "PixelSource",
    "PlaneIndex",
    "PlaneRequest",
    "PixelVolume",
    "RawVolume",
    "TileStitcher",
    "sample_dtype",
    "decode_plane",
    "plan_plane_requests",
    "fetch_volume",
    "fetch_raw_volume",
    "fetch_image",
    "fetch_roi_volume",
]

LOGGER = get_logger(__name__)


class CancelToken:
    """Thread-safe cancellation token.

    Notes
    -----
    Cancellation is cooperative: the stitcher checks ``is_cancelled()``
    before each plane.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._cancelled = False

    def cancel(self) -> None:
        with self._lock:
            self._cancelled = True

    def is_cancelled(self) -> bool:
        with self._lock:
            return self._cancelled


def sample_dtype(
    bytes_per_sample: int,
    is_floating_point: bool,
    is_little_endian: bool = False,
    is_signed: bool = False,
) -> np.dtype:
    """Return the numpy dtype (with explicit byte order) for a sample format."""
    order = "<" if is_little_endian else ">"
    if is_floating_point:
        if bytes_per_sample not in (4, 8):
            raise ValueError(f"Unsupported floating-point sample size: {bytes_per_sample} bytes")
        code = "f"
    else:
        if bytes_per_sample not in (1, 2, 4):
            raise ValueError(f"Unsupported integer sample size: {bytes_per_sample} bytes")
        code = "i" if is_signed else "u"
    if bytes_per_sample == 1:
        order = "|"
    return np.dtype(f"{order}{code}{bytes_per_sample}")


@dataclass(frozen=True)
class PixelDimensions:
    """Declared geometry and sample format of a remote pixel set.

    Physical pixel sizes and ``unit`` are optional calibration carried to
    exported volumes.
    """

    size_x: int
    size_y: int
    size_c: int
    size_z: int
    size_t: int
    bytes_per_sample: int
    is_floating_point: bool
    is_little_endian: bool
    is_signed: bool = False
    pixel_size_x: Optional[float] = None
    pixel_size_y: Optional[float] = None
    pixel_size_z: Optional[float] = None
    unit: Optional[str] = None

    @classmethod
    def coerce(cls, value: Union["PixelDimensions", Sequence]) -> "PixelDimensions":
        """Accept a ``PixelDimensions`` or a plain 8-tuple."""
        if isinstance(value, cls):
            return value
        values = tuple(value)
        if len(values) != 8:
            raise ValueError(f"Expected 8 declared dimension values, got {len(values)}")
        sx, sy, sc, sz, st, bps, is_float, little = values
        return cls(int(sx), int(sy), int(sc), int(sz), int(st), int(bps), bool(is_float), bool(little))

    @property
    def dtype(self) -> np.dtype:
        return sample_dtype(
            self.bytes_per_sample, self.is_floating_point, self.is_little_endian, self.is_signed
        )


class PixelSource(Protocol):
    """Remote store capability consumed by the stitcher."""

    def read_plane(self, c: int, z: int, t: int, x: int, y: int, width: int, height: int) -> bytes:
        """Return ``width * height * bytes_per_sample`` raw bytes for one plane."""
        ...

    def declared_dimensions(self) -> Union[PixelDimensions, Tuple]:
        ...


class PlaneRequest(NamedTuple):
    """One plane fetch: source-space index plus the (X, Y) window."""

    index: PlaneIndex
    x: int
    y: int
    width: int
    height: int


def plan_plane_requests(bounds: Bounds5D) -> List[PlaneRequest]:
    """Return the deterministic fetch plan for ``bounds`` (T, then Z, then C)."""
    size = bounds.size
    return [
        PlaneRequest(index, bounds.start.x, bounds.start.y, size.x, size.y)
        for index in bounds.iter_planes()
    ]


def decode_plane(buffer: bytes, width: int, height: int, dtype: np.dtype) -> np.ndarray:
    """Decode a raw plane buffer into a ``(height, width)`` array in native byte order."""
    dtype = np.dtype(dtype)
    expected = width * height * dtype.itemsize
    if len(buffer) != expected:
        raise ValueError(f"Expected {expected} bytes for a {width}x{height} plane, got {len(buffer)}")
    plane = np.frombuffer(buffer, dtype=dtype).reshape(height, width)
    return plane.astype(dtype.newbyteorder("="), copy=True)


@dataclass
class PixelVolume:
    """Stitched 5D pixel data.

    Attributes
    ----------
    data : numpy.ndarray
        Samples in ``(T, Z, C, Y, X)`` order.
    start : Coordinates
        Source-space position of ``data[0, 0, 0, 0, 0]``.
    global_min, global_max : float
        Exact extrema over every sample in ``data``. NaN samples are ignored;
        both are NaN only when every sample is NaN.
    dimensions : PixelDimensions
        Declared dimensions of the source the volume was read from.
    """

    data: np.ndarray
    start: Coordinates
    global_min: float
    global_max: float
    dimensions: PixelDimensions

    @property
    def shape(self) -> Tuple[int, ...]:
        return tuple(self.data.shape)

    @property
    def dtype(self) -> np.dtype:
        return self.data.dtype

    @property
    def bounds(self) -> Bounds5D:
        st, sz, sc, sy, sx = self.data.shape
        start = self.start
        end = Coordinates(start.x + sx - 1, start.y + sy - 1, start.c + sc - 1, start.z + sz - 1, start.t + st - 1)
        return Bounds5D(start, end)

    def plane(self, t: int, z: int, c: int) -> np.ndarray:
        """Return the (Y, X) plane at volume-relative indices."""
        return self.data[t, z, c]

    def to_tiff(self, path: Path) -> None:
        """Write the volume as an ImageJ hyperstack (axes TZCYX).

        ImageJ hyperstacks hold 8/16-bit unsigned or 32-bit float samples;
        other sample types are written as a plain TIFF.
        """
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        dims = self.dimensions
        data = np.ascontiguousarray(self.data)
        imagej = data.dtype in (np.dtype(np.uint8), np.dtype(np.uint16), np.dtype(np.float32))
        kwargs = {}
        if dims.pixel_size_x and dims.pixel_size_y:
            kwargs["resolution"] = (1.0 / dims.pixel_size_x, 1.0 / dims.pixel_size_y)
        if imagej:
            metadata = {"axes": "TZCYX", "min": float(self.global_min), "max": float(self.global_max)}
            if dims.pixel_size_z:
                metadata["spacing"] = float(dims.pixel_size_z)
            if dims.unit:
                metadata["unit"] = dims.unit
            tif.imwrite(str(path), data, imagej=True, metadata=metadata, **kwargs)
        else:
            tif.imwrite(str(path), data, metadata={"axes": "TZCYX"}, **kwargs)
        LOGGER.info("Wrote volume %s to %s", self.shape, path)


@dataclass
class RawVolume:
    """Undecoded plane buffers addressed as ``planes[t][z][c]``."""

    planes: List[List[List[bytes]]]
    start: Coordinates
    width: int
    height: int
    dimensions: PixelDimensions = field(repr=False)

    def flatten(self) -> bytes:
        """Concatenate all planes in fetch order."""
        return b"".join(p for zs in self.planes for cs in zs for p in cs)


class TileStitcher:
    """Fetch planes from a :class:`PixelSource` and assemble them.

    Parameters
    ----------
    cancel_token : CancelToken, optional
        Checked before each plane; cancellation raises ``FetchCancelledError``.
    max_workers : int
        Number of prefetch threads. ``1`` fetches strictly sequentially.
        With more workers, at most ``max_workers`` reads are outstanding at
        once; requests are still issued and assembled in plan order and the
        first failing plane (in plan order) aborts the fetch.
    """

    def __init__(self, cancel_token: Optional[CancelToken] = None, max_workers: int = 1) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self.cancel_token = cancel_token
        self.max_workers = int(max_workers)

    def _check_cancelled(self, index: PlaneIndex) -> None:
        if self.cancel_token is not None and self.cancel_token.is_cancelled():
            LOGGER.info("Volume fetch cancelled", extra={"plane": _plane_tag(index)})
            raise FetchCancelledError(f"Volume fetch cancelled before plane t={index.t}, z={index.z}, c={index.c}")

    def _read(self, source: PixelSource, request: PlaneRequest) -> bytes:
        t, z, c = request.index
        LOGGER.debug(
            "Reading plane at x=%d y=%d (%dx%d)",
            request.x,
            request.y,
            request.width,
            request.height,
            extra={"plane": _plane_tag(request.index)},
        )
        try:
            return bytes(source.read_plane(c, z, t, request.x, request.y, request.width, request.height))
        except Exception as exc:
            LOGGER.error("Plane read failed: %s", exc, extra={"plane": _plane_tag(request.index)})
            raise RemoteReadError(request.index, str(exc)) from exc

    def _iter_buffers(self, source: PixelSource, plan: List[PlaneRequest]) -> Iterator[Tuple[PlaneRequest, bytes]]:
        if self.max_workers == 1 or len(plan) <= 1:
            for request in plan:
                self._check_cancelled(request.index)
                yield request, self._read(source, request)
            return
        # At most max_workers reads are outstanding; each finished plane frees a slot.
        requests = iter(plan)
        pending: Deque[Tuple[PlaneRequest, Future]] = deque()
        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            try:
                for request in islice(requests, self.max_workers):
                    pending.append((request, pool.submit(self._read, source, request)))
                while pending:
                    request, future = pending.popleft()
                    buffer = future.result()
                    del future
                    self._check_cancelled(request.index)
                    following = next(requests, None)
                    if following is not None:
                        pending.append((following, pool.submit(self._read, source, following)))
                    yield request, buffer
                    del buffer
            finally:
                for _, queued in pending:
                    queued.cancel()

    def fetch_volume(
        self,
        source: PixelSource,
        bounds: Bounds5D,
        bytes_per_sample: Optional[int] = None,
        is_floating_point: Optional[bool] = None,
    ) -> PixelVolume:
        """Fetch and decode every plane inside ``bounds``.

        Parameters
        ----------
        source : PixelSource
            Remote plane provider.
        bounds : Bounds5D
            Inclusive source-space box to read.
        bytes_per_sample, is_floating_point : optional
            Sample format; defaults to the source's declared format. Byte
            order always comes from the source.

        Returns
        -------
        PixelVolume
            ``(T, Z, C, Y, X)`` data with exact global min/max.

        Raises
        ------
        RemoteReadError
            If any plane cannot be read or has the wrong byte count.
        FetchCancelledError
            If the cancel token fires during the fetch.
        """
        dims = PixelDimensions.coerce(source.declared_dimensions())
        bps = dims.bytes_per_sample if bytes_per_sample is None else int(bytes_per_sample)
        is_float = dims.is_floating_point if is_floating_point is None else bool(is_floating_point)
        dtype = sample_dtype(bps, is_float, dims.is_little_endian, dims.is_signed)
        size = bounds.size
        plan = plan_plane_requests(bounds)
        LOGGER.info(
            "Fetching %d planes of %dx%d %s samples",
            len(plan),
            size.x,
            size.y,
            dtype.name,
        )
        data = np.empty((size.t, size.z, size.c, size.y, size.x), dtype=dtype.newbyteorder("="))
        global_min: Optional[float] = None
        global_max: Optional[float] = None
        start = bounds.start
        for request, buffer in self._iter_buffers(source, plan):
            t, z, c = request.index
            try:
                plane = decode_plane(buffer, request.width, request.height, dtype)
            except ValueError as exc:
                LOGGER.error("Plane decode failed: %s", exc, extra={"plane": _plane_tag(request.index)})
                raise RemoteReadError(request.index, str(exc)) from exc
            data[t - start.t, z - start.z, c - start.c] = plane
            plane_min, plane_max = _plane_extrema(plane)
            if plane_min is not None:
                global_min = plane_min if global_min is None else min(global_min, plane_min)
                global_max = plane_max if global_max is None else max(global_max, plane_max)
        if global_min is None:
            # Every sample was NaN.
            global_min = global_max = float("nan")
        LOGGER.info("Fetched volume %s (min=%s, max=%s)", data.shape, global_min, global_max)
        return PixelVolume(
            data=data,
            start=start,
            global_min=global_min,
            global_max=global_max,
            dimensions=dims,
        )

    def fetch_raw_volume(self, source: PixelSource, bounds: Bounds5D) -> RawVolume:
        """Fetch every plane inside ``bounds`` without decoding."""
        dims = PixelDimensions.coerce(source.declared_dimensions())
        size = bounds.size
        expected = size.x * size.y * dims.bytes_per_sample
        planes: List[List[List[bytes]]] = [[[] for _ in range(size.z)] for _ in range(size.t)]
        start = bounds.start
        for request, buffer in self._iter_buffers(source, plan_plane_requests(bounds)):
            t, z, c = request.index
            if len(buffer) != expected:
                message = f"expected {expected} bytes, got {len(buffer)}"
                LOGGER.error("Plane decode failed: %s", message, extra={"plane": _plane_tag(request.index)})
                raise RemoteReadError(request.index, message)
            planes[t - start.t][z - start.z].append(buffer)
        return RawVolume(planes=planes, start=start, width=size.x, height=size.y, dimensions=dims)


def _plane_tag(index: PlaneIndex) -> str:
    return f"t{index.t}/z{index.z}/c{index.c}"


def _plane_extrema(plane: np.ndarray) -> Tuple[Optional[float], Optional[float]]:
    """Return the plane min/max ignoring NaN, or ``(None, None)`` if nothing is left."""
    if plane.dtype.kind == "f":
        plane = plane[~np.isnan(plane)]
        if plane.size == 0:
            return None, None
    return plane.min().item(), plane.max().item()


def fetch_volume(
    source: PixelSource,
    bounds: Bounds5D,
    bytes_per_sample: Optional[int] = None,
    is_floating_point: Optional[bool] = None,
    cancel_token: Optional[CancelToken] = None,
) -> PixelVolume:
    """Sequentially fetch ``bounds`` from ``source``; see :meth:`TileStitcher.fetch_volume`."""
    stitcher = TileStitcher(cancel_token=cancel_token)
    return stitcher.fetch_volume(source, bounds, bytes_per_sample, is_floating_point)


def fetch_raw_volume(source: PixelSource, bounds: Bounds5D) -> RawVolume:
    return TileStitcher().fetch_raw_volume(source, bounds)


def fetch_image(
    source: PixelSource,
    x: Optional[Sequence[int]] = None,
    y: Optional[Sequence[int]] = None,
    c: Optional[Sequence[int]] = None,
    z: Optional[Sequence[int]] = None,
    t: Optional[Sequence[int]] = None,
    stitcher: Optional[TileStitcher] = None,
) -> PixelVolume:
    """Fetch a full or cropped image; omitted axes cover the whole declared size."""
    dims = PixelDimensions.coerce(source.declared_dimensions())
    bounds = resolve_bounds(dims, x=x, y=y, c=c, z=z, t=t)
    return (stitcher or TileStitcher()).fetch_volume(source, bounds)


def fetch_roi_volume(
    source: PixelSource,
    roi: RoiAggregate,
    stitcher: Optional[TileStitcher] = None,
) -> PixelVolume:
    """Fetch the sub-volume enclosing every shape of ``roi``.

    Raises ``OutOfRangeError`` when the ROI extends outside the source.
    """
    dims = PixelDimensions.coerce(source.declared_dimensions())
    bounds = check_bounds_within(compute_bounds(roi.shapes), dims)
    return (stitcher or TileStitcher()).fetch_volume(source, bounds)
