"""ROI and pixel engine for remote multi-dimensional images."""

from roi_engine.bounds import (
    Bounds5D,
    Coordinates,
    PlaneIndex,
    check_bounds_within,
    compute_bounds,
    resolve_axis_range,
    resolve_bounds,
)
from roi_engine.config import DEFAULT_CONFIG, EngineConfig, apply_config, load_config
from roi_engine.converters import (
    LocalShape,
    decompose_local_shape,
    from_local_shape,
    group_4d,
    local_to_shapes,
    to_local_shape,
    ungroup_4d,
)
from roi_engine.errors import (
    EmptyInputError,
    FetchCancelledError,
    OutOfRangeError,
    RemoteReadError,
    RoiEngineError,
    UnsupportedShapeError,
)
from roi_engine.pixels import (
    CancelToken,
    PixelDimensions,
    PixelSource,
    PixelVolume,
    RawVolume,
    TileStitcher,
    fetch_image,
    fetch_raw_volume,
    fetch_roi_volume,
    fetch_volume,
)
from roi_engine.roi import RoiAggregate, RoiStore, load_rois_json, rois_to_dataframe, save_rois_json
from roi_engine.shapes import Plane, ShapeKind, ShapeModel, ShapeStyle

__all__ = [
    "__version__",
    "Bounds5D",
    "Coordinates",
    "PlaneIndex",
    "check_bounds_within",
    "compute_bounds",
    "resolve_axis_range",
    "resolve_bounds",
    "DEFAULT_CONFIG",
    "EngineConfig",
    "load_config",
    "apply_config",
    "LocalShape",
    "decompose_local_shape",
    "from_local_shape",
    "group_4d",
    "local_to_shapes",
    "to_local_shape",
    "ungroup_4d",
    "EmptyInputError",
    "FetchCancelledError",
    "OutOfRangeError",
    "RemoteReadError",
    "RoiEngineError",
    "UnsupportedShapeError",
    "CancelToken",
    "PixelDimensions",
    "PixelSource",
    "PixelVolume",
    "RawVolume",
    "TileStitcher",
    "fetch_image",
    "fetch_raw_volume",
    "fetch_roi_volume",
    "fetch_volume",
    "RoiAggregate",
    "RoiStore",
    "load_rois_json",
    "rois_to_dataframe",
    "save_rois_json",
    "Plane",
    "ShapeKind",
    "ShapeModel",
    "ShapeStyle",
]

__version__ = "1.0.0"
