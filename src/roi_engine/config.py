"""Engine configuration and ROI property-name helpers.

Configuration is a small frozen dataclass. Files are plain JSON; the loader
tolerates missing fields (defaults apply) and ignores unknown keys.

Example
-------
{
  "roi_property": "ROI",
  "max_display_groups": 255,
  "arrow_marker": "Arrow",
  "strict_conversion": false,
  "log_level": "INFO"
}
"""

from __future__ import annotations

import json
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Optional

from roi_engine.logger import set_level

__all__ = [
    "DEFAULT_ROI_PROPERTY",
    "EngineConfig",
    "DEFAULT_CONFIG",
    "check_property",
    "id_property",
    "load_config",
    "apply_config",
]

DEFAULT_ROI_PROPERTY = "ROI"


@dataclass(frozen=True)
class EngineConfig:
    """Settings shared by the shape converters and the pixel stitcher.

    Notes
    -----
    ``max_display_groups`` is the exclusive ceiling on the number of ROIs for
    which a display group is assigned during ungrouping.
    """

    roi_property: str = DEFAULT_ROI_PROPERTY
    max_display_groups: int = 255
    arrow_marker: str = "Arrow"
    strict_conversion: bool = False
    log_level: str = "INFO"


DEFAULT_CONFIG = EngineConfig()


def check_property(property_name: Optional[str]) -> str:
    """Return ``property_name``, or the default ROI property if it is None or blank."""
    if property_name is None or not property_name.strip():
        return DEFAULT_ROI_PROPERTY
    return property_name


def id_property(property_name: Optional[str]) -> str:
    """Return the property holding the server ROI id (``<property>_ID``)."""
    return check_property(property_name) + "_ID"


def load_config(path: Path) -> EngineConfig:
    """Load an :class:`EngineConfig` from a JSON file."""
    path = Path(path)
    data = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"Config file must contain a JSON object: {path}")
    known = {f.name for f in fields(EngineConfig)}
    values = {key: value for key, value in data.items() if key in known}
    if "max_display_groups" in values:
        values["max_display_groups"] = int(values["max_display_groups"])
    if "strict_conversion" in values:
        values["strict_conversion"] = bool(values["strict_conversion"])
    if "roi_property" in values:
        values["roi_property"] = check_property(values["roi_property"])
    return EngineConfig(**values)


def apply_config(config: EngineConfig) -> EngineConfig:
    """Apply process-wide settings (currently the log level) and return ``config``."""
    set_level(config.log_level)
    return config
