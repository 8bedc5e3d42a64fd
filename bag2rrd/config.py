"""
Conversion options.

ConvertOptions is the fully validated configuration handed to the pipeline.
The CLI builds it from argument strings with the parse_* helpers below;
library callers can construct it directly and call validate().
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, Optional, Tuple

from .constants import (
    DEFAULT_FLUSH_WORKERS,
    DEFAULT_PROGRESS_INTERVAL,
    DEFAULT_ROOT_FRAME,
    DEFAULT_TF_BUFFER_SECONDS,
    DEFAULT_TF_MODE,
)
from .errors import ConfigurationError

TF_MODES = ("nearest", "interpolate", "exact")
LASER_SCAN_MODES = ("points", "lines")


@dataclass(frozen=True)
class ConvertOptions:
    include_topics: Tuple[str, ...] = ()
    exclude_topics: Tuple[str, ...] = ()
    start_offset: Optional[float] = None    # seconds from bag start
    end_offset: Optional[float] = None      # seconds from bag start
    segment_records: Optional[int] = None   # seal a segment after this many records
    segment_bytes: Optional[int] = None     # ... or after this many payload bytes
    flush_workers: int = DEFAULT_FLUSH_WORKERS
    flush_queue_size: Optional[int] = None  # defaults to 2 * flush_workers
    root_frame: str = DEFAULT_ROOT_FRAME
    frame_map: Dict[str, str] = field(default_factory=dict)     # frame -> entity path
    topic_rename: Dict[str, str] = field(default_factory=dict)  # topic -> entity path
    tf_buffer_seconds: float = DEFAULT_TF_BUFFER_SECONDS
    tf_mode: str = DEFAULT_TF_MODE
    laser_scan_mode: str = "points"
    gps_origin: Optional[Tuple[float, float, float]] = None     # lat, lon, alt
    geoid_path: Optional[str] = None
    gps_path: bool = False
    drop_unresolved: bool = False
    tolerate_corruption: bool = False
    dry_run: bool = False
    progress_interval: int = DEFAULT_PROGRESS_INTERVAL

    def validate(self) -> "ConvertOptions":
        """Raise ConfigurationError on the first invalid field; return self."""
        if self.segment_records is not None and self.segment_records <= 0:
            raise ConfigurationError("segment record threshold must be positive")
        if self.segment_bytes is not None and self.segment_bytes <= 0:
            raise ConfigurationError("segment byte threshold must be positive")
        if self.flush_workers < 1:
            raise ConfigurationError("flush_workers must be >= 1")
        if self.flush_queue_size is not None and self.flush_queue_size < 1:
            raise ConfigurationError("flush_queue_size must be >= 1")
        if self.tf_buffer_seconds < 0:
            raise ConfigurationError("tf_buffer_seconds must not be negative")
        if self.tf_mode not in TF_MODES:
            raise ConfigurationError(
                f"unknown tf mode {self.tf_mode!r}, expected one of {', '.join(TF_MODES)}"
            )
        if self.laser_scan_mode not in LASER_SCAN_MODES:
            raise ConfigurationError(f"unknown laser scan mode {self.laser_scan_mode!r}")
        if not self.root_frame or "/" in self.root_frame:
            raise ConfigurationError(f"invalid root frame {self.root_frame!r}")
        for name in ("start_offset", "end_offset"):
            value = getattr(self, name)
            if value is not None and value < 0:
                raise ConfigurationError(f"{name} must not be negative")
        if (self.start_offset is not None and self.end_offset is not None
                and self.end_offset < self.start_offset):
            raise ConfigurationError("end_offset is before start_offset")
        for label, table in (("frame map", self.frame_map), ("topic rename", self.topic_rename)):
            for key, path in table.items():
                _check_mapping_entry(label, key, path)
        if self.gps_origin is not None:
            lat, lon, _ = self.gps_origin
            if not (-90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0):
                raise ConfigurationError(f"gps origin out of range: {self.gps_origin}")
        return self

    @property
    def queue_size(self) -> int:
        return self.flush_queue_size or 2 * self.flush_workers

    @property
    def segmented(self) -> bool:
        return self.segment_records is not None or self.segment_bytes is not None


def _check_mapping_entry(label: str, key: str, path: str):
    if not key:
        raise ConfigurationError(f"{label}: empty key")
    if not path.startswith("/") or path.endswith("/") or "//" in path:
        raise ConfigurationError(
            f"{label}: {key!r} maps to {path!r}, expected an absolute entity path"
        )


# ---------------------------------------------------------------------------
# String parsers (CLI)
# ---------------------------------------------------------------------------

def parse_mapping(entries: Iterable[str], label: str = "mapping") -> Dict[str, str]:
    """Parse ``KEY=/entity/path`` strings into a dict. Later entries win."""
    table: Dict[str, str] = {}
    for entry in entries:
        if "=" not in entry:
            raise ConfigurationError(f"{label}: expected KEY=/path, got {entry!r}")
        key, path = entry.split("=", 1)
        key, path = key.strip(), path.strip()
        _check_mapping_entry(label, key, path)
        table[key] = path
    return table


def parse_gps_origin(text: str) -> Tuple[float, float, float]:
    """Parse ``LAT,LON,ALT``."""
    parts = [p.strip() for p in text.split(",")]
    if len(parts) != 3:
        raise ConfigurationError(f"gps origin must be LAT,LON,ALT, got {text!r}")
    try:
        lat, lon, alt = (float(p) for p in parts)
    except ValueError:
        raise ConfigurationError(f"gps origin must be numeric, got {text!r}") from None
    return lat, lon, alt
