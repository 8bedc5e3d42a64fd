"""
Data models shared by the conversion stages.

reader → RawRecord / Connection
decoders → DomainEvent variants (tagged with EventKind)
projection → ResolvedRecord (tagged with RecordKind)
pipeline → ConversionStats
"""

from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Tuple, Union

import numpy as np

from .geometry import Pose


# ---------------------------------------------------------------------------
# Source container
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RawRecord:
    """One message-data record as stored in the bag."""
    connection_id: int
    timestamp: int                  # receive time, nanoseconds since epoch
    payload: bytes                  # ROS1-serialized message
    chunk_offset: int               # byte offset of the enclosing chunk record


@dataclass(frozen=True)
class Connection:
    id: int
    topic: str
    message_type_tag: str           # normalized "pkg/msg/Name"
    field_layout_digest: str        # md5sum from the connection record
    message_definition: str = ""
    callerid: str = ""
    latching: bool = False


@dataclass
class ChunkInfo:
    offset: int                     # byte offset of the chunk record
    start_time: int                 # ns
    end_time: int                   # ns
    connection_counts: Dict[int, int] = field(default_factory=dict)


@dataclass(frozen=True)
class CorruptionEvent:
    offset: int                     # where the damaged record starts
    resume_offset: Optional[int]    # next valid chunk, None if the file ended
    reason: str
    last_good_time: Optional[int] = None   # ns, last record yielded before the damage
    resume_time: Optional[int] = None      # ns, first record after resuming

    @property
    def skipped_bytes(self) -> int:
        return 0 if self.resume_offset is None else self.resume_offset - self.offset


@dataclass
class ScanDiagnostics:
    chunks_read: int = 0
    chunks_skipped: int = 0         # corrupted chunks dropped
    chunks_filtered: int = 0        # outside the requested time window
    bytes_skipped: int = 0
    events: List[CorruptionEvent] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "chunks_read": self.chunks_read,
            "chunks_skipped": self.chunks_skipped,
            "chunks_filtered": self.chunks_filtered,
            "bytes_skipped": self.bytes_skipped,
            "corruption_events": len(self.events),
        }


# ---------------------------------------------------------------------------
# Decoded events
# ---------------------------------------------------------------------------

class EventKind(Enum):
    IMAGE = "image"
    COMPRESSED_IMAGE = "compressed_image"
    POINT_CLOUD = "point_cloud"
    LASER_SCAN = "laser_scan"
    NAV_SAT_FIX = "nav_sat_fix"
    TRANSFORM = "transform"
    ODOMETRY = "odometry"
    POSE_STAMPED = "pose_stamped"
    PATH = "path"
    IMU = "imu"


@dataclass(frozen=True, eq=False)
class ImageEvent:
    kind: ClassVar[EventKind] = EventKind.IMAGE
    timestamp: float                # record time, seconds
    stamp: float                    # header stamp, seconds
    frame_id: str
    image: np.ndarray               # HxW or HxWxC, RGB channel order
    encoding: str
    depth_meter: Optional[float] = None   # set for depth encodings (units per metre)


@dataclass(frozen=True, eq=False)
class CompressedImageEvent:
    kind: ClassVar[EventKind] = EventKind.COMPRESSED_IMAGE
    timestamp: float
    stamp: float
    frame_id: str
    data: bytes
    media_type: str                 # "image/jpeg" or "image/png"


@dataclass(frozen=True, eq=False)
class PointCloudEvent:
    kind: ClassVar[EventKind] = EventKind.POINT_CLOUD
    timestamp: float
    stamp: float
    frame_id: str
    positions: np.ndarray           # (N, 3) float32
    colors: Optional[np.ndarray] = None   # (N, 3) uint8


@dataclass(frozen=True, eq=False)
class LaserScanEvent:
    kind: ClassVar[EventKind] = EventKind.LASER_SCAN
    timestamp: float
    stamp: float
    frame_id: str
    points: np.ndarray              # (N, 2) valid samples in the scan plane
    strips: Tuple[np.ndarray, ...] = ()   # runs of consecutive valid samples (lines mode)


@dataclass(frozen=True, eq=False)
class NavSatFixEvent:
    kind: ClassVar[EventKind] = EventKind.NAV_SAT_FIX
    timestamp: float
    stamp: float
    frame_id: str
    latitude: float
    longitude: float
    altitude: float                 # metres above the WGS84 ellipsoid
    status: int                     # -1 no fix, 0 fix, 1 SBAS, 2 GBAS
    service: int                    # NavSatStatus service bitmask


@dataclass(frozen=True, eq=False)
class TransformStamped:
    parent: str
    child: str
    stamp: float
    pose: Pose                      # child expressed in parent


@dataclass(frozen=True, eq=False)
class TransformBatchEvent:
    kind: ClassVar[EventKind] = EventKind.TRANSFORM
    timestamp: float
    stamp: float
    frame_id: str
    transforms: Tuple[TransformStamped, ...]
    is_static: bool = False


@dataclass(frozen=True, eq=False)
class OdometryEvent:
    kind: ClassVar[EventKind] = EventKind.ODOMETRY
    timestamp: float
    stamp: float
    frame_id: str
    child_frame_id: str
    pose: Pose
    linear_velocity: np.ndarray     # (3,) in child frame
    angular_velocity: np.ndarray    # (3,)


@dataclass(frozen=True, eq=False)
class PoseStampedEvent:
    kind: ClassVar[EventKind] = EventKind.POSE_STAMPED
    timestamp: float
    stamp: float
    frame_id: str
    pose: Pose


@dataclass(frozen=True, eq=False)
class StampedPose:
    stamp: float
    frame_id: str
    pose: Pose


@dataclass(frozen=True, eq=False)
class PathEvent:
    kind: ClassVar[EventKind] = EventKind.PATH
    timestamp: float
    stamp: float
    frame_id: str
    poses: Tuple[StampedPose, ...]


@dataclass(frozen=True, eq=False)
class ImuEvent:
    kind: ClassVar[EventKind] = EventKind.IMU
    timestamp: float
    stamp: float
    frame_id: str
    orientation: Optional[np.ndarray]     # (4,) xyzw, None when not provided
    angular_velocity: np.ndarray          # (3,) rad/s
    linear_acceleration: np.ndarray       # (3,) m/s^2


DomainEvent = Union[
    ImageEvent, CompressedImageEvent, PointCloudEvent, LaserScanEvent,
    NavSatFixEvent, TransformBatchEvent, OdometryEvent, PoseStampedEvent,
    PathEvent, ImuEvent,
]


# ---------------------------------------------------------------------------
# Resolved output records
# ---------------------------------------------------------------------------

class RecordKind(Enum):
    IMAGE = "image"
    DEPTH_IMAGE = "depth_image"
    ENCODED_IMAGE = "encoded_image"
    POINTS3D = "points3d"
    LINE_STRIPS3D = "line_strips3d"
    TRANSFORM = "transform"
    ARROWS3D = "arrows3d"
    SCALAR = "scalar"
    TEXT = "text"


@dataclass(frozen=True, eq=False)
class ResolvedRecord:
    """A finalized entry for the destination log."""
    entity_path: str
    timestamp: float                # seconds since epoch, "ros_time" timeline
    kind: RecordKind
    data: Dict[str, Any] = field(default_factory=dict)
    pose: Optional[Pose] = None     # entity pose in the root frame, if resolved
    topic: str = ""
    raw_bytes: int = 0              # source payload size, for segment accounting

    @property
    def nbytes(self) -> int:
        if self.raw_bytes:
            return self.raw_bytes
        total = 0
        for value in self.data.values():
            if isinstance(value, np.ndarray):
                total += value.nbytes
            elif isinstance(value, (bytes, bytearray)):
                total += len(value)
        return total


# ---------------------------------------------------------------------------
# Run statistics
# ---------------------------------------------------------------------------

@dataclass
class ConversionStats:
    records_read: int = 0
    records_filtered: int = 0       # excluded by topic filter or time window
    events_decoded: int = 0
    records_emitted: int = 0
    emitted_by_kind: Counter = field(default_factory=Counter)   # RecordKind.value -> count
    errors: Counter = field(default_factory=Counter)            # error kind -> count
    unsupported_types: Counter = field(default_factory=Counter) # type tag -> count
    unresolved: int = 0             # records emitted without pose enrichment
    raw_bytes: int = 0
    segments: int = 0
    outputs: List[str] = field(default_factory=list)
    scan: Optional[ScanDiagnostics] = None
    elapsed_s: float = 0.0

    def to_dict(self) -> dict:
        return {
            "records_read": self.records_read,
            "records_filtered": self.records_filtered,
            "events_decoded": self.events_decoded,
            "records_emitted": self.records_emitted,
            "emitted_by_kind": dict(self.emitted_by_kind),
            "errors": dict(self.errors),
            "unsupported_types": dict(self.unsupported_types),
            "unresolved": self.unresolved,
            "raw_bytes": self.raw_bytes,
            "segments": self.segments,
            "outputs": list(self.outputs),
            "scan": self.scan.to_dict() if self.scan else None,
            "elapsed_s": round(self.elapsed_s, 3),
        }
