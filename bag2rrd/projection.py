"""
Projection / enrichment: DomainEvent → ResolvedRecord.

- Frame resolution into the root frame through the TransformGraph
- GPS: geodetic → ECEF → local ENU about an origin, optional geoid correction
- Entity naming: topic renames and frame → path mapping
"""

import logging
import math
import os
from collections import Counter
from typing import Callable, Dict, List, Optional, Tuple

import numpy as np
from pyproj import Transformer

from .config import ConvertOptions
from .constants import (
    CRS_ECEF,
    CRS_GEODETIC,
    GEOID_DEFAULT_OFFSET,
    GEOID_DEFAULT_SCALE,
    GNSS_SERVICES,
    POINT_RADIUS,
)
from .errors import ConfigurationError, CycleDetected, FrameNotConnected
from .geometry import Pose
from .models import (
    CompressedImageEvent,
    DomainEvent,
    EventKind,
    ImageEvent,
    ImuEvent,
    LaserScanEvent,
    NavSatFixEvent,
    OdometryEvent,
    PathEvent,
    PointCloudEvent,
    PoseStampedEvent,
    RecordKind,
    ResolvedRecord,
    TransformBatchEvent,
)
from .tf_graph import TfMode, TransformGraph

logger = logging.getLogger(__name__)

GeodeticPoint = Tuple[float, float, float]   # lat deg, lon deg, alt m


# ---------------------------------------------------------------------------
# Geodesy
# ---------------------------------------------------------------------------

_ECEF = Transformer.from_crs(CRS_GEODETIC, CRS_ECEF, always_xy=True)


def geodetic_to_ecef(lat: float, lon: float, alt: float) -> np.ndarray:
    return np.array(_ECEF.transform(lon, lat, alt))


def geodetic_to_enu(lat: float, lon: float, alt: float, origin: GeodeticPoint) -> np.ndarray:
    """East-North-Up offset (metres) of a fix from ``origin``."""
    lat0, lon0, alt0 = origin
    d = geodetic_to_ecef(lat, lon, alt) - geodetic_to_ecef(lat0, lon0, alt0)
    phi, lam = math.radians(lat0), math.radians(lon0)
    sp, cp, sl, cl = math.sin(phi), math.cos(phi), math.sin(lam), math.cos(lam)
    east = -sl * d[0] + cl * d[1]
    north = -sp * cl * d[0] - sp * sl * d[1] + cp * d[2]
    up = cp * cl * d[0] + cp * sl * d[1] + sp * d[2]
    return np.array([east, north, up])


class GeoidGrid:
    """
    Geoid undulation grid in GeographicLib's PGM layout.

    Rows run from latitude +90 down to -90, columns from longitude 0 eastward
    and wrap at 360. Undulation = offset + scale * raw, with offset and scale
    read from the ``# Offset`` / ``# Scale`` header comments.
    """

    def __init__(self, raw: np.ndarray, offset: float = GEOID_DEFAULT_OFFSET,
                 scale: float = GEOID_DEFAULT_SCALE):
        if raw.ndim != 2 or raw.shape[0] < 2 or raw.shape[1] < 2:
            raise ConfigurationError(f"geoid grid must be 2-D with at least 2x2 samples, got {raw.shape}")
        self.raw = raw.astype(np.float64)
        self.offset = offset
        self.scale = scale
        self.lat_step = 180.0 / (raw.shape[0] - 1)
        self.lon_step = 360.0 / raw.shape[1]

    @classmethod
    def load(cls, path: str) -> "GeoidGrid":
        try:
            with open(path, "rb") as f:
                content = f.read()
        except OSError as exc:
            raise ConfigurationError(f"cannot read geoid grid {path}: {exc}") from exc
        try:
            return cls._parse_pgm(content)
        except (ValueError, IndexError) as exc:
            raise ConfigurationError(f"invalid geoid grid {os.path.basename(path)}: {exc}") from exc

    @classmethod
    def _parse_pgm(cls, content: bytes) -> "GeoidGrid":
        offset, scale = GEOID_DEFAULT_OFFSET, GEOID_DEFAULT_SCALE
        tokens: List[bytes] = []
        pos = 0
        # magic, width, height, maxval; comments may sit between them
        while len(tokens) < 4:
            while pos < len(content) and content[pos:pos + 1].isspace():
                pos += 1
            if pos >= len(content):
                raise ValueError("truncated PGM header")
            if content[pos:pos + 1] == b"#":
                end = content.index(b"\n", pos)
                words = content[pos + 1:end].split()
                if len(words) >= 2 and words[0] == b"Offset":
                    offset = float(words[1])
                elif len(words) >= 2 and words[0] == b"Scale":
                    scale = float(words[1])
                pos = end + 1
                continue
            start = pos
            while pos < len(content) and not content[pos:pos + 1].isspace():
                pos += 1
            tokens.append(content[start:pos])
        magic = tokens[0]
        width, height, maxval = (int(t) for t in tokens[1:])
        if magic == b"P5":
            dtype = ">u2" if maxval > 255 else "u1"
            body = content[pos + 1:]
            count = width * height
            raw = np.frombuffer(body, dtype=dtype, count=count)
        elif magic == b"P2":
            raw = np.array(content[pos:].split()[:width * height], dtype=np.float64)
            if raw.size != width * height:
                raise ValueError(f"expected {width * height} samples, found {raw.size}")
        else:
            raise ValueError(f"unsupported PGM magic {magic!r}")
        return cls(raw.reshape(height, width), offset=offset, scale=scale)

    def undulation(self, lat: float, lon: float) -> float:
        """Geoid height above the ellipsoid (metres), bilinear."""
        rows, cols = self.raw.shape
        y = (90.0 - min(max(lat, -90.0), 90.0)) / self.lat_step
        x = (lon % 360.0) / self.lon_step
        r0 = min(int(math.floor(y)), rows - 2)
        c0 = int(math.floor(x)) % cols
        c1 = (c0 + 1) % cols
        fy, fx = y - r0, x - math.floor(x)
        g = self.raw
        value = ((1 - fy) * ((1 - fx) * g[r0, c0] + fx * g[r0, c1])
                 + fy * ((1 - fx) * g[r0 + 1, c0] + fx * g[r0 + 1, c1]))
        return self.offset + self.scale * value


def service_names(service: int) -> str:
    names = [name for bit, name in sorted(GNSS_SERVICES.items()) if service & bit]
    return "|".join(names) if names else "NONE"


# ---------------------------------------------------------------------------
# Projector
# ---------------------------------------------------------------------------

class Projector:
    """
    Turns decoded events into ResolvedRecords.

    Frame resolution failures are counted in ``errors`` and logged once per
    frame. The record is kept without its root-frame pose unless
    ``drop_unresolved`` is set.
    """

    def __init__(self, options: ConvertOptions, graph: TransformGraph,
                 geoid: Optional[GeoidGrid] = None):
        self.options = options
        self.graph = graph
        self.root = options.root_frame
        self.mode = TfMode(options.tf_mode)
        self.geoid = geoid
        self.origin: Optional[GeodeticPoint] = options.gps_origin
        self.gps_track: Dict[str, List[np.ndarray]] = {}
        self.errors: Counter = Counter()
        self.unresolved = 0
        self.skipped_fixes = 0
        self._warned_frames = set()
        self._handlers: Dict[EventKind, Callable] = {
            EventKind.IMAGE: self._image,
            EventKind.COMPRESSED_IMAGE: self._compressed_image,
            EventKind.POINT_CLOUD: self._point_cloud,
            EventKind.LASER_SCAN: self._laser_scan,
            EventKind.NAV_SAT_FIX: self._nav_sat_fix,
            EventKind.TRANSFORM: self._transforms,
            EventKind.ODOMETRY: self._odometry,
            EventKind.POSE_STAMPED: self._pose_stamped,
            EventKind.PATH: self._path,
            EventKind.IMU: self._imu,
        }

    # -- naming ------------------------------------------------------------

    def topic_path(self, topic: str) -> str:
        return self.options.topic_rename.get(topic) or "/" + topic.strip("/")

    def frame_path(self, frame: str) -> str:
        return self.options.frame_map.get(frame) or f"/{self.root}/{frame}"

    # -- resolution --------------------------------------------------------

    def resolve(self, frame: str, at_time: float) -> Optional[Pose]:
        """Pose of ``frame`` in the root frame, None when it cannot be resolved."""
        if frame == self.root:
            return Pose.identity()
        try:
            return self.graph.resolve(frame, self.root, at_time, self.mode)
        except (FrameNotConnected, CycleDetected) as exc:
            self.errors[exc.kind] += 1
            if frame not in self._warned_frames:
                logger.warning("cannot resolve frame %r into %r: %s", frame or "<empty>", self.root, exc)
                self._warned_frames.add(frame)
            return None

    @staticmethod
    def _query_time(event) -> float:
        return event.stamp if event.stamp > 0 else event.timestamp

    def _make(self, event, path: str, kind: RecordKind, data: dict,
              pose: Optional[Pose], topic: str, raw_bytes: int) -> ResolvedRecord:
        return ResolvedRecord(path, event.timestamp, kind, data, pose, topic, raw_bytes)

    def _finish(self, records: List[ResolvedRecord], resolved: bool) -> List[ResolvedRecord]:
        if not resolved:
            if self.options.drop_unresolved:
                return []
            # derived scalars carry no frame
            self.unresolved += sum(1 for r in records if r.kind is not RecordKind.SCALAR)
        return records

    def project(self, event: DomainEvent, topic: str, raw_bytes: int = 0) -> List[ResolvedRecord]:
        return self._handlers[event.kind](event, topic, raw_bytes)

    # -- sensors -----------------------------------------------------------

    def _sensor(self, event, topic, raw_bytes, kind, data) -> List[ResolvedRecord]:
        pose = self.resolve(event.frame_id, self._query_time(event))
        record = self._make(event, self.topic_path(topic), kind, data, pose, topic, raw_bytes)
        return self._finish([record], pose is not None)

    def _image(self, event: ImageEvent, topic, raw_bytes):
        if event.depth_meter is not None:
            return self._sensor(event, topic, raw_bytes, RecordKind.DEPTH_IMAGE,
                                {"image": event.image, "meter": event.depth_meter})
        return self._sensor(event, topic, raw_bytes, RecordKind.IMAGE, {"image": event.image})

    def _compressed_image(self, event: CompressedImageEvent, topic, raw_bytes):
        return self._sensor(event, topic, raw_bytes, RecordKind.ENCODED_IMAGE,
                            {"contents": event.data, "media_type": event.media_type})

    def _point_cloud(self, event: PointCloudEvent, topic, raw_bytes):
        data = {"positions": event.positions}
        if event.colors is not None:
            data["colors"] = event.colors
        return self._sensor(event, topic, raw_bytes, RecordKind.POINTS3D, data)

    def _laser_scan(self, event: LaserScanEvent, topic, raw_bytes):
        lift = lambda xy: np.column_stack([xy, np.zeros(len(xy))])
        if event.strips:
            return self._sensor(event, topic, raw_bytes, RecordKind.LINE_STRIPS3D,
                                {"strips": [lift(s) for s in event.strips]})
        return self._sensor(event, topic, raw_bytes, RecordKind.POINTS3D,
                            {"positions": lift(event.points), "radii": POINT_RADIUS})

    def _imu(self, event: ImuEvent, topic, raw_bytes):
        base = self.topic_path(topic)
        pose = self.resolve(event.frame_id, self._query_time(event))
        records = []
        for name, vector in (("angular_velocity", event.angular_velocity),
                             ("linear_acceleration", event.linear_acceleration)):
            records.append(self._make(event, f"{base}/{name}", RecordKind.ARROWS3D,
                                      {"vectors": vector.reshape(1, 3)}, pose, topic, raw_bytes))
            records.append(self._make(event, f"{base}/{name}_norm", RecordKind.SCALAR,
                                      {"value": float(np.linalg.norm(vector))}, None, topic, 0))
        if event.orientation is not None:
            orientation = Pose(np.zeros(3), event.orientation)
            if pose is not None:
                orientation = Pose(pose.translation, pose.compose(orientation).rotation)
            records.append(self._make(event, f"{base}/orientation", RecordKind.TRANSFORM,
                                      {}, orientation, topic, 0))
        return self._finish(records, pose is not None)

    # -- GPS ---------------------------------------------------------------

    def _nav_sat_fix(self, event: NavSatFixEvent, topic, raw_bytes):
        if event.status < 0:
            self.skipped_fixes += 1
            return []
        alt = event.altitude
        if self.geoid is not None:
            alt -= self.geoid.undulation(event.latitude, event.longitude)
        if self.origin is None:
            self.origin = (event.latitude, event.longitude, alt)
            logger.info("GPS origin set from first fix: %.8f, %.8f, %.3f", *self.origin)
        enu = geodetic_to_enu(event.latitude, event.longitude, alt, self.origin)

        base = self.topic_path(topic)
        records = [
            self._make(event, base, RecordKind.POINTS3D,
                       {"positions": enu.reshape(1, 3), "radii": POINT_RADIUS},
                       None, topic, raw_bytes),
            self._make(event, f"{base}/status", RecordKind.SCALAR,
                       {"value": float(event.status)}, None, topic, 0),
            self._make(event, f"{base}/service", RecordKind.TEXT,
                       {"text": service_names(event.service)}, None, topic, 0),
        ]
        if self.options.gps_path:
            track = self.gps_track.setdefault(topic, [])
            track.append(enu)
            if len(track) >= 2:
                records.append(self._make(event, f"{base}/track", RecordKind.LINE_STRIPS3D,
                                          {"strips": [np.vstack(track)]}, None, topic, 0))
        return records

    # -- poses -------------------------------------------------------------

    def _transforms(self, event: TransformBatchEvent, topic, raw_bytes):
        records = []
        share = raw_bytes // max(len(event.transforms), 1)
        for t in event.transforms:
            at = t.stamp if t.stamp > 0 else event.timestamp
            pose = self.resolve(t.child, at)
            if pose is None:
                if self.options.drop_unresolved:
                    continue
                self.unresolved += 1
                pose = t.pose
            records.append(self._make(event, self.frame_path(t.child), RecordKind.TRANSFORM,
                                      {"parent": t.parent}, pose, topic, share))
        return records

    def _odometry(self, event: OdometryEvent, topic, raw_bytes):
        parent = self.resolve(event.frame_id, self._query_time(event))
        pose = parent.compose(event.pose) if parent is not None else event.pose
        record = self._make(event, self.frame_path(event.child_frame_id), RecordKind.TRANSFORM,
                            {}, pose, topic, raw_bytes)
        return self._finish([record], parent is not None)

    def _pose_stamped(self, event: PoseStampedEvent, topic, raw_bytes):
        parent = self.resolve(event.frame_id, self._query_time(event))
        pose = parent.compose(event.pose) if parent is not None else event.pose
        record = self._make(event, self.topic_path(topic), RecordKind.TRANSFORM,
                            {}, pose, topic, raw_bytes)
        return self._finish([record], parent is not None)

    def _path(self, event: PathEvent, topic, raw_bytes):
        points = []
        resolved = True
        for p in event.poses:
            frame = p.frame_id or event.frame_id
            at = p.stamp if p.stamp > 0 else self._query_time(event)
            parent = self.resolve(frame, at)
            if parent is None:
                resolved = False
                points.append(p.pose.translation)
            else:
                points.append(parent.compose(p.pose).translation)
        if not points:
            return []
        record = self._make(event, self.topic_path(topic), RecordKind.LINE_STRIPS3D,
                            {"strips": [np.vstack(points)]}, None, topic, raw_bytes)
        return self._finish([record], resolved)
