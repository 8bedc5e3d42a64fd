"""
Message decoders: ROS1 payload + Connection → DomainEvent.

Payloads are deserialized with the rosbags ROS1 Noetic type store; one
decode function per supported message type turns the message object into an
immutable event. DECODERS is the dispatch table keyed by normalized type tag;
adding a message type means adding a function and registering it below.
"""

import logging
from typing import Callable, Dict, List, Optional, Tuple

import numpy as np
from rosbags.typesys import Stores, get_types_from_msg, get_typestore

from .constants import SCHEMA_DIGESTS, TF_STATIC_TOPIC, WILDCARD_DIGESTS
from .errors import DecodeError, UnsupportedSchemaVersion
from .geometry import Pose, normalize_quaternion
from .models import (
    CompressedImageEvent,
    Connection,
    DomainEvent,
    ImageEvent,
    ImuEvent,
    LaserScanEvent,
    NavSatFixEvent,
    OdometryEvent,
    PathEvent,
    PointCloudEvent,
    PoseStampedEvent,
    RawRecord,
    StampedPose,
    TransformBatchEvent,
    TransformStamped,
)

logger = logging.getLogger(__name__)

_TYPESTORE = get_typestore(Stores.ROS1_NOETIC)

# tf messages are not part of the noetic store; bags often omit their definition
TF_MESSAGE_DEFINITION = "geometry_msgs/TransformStamped[] transforms"
for _tag in ("tf2_msgs/msg/TFMessage", "tf/msg/tfMessage"):
    if _tag not in _TYPESTORE.types:
        _TYPESTORE.register(get_types_from_msg(TF_MESSAGE_DEFINITION, _tag))


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _stamp(header) -> float:
    return header.stamp.sec + header.stamp.nanosec * 1e-9


def _frame(frame_id: str) -> str:
    """tf2 frame ids carry no leading slash."""
    return frame_id.lstrip("/")


def _pose(msg_pose) -> Pose:
    p, q = msg_pose.position, msg_pose.orientation
    return Pose.from_xyz_quat((p.x, p.y, p.z), (q.x, q.y, q.z, q.w))


def _vec3(v) -> np.ndarray:
    return np.array([v.x, v.y, v.z], dtype=np.float64)


def _common(msg, raw: RawRecord) -> dict:
    return {
        "timestamp": raw.timestamp / 1e9,
        "stamp": _stamp(msg.header),
        "frame_id": _frame(msg.header.frame_id),
    }


def _bytes_of(data) -> np.ndarray:
    return np.frombuffer(np.asarray(data, dtype=np.uint8).tobytes(), dtype=np.uint8)


# ---------------------------------------------------------------------------
# Images
# ---------------------------------------------------------------------------

# encoding -> (channels, numpy dtype, swap BGR->RGB, depth units per metre)
IMAGE_ENCODINGS: Dict[str, Tuple[int, str, bool, Optional[float]]] = {
    "rgb8": (3, "u1", False, None),
    "bgr8": (3, "u1", True, None),
    "rgba8": (4, "u1", False, None),
    "bgra8": (4, "u1", True, None),
    "mono8": (1, "u1", False, None),
    "8UC1": (1, "u1", False, None),
    "mono16": (1, "u2", False, None),
    "16UC1": (1, "u2", False, 1000.0),
    "32FC1": (1, "f4", False, 1.0),
}


def decode_image(msg, raw: RawRecord, **_) -> ImageEvent:
    if msg.encoding not in IMAGE_ENCODINGS:
        raise DecodeError(f"unsupported image encoding {msg.encoding!r}")
    channels, kind, swap, depth_meter = IMAGE_ENCODINGS[msg.encoding]
    dtype = np.dtype(kind).newbyteorder(">" if msg.is_bigendian else "<")
    height, width, step = int(msg.height), int(msg.width), int(msg.step)
    row_bytes = width * channels * dtype.itemsize
    data = _bytes_of(msg.data)
    if step < row_bytes or len(data) < height * step:
        raise DecodeError(
            f"image payload too short: {len(data)} bytes for {height}x{width} "
            f"{msg.encoding} with step {step}"
        )
    rows = data[:height * step].reshape(height, step)[:, :row_bytes]
    image = np.ascontiguousarray(rows).view(dtype).reshape(height, width, channels)
    if channels == 1:
        image = image[:, :, 0]
    elif swap:
        image = image[:, :, [2, 1, 0] + ([3] if channels == 4 else [])]
    return ImageEvent(
        **_common(msg, raw),
        image=np.ascontiguousarray(image).astype(dtype.newbyteorder("="), copy=False),
        encoding=msg.encoding,
        depth_meter=depth_meter,
    )


def decode_compressed_image(msg, raw: RawRecord, **_) -> CompressedImageEvent:
    fmt = msg.format.lower()
    if "png" in fmt:
        media_type = "image/png"
    elif "jpeg" in fmt or "jpg" in fmt:
        media_type = "image/jpeg"
    else:
        raise DecodeError(f"unsupported compressed image format {msg.format!r}")
    return CompressedImageEvent(
        **_common(msg, raw),
        data=_bytes_of(msg.data).tobytes(),
        media_type=media_type,
    )


# ---------------------------------------------------------------------------
# Point clouds and scans
# ---------------------------------------------------------------------------

# sensor_msgs/PointField datatype -> numpy kind
POINT_FIELD_TYPES = {
    1: "i1", 2: "u1", 3: "i2", 4: "u2",
    5: "i4", 6: "u4", 7: "f4", 8: "f8",
}


def _point_dtype(fields, wanted, point_step: int, order: str) -> np.dtype:
    names, formats, offsets = [], [], []
    for f in fields:
        if f.name not in wanted:
            continue
        kind = POINT_FIELD_TYPES.get(int(f.datatype))
        if kind is None:
            raise DecodeError(f"point field {f.name!r} has unknown datatype {f.datatype}")
        if f.name in ("rgb", "rgba"):
            kind = "u4"     # packed colour, reinterpret the float bits
        dt = np.dtype(kind).newbyteorder(order)
        if f.offset + dt.itemsize * max(int(f.count), 1) > point_step:
            raise DecodeError(f"point field {f.name!r} lies outside point_step {point_step}")
        names.append(f.name)
        formats.append(dt)
        offsets.append(int(f.offset))
    return np.dtype({"names": names, "formats": formats, "offsets": offsets,
                     "itemsize": point_step})


def decode_point_cloud(msg, raw: RawRecord, **_) -> PointCloudEvent:
    names = {f.name for f in msg.fields}
    if not {"x", "y", "z"} <= names:
        raise DecodeError("point cloud has no x/y/z fields")
    color_field = "rgb" if "rgb" in names else ("rgba" if "rgba" in names else None)
    wanted = {"x", "y", "z"} | ({color_field} if color_field else set())

    height, width = int(msg.height), int(msg.width)
    point_step, row_step = int(msg.point_step), int(msg.row_step)
    data = _bytes_of(msg.data)
    if point_step == 0 or row_step < width * point_step or len(data) < height * row_step:
        raise DecodeError(
            f"point cloud payload too short: {len(data)} bytes for {height}x{width} "
            f"points, point_step {point_step}, row_step {row_step}"
        )
    dtype = _point_dtype(msg.fields, wanted, point_step, ">" if msg.is_bigendian else "<")
    rows = data[:height * row_step].reshape(height, row_step)[:, :width * point_step]
    points = np.ascontiguousarray(rows).view(dtype).reshape(-1)

    positions = np.column_stack([points["x"], points["y"], points["z"]]).astype(np.float32)
    keep = np.isfinite(positions).all(axis=1)
    colors = None
    if color_field:
        packed = points[color_field].astype(np.uint32)
        colors = np.column_stack([
            (packed >> 16) & 0xFF, (packed >> 8) & 0xFF, packed & 0xFF,
        ]).astype(np.uint8)[keep]
    return PointCloudEvent(**_common(msg, raw), positions=positions[keep], colors=colors)


def scan_strips(points: np.ndarray, valid: np.ndarray) -> Tuple[np.ndarray, ...]:
    """Split scan samples into runs of consecutive valid samples (2+ points each)."""
    strips: List[np.ndarray] = []
    start = None
    for i, ok in enumerate(valid):
        if ok and start is None:
            start = i
        elif not ok and start is not None:
            if i - start >= 2:
                strips.append(points[start:i])
            start = None
    if start is not None and len(valid) - start >= 2:
        strips.append(points[start:])
    return tuple(strips)


def decode_laser_scan(msg, raw: RawRecord, *, laser_scan_mode: str = "points", **_) -> LaserScanEvent:
    ranges = np.asarray(msg.ranges, dtype=np.float64)
    if len(msg.intensities) not in (0, len(ranges)):
        raise DecodeError(
            f"laser scan has {len(msg.intensities)} intensities for {len(ranges)} ranges"
        )
    angles = msg.angle_min + np.arange(len(ranges)) * msg.angle_increment
    valid = np.isfinite(ranges) & (ranges >= msg.range_min) & (ranges <= msg.range_max)
    xy = np.column_stack([ranges * np.cos(angles), ranges * np.sin(angles)])
    strips = scan_strips(xy, valid) if laser_scan_mode == "lines" else ()
    return LaserScanEvent(**_common(msg, raw), points=xy[valid], strips=strips)


# ---------------------------------------------------------------------------
# Navigation and geometry
# ---------------------------------------------------------------------------

def decode_nav_sat_fix(msg, raw: RawRecord, **_) -> NavSatFixEvent:
    return NavSatFixEvent(
        **_common(msg, raw),
        latitude=float(msg.latitude),
        longitude=float(msg.longitude),
        altitude=float(msg.altitude),
        status=int(msg.status.status),
        service=int(msg.status.service),
    )


def decode_tf_message(msg, raw: RawRecord, *, topic: str = "", **_) -> TransformBatchEvent:
    transforms = []
    for t in msg.transforms:
        tr, rot = t.transform.translation, t.transform.rotation
        transforms.append(TransformStamped(
            parent=_frame(t.header.frame_id),
            child=_frame(t.child_frame_id),
            stamp=_stamp(t.header),
            pose=Pose.from_xyz_quat((tr.x, tr.y, tr.z), (rot.x, rot.y, rot.z, rot.w)),
        ))
    first = transforms[0] if transforms else None
    return TransformBatchEvent(
        timestamp=raw.timestamp / 1e9,
        stamp=first.stamp if first else raw.timestamp / 1e9,
        frame_id=first.parent if first else "",
        transforms=tuple(transforms),
        is_static=topic == TF_STATIC_TOPIC,
    )


def decode_odometry(msg, raw: RawRecord, **_) -> OdometryEvent:
    return OdometryEvent(
        **_common(msg, raw),
        child_frame_id=_frame(msg.child_frame_id),
        pose=_pose(msg.pose.pose),
        linear_velocity=_vec3(msg.twist.twist.linear),
        angular_velocity=_vec3(msg.twist.twist.angular),
    )


def decode_pose_stamped(msg, raw: RawRecord, **_) -> PoseStampedEvent:
    return PoseStampedEvent(**_common(msg, raw), pose=_pose(msg.pose))


def decode_path(msg, raw: RawRecord, **_) -> PathEvent:
    poses = tuple(
        StampedPose(stamp=_stamp(p.header), frame_id=_frame(p.header.frame_id), pose=_pose(p.pose))
        for p in msg.poses
    )
    return PathEvent(**_common(msg, raw), poses=poses)


def decode_imu(msg, raw: RawRecord, **_) -> ImuEvent:
    # covariance[0] == -1 marks an IMU that does not estimate orientation
    has_orientation = float(msg.orientation_covariance[0]) != -1.0
    q = msg.orientation
    return ImuEvent(
        **_common(msg, raw),
        orientation=normalize_quaternion((q.x, q.y, q.z, q.w)) if has_orientation else None,
        angular_velocity=_vec3(msg.angular_velocity),
        linear_acceleration=_vec3(msg.linear_acceleration),
    )


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------

DECODERS: Dict[str, Callable[..., DomainEvent]] = {
    "sensor_msgs/msg/Image": decode_image,
    "sensor_msgs/msg/CompressedImage": decode_compressed_image,
    "sensor_msgs/msg/PointCloud2": decode_point_cloud,
    "sensor_msgs/msg/LaserScan": decode_laser_scan,
    "sensor_msgs/msg/NavSatFix": decode_nav_sat_fix,
    "sensor_msgs/msg/Imu": decode_imu,
    "nav_msgs/msg/Odometry": decode_odometry,
    "nav_msgs/msg/Path": decode_path,
    "geometry_msgs/msg/PoseStamped": decode_pose_stamped,
}

# Old tf and tf2 share the same wire layout
DECODERS["tf2_msgs/msg/TFMessage"] = decode_tf_message
DECODERS["tf/msg/tfMessage"] = decode_tf_message


def is_supported(message_type_tag: str) -> bool:
    return message_type_tag in DECODERS


def check_schema(connection: Connection):
    """Raise UnsupportedSchemaVersion when a supported type was recorded with another layout."""
    digest = connection.field_layout_digest
    expected = SCHEMA_DIGESTS.get(connection.message_type_tag)
    if expected and digest not in WILDCARD_DIGESTS and digest != expected:
        raise UnsupportedSchemaVersion(
            f"{connection.topic}: {connection.message_type_tag} digest {digest} "
            f"does not match the supported layout {expected}"
        )


def _deserialize(payload: bytes, connection: Connection):
    tag = connection.message_type_tag
    if tag not in _TYPESTORE.types:
        if not connection.message_definition:
            raise DecodeError(f"{tag} is not a known type and the connection has no definition")
        try:
            _TYPESTORE.register(get_types_from_msg(connection.message_definition, tag))
        except Exception as exc:
            raise DecodeError(f"cannot register {tag} from its definition: {exc}") from exc
    try:
        return _TYPESTORE.deserialize_ros1(payload, tag)
    except Exception as exc:
        raise DecodeError(
            f"{connection.topic}: malformed {tag} payload ({len(payload)} bytes): {exc}"
        ) from exc


def decode(raw: RawRecord, connection: Connection, *,
           laser_scan_mode: str = "points") -> Optional[DomainEvent]:
    """
    Decode one record.

    Returns None for message types outside the supported set. Raises
    UnsupportedSchemaVersion or DecodeError for supported types that cannot
    be decoded.
    """
    decoder = DECODERS.get(connection.message_type_tag)
    if decoder is None:
        return None
    check_schema(connection)
    msg = _deserialize(raw.payload, connection)
    try:
        return decoder(msg, raw, topic=connection.topic, laser_scan_mode=laser_scan_mode)
    except DecodeError:
        raise
    except (ValueError, TypeError, IndexError, AttributeError) as exc:
        raise DecodeError(f"{connection.topic}: {exc}") from exc
