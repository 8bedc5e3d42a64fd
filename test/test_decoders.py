"""
Decoder tests. Payloads are hand-serialized ROS1 messages (see bagfile.py)
run through the real rosbags deserializer.
"""

import math
import struct

import numpy as np
import pytest

from bag2rrd.constants import SCHEMA_DIGESTS
from bag2rrd.decoders import DECODERS, decode, scan_strips
from bag2rrd.errors import DecodeError, UnsupportedSchemaVersion
from bag2rrd.models import Connection, EventKind, RawRecord

import bagfile as bf


def _conn(tag, topic="/topic", digest=None):
    digest = SCHEMA_DIGESTS.get(tag, "") if digest is None else digest
    return Connection(id=0, topic=topic, message_type_tag=tag, field_layout_digest=digest)


def _raw(payload, t=5.0):
    return RawRecord(connection_id=0, timestamp=int(t * 1e9), payload=payload, chunk_offset=0)


def _decode(tag, payload, topic="/topic", **kwargs):
    return decode(_raw(payload), _conn(tag, topic), **kwargs)


IMAGE = "sensor_msgs/msg/Image"
CLOUD = "sensor_msgs/msg/PointCloud2"
SCAN = "sensor_msgs/msg/LaserScan"


# =============================================================================
# Dispatch
# =============================================================================


class TestDispatch:

    def test_every_supported_type_has_a_digest(self):
        for tag in DECODERS:
            assert tag in SCHEMA_DIGESTS

    def test_unsupported_type_is_skipped(self):
        assert decode(_raw(b"\x00" * 8), _conn("std_msgs/msg/String")) is None

    def test_schema_version_mismatch(self):
        conn = _conn("geometry_msgs/msg/PoseStamped", digest="0" * 32)
        with pytest.raises(UnsupportedSchemaVersion):
            decode(_raw(bf.pose_stamped("map", 1.0)), conn)

    def test_wildcard_digest_is_accepted(self):
        conn = _conn("geometry_msgs/msg/PoseStamped", digest="*")
        event = decode(_raw(bf.pose_stamped("map", 1.0, (1.0, 2.0, 3.0))), conn)
        assert np.allclose(event.pose.translation, [1.0, 2.0, 3.0])

    def test_truncated_payload(self):
        payload = bf.pose_stamped("map", 1.0)[:-10]
        with pytest.raises(DecodeError):
            _decode("geometry_msgs/msg/PoseStamped", payload)


# =============================================================================
# Images
# =============================================================================


class TestImages:

    def test_rgb8(self):
        data = bytes(range(12))
        event = _decode(IMAGE, bf.image("cam", 1.5, 2, 2, "rgb8", data))
        assert event.kind is EventKind.IMAGE
        assert event.image.shape == (2, 2, 3)
        assert event.image.dtype == np.uint8
        assert list(event.image[1, 0]) == [6, 7, 8]
        assert event.frame_id == "cam"
        assert event.stamp == pytest.approx(1.5)
        assert event.timestamp == pytest.approx(5.0)
        assert event.depth_meter is None

    def test_bgr8_is_swapped(self):
        event = _decode(IMAGE, bf.image("cam", 1.0, 1, 1, "bgr8", bytes([1, 2, 3])))
        assert list(event.image[0, 0]) == [3, 2, 1]

    def test_row_padding(self):
        rows = bytes([1, 2, 3, 4, 5, 6, 0, 0]) + bytes([7, 8, 9, 10, 11, 12, 0, 0])
        event = _decode(IMAGE, bf.image("cam", 1.0, 2, 2, "rgb8", rows, step=8))
        assert event.image.shape == (2, 2, 3)
        assert list(event.image[1, 1]) == [10, 11, 12]

    def test_mono16(self):
        data = struct.pack("<4H", 1, 2, 300, 65535)
        event = _decode(IMAGE, bf.image("cam", 1.0, 2, 2, "mono16", data))
        assert event.image.shape == (2, 2)
        assert event.image[1, 0] == 300
        assert event.image[1, 1] == 65535

    def test_big_endian_mono16(self):
        data = struct.pack(">2H", 258, 1)
        event = _decode(IMAGE, bf.image("cam", 1.0, 1, 2, "mono16", data, is_bigendian=1))
        assert list(event.image[0]) == [258, 1]

    def test_depth(self):
        data = struct.pack("<2H", 1000, 2500)
        event = _decode(IMAGE, bf.image("cam", 1.0, 1, 2, "16UC1", data))
        assert event.depth_meter == 1000.0
        assert list(event.image[0]) == [1000, 2500]

    def test_short_data(self):
        with pytest.raises(DecodeError):
            _decode(IMAGE, bf.image("cam", 1.0, 2, 2, "rgb8", bytes(6), step=6))

    def test_unknown_encoding(self):
        with pytest.raises(DecodeError):
            _decode(IMAGE, bf.image("cam", 1.0, 1, 1, "yuv422", bytes(2)))

    def test_compressed(self):
        payload = bf.compressed_image("cam", 1.0, "bgr8; jpeg compressed bgr8", b"\xff\xd8\xff")
        event = _decode("sensor_msgs/msg/CompressedImage", payload)
        assert event.kind is EventKind.COMPRESSED_IMAGE
        assert event.media_type == "image/jpeg"
        assert event.data == b"\xff\xd8\xff"

    def test_compressed_unknown_format(self):
        payload = bf.compressed_image("cam", 1.0, "webp", b"RIFF")
        with pytest.raises(DecodeError):
            _decode("sensor_msgs/msg/CompressedImage", payload)


# =============================================================================
# Point clouds
# =============================================================================

XYZRGB = [("x", 0, 7, 1), ("y", 4, 7, 1), ("z", 8, 7, 1), ("rgb", 12, 7, 1)]


class TestPointCloud:

    def _points(self, order="<"):
        rgb = struct.pack(order + "I", 0x00FF8000)
        nan = float("nan")
        return (struct.pack(order + "3f", 1.0, 2.0, 3.0) + rgb
                + struct.pack(order + "3f", nan, 0.0, 0.0) + rgb
                + struct.pack(order + "3f", -1.0, 0.5, 0.25) + struct.pack(order + "I", 0x000000FF))

    def test_xyz_rgb(self):
        event = _decode(CLOUD, bf.point_cloud2("lidar", 1.0, XYZRGB, 16, self._points()))
        assert event.kind is EventKind.POINT_CLOUD
        assert event.positions.shape == (2, 3)
        assert np.allclose(event.positions, [[1.0, 2.0, 3.0], [-1.0, 0.5, 0.25]])
        assert event.colors.tolist() == [[255, 128, 0], [0, 0, 255]]

    def test_big_endian(self):
        payload = bf.point_cloud2("lidar", 1.0, XYZRGB, 16, self._points(">"), is_bigendian=1)
        event = _decode(CLOUD, payload)
        assert np.allclose(event.positions, [[1.0, 2.0, 3.0], [-1.0, 0.5, 0.25]])
        assert event.colors.tolist()[0] == [255, 128, 0]

    def test_xyz_only_with_padding(self):
        fields = [("x", 0, 7, 1), ("y", 4, 7, 1), ("z", 8, 7, 1), ("intensity", 16, 7, 1)]
        data = struct.pack("<3f4xf", 1.0, 2.0, 3.0, 99.0) * 3
        event = _decode(CLOUD, bf.point_cloud2("lidar", 1.0, fields, 20, data))
        assert event.positions.shape == (3, 3)
        assert event.colors is None

    def test_organized_cloud(self):
        fields = XYZRGB[:3]
        data = struct.pack("<3f", 0.0, 0.0, 1.0) * 6
        event = _decode(CLOUD, bf.point_cloud2("lidar", 1.0, fields, 12, data, height=2, width=3))
        assert event.positions.shape == (6, 3)

    def test_missing_z(self):
        fields = [("x", 0, 7, 1), ("y", 4, 7, 1)]
        with pytest.raises(DecodeError):
            _decode(CLOUD, bf.point_cloud2("lidar", 1.0, fields, 8, struct.pack("<2f", 1, 2)))

    def test_short_data(self):
        payload = bf.point_cloud2("lidar", 1.0, XYZRGB, 16, self._points()[:-4], width=3)
        with pytest.raises(DecodeError):
            _decode(CLOUD, payload)


# =============================================================================
# Laser scans
# =============================================================================


class TestLaserScan:

    RANGES = [1.0, float("inf"), 0.05, 2.0, 3.0]

    def test_points(self):
        payload = bf.laser_scan("laser", 1.0, self.RANGES, 0.0, math.pi / 2)
        event = _decode(SCAN, payload)
        assert event.kind is EventKind.LASER_SCAN
        assert np.allclose(event.points, [[1.0, 0.0], [0.0, -2.0], [3.0, 0.0]], atol=1e-5)
        assert event.strips == ()

    def test_lines_split_at_invalid_samples(self):
        payload = bf.laser_scan("laser", 1.0, self.RANGES, 0.0, math.pi / 2)
        event = _decode(SCAN, payload, laser_scan_mode="lines")
        assert len(event.strips) == 1
        assert np.allclose(event.strips[0], [[0.0, -2.0], [3.0, 0.0]], atol=1e-5)

    def test_intensity_count_mismatch(self):
        payload = bf.laser_scan("laser", 1.0, [1.0, 2.0], 0.0, 0.1, intensities=[1.0])
        with pytest.raises(DecodeError):
            _decode(SCAN, payload)

    def test_scan_strips(self):
        pts = np.arange(12, dtype=float).reshape(6, 2)
        strips = scan_strips(pts, np.array([True, True, False, True, True, True]))
        assert [len(s) for s in strips] == [2, 3]


# =============================================================================
# Navigation / geometry
# =============================================================================


class TestNavigation:

    def test_nav_sat_fix(self):
        payload = bf.nav_sat_fix("gps", 1.0, 48.1, 11.5, 520.0, status=2, service=5)
        event = _decode("sensor_msgs/msg/NavSatFix", payload)
        assert event.kind is EventKind.NAV_SAT_FIX
        assert (event.latitude, event.longitude, event.altitude) == (48.1, 11.5, 520.0)
        assert event.status == 2
        assert event.service == 5

    def test_tf_message(self):
        payload = bf.tf_message([
            bf.transform_stamped("/world", "base_link", 2.0, (1.0, 0.0, 0.0)),
            bf.transform_stamped("base_link", "camera", 2.5, (0.0, 0.0, 1.0), (0.0, 0.0, 0.0, 2.0)),
        ])
        event = _decode("tf2_msgs/msg/TFMessage", payload, topic="/tf_static")
        assert event.kind is EventKind.TRANSFORM
        assert event.is_static
        first, second = event.transforms
        assert (first.parent, first.child) == ("world", "base_link")
        assert first.stamp == pytest.approx(2.0)
        assert np.allclose(second.pose.rotation, [0.0, 0.0, 0.0, 1.0])

    def test_tf_without_definition(self):
        payload = bf.tf_message([bf.transform_stamped("odom", "base_link", 2.0, (3.0, 0.0, 0.0))])
        for tag in ("tf2_msgs/msg/TFMessage", "tf/msg/tfMessage"):
            conn = _conn(tag, topic="/tf")
            assert conn.message_definition == ""
            (t,) = decode(_raw(payload), conn).transforms
            assert np.allclose(t.pose.translation, [3.0, 0.0, 0.0])

    def test_dynamic_tf(self):
        payload = bf.tf_message([bf.transform_stamped("odom", "base_link", 2.0)])
        assert not _decode("tf2_msgs/msg/TFMessage", payload, topic="/tf").is_static

    def test_odometry(self):
        payload = bf.odometry("odom", "base_link", 3.0, (1.0, 2.0, 0.0), linear=(0.5, 0.0, 0.0),
                              angular=(0.0, 0.0, 0.1))
        event = _decode("nav_msgs/msg/Odometry", payload)
        assert event.child_frame_id == "base_link"
        assert np.allclose(event.pose.translation, [1.0, 2.0, 0.0])
        assert np.allclose(event.linear_velocity, [0.5, 0.0, 0.0])
        assert np.allclose(event.angular_velocity, [0.0, 0.0, 0.1])

    def test_path(self):
        poses = [bf.pose_stamped("map", 1.0 + i, (float(i), 0.0, 0.0)) for i in range(3)]
        event = _decode("nav_msgs/msg/Path", bf.path("map", 4.0, poses))
        assert event.kind is EventKind.PATH
        assert len(event.poses) == 3
        assert np.allclose(event.poses[2].pose.translation, [2.0, 0.0, 0.0])
        assert event.poses[1].stamp == pytest.approx(2.0)

    def test_imu(self):
        event = _decode("sensor_msgs/msg/Imu", bf.imu("imu", 1.0, angular=(0.0, 0.0, 1.0)))
        assert event.kind is EventKind.IMU
        assert np.allclose(event.orientation, [0.0, 0.0, 0.0, 1.0])
        assert np.allclose(event.linear_acceleration, [0.0, 0.0, 9.81])

    def test_imu_without_orientation(self):
        event = _decode("sensor_msgs/msg/Imu", bf.imu("imu", 1.0, orientation_covariance0=-1.0))
        assert event.orientation is None
