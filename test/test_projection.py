"""
Projection tests: geodesy, geoid grid, entity naming and frame enrichment.
"""

import math

import numpy as np
import pytest

from bag2rrd.config import ConvertOptions
from bag2rrd.errors import ConfigurationError
from bag2rrd.geometry import Pose
from bag2rrd.models import (
    ImageEvent,
    ImuEvent,
    LaserScanEvent,
    NavSatFixEvent,
    PathEvent,
    PointCloudEvent,
    PoseStampedEvent,
    RecordKind,
    StampedPose,
    TransformBatchEvent,
    TransformStamped,
)
from bag2rrd.projection import GeoidGrid, Projector, geodetic_to_enu, service_names
from bag2rrd.tf_graph import TransformGraph

ORIGIN = (48.0, 11.0, 500.0)


def _t(x=0.0, y=0.0, z=0.0):
    return Pose.from_xyz_quat((x, y, z), (0.0, 0.0, 0.0, 1.0))


def _projector(graph=None, geoid=None, **options):
    return Projector(ConvertOptions(**options).validate(), graph or TransformGraph(), geoid)


def _fix(lat, lon, alt, status=0, service=1, t=1.0):
    return NavSatFixEvent(timestamp=t, stamp=t, frame_id="gps", latitude=lat, longitude=lon,
                          altitude=alt, status=status, service=service)


def _cloud(frame="lidar", t=1.0):
    return PointCloudEvent(timestamp=t, stamp=t, frame_id=frame,
                           positions=np.zeros((4, 3), dtype=np.float32))


def _write_pgm(tmp_path, rows, offset=-100.0, scale=0.01):
    height, width = len(rows), len(rows[0])
    body = "\n".join(" ".join(str(v) for v in row) for row in rows)
    text = f"P2\n# Offset {offset}\n# Scale {scale}\n{width} {height}\n65535\n{body}\n"
    path = tmp_path / "geoid.pgm"
    path.write_text(text)
    return str(path)


# =============================================================================
# Geodesy
# =============================================================================


class TestGeodesy:

    def test_origin_maps_to_zero(self):
        assert np.allclose(geodetic_to_enu(*ORIGIN, ORIGIN), 0.0, atol=1e-6)

    def test_north_offset(self):
        east, north, up = geodetic_to_enu(48.001, 11.0, 500.0, ORIGIN)
        assert abs(east) < 1e-6
        assert 110.0 < north < 112.0
        assert abs(up) < 0.01

    def test_east_offset(self):
        east, north, _ = geodetic_to_enu(48.0, 11.001, 500.0, ORIGIN)
        expected = 111_320.0 * math.cos(math.radians(48.0)) * 0.001
        assert east == pytest.approx(expected, rel=0.01)
        assert abs(north) < 0.01

    def test_up_offset(self):
        assert geodetic_to_enu(48.0, 11.0, 510.0, ORIGIN)[2] == pytest.approx(10.0, abs=1e-6)

    def test_service_names(self):
        assert service_names(5) == "GPS|COMPASS"
        assert service_names(0) == "NONE"


# =============================================================================
# Geoid grid
# =============================================================================


class TestGeoidGrid:

    def test_ascii_grid(self, tmp_path):
        grid = GeoidGrid.load(_write_pgm(tmp_path, [[1000] * 4] * 3))
        assert grid.raw.shape == (3, 4)
        assert grid.undulation(10.0, 20.0) == pytest.approx(-90.0)

    def test_bilinear(self, tmp_path):
        rows = [[0, 100, 0, 0], [200, 300, 0, 0], [0, 0, 0, 0]]
        grid = GeoidGrid.load(_write_pgm(tmp_path, rows, offset=0.0, scale=1.0))
        assert grid.undulation(90.0, 0.0) == pytest.approx(0.0)
        assert grid.undulation(0.0, 90.0) == pytest.approx(300.0)
        assert grid.undulation(45.0, 45.0) == pytest.approx(150.0)

    def test_longitude_wraps(self, tmp_path):
        rows = [[0, 0, 0, 100], [0, 0, 0, 100], [0, 0, 0, 100]]
        grid = GeoidGrid.load(_write_pgm(tmp_path, rows, offset=0.0, scale=1.0))
        assert grid.undulation(0.0, 315.0) == pytest.approx(50.0)
        assert grid.undulation(0.0, -45.0) == pytest.approx(50.0)

    def test_binary_grid(self, tmp_path):
        header = b"P5\n# Offset -10\n# Scale 0.5\n2 2\n65535\n"
        path = tmp_path / "geoid.pgm"
        path.write_bytes(header + np.array([2, 2, 2, 2], dtype=">u2").tobytes())
        assert GeoidGrid.load(str(path)).undulation(0.0, 0.0) == pytest.approx(-9.0)

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError):
            GeoidGrid.load(str(tmp_path / "nope.pgm"))

    def test_bad_magic(self, tmp_path):
        path = tmp_path / "geoid.pgm"
        path.write_bytes(b"P6\n2 2\n255\n" + bytes(12))
        with pytest.raises(ConfigurationError):
            GeoidGrid.load(str(path))


# =============================================================================
# Naming
# =============================================================================


class TestNaming:

    def test_default_topic_path(self):
        p = _projector()
        assert p.topic_path("/camera/image/") == "/camera/image"
        assert p.topic_path("scan") == "/scan"

    def test_topic_rename(self):
        p = _projector(topic_rename={"/camera/image": "/sensors/front"})
        assert p.topic_path("/camera/image") == "/sensors/front"

    def test_frame_paths(self):
        p = _projector(root_frame="map", frame_map={"base_link": "/robot"})
        assert p.frame_path("base_link") == "/robot"
        assert p.frame_path("camera") == "/map/camera"


# =============================================================================
# Frame enrichment
# =============================================================================


class TestEnrichment:

    def _graph(self):
        g = TransformGraph()
        g.add_static("world", "base_link", _t(1.0, 2.0, 3.0))
        g.add_static("base_link", "lidar", _t(0.0, 0.0, 1.0))
        return g

    def test_sensor_pose(self):
        p = _projector(self._graph())
        (record,) = p.project(_cloud(), "/points", raw_bytes=64)
        assert record.kind is RecordKind.POINTS3D
        assert record.entity_path == "/points"
        assert record.pose.allclose(_t(1.0, 2.0, 4.0))
        assert record.nbytes == 64
        assert p.unresolved == 0

    def test_root_frame_is_identity(self):
        (record,) = _projector().project(_cloud("world"), "/points")
        assert record.pose.allclose(Pose.identity())

    def test_unresolved_is_kept(self):
        p = _projector(self._graph())
        (record,) = p.project(_cloud("radar"), "/radar")
        assert record.pose is None
        assert p.unresolved == 1
        assert p.errors["frame_not_connected"] == 1

    def test_drop_unresolved(self):
        p = _projector(self._graph(), drop_unresolved=True)
        assert p.project(_cloud("radar"), "/radar") == []
        assert p.errors["frame_not_connected"] == 1

    def test_depth_image(self):
        event = ImageEvent(timestamp=1.0, stamp=1.0, frame_id="world",
                           image=np.zeros((2, 2), dtype=np.uint16), encoding="16UC1",
                           depth_meter=1000.0)
        (record,) = _projector().project(event, "/depth")
        assert record.kind is RecordKind.DEPTH_IMAGE
        assert record.data["meter"] == 1000.0

    def test_laser_scan_lifted(self):
        event = LaserScanEvent(timestamp=1.0, stamp=1.0, frame_id="world",
                               points=np.array([[1.0, 0.0], [0.0, 2.0]]))
        (record,) = _projector().project(event, "/scan")
        assert record.kind is RecordKind.POINTS3D
        assert np.allclose(record.data["positions"], [[1.0, 0.0, 0.0], [0.0, 2.0, 0.0]])

    def test_laser_scan_strips(self):
        strip = np.array([[1.0, 0.0], [2.0, 0.0]])
        event = LaserScanEvent(timestamp=1.0, stamp=1.0, frame_id="world",
                               points=strip, strips=(strip,))
        (record,) = _projector().project(event, "/scan")
        assert record.kind is RecordKind.LINE_STRIPS3D
        assert record.data["strips"][0].shape == (2, 3)

    def test_pose_stamped_composed(self):
        event = PoseStampedEvent(timestamp=1.0, stamp=1.0, frame_id="base_link",
                                 pose=_t(1.0, 0.0, 0.0))
        (record,) = _projector(self._graph()).project(event, "/goal")
        assert record.kind is RecordKind.TRANSFORM
        assert record.entity_path == "/goal"
        assert record.pose.allclose(_t(2.0, 2.0, 3.0))

    def test_transforms_use_frame_paths(self):
        g = self._graph()
        batch = TransformBatchEvent(timestamp=1.0, stamp=1.0, frame_id="world", transforms=(
            TransformStamped(parent="world", child="base_link", stamp=1.0, pose=_t(1.0, 2.0, 3.0)),
            TransformStamped(parent="odom", child="ghost", stamp=1.0, pose=_t(5.0)),
        ), is_static=True)
        p = _projector(g)
        records = p.project(batch, "/tf_static", raw_bytes=100)
        assert [r.entity_path for r in records] == ["/world/base_link", "/world/ghost"]
        assert records[0].pose.allclose(_t(1.0, 2.0, 3.0))
        assert records[1].pose.allclose(_t(5.0))
        assert records[1].data["parent"] == "odom"
        assert p.unresolved == 1

    def test_path(self):
        poses = tuple(StampedPose(stamp=1.0, frame_id="base_link", pose=_t(float(i)))
                      for i in range(3))
        event = PathEvent(timestamp=1.0, stamp=1.0, frame_id="base_link", poses=poses)
        (record,) = _projector(self._graph()).project(event, "/plan")
        assert record.kind is RecordKind.LINE_STRIPS3D
        assert np.allclose(record.data["strips"][0][:, 0], [1.0, 2.0, 3.0])

    def test_imu(self):
        event = ImuEvent(timestamp=1.0, stamp=1.0, frame_id="world",
                         orientation=np.array([0.0, 0.0, 0.0, 1.0]),
                         angular_velocity=np.array([0.0, 0.0, 2.0]),
                         linear_acceleration=np.array([0.0, 3.0, 4.0]))
        records = _projector().project(event, "/imu")
        paths = {r.entity_path: r for r in records}
        assert set(paths) == {
            "/imu/angular_velocity", "/imu/angular_velocity_norm",
            "/imu/linear_acceleration", "/imu/linear_acceleration_norm", "/imu/orientation",
        }
        assert paths["/imu/linear_acceleration_norm"].data["value"] == pytest.approx(5.0)
        assert paths["/imu/orientation"].kind is RecordKind.TRANSFORM

    def test_unresolved_imu_counts_framed_records(self):
        event = ImuEvent(timestamp=1.0, stamp=1.0, frame_id="imu_link",
                         orientation=np.array([0.0, 0.0, 0.0, 1.0]),
                         angular_velocity=np.array([0.0, 0.0, 2.0]),
                         linear_acceleration=np.array([0.0, 3.0, 4.0]))
        p = _projector()
        assert len(p.project(event, "/imu")) == 5
        assert p.unresolved == 3

        event = ImuEvent(timestamp=2.0, stamp=2.0, frame_id="imu_link", orientation=None,
                         angular_velocity=np.zeros(3), linear_acceleration=np.zeros(3))
        p.project(event, "/imu")
        assert p.unresolved == 5


# =============================================================================
# GPS
# =============================================================================


class TestGps:

    def test_first_fix_is_origin(self):
        p = _projector()
        first = p.project(_fix(*ORIGIN), "/fix")
        second = p.project(_fix(48.001, 11.0, 500.0, t=2.0), "/fix")
        assert p.origin == ORIGIN
        assert np.allclose(first[0].data["positions"], 0.0, atol=1e-6)
        assert 110.0 < second[0].data["positions"][0, 1] < 112.0

    def test_records(self):
        records = _projector(gps_origin=ORIGIN).project(_fix(*ORIGIN, status=2, service=3), "/gps/fix")
        by_path = {r.entity_path: r for r in records}
        assert by_path["/gps/fix"].kind is RecordKind.POINTS3D
        assert by_path["/gps/fix/status"].data["value"] == 2.0
        assert by_path["/gps/fix/service"].data["text"] == "GPS|GLONASS"

    def test_no_fix_skipped(self):
        p = _projector()
        assert p.project(_fix(*ORIGIN, status=-1), "/fix") == []
        assert p.skipped_fixes == 1
        assert p.origin is None

    def test_track(self):
        p = _projector(gps_origin=ORIGIN, gps_path=True)
        p.project(_fix(*ORIGIN), "/fix")
        records = p.project(_fix(48.001, 11.0, 500.0, t=2.0), "/fix")
        (track,) = [r for r in records if r.entity_path == "/fix/track"]
        assert track.data["strips"][0].shape == (2, 3)

    def test_geoid_correction(self, tmp_path):
        geoid = GeoidGrid.load(_write_pgm(tmp_path, [[1000] * 4] * 3))
        p = _projector(geoid=geoid, gps_origin=(48.0, 11.0, 100.0))
        records = p.project(_fix(48.0, 11.0, 10.0), "/fix")
        assert np.allclose(records[0].data["positions"], 0.0, atol=1e-6)
