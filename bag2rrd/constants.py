"""
Constants for bag2rrd.

Groups:
- ROS1 bag v2.0 container layout (op codes, magic line, compression names)
- Known message schemas and their md5 digests
- Conversion defaults
- Geodesy (CRS codes, geoid grid defaults)
"""

from typing import Dict, FrozenSet

# ---------------------------------------------------------------------------
# ROS1 bag v2.0 container
# ---------------------------------------------------------------------------

BAG_MAGIC = b"#ROSBAG V2.0\n"

OP_MSG_DATA = 0x02
OP_BAG_HEADER = 0x03
OP_INDEX_DATA = 0x04
OP_CHUNK = 0x05
OP_CHUNK_INFO = 0x06
OP_CONNECTION = 0x07

KNOWN_OPS: FrozenSet[int] = frozenset({
    OP_MSG_DATA, OP_BAG_HEADER, OP_INDEX_DATA,
    OP_CHUNK, OP_CHUNK_INFO, OP_CONNECTION,
})

COMPRESSIONS: FrozenSet[str] = frozenset({"none", "bz2", "lz4"})

# Every header field is "<len:u32>name=value"; a chunk always carries op=0x05
CHUNK_OP_FIELD = b"\x04\x00\x00\x00op=\x05"

# Sanity limits used to reject garbage length prefixes early
MAX_HEADER_LEN = 1 << 20        # 1 MiB
RESYNC_LOOKBEHIND = 512         # bytes searched before an op=0x05 field for its record start

# ---------------------------------------------------------------------------
# Transform topics
# ---------------------------------------------------------------------------

TF_TOPIC = "/tf"
TF_STATIC_TOPIC = "/tf_static"
TF_TOPICS: FrozenSet[str] = frozenset({TF_TOPIC, TF_STATIC_TOPIC})

# ---------------------------------------------------------------------------
# Supported message schemas
# ---------------------------------------------------------------------------
# md5 digests as written by ROS1 into connection records. A connection for one
# of these types with a different digest was recorded against another schema
# version and is rejected per record.

SCHEMA_DIGESTS: Dict[str, str] = {
    "sensor_msgs/msg/Image": "060021388200f6f0f447d0fcd9c64743",
    "sensor_msgs/msg/CompressedImage": "8f7a12909da2c9d3332d540a0977563f",
    "sensor_msgs/msg/PointCloud2": "1158d486dd51d683ce2f1be655c3c181",
    "sensor_msgs/msg/LaserScan": "90c7ef2dc6895d81024acba2ac42f369",
    "sensor_msgs/msg/NavSatFix": "2d3a8cd499b9b4a0249fb98fd05cfa48",
    "sensor_msgs/msg/Imu": "6a62c6daae103f4ff57a132d6f95cec2",
    "tf2_msgs/msg/TFMessage": "94810edda583a504dfda3829e70d7eec",
    "tf/msg/tfMessage": "94810edda583a504dfda3829e70d7eec",
    "nav_msgs/msg/Odometry": "cd5e73d190d741a2f92e81eda573aca7",
    "nav_msgs/msg/Path": "6227e2b7e9cce15051f669a5e197bbf7",
    "geometry_msgs/msg/PoseStamped": "d3812c3cbc69362b77dc0b19b345f8f5",
}

# Digests that mean "not recorded"; accepted for any type
WILDCARD_DIGESTS: FrozenSet[str] = frozenset({"", "*"})

# ---------------------------------------------------------------------------
# Conversion defaults
# ---------------------------------------------------------------------------

APPLICATION_ID = "bag2rrd"
TIMELINE = "ros_time"
DEFAULT_ROOT_FRAME = "world"
DEFAULT_TF_BUFFER_SECONDS = 30.0
DEFAULT_TF_MODE = "nearest"
DEFAULT_FLUSH_WORKERS = 2
TF_STALENESS_WARNING_SECONDS = 1.0   # nearest sample further than this from the query warns
DEFAULT_PROGRESS_INTERVAL = 10000    # records between verbose progress lines
POINT_RADIUS = 0.02                  # metres, laser and GPS points

# ---------------------------------------------------------------------------
# Geodesy
# ---------------------------------------------------------------------------

# WGS84 geodetic (lon, lat, ellipsoidal height) and geocentric (ECEF)
CRS_GEODETIC = "EPSG:4979"
CRS_ECEF = "EPSG:4978"

# GeographicLib geoid PGM files store undulation = offset + scale * raw
GEOID_DEFAULT_OFFSET = -108.0
GEOID_DEFAULT_SCALE = 0.003

# NavSatStatus service bits
GNSS_SERVICES: Dict[int, str] = {
    1: "GPS",
    2: "GLONASS",
    4: "COMPASS",
    8: "GALILEO",
}
