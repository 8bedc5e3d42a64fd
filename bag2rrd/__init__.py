"""
bag2rrd

Converts recorded ROS1 bag files into Rerun (.rrd) recordings: images, point
clouds, laser scans, GPS fixes, odometry, poses and paths, resolved into a
single root frame through the bag's transform tree.

Corrupted chunks can be skipped, and large recordings are split into
segments that are encoded in parallel and committed in order.
"""

__version__ = "0.1.0"
