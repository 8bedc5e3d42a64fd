import os
import sys
import threading

import pytest

# Ensure local package import works for pytest collection.
_TEST_DIR = os.path.dirname(__file__)
_PKG_ROOT = os.path.abspath(os.path.join(_TEST_DIR, ".."))
for _path in (_PKG_ROOT, _TEST_DIR):
    if _path not in sys.path:
        sys.path.insert(0, _path)

from bag2rrd.segments import Segment  # noqa: E402


class CollectingEncoder:
    """SegmentEncoder that keeps segments in memory and writes a marker file."""

    def __init__(self):
        self.segments = {}
        self._lock = threading.Lock()

    def encode(self, segment: Segment, path: str) -> None:
        with open(path, "w") as f:
            f.write(f"segment {segment.index} {segment.count}\n")
        with self._lock:
            self.segments[segment.index] = segment

    @property
    def records(self):
        return [r for i in sorted(self.segments) for r in self.segments[i].records]


@pytest.fixture
def collecting_encoder():
    return CollectingEncoder()
