"""
Transform graph: time-indexed frame tree fed by /tf and /tf_static.

Each child frame has one parent edge at a time. Dynamic edges keep a sorted
list of TransformSample within a retention window behind the newest sample
ingested anywhere in the graph; static edges hold one pose valid at every
time.

resolve() composes edge-local poses along the path between two frames; each
edge is looked up (nearest / interpolated / exact) on its own.
"""

import bisect
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Set, Tuple

from .constants import DEFAULT_TF_BUFFER_SECONDS, TF_STALENESS_WARNING_SECONDS
from .errors import CycleDetected, FrameNotConnected
from .geometry import Pose, interpolate
from .models import TransformBatchEvent

logger = logging.getLogger(__name__)

EXACT_TOLERANCE = 1e-9


class TfMode(Enum):
    NEAREST = "nearest"
    INTERPOLATE = "interpolate"
    EXACT = "exact"


@dataclass(frozen=True, eq=False)
class TransformSample:
    timestamp: float
    pose: Pose


@dataclass
class _Edge:
    parent: str
    static: Optional[Pose] = None
    samples: List[TransformSample] = field(default_factory=list)
    times: List[float] = field(default_factory=list)   # mirrors samples for bisect
    stale_warned: bool = False

    @property
    def empty(self) -> bool:
        return self.static is None and not self.samples


class TransformGraph:
    """Owned by the producer thread; no locking."""

    def __init__(self, buffer_seconds: float = DEFAULT_TF_BUFFER_SECONDS,
                 staleness_warning: float = TF_STALENESS_WARNING_SECONDS):
        self.buffer_seconds = buffer_seconds
        self.staleness_warning = staleness_warning
        self.now: Optional[float] = None          # newest dynamic sample time
        self._edges: Dict[str, _Edge] = {}        # child -> edge to its parent
        self.rejected = 0                         # edges refused because of cycles
        self.evicted = 0

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------

    def _edge_for(self, parent: str, child: str) -> _Edge:
        if parent == child:
            raise CycleDetected(f"transform from {parent!r} to itself")
        edge = self._edges.get(child)
        if edge is not None and edge.parent == parent:
            return edge
        if self._is_above(child, parent):
            raise CycleDetected(f"{parent} -> {child} would close a cycle in the frame tree")
        if edge is not None:
            logger.warning("frame %r re-parented from %r to %r", child, edge.parent, parent)
        edge = _Edge(parent=parent)
        self._edges[child] = edge
        return edge

    def _is_above(self, frame: str, start: str) -> bool:
        """True when ``frame`` is ``start`` or one of its ancestors."""
        seen: Set[str] = set()
        current: Optional[str] = start
        while current is not None and current not in seen:
            if current == frame:
                return True
            seen.add(current)
            edge = self._edges.get(current)
            current = edge.parent if edge else None
        return False

    def add_static(self, parent: str, child: str, pose: Pose):
        edge = self._edge_for(parent, child)
        edge.static = pose
        edge.samples.clear()
        edge.times.clear()

    def add_sample(self, parent: str, child: str, timestamp: float, pose: Pose):
        edge = self._edge_for(parent, child)
        if edge.static is not None:
            logger.warning("dynamic transform %s -> %s replaces a static one", parent, child)
            edge.static = None
        idx = bisect.bisect_right(edge.times, timestamp)
        edge.times.insert(idx, timestamp)
        edge.samples.insert(idx, TransformSample(timestamp, pose))
        if self.now is None or timestamp > self.now:
            self.now = timestamp
        self._evict()

    def _evict(self):
        cutoff = self.now - self.buffer_seconds
        for edge in self._edges.values():
            if edge.times and edge.times[0] < cutoff:
                n = bisect.bisect_left(edge.times, cutoff)
                del edge.times[:n]
                del edge.samples[:n]
                self.evicted += n

    def ingest(self, batch: TransformBatchEvent) -> int:
        """Apply every transform of a /tf or /tf_static message; returns edges rejected."""
        rejected = 0
        for t in batch.transforms:
            try:
                if batch.is_static:
                    self.add_static(t.parent, t.child, t.pose)
                else:
                    stamp = t.stamp if t.stamp > 0 else batch.timestamp
                    self.add_sample(t.parent, t.child, stamp, t.pose)
            except CycleDetected as exc:
                logger.warning("skipping transform: %s", exc)
                rejected += 1
        self.rejected += rejected
        return rejected

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def __contains__(self, frame: str) -> bool:
        return frame in self._edges or any(e.parent == frame for e in self._edges.values())

    def parent_of(self, frame: str) -> Optional[str]:
        edge = self._edges.get(frame)
        return edge.parent if edge else None

    def frames(self) -> Set[str]:
        names = set(self._edges)
        names.update(e.parent for e in self._edges.values())
        return names

    def edges(self) -> List[Tuple[str, str]]:
        return [(e.parent, child) for child, e in self._edges.items()]

    def _chain(self, frame: str) -> List[str]:
        """frame, parent, grandparent, ... up to the root of its tree."""
        chain = [frame]
        seen = {frame}
        edge = self._edges.get(frame)
        while edge is not None:
            if edge.parent in seen:
                raise CycleDetected(f"cycle through frame {edge.parent!r}")
            chain.append(edge.parent)
            seen.add(edge.parent)
            edge = self._edges.get(edge.parent)
        return chain

    def _edge_pose(self, child: str, at_time: float, mode: TfMode) -> Pose:
        """Pose of ``child`` in its parent at ``at_time``."""
        edge = self._edges[child]
        if edge.static is not None:
            return edge.static
        if not edge.samples:
            raise FrameNotConnected(
                f"no sample for {edge.parent} -> {child} within the last {self.buffer_seconds}s"
            )
        times = edge.times
        idx = bisect.bisect_left(times, at_time)
        before = idx - 1 if idx > 0 else None
        after = idx if idx < len(times) else None

        if mode is TfMode.INTERPOLATE and before is not None and after is not None:
            t0, t1 = times[before], times[after]
            alpha = 0.0 if t1 == t0 else (at_time - t0) / (t1 - t0)
            return interpolate(edge.samples[before].pose, edge.samples[after].pose, alpha)

        candidates = [i for i in (before, after) if i is not None]
        best = min(candidates, key=lambda i: abs(times[i] - at_time))
        gap = abs(times[best] - at_time)
        if mode is TfMode.EXACT:
            if gap > EXACT_TOLERANCE:
                raise FrameNotConnected(
                    f"no sample for {edge.parent} -> {child} exactly at t={at_time:.9f}"
                )
        elif gap > self.staleness_warning and not edge.stale_warned:
            logger.warning("transform %s -> %s is %.3fs away from query time %.3f",
                           edge.parent, child, gap, at_time)
            edge.stale_warned = True
        return edge.samples[best].pose

    def resolve(self, child: str, ancestor: str, at_time: float,
                mode: TfMode = TfMode.NEAREST) -> Pose:
        """
        Pose of frame ``child`` expressed in frame ``ancestor`` at ``at_time``.

        ``ancestor`` need not be a direct ancestor: both frames are walked up
        to their lowest common ancestor and the ancestor side is inverted.
        """
        if child == ancestor:
            return Pose.identity()
        up = self._chain(child)
        down = self._chain(ancestor)
        common = next((f for f in up if f in set(down)), None)
        if common is None:
            raise FrameNotConnected(f"no transform path between {child!r} and {ancestor!r}")

        # child -> common
        pose = Pose.identity()
        for frame in up[:up.index(common)]:
            pose = self._edge_pose(frame, at_time, mode).compose(pose)
        # ancestor -> common, then invert to get common -> ancestor
        anc = Pose.identity()
        for frame in down[:down.index(common)]:
            anc = self._edge_pose(frame, at_time, mode).compose(anc)
        return anc.inverse().compose(pose)
