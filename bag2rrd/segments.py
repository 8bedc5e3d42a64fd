"""
Segmentation and the parallel flush pool.

The producer appends ResolvedRecords to a Segmenter, which seals a Segment
once the record count or byte threshold is reached. Sealed segments go to a
FlushPool: a bounded queue (the producer blocks when it is full) drained by
N worker threads that encode each segment into a temporary sibling of its
final file. finalize() joins the workers and commits the temporary files in
segment index order; nothing appears under a final name before every segment
has been written.
"""

import logging
import os
import queue
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Protocol

from .errors import FatalIOError
from .models import ResolvedRecord

logger = logging.getLogger(__name__)

TEMP_SUFFIX = ".partial"


@dataclass
class Segment:
    index: int
    records: List[ResolvedRecord] = field(default_factory=list)
    nbytes: int = 0
    sealed: bool = False

    @property
    def count(self) -> int:
        return len(self.records)

    def append(self, record: ResolvedRecord):
        if self.sealed:
            raise RuntimeError(f"segment {self.index} is sealed")
        self.records.append(record)
        self.nbytes += record.nbytes

    def seal(self) -> "Segment":
        self.sealed = True
        return self


class Segmenter:
    """Cuts the record stream into segments; neither threshold set means one segment."""

    def __init__(self, max_records: Optional[int] = None, max_bytes: Optional[int] = None):
        self.max_records = max_records
        self.max_bytes = max_bytes
        self.sealed = 0
        self._current = Segment(0)

    def _seal(self) -> Segment:
        segment = self._current.seal()
        self.sealed += 1
        self._current = Segment(segment.index + 1)
        return segment

    def append(self, record: ResolvedRecord) -> Optional[Segment]:
        """Add a record; returns the segment it sealed, if any."""
        segment = self._current
        segment.append(record)
        if self.max_records is not None and segment.count >= self.max_records:
            return self._seal()
        if self.max_bytes is not None and segment.nbytes >= self.max_bytes:
            return self._seal()
        return None

    def flush(self, allow_empty: bool = False) -> Optional[Segment]:
        """Seal the open segment. An empty one is only returned when nothing was sealed
        yet and ``allow_empty`` is set, so an empty run still yields one output."""
        if self._current.count or (allow_empty and self.sealed == 0):
            return self._seal()
        return None


def segment_path(output: str, index: int, segmented: bool) -> str:
    """``out.rrd`` for a single-segment run, ``out_part0001.rrd``, ... otherwise."""
    if not segmented:
        return output
    stem, ext = os.path.splitext(output)
    return f"{stem}_part{index + 1:04d}{ext}"


# ---------------------------------------------------------------------------
# Flush pool
# ---------------------------------------------------------------------------

class SegmentEncoder(Protocol):
    """Serializes a sealed segment to ``path``. Called from worker threads."""

    def encode(self, segment: Segment, path: str) -> None:
        ...


@dataclass
class FlushJob:
    segment_index: int
    segment: Segment


def _remove(path: str):
    try:
        os.remove(path)
    except FileNotFoundError:
        pass


class FlushPool:

    def __init__(self, encoder: SegmentEncoder, paths_for: Callable[[int], str],
                 workers: int = 2, queue_size: Optional[int] = None):
        if workers < 1:
            raise ValueError("workers must be >= 1")
        self.encoder = encoder
        self.paths_for = paths_for
        self.committed: List[int] = []
        self._queue: "queue.Queue[Optional[FlushJob]]" = queue.Queue(maxsize=queue_size or 2 * workers)
        self._lock = threading.Lock()
        self._written: Dict[int, str] = {}            # segment index -> temporary file
        self._failures: Dict[int, BaseException] = {}
        self._aborted = threading.Event()
        self._next_index = 0
        self._closed = False
        self._result: Optional[List[str]] = None
        self._threads = [
            threading.Thread(target=self._work, name=f"bag2rrd-flush-{i}", daemon=True)
            for i in range(workers)
        ]
        for t in self._threads:
            t.start()

    # -- producer side -----------------------------------------------------

    def submit(self, segment: Segment):
        """Queue a sealed segment; blocks while the queue is full."""
        if self._closed:
            raise RuntimeError("flush pool already finalized")
        if segment.index != self._next_index:
            raise ValueError(f"segment {segment.index} submitted, expected {self._next_index}")
        self._next_index += 1
        self._queue.put(FlushJob(segment.index, segment.seal()))

    @property
    def submitted(self) -> int:
        return self._next_index

    # -- workers -----------------------------------------------------------

    def _work(self):
        while True:
            job = self._queue.get()
            try:
                if job is None:
                    return
                if self._aborted.is_set():
                    continue
                temp = self.paths_for(job.segment_index) + TEMP_SUFFIX
                try:
                    self.encoder.encode(job.segment, temp)
                except Exception as exc:
                    logger.error("segment %d failed to encode: %s", job.segment_index, exc)
                    _remove(temp)
                    with self._lock:
                        self._failures[job.segment_index] = exc
                else:
                    with self._lock:
                        self._written[job.segment_index] = temp
            finally:
                self._queue.task_done()

    def _shutdown(self):
        if self._closed:
            return
        self._closed = True
        for _ in self._threads:
            self._queue.put(None)
        for t in self._threads:
            t.join()

    def _discard(self):
        with self._lock:
            temps = list(self._written.values())
            self._written.clear()
        for temp in temps:
            _remove(temp)

    # -- completion --------------------------------------------------------

    def finalize(self) -> List[str]:
        """
        Wait for every segment, then move them to their final names in index order.

        Safe to call more than once; later calls return the same paths.
        """
        if self._result is not None:
            return self._result
        self._shutdown()
        if self._failures:
            self._discard()
            index = min(self._failures)
            self._result = []
            raise FatalIOError(f"segment {index} could not be written: {self._failures[index]}") \
                from self._failures[index]

        paths = []
        for index in range(self._next_index):
            final = self.paths_for(index)
            try:
                if index not in self._written:
                    raise FileNotFoundError(f"segment {index} was never written")
                os.replace(self._written.pop(index), final)
            except OSError as exc:
                self._discard()
                for done in paths:
                    _remove(done)
                self.committed.clear()
                self._result = []
                raise FatalIOError(f"cannot commit {final}: {exc}") from exc
            self.committed.append(index)
            paths.append(final)
        self._result = paths
        return paths

    def abort(self):
        """Drop queued segments, let running encodes finish, remove their output."""
        self._aborted.set()
        while True:
            try:
                self._queue.get_nowait()
            except queue.Empty:
                break
            self._queue.task_done()
        self._shutdown()
        self._discard()
        if self._result is None:
            self._result = []
