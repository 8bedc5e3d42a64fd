"""
Chunk Reader: corruption-tolerant scanner for ROS1 bag v2.0 files.

The file is memory-mapped and walked record by record:

    <header_len:u32><header fields><data_len:u32><data>

Chunk records (op 0x05) hold the message and connection records; they are
decompressed (none / bz2 / lz4) and split completely before any of their
records is handed out, so a damaged chunk never leaks partial data.

Damage is detected from the framing itself: length prefixes running past
the file or the chunk, malformed header fields, unknown ops or compression
names, failed decompression and size mismatches. By default the first damaged
record raises StructuralCorruption. With ``tolerate_corruption`` the scanner
switches to RESYNCHRONIZING, searches forward for the next record whose
header parses as a chunk header, and resumes SCANNING there.

`open()` runs the index pass: the trailing index section when the bag header
points at one, otherwise a full sequential scan. Either way every connection
is declared into the ConnectionRegistry and the bag time range is known
before `records()` is iterated.
"""

import bz2
import logging
import mmap
import os
import struct
from dataclasses import replace
from enum import Enum
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Tuple

import lz4.frame

from .constants import (
    BAG_MAGIC,
    CHUNK_OP_FIELD,
    COMPRESSIONS,
    KNOWN_OPS,
    MAX_HEADER_LEN,
    OP_BAG_HEADER,
    OP_CHUNK,
    OP_CHUNK_INFO,
    OP_CONNECTION,
    OP_MSG_DATA,
    RESYNC_LOOKBEHIND,
)
from .errors import FatalIOError, StructuralCorruption
from .models import ChunkInfo, Connection, CorruptionEvent, RawRecord, ScanDiagnostics
from .registry import ConnectionRegistry, normalize_msgtype

logger = logging.getLogger(__name__)

_U32 = struct.Struct("<I")
_U64 = struct.Struct("<Q")
_TIME = struct.Struct("<II")

# (op, header fields, data) for one record inside a chunk
InnerRecord = Tuple[int, Dict[str, bytes], bytes]


class _Damaged(Exception):
    """Framing violation found while parsing; carries a human readable reason."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class ScanState(Enum):
    SCANNING = "scanning"
    RESYNCHRONIZING = "resynchronizing"


# ---------------------------------------------------------------------------
# Framing helpers
# ---------------------------------------------------------------------------

def parse_header_fields(buf: bytes) -> Dict[str, bytes]:
    """Split a record header into {name: raw value}. Raises _Damaged on overrun."""
    fields: Dict[str, bytes] = {}
    pos = 0
    end = len(buf)
    while pos < end:
        if pos + 4 > end:
            raise _Damaged("truncated header field length")
        (flen,) = _U32.unpack_from(buf, pos)
        pos += 4
        if pos + flen > end:
            raise _Damaged("header field overruns its record header")
        key, sep, value = bytes(buf[pos:pos + flen]).partition(b"=")
        if not sep:
            raise _Damaged("header field without '='")
        fields[key.decode("ascii", "replace")] = value
        pos += flen
    return fields


def _op_of(fields: Dict[str, bytes]) -> int:
    op = fields.get("op")
    if op is None or len(op) != 1:
        raise _Damaged("record header has no op field")
    return op[0]


def _uint32(fields: Dict[str, bytes], name: str) -> int:
    value = fields.get(name)
    if value is None or len(value) != 4:
        raise _Damaged(f"missing or malformed '{name}' field")
    return _U32.unpack(value)[0]


def _uint64(fields: Dict[str, bytes], name: str) -> int:
    value = fields.get(name)
    if value is None or len(value) != 8:
        raise _Damaged(f"missing or malformed '{name}' field")
    return _U64.unpack(value)[0]


def _time_ns(fields: Dict[str, bytes], name: str) -> int:
    value = fields.get(name)
    if value is None or len(value) != 8:
        raise _Damaged(f"missing or malformed '{name}' field")
    secs, nsecs = _TIME.unpack(value)
    return secs * 1_000_000_000 + nsecs


def _read_record(buf, pos: int, end: int) -> Tuple[int, Dict[str, bytes], int, int, int]:
    """Frame one record at ``pos``: (op, fields, data_pos, data_len, next_pos)."""
    if pos + 4 > end:
        raise _Damaged("truncated record length prefix")
    (header_len,) = _U32.unpack_from(buf, pos)
    if header_len > MAX_HEADER_LEN or pos + 4 + header_len + 4 > end:
        raise _Damaged(f"header length {header_len} runs past the end of data")
    fields = parse_header_fields(buf[pos + 4:pos + 4 + header_len])
    op = _op_of(fields)
    data_pos = pos + 4 + header_len + 4
    (data_len,) = _U32.unpack_from(buf, data_pos - 4)
    if data_pos + data_len > end:
        raise _Damaged(f"data length {data_len} runs past the end of data")
    return op, fields, data_pos, data_len, data_pos + data_len


def _decompress(compression: str, data: bytes) -> bytes:
    if compression == "none":
        return data
    try:
        if compression == "lz4":
            return lz4.frame.decompress(data)
        return bz2.decompress(data)
    except (OSError, ValueError, EOFError, RuntimeError) as exc:
        raise _Damaged(f"{compression} decompression failed: {exc}") from None


def split_chunk(data: bytes) -> List[InnerRecord]:
    """Parse every record of a decompressed chunk, validating the ones we consume."""
    records: List[InnerRecord] = []
    pos = 0
    end = len(data)
    while pos < end:
        op, fields, data_pos, data_len, pos = _read_record(data, pos, end)
        if op == OP_MSG_DATA:
            _uint32(fields, "conn")
            _time_ns(fields, "time")
        elif op == OP_CONNECTION:
            _connection_from(fields, bytes(data[data_pos:data_pos + data_len]))
        else:
            raise _Damaged(f"unexpected op 0x{op:02x} inside chunk")
        records.append((op, fields, bytes(data[data_pos:data_pos + data_len])))
    return records


def _chunk_header_at(buf, pos: int, end: int) -> bool:
    """True when a well-formed chunk record starts at ``pos``."""
    try:
        op, fields, _, _, _ = _read_record(buf, pos, end)
        if op != OP_CHUNK:
            return False
        _uint32(fields, "size")
        return fields.get("compression", b"").decode("ascii", "replace") in COMPRESSIONS
    except _Damaged:
        return False


def find_next_chunk(buf, start: int, end: Optional[int] = None) -> Optional[int]:
    """
    Offset of the first valid chunk record starting at or after ``start``.

    Looks for the ``op=0x05`` header field and walks back over the few bytes
    that may precede it in the same header (``compression=...`` sorts first)
    until a record start parses as a complete chunk header.
    """
    end = len(buf) if end is None else end
    search = start
    while True:
        hit = buf.find(CHUNK_OP_FIELD, search)
        if hit < 0 or hit >= end:
            return None
        lowest = max(start, hit - RESYNC_LOOKBEHIND)
        for candidate in range(hit - 4, lowest - 1, -1):
            if _chunk_header_at(buf, candidate, end):
                return candidate
        search = hit + 1


def _connection_from(fields: Dict[str, bytes], data: bytes) -> Connection:
    info = parse_header_fields(data)
    msgtype = info.get("type")
    if not msgtype:
        raise _Damaged("connection record without message type")
    text = lambda key: info.get(key, b"").decode("utf-8", "replace")
    if "topic" not in fields:
        raise _Damaged("connection record without topic")
    return Connection(
        id=_uint32(fields, "conn"),
        topic=fields["topic"].decode("utf-8", "replace"),
        message_type_tag=normalize_msgtype(msgtype.decode("utf-8", "replace")),
        field_layout_digest=text("md5sum"),
        message_definition=text("message_definition"),
        callerid=text("callerid"),
        latching=text("latching") == "1",
    )


def _chunk_info_from(fields: Dict[str, bytes], data: bytes) -> ChunkInfo:
    count = _uint32(fields, "count")
    if len(data) < 8 * count:
        raise _Damaged("chunk info record shorter than its connection table")
    counts = {}
    for i in range(count):
        conn_id, n = struct.unpack_from("<II", data, 8 * i)
        counts[conn_id] = n
    return ChunkInfo(
        offset=_uint64(fields, "chunk_pos"),
        start_time=_time_ns(fields, "start_time"),
        end_time=_time_ns(fields, "end_time"),
        connection_counts=counts,
    )


# ---------------------------------------------------------------------------
# Reader
# ---------------------------------------------------------------------------

class ChunkReader:
    """
    Streams RawRecords out of a ROS1 bag.

    Usage:
        with ChunkReader(path, tolerate_corruption=True) as reader:
            for raw in reader.records():
                conn = reader.registry.resolve(raw.connection_id)
    """

    def __init__(self, path: str, *, tolerate_corruption: bool = False,
                 registry: Optional[ConnectionRegistry] = None):
        self.path = path
        self.tolerate_corruption = tolerate_corruption
        self.registry = registry if registry is not None else ConnectionRegistry()
        self.diagnostics = ScanDiagnostics()
        self.chunk_infos: Dict[int, ChunkInfo] = {}
        self.start_time: int = 0
        self.end_time: int = 0
        self.message_count: int = 0
        self.indexed = False            # True when the trailing index was usable
        self._file = None
        self._buf = None
        self._size = 0
        self._data_start = 0
        self._index_pos = 0
        self._last_time: Optional[int] = None
        self._header_damage: Optional[Tuple[int, Optional[int], str]] = None

    # -- lifecycle ----------------------------------------------------------

    def open(self) -> "ChunkReader":
        try:
            self._file = open(self.path, "rb")
            self._size = os.fstat(self._file.fileno()).st_size
            if self._size < len(BAG_MAGIC):
                raise FatalIOError(f"{self.path}: file too short to be a bag")
            self._buf = mmap.mmap(self._file.fileno(), 0, access=mmap.ACCESS_READ)
        except OSError as exc:
            self.close()
            raise FatalIOError(f"cannot read {self.path}: {exc}") from exc
        except FatalIOError:
            self.close()
            raise
        if self._buf[:len(BAG_MAGIC)] != BAG_MAGIC:
            self.close()
            raise FatalIOError(f"{self.path}: not a ROS1 bag v2.0 file")

        try:
            self._read_bag_header()
            self._index_pass()
        except BaseException:
            self.close()
            raise
        return self

    def close(self):
        if self._buf is not None:
            self._buf.close()
            self._buf = None
        if self._file is not None:
            self._file.close()
            self._file = None

    def __enter__(self):
        if self._buf is None:
            self.open()
        return self

    def __exit__(self, *args):
        self.close()

    @property
    def duration(self) -> int:
        return max(0, self.end_time - self.start_time)

    # -- index pass ---------------------------------------------------------

    def _read_bag_header(self):
        pos = len(BAG_MAGIC)
        try:
            op, fields, _, _, next_pos = _read_record(self._buf, pos, self._size)
            if op != OP_BAG_HEADER:
                raise _Damaged(f"expected bag header, found op 0x{op:02x}")
            self._index_pos = _uint64(fields, "index_pos")
            self._data_start = next_pos
        except _Damaged as exc:
            if not self.tolerate_corruption:
                raise StructuralCorruption(pos, exc.reason) from None
            resume = find_next_chunk(self._buf, pos + 1, self._size)
            self._header_damage = (pos, resume, exc.reason)
            self._note_corruption(*self._header_damage)
            self._index_pos = 0
            self._data_start = resume if resume is not None else self._size

    def _index_pass(self):
        if self._data_start < self._index_pos < self._size:
            try:
                self._read_index_section()
                self.indexed = True
            except _Damaged as exc:
                logger.warning("%s: index section unreadable (%s), scanning sequentially",
                               os.path.basename(self.path), exc.reason)
                self.chunk_infos.clear()
        if not self.indexed:
            if self._index_pos == 0 or self._index_pos >= self._size:
                logger.info("%s: bag index missing, scanning sequentially",
                            os.path.basename(self.path))
            self._sequential_index_pass()
        self.message_count = sum(
            sum(info.connection_counts.values()) for info in self.chunk_infos.values()
        ) or self.message_count

    def _read_index_section(self):
        pos = self._index_pos
        while pos < self._size:
            op, fields, data_pos, data_len, pos = _read_record(self._buf, pos, self._size)
            data = self._buf[data_pos:data_pos + data_len]
            if op == OP_CONNECTION:
                self.registry.declare(_connection_from(fields, data))
            elif op == OP_CHUNK_INFO:
                info = _chunk_info_from(fields, data)
                self.chunk_infos[info.offset] = info
            else:
                raise _Damaged(f"unexpected op 0x{op:02x} in index section")
        if self.chunk_infos:
            self.start_time = min(i.start_time for i in self.chunk_infos.values())
            self.end_time = max(i.end_time for i in self.chunk_infos.values())

    def _sequential_index_pass(self):
        min_ts = None
        max_ts = 0
        count = 0
        # corruption found here is reported again by the main pass
        saved = self.diagnostics
        self.diagnostics = ScanDiagnostics()
        try:
            for op, offset, payload in self._scan():
                if op == OP_CONNECTION:
                    self.registry.declare(_connection_from(*payload))
                    continue
                for rop, fields, data in payload:
                    if rop == OP_CONNECTION:
                        self.registry.declare(_connection_from(fields, data))
                    elif rop == OP_MSG_DATA:
                        ts = _time_ns(fields, "time")
                        min_ts = ts if min_ts is None else min(min_ts, ts)
                        max_ts = max(max_ts, ts)
                        count += 1
        finally:
            self.diagnostics = saved
        self.start_time = min_ts or 0
        self.end_time = max_ts
        self.message_count = count

    # -- scanning state machine --------------------------------------------

    def _note_corruption(self, offset: int, resume: Optional[int], reason: str):
        event = CorruptionEvent(offset, resume, reason, last_good_time=self._last_time)
        end = resume if resume is not None else self._size
        self.diagnostics.events.append(event)
        self.diagnostics.chunks_skipped += 1
        self.diagnostics.bytes_skipped += end - offset
        last = "start of bag" if self._last_time is None else f"t={self._last_time / 1e9:.3f}s"
        logger.warning("%s: corrupted data at bytes %d-%d (%s), %d bytes skipped after %s",
                       os.path.basename(self.path), offset, end, reason, end - offset, last)

    def _scan(self, skip_chunk: Optional[Callable[[int], bool]] = None
              ) -> Iterator[Tuple[int, int, object]]:
        """
        Walk top-level records from the first data record.

        Yields (OP_CHUNK, offset, [InnerRecord, ...]) for chunks (and for a
        bare top-level message record) and (OP_CONNECTION, offset,
        (fields, data)) for connection records outside chunks.
        """
        buf, end = self._buf, self._size
        pos = self._data_start
        state = ScanState.SCANNING
        damaged_at, reason = 0, ""
        while True:
            if state is ScanState.RESYNCHRONIZING:
                resume = find_next_chunk(buf, damaged_at + 1, end)
                self._note_corruption(damaged_at, resume, reason)
                if resume is None:
                    return
                pos = resume
                state = ScanState.SCANNING
                continue
            if pos >= end:
                return
            try:
                op, fields, data_pos, data_len, next_pos = _read_record(buf, pos, end)
                if op not in KNOWN_OPS:
                    raise _Damaged(f"unknown record op 0x{op:02x}")
                item = None
                if op == OP_CHUNK:
                    if skip_chunk is not None and skip_chunk(pos):
                        self.diagnostics.chunks_filtered += 1
                    else:
                        compression = fields.get("compression", b"").decode("ascii", "replace")
                        if compression not in COMPRESSIONS:
                            raise _Damaged(f"unknown compression {compression!r}")
                        size = _uint32(fields, "size")
                        data = _decompress(compression, buf[data_pos:data_pos + data_len])
                        if len(data) != size:
                            raise _Damaged(f"chunk decompressed to {len(data)} bytes, expected {size}")
                        item = (OP_CHUNK, pos, split_chunk(data))
                        self.diagnostics.chunks_read += 1
                elif op == OP_CONNECTION:
                    data = bytes(buf[data_pos:data_pos + data_len])
                    _connection_from(fields, data)
                    item = (OP_CONNECTION, pos, (fields, data))
                elif op == OP_MSG_DATA:
                    _uint32(fields, "conn")
                    _time_ns(fields, "time")
                    item = (OP_CHUNK, pos, [(op, fields, bytes(buf[data_pos:data_pos + data_len]))])
                # bag header, index data and chunk info records carry nothing new here
            except _Damaged as exc:
                if not self.tolerate_corruption:
                    raise StructuralCorruption(pos, exc.reason) from None
                damaged_at, reason = pos, exc.reason
                state = ScanState.RESYNCHRONIZING
                continue
            pos = next_pos
            if item is not None:
                yield item

    # -- main pass ----------------------------------------------------------

    def records(self, start_ns: Optional[int] = None, end_ns: Optional[int] = None,
                keep_connections: Iterable[int] = ()) -> Iterator[RawRecord]:
        """
        Yield every message record in file order.

        With a time window, chunks the index places entirely outside it are
        skipped without decompression, unless they carry one of
        ``keep_connections``. Records inside read chunks are not filtered.
        """
        if self._buf is None:
            raise FatalIOError(f"{self.path}: reader is not open")
        keep = set(keep_connections)
        skip = None
        if (start_ns is not None or end_ns is not None) and self.chunk_infos:
            lo = start_ns if start_ns is not None else 0
            hi = end_ns if end_ns is not None else float("inf")

            def skip(offset: int) -> bool:
                info = self.chunk_infos.get(offset)
                if info is None or keep.intersection(info.connection_counts):
                    return False
                return info.end_time < lo or info.start_time > hi

        self.diagnostics = ScanDiagnostics()
        self._last_time = None
        if self._header_damage is not None:
            self._note_corruption(*self._header_damage)
        events_seen = 0
        for op, offset, payload in self._scan(skip):
            if op == OP_CONNECTION:
                self.registry.declare(_connection_from(*payload))
                continue
            for rop, fields, data in payload:
                if rop == OP_CONNECTION:
                    self.registry.declare(_connection_from(fields, data))
                    continue
                ts = _time_ns(fields, "time")
                events = self.diagnostics.events
                if len(events) > events_seen:
                    events[-1] = replace(events[-1], resume_time=ts)
                    events_seen = len(events)
                    if events[-1].last_good_time is not None:
                        logger.warning("%s: timestamp gap %.3fs across corrupted region",
                                       os.path.basename(self.path),
                                       (ts - events[-1].last_good_time) / 1e9)
                self._last_time = ts
                yield RawRecord(_uint32(fields, "conn"), ts, data, offset)

        diag = self.diagnostics
        if diag.chunks_skipped or diag.bytes_skipped:
            logger.warning("%s: %d corrupted chunk(s), %d bytes skipped",
                           os.path.basename(self.path), diag.chunks_skipped, diag.bytes_skipped)


# ---------------------------------------------------------------------------
# Diagnose
# ---------------------------------------------------------------------------

def diagnose_bag(path: str) -> dict:
    """Tolerant scan of a bag: chunk, connection and message counts plus damage."""
    with ChunkReader(path, tolerate_corruption=True) as reader:
        per_topic: Dict[str, int] = {}
        unknown = 0
        for raw in reader.records():
            if raw.connection_id in reader.registry:
                topic = reader.registry.resolve(raw.connection_id).topic
                per_topic[topic] = per_topic.get(topic, 0) + 1
            else:
                unknown += 1
        return {
            "path": path,
            "indexed": reader.indexed,
            "connections": len(reader.registry),
            "messages": sum(per_topic.values()) + unknown,
            "messages_per_topic": per_topic,
            "unknown_connection_records": unknown,
            "start_time": reader.start_time / 1e9,
            "end_time": reader.end_time / 1e9,
            **reader.diagnostics.to_dict(),
            "corruption": [
                {"offset": e.offset, "resume_offset": e.resume_offset, "reason": e.reason}
                for e in reader.diagnostics.events
            ],
        }
