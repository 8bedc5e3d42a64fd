"""
Conversion pipeline: wires all stages together on one producer thread.

index pass → read → decode → transform graph → projection → segment → flush pool

Only the flush pool runs on other threads; the registry, transform graph
and projector are touched by the producer alone, in source order.
"""

import logging
import os
import time
from typing import Optional

from .chunk_reader import ChunkReader
from .config import ConvertOptions
from .constants import TF_TOPICS
from .decoders import decode, is_supported
from .errors import FatalIOError, RecordError, UnknownConnection
from .models import ConversionStats, EventKind
from .projection import GeoidGrid, Projector
from .segments import FlushPool, SegmentEncoder, Segmenter, segment_path
from .tf_graph import TransformGraph

logger = logging.getLogger(__name__)


def topic_selected(topic: str, options: ConvertOptions) -> bool:
    if options.include_topics and topic not in options.include_topics:
        return False
    return topic not in options.exclude_topics


def _check_output(output_path: str):
    out_dir = os.path.dirname(os.path.abspath(output_path))
    if not os.path.isdir(out_dir):
        raise FatalIOError(f"output directory does not exist: {out_dir}")
    if not os.access(out_dir, os.W_OK):
        raise FatalIOError(f"output directory is not writable: {out_dir}")


def run_conversion(
    input_path: str,
    output_path: str,
    options: Optional[ConvertOptions] = None,
    *,
    encoder: Optional[SegmentEncoder] = None,
    verbose: bool = False,
) -> ConversionStats:
    """
    Convert a ROS1 bag into one or more Rerun recordings.

    Args:
        input_path: Path to the .bag file
        output_path: Destination .rrd path (segmented runs add _partNNNN)
        options: Conversion options, validated here
        encoder: Segment encoder; defaults to RerunSegmentEncoder
        verbose: Print stage progress

    Returns:
        ConversionStats for the run. Fatal errors propagate after any
        partially written output has been removed.
    """
    options = (options or ConvertOptions()).validate()

    def log(msg: str):
        if verbose:
            print(msg)

    t_start = time.time()
    stats = ConversionStats()

    # ======================================================================
    # Stage 1: Resources + Index Pass
    # ======================================================================
    log("\n--- Stage 1: Index Pass ---")
    t0 = time.time()

    geoid = GeoidGrid.load(options.geoid_path) if options.geoid_path else None
    if not options.dry_run:
        _check_output(output_path)

    reader = ChunkReader(input_path, tolerate_corruption=options.tolerate_corruption)
    reader.open()
    registry = reader.registry

    log(f"  {os.path.basename(input_path)}: {len(registry)} connections, "
        f"{reader.message_count} messages, {reader.duration / 1e9:.1f}s "
        f"({'indexed' if reader.indexed else 'sequential scan'}) in {time.time()-t0:.2f}s")
    if verbose:
        for topic, msgtype in sorted(registry.topics().items()):
            marker = "" if is_supported(msgtype) else "  (unsupported)"
            log(f"    {topic}: {msgtype}{marker}")

    start_ns = end_ns = None
    if options.start_offset is not None:
        start_ns = reader.start_time + int(options.start_offset * 1e9)
    if options.end_offset is not None:
        end_ns = reader.start_time + int(options.end_offset * 1e9)
    tf_connections = [c.id for c in registry if c.topic in TF_TOPICS]

    # ======================================================================
    # Stage 2: Decode + Resolve + Segment
    # ======================================================================
    log("\n--- Stage 2: Convert ---")
    t0 = time.time()

    graph = TransformGraph(options.tf_buffer_seconds)
    projector = Projector(options, graph, geoid)
    segmenter = Segmenter(options.segment_records, options.segment_bytes)
    pool = None
    if not options.dry_run:
        if encoder is None:
            from .rerun_sink import RerunSegmentEncoder
            stem = os.path.splitext(os.path.basename(input_path))[0]
            encoder = RerunSegmentEncoder(recording_id=f"bag2rrd:{stem}")
        pool = FlushPool(
            encoder,
            lambda index: segment_path(output_path, index, options.segmented),
            workers=options.flush_workers,
            queue_size=options.queue_size,
        )

    def submit(segment):
        stats.segments += 1
        if pool is not None:
            pool.submit(segment)
        log(f"  segment {segment.index}: {segment.count} records, {segment.nbytes} bytes")

    warned_connections = set()
    try:
        for raw in reader.records(start_ns, end_ns, keep_connections=tf_connections):
            stats.records_read += 1
            stats.raw_bytes += len(raw.payload)
            if verbose and stats.records_read % options.progress_interval == 0:
                log(f"  {stats.records_read} records read, {stats.records_emitted} emitted, "
                    f"{sum(stats.errors.values())} skipped")

            try:
                conn = registry.resolve(raw.connection_id)
            except UnknownConnection as exc:
                stats.errors[exc.kind] += 1
                if raw.connection_id not in warned_connections:
                    logger.warning("dropping record: %s", exc)
                    warned_connections.add(raw.connection_id)
                continue

            in_window = ((start_ns is None or raw.timestamp >= start_ns)
                         and (end_ns is None or raw.timestamp <= end_ns))
            selected = in_window and topic_selected(conn.topic, options)
            is_tf = conn.topic in TF_TOPICS
            if not selected and not is_tf:
                stats.records_filtered += 1
                continue
            if not is_supported(conn.message_type_tag):
                stats.unsupported_types[conn.message_type_tag] += 1
                if not selected:
                    stats.records_filtered += 1
                continue

            try:
                event = decode(raw, conn, laser_scan_mode=options.laser_scan_mode)
            except RecordError as exc:
                stats.errors[exc.kind] += 1
                logger.debug("skipping record on %s at %d: %s", conn.topic, raw.timestamp, exc)
                continue
            stats.events_decoded += 1

            if event.kind is EventKind.TRANSFORM:
                rejected = graph.ingest(event)
                if rejected:
                    stats.errors["cycle_detected"] += rejected
            if not selected:
                stats.records_filtered += 1
                continue

            for record in projector.project(event, conn.topic, len(raw.payload)):
                stats.records_emitted += 1
                stats.emitted_by_kind[record.kind.value] += 1
                sealed = segmenter.append(record)
                if sealed is not None:
                    submit(sealed)

        tail = segmenter.flush(allow_empty=True)
        if tail is not None:
            submit(tail)
        log(f"  Read {stats.records_read} records, emitted {stats.records_emitted} "
            f"in {time.time()-t0:.2f}s")

        # ==================================================================
        # Stage 3: Flush + Commit
        # ==================================================================
        if pool is not None:
            log("\n--- Stage 3: Flush ---")
            t0 = time.time()
            stats.outputs = pool.finalize()
            for path in stats.outputs:
                log(f"  Wrote {path}")
            log(f"  Committed {len(stats.outputs)} file(s) in {time.time()-t0:.2f}s")
    except BaseException:
        if pool is not None:
            pool.abort()
        raise
    finally:
        reader.close()

    stats.errors.update(projector.errors)
    stats.unresolved = projector.unresolved
    stats.records_filtered += projector.skipped_fixes
    stats.scan = reader.diagnostics
    stats.elapsed_s = time.time() - t_start

    log("")
    for line in format_summary(stats, dry_run=options.dry_run).splitlines():
        log(line)
    log(f"\n=== Conversion complete in {stats.elapsed_s:.2f}s ===")
    return stats


def format_summary(stats: ConversionStats, dry_run: bool = False) -> str:
    lines = [
        "Summary" + (" (dry run, nothing written)" if dry_run else ""),
        f"  records read:     {stats.records_read}",
        f"  filtered out:     {stats.records_filtered}",
        f"  decoded:          {stats.events_decoded}",
        f"  emitted:          {stats.records_emitted}",
        f"  unresolved poses: {stats.unresolved}",
        f"  segments:         {stats.segments}",
    ]
    for kind, count in sorted(stats.emitted_by_kind.items()):
        lines.append(f"    {kind}: {count}")
    if stats.errors:
        lines.append("  skipped (per error kind):")
        for kind, count in sorted(stats.errors.items()):
            lines.append(f"    {kind}: {count}")
    if stats.unsupported_types:
        lines.append("  unsupported types:")
        for tag, count in sorted(stats.unsupported_types.items()):
            lines.append(f"    {tag}: {count}")
    if stats.scan is not None and (stats.scan.chunks_skipped or stats.scan.bytes_skipped):
        lines.append(f"  corrupted chunks skipped: {stats.scan.chunks_skipped} "
                     f"({stats.scan.bytes_skipped} bytes)")
    return "\n".join(lines)
