"""
CLI entry point for bag2rrd.

Usage:
    python -m bag2rrd convert <bag> <out.rrd> [options]
    python -m bag2rrd diagnose <bag>
"""

import argparse
import json
import logging
import os
import sys

from . import __version__
from .chunk_reader import diagnose_bag
from .config import (
    LASER_SCAN_MODES,
    TF_MODES,
    ConvertOptions,
    parse_gps_origin,
    parse_mapping,
)
from .constants import DEFAULT_FLUSH_WORKERS, DEFAULT_ROOT_FRAME, DEFAULT_TF_BUFFER_SECONDS
from .errors import ConfigurationError, FatalIOError, StructuralCorruption
from .pipeline import format_summary, run_conversion

EXIT_FATAL = 1
EXIT_CONFIG = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bag2rrd",
        description="Convert ROS1 bag files into Rerun recordings",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # --- convert command ---
    convert = subparsers.add_parser("convert", help="Convert a .bag file into .rrd")
    convert.add_argument("bag", help="Path to the input .bag file")
    convert.add_argument("output", help="Path to the output .rrd file")
    convert.add_argument("--include", action="append", default=[], metavar="TOPIC",
                         help="Only convert these topics (repeatable)")
    convert.add_argument("--exclude", action="append", default=[], metavar="TOPIC",
                         help="Skip these topics (repeatable)")
    convert.add_argument("--start", type=float, default=None, metavar="SECONDS",
                         help="Start offset in seconds from the beginning of the bag")
    convert.add_argument("--end", type=float, default=None, metavar="SECONDS",
                         help="End offset in seconds from the beginning of the bag")
    convert.add_argument("--segment-size", type=int, default=None, metavar="RECORDS",
                         help="Start a new output part after this many records")
    convert.add_argument("--segment-bytes", type=int, default=None, metavar="BYTES",
                         help="Start a new output part after this many payload bytes")
    convert.add_argument("--flush-workers", type=int, default=DEFAULT_FLUSH_WORKERS,
                         help=f"Background segment writers (default: {DEFAULT_FLUSH_WORKERS})")
    convert.add_argument("--root-frame", default=DEFAULT_ROOT_FRAME,
                         help=f"Frame all poses are resolved into (default: {DEFAULT_ROOT_FRAME})")
    convert.add_argument("--map-frame", action="append", default=[], metavar="FRAME=/path",
                         help="Entity path for a TF frame (repeatable)")
    convert.add_argument("--rename-topic", action="append", default=[], metavar="TOPIC=/path",
                         help="Entity path for a topic (repeatable)")
    convert.add_argument("--tf-buffer-seconds", type=float, default=DEFAULT_TF_BUFFER_SECONDS,
                         help=f"TF retention window (default: {DEFAULT_TF_BUFFER_SECONDS})")
    convert.add_argument("--tf-mode", choices=TF_MODES, default="nearest",
                         help="TF lookup policy (default: nearest)")
    convert.add_argument("--scan-as", choices=LASER_SCAN_MODES, default="points",
                         help="Render laser scans as points or line strips")
    convert.add_argument("--gps-origin", default=None, metavar="LAT,LON,ALT",
                         help="ENU origin (default: first GPS fix)")
    convert.add_argument("--geoid", default=None, metavar="PGM",
                         help="Geoid grid (GeographicLib PGM) for height above geoid")
    convert.add_argument("--gps-path", action="store_true",
                         help="Also log the accumulated GPS track")
    convert.add_argument("--drop-unresolved", action="store_true",
                         help="Drop records whose frame cannot be resolved")
    convert.add_argument("--tolerate-corruption", action="store_true",
                         help="Skip corrupted chunks instead of failing")
    convert.add_argument("--dry-run", action="store_true",
                         help="Read and convert but do not write output")
    convert.add_argument("--verbose", "-v", action="store_true", help="Print detailed progress")
    convert.add_argument("--quiet", "-q", action="store_true", help="Only print errors")

    # --- diagnose command ---
    diagnose = subparsers.add_parser("diagnose", help="Scan a .bag file for damage")
    diagnose.add_argument("bag", help="Path to the .bag file")
    diagnose.add_argument("--json", action="store_true", help="Print the report as JSON")
    return parser


def options_from_args(args) -> ConvertOptions:
    return ConvertOptions(
        include_topics=tuple(args.include),
        exclude_topics=tuple(args.exclude),
        start_offset=args.start,
        end_offset=args.end,
        segment_records=args.segment_size,
        segment_bytes=args.segment_bytes,
        flush_workers=args.flush_workers,
        root_frame=args.root_frame,
        frame_map=parse_mapping(args.map_frame, "--map-frame"),
        topic_rename=parse_mapping(args.rename_topic, "--rename-topic"),
        tf_buffer_seconds=args.tf_buffer_seconds,
        tf_mode=args.tf_mode,
        laser_scan_mode=args.scan_as,
        gps_origin=parse_gps_origin(args.gps_origin) if args.gps_origin else None,
        geoid_path=args.geoid,
        gps_path=args.gps_path,
        drop_unresolved=args.drop_unresolved,
        tolerate_corruption=args.tolerate_corruption,
        dry_run=args.dry_run,
    ).validate()


def _print_diagnosis(report: dict):
    print(f"{report['path']}: {'indexed' if report['indexed'] else 'no usable index'}")
    print(f"  connections: {report['connections']}")
    print(f"  messages:    {report['messages']}")
    print(f"  chunks read: {report['chunks_read']}, corrupted: {report['chunks_skipped']} "
          f"({report['bytes_skipped']} bytes skipped)")
    for event in report["corruption"]:
        print(f"    @{event['offset']}: {event['reason']}")
    for topic, count in sorted(report["messages_per_topic"].items()):
        print(f"    {topic}: {count}")


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    level = logging.INFO
    if getattr(args, "verbose", False):
        level = logging.DEBUG
    elif getattr(args, "quiet", False):
        level = logging.ERROR
    logging.basicConfig(level=level, format="[bag2rrd] %(levelname)s %(message)s")

    if not os.path.exists(args.bag):
        print(f"Error: File not found: {args.bag}", file=sys.stderr)
        return EXIT_FATAL

    try:
        if args.command == "diagnose":
            report = diagnose_bag(args.bag)
            if args.json:
                print(json.dumps(report, indent=2))
            else:
                _print_diagnosis(report)
            return 0

        options = options_from_args(args)
        stats = run_conversion(args.bag, args.output, options, verbose=args.verbose)
        if not args.quiet and not args.verbose:
            print(format_summary(stats, dry_run=options.dry_run))
        return 0
    except ConfigurationError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return EXIT_CONFIG
    except (FatalIOError, StructuralCorruption) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_FATAL
    except KeyboardInterrupt:
        print("Interrupted, partial output discarded", file=sys.stderr)
        return 130


if __name__ == "__main__":
    sys.exit(main())
