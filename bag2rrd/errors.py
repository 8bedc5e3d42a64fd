"""
Error taxonomy.

Fatal classes abort a conversion. RecordError subclasses are per-record:
the pipeline counts them under their ``kind`` and keeps going.
"""


class Bag2RrdError(Exception):
    """Base class for all conversion errors."""
    kind = "error"


class FatalIOError(Bag2RrdError):
    """Source unreadable or destination unwritable."""
    kind = "fatal_io"


class ConfigurationError(Bag2RrdError):
    """Invalid options or resources, raised before any conversion work."""
    kind = "configuration"


class StructuralCorruption(Bag2RrdError):
    """Chunk-level integrity failure in the source container."""
    kind = "structural_corruption"

    def __init__(self, offset: int, reason: str):
        super().__init__(f"corrupted record at byte {offset}: {reason}")
        self.offset = offset
        self.reason = reason


# ---------------------------------------------------------------------------
# Per-record errors
# ---------------------------------------------------------------------------

class RecordError(Bag2RrdError):
    """A single record could not be processed; never aborts the run."""
    kind = "record_error"


class UnknownConnection(RecordError):
    kind = "unknown_connection"

    def __init__(self, connection_id: int):
        super().__init__(f"record references undeclared connection {connection_id}")
        self.connection_id = connection_id


class UnsupportedSchemaVersion(RecordError):
    kind = "unsupported_schema_version"


class DecodeError(RecordError):
    kind = "decode_error"


class FrameNotConnected(RecordError):
    kind = "frame_not_connected"


class CycleDetected(RecordError):
    kind = "cycle_detected"
