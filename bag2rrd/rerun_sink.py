"""
Rerun destination: encodes one Segment into one .rrd file.

Every segment gets its own RecordingStream saving to the worker's temporary
path. All segments share a recording id, so opening the committed parts
together shows one recording on the "ros_time" timeline.
"""

from typing import Callable, Dict

import numpy as np
import rerun as rr

from .constants import APPLICATION_ID, TIMELINE
from .models import RecordKind, ResolvedRecord
from .segments import Segment


def _set_rerun_time(time_sec: float, recording) -> None:
    """Set the current ros_time across rerun API versions."""
    if hasattr(rr, "set_time"):
        rr.set_time(TIMELINE, timestamp=time_sec, recording=recording)
    else:
        rr.set_time_seconds(TIMELINE, time_sec, recording=recording)


def _transform(pose):
    return rr.Transform3D(
        translation=pose.translation.tolist(),
        rotation=rr.Quaternion(xyzw=pose.rotation.tolist()),
    )


def _scalar(value: float):
    if hasattr(rr, "Scalars"):
        return rr.Scalars(value)
    return rr.Scalar(value)


def _points3d(data):
    return rr.Points3D(np.asarray(data["positions"], dtype=np.float32),
                       colors=data.get("colors"), radii=data.get("radii"))


ARCHETYPES: Dict[RecordKind, Callable] = {
    RecordKind.IMAGE: lambda data: rr.Image(data["image"]),
    RecordKind.DEPTH_IMAGE: lambda data: rr.DepthImage(data["image"], meter=data["meter"]),
    RecordKind.ENCODED_IMAGE: lambda data: rr.EncodedImage(
        contents=data["contents"], media_type=data["media_type"]),
    RecordKind.POINTS3D: _points3d,
    RecordKind.LINE_STRIPS3D: lambda data: rr.LineStrips3D(
        [np.asarray(s, dtype=np.float32) for s in data["strips"]]),
    RecordKind.ARROWS3D: lambda data: rr.Arrows3D(vectors=np.asarray(data["vectors"], dtype=np.float32)),
    RecordKind.SCALAR: lambda data: _scalar(data["value"]),
    RecordKind.TEXT: lambda data: rr.TextLog(data["text"]),
}


class RerunSegmentEncoder:
    """SegmentEncoder writing Rerun recordings."""

    def __init__(self, recording_id: str, application_id: str = APPLICATION_ID):
        self.recording_id = recording_id
        self.application_id = application_id

    def log_record(self, record: ResolvedRecord, recording):
        _set_rerun_time(record.timestamp, recording)
        if record.pose is not None:
            rr.log(record.entity_path, _transform(record.pose), recording=recording)
        if record.kind is RecordKind.TRANSFORM:
            return
        rr.log(record.entity_path, ARCHETYPES[record.kind](record.data), recording=recording)

    def encode(self, segment: Segment, path: str) -> None:
        recording = rr.RecordingStream(self.application_id, recording_id=self.recording_id)
        rr.save(path, recording=recording)
        for record in segment.records:
            self.log_record(record, recording)
        rr.disconnect(recording=recording)
