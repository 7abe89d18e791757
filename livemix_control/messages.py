"""Data entities and the wire messages exchanged between control and edge nodes."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, ClassVar, Optional, TypeVar

__all__ = [
    "MessageError",
    "Segment",
    "VideoSource",
    "Recording",
    "VideoSegment",
    "VideoSegmentWithData",
    "GeneralResponse",
    "GetVideoSourceByNameRequest",
    "GetVideoSourceByNameResponse",
    "ListActiveRecordingsRequest",
    "ListActiveRecordingsResponse",
    "ChangeSourceStreamingStateRequest",
    "StartVideoRecordingRequest",
    "StopVideoRecordingRequest",
    "VideoSourceStatusReport",
    "RecordingSegmentReport",
    "encode_message",
    "parse_raw_message",
]


class MessageError(ValueError):
    """Raised when a message cannot be encoded or decoded."""


def _encode_time(value: Optional[datetime]) -> Optional[str]:
    return None if value is None else value.isoformat()


def _decode_time(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise MessageError(f"timestamp must be a string, got {type(value).__name__}")
    try:
        return datetime.fromisoformat(value)
    except ValueError as exc:
        raise MessageError(f"invalid timestamp '{value}'") from exc


# ======================================================================================
# Entities


@dataclass
class Segment:
    """One HLS video segment."""

    name: str = ""
    uri: str = ""
    length: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "uri": self.uri, "length": self.length}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Segment":
        return cls(
            name=data.get("name", ""),
            uri=data.get("uri", ""),
            length=float(data.get("length", 0.0)),
        )


@dataclass
class VideoSource:
    """A video source known to the system."""

    id: str = ""
    name: str = ""
    segment_len: int = 0
    playlist_uri: Optional[str] = None
    description: Optional[str] = None
    streaming: int = 0
    req_resp_target_id: Optional[str] = None
    source_local_time: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "segment_len": self.segment_len,
            "playlist_uri": self.playlist_uri,
            "description": self.description,
            "streaming": self.streaming,
            "req_resp_target_id": self.req_resp_target_id,
            "source_local_time": _encode_time(self.source_local_time),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "VideoSource":
        return cls(
            id=data.get("id", ""),
            name=data.get("name", ""),
            segment_len=int(data.get("segment_len", 0)),
            playlist_uri=data.get("playlist_uri"),
            description=data.get("description"),
            streaming=int(data.get("streaming", 0)),
            req_resp_target_id=data.get("req_resp_target_id"),
            source_local_time=_decode_time(data.get("source_local_time")),
        )


@dataclass
class Recording:
    """A video recording session."""

    id: str = ""
    alias: Optional[str] = None
    description: Optional[str] = None
    source_id: str = ""
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    active: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "alias": self.alias,
            "description": self.description,
            "source_id": self.source_id,
            "start_time": _encode_time(self.start_time),
            "end_time": _encode_time(self.end_time),
            "active": self.active,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Recording":
        return cls(
            id=data.get("id", ""),
            alias=data.get("alias"),
            description=data.get("description"),
            source_id=data.get("source_id", ""),
            start_time=_decode_time(data.get("start_time")),
            end_time=_decode_time(data.get("end_time")),
            active=int(data.get("active", 0)),
        )


@dataclass
class VideoSegment:
    """A video segment recorded for a source."""

    id: str = ""
    source_id: str = ""
    segment: Segment = field(default_factory=Segment)

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "source_id": self.source_id, "segment": self.segment.to_dict()}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "VideoSegment":
        return cls(
            id=data.get("id", ""),
            source_id=data.get("source_id", ""),
            segment=Segment.from_dict(data.get("segment") or {}),
        )


@dataclass
class VideoSegmentWithData(VideoSegment):
    """A video segment together with its content bytes."""

    content: bytes = b""


# ======================================================================================
# Messages

_MESSAGE_TYPES: dict[str, type] = {}

_M = TypeVar("_M")


def _message(type_name: str) -> Callable[[type[_M]], type[_M]]:
    def register(cls: type[_M]) -> type[_M]:
        cls.message_type = type_name  # type: ignore[attr-defined]
        _MESSAGE_TYPES[type_name] = cls
        return cls

    return register


@_message("general_response")
@dataclass
class GeneralResponse:
    """Generic success / failure response."""

    message_type: ClassVar[str]
    success: bool
    error_msg: str = ""

    def payload(self) -> dict[str, Any]:
        return {"success": self.success, "error_msg": self.error_msg}

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> "GeneralResponse":
        return cls(success=bool(data["success"]), error_msg=data.get("error_msg", ""))


@_message("get_video_source_by_name_request")
@dataclass
class GetVideoSourceByNameRequest:
    """Ask for a video source's information by its name."""

    message_type: ClassVar[str]
    target_name: str

    def payload(self) -> dict[str, Any]:
        return {"target_name": self.target_name}

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> "GetVideoSourceByNameRequest":
        return cls(target_name=data["target_name"])


@_message("get_video_source_by_name_response")
@dataclass
class GetVideoSourceByNameResponse:
    """Carries a video source's information."""

    message_type: ClassVar[str]
    source: VideoSource

    def payload(self) -> dict[str, Any]:
        return {"source": self.source.to_dict()}

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> "GetVideoSourceByNameResponse":
        return cls(source=VideoSource.from_dict(data["source"]))


@_message("list_active_recordings_request")
@dataclass
class ListActiveRecordingsRequest:
    """Ask for the active recording sessions of a source."""

    message_type: ClassVar[str]
    source_id: str

    def payload(self) -> dict[str, Any]:
        return {"source_id": self.source_id}

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> "ListActiveRecordingsRequest":
        return cls(source_id=data["source_id"])


@_message("list_active_recordings_response")
@dataclass
class ListActiveRecordingsResponse:
    """Carries the active recording sessions of a source."""

    message_type: ClassVar[str]
    recordings: list[Recording] = field(default_factory=list)

    def payload(self) -> dict[str, Any]:
        return {"recordings": [recording.to_dict() for recording in self.recordings]}

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> "ListActiveRecordingsResponse":
        return cls(recordings=[Recording.from_dict(entry) for entry in data["recordings"]])


@_message("change_source_streaming_state_request")
@dataclass
class ChangeSourceStreamingStateRequest:
    """Ask an edge node to change a source's streaming state."""

    message_type: ClassVar[str]
    source_id: str
    new_state: int

    def payload(self) -> dict[str, Any]:
        return {"source_id": self.source_id, "new_state": self.new_state}

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> "ChangeSourceStreamingStateRequest":
        return cls(source_id=data["source_id"], new_state=int(data["new_state"]))


@_message("start_video_recording_request")
@dataclass
class StartVideoRecordingRequest:
    """Ask an edge node to start a recording session."""

    message_type: ClassVar[str]
    session: Recording

    def payload(self) -> dict[str, Any]:
        return {"session": self.session.to_dict()}

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> "StartVideoRecordingRequest":
        return cls(session=Recording.from_dict(data["session"]))


@_message("stop_video_recording_request")
@dataclass
class StopVideoRecordingRequest:
    """Ask an edge node to stop a recording session."""

    message_type: ClassVar[str]
    recording_id: str
    end_time: datetime

    def payload(self) -> dict[str, Any]:
        return {"recording_id": self.recording_id, "end_time": _encode_time(self.end_time)}

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> "StopVideoRecordingRequest":
        end_time = _decode_time(data["end_time"])
        if end_time is None:
            raise MessageError("stop recording request is missing its end time")
        return cls(recording_id=data["recording_id"], end_time=end_time)


@_message("video_source_status_report")
@dataclass
class VideoSourceStatusReport:
    """Periodic status broadcast from a video source."""

    message_type: ClassVar[str]
    source_id: str
    request_response_target_id: str
    local_timestamp: datetime

    def payload(self) -> dict[str, Any]:
        return {
            "source_id": self.source_id,
            "request_response_target_id": self.request_response_target_id,
            "local_timestamp": _encode_time(self.local_timestamp),
        }

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> "VideoSourceStatusReport":
        timestamp = _decode_time(data["local_timestamp"])
        if timestamp is None:
            raise MessageError("status report is missing its timestamp")
        return cls(
            source_id=data["source_id"],
            request_response_target_id=data["request_response_target_id"],
            local_timestamp=timestamp,
        )


@_message("recording_segment_report")
@dataclass
class RecordingSegmentReport:
    """Broadcast of new segments belonging to recording sessions."""

    message_type: ClassVar[str]
    recording_ids: list[str] = field(default_factory=list)
    segments: list[VideoSegment] = field(default_factory=list)

    def payload(self) -> dict[str, Any]:
        return {
            "recording_ids": list(self.recording_ids),
            "segments": [segment.to_dict() for segment in self.segments],
        }

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> "RecordingSegmentReport":
        return cls(
            recording_ids=[str(entry) for entry in data["recording_ids"]],
            segments=[VideoSegment.from_dict(entry) for entry in data["segments"]],
        )


def encode_message(message: Any) -> bytes:
    """Serialise a message into its JSON wire form."""
    message_type = getattr(type(message), "message_type", None)
    if message_type is None or _MESSAGE_TYPES.get(message_type) is not type(message):
        raise MessageError(f"'{type(message).__name__}' is not a known message type")
    return json.dumps({"type": message_type, **message.payload()}).encode("utf-8")


def parse_raw_message(raw: bytes | str) -> Any:
    """Decode a JSON wire message into its message object."""
    try:
        data = json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MessageError(f"message is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise MessageError("message must be a JSON object")
    type_name = data.get("type")
    message_cls = _MESSAGE_TYPES.get(type_name) if isinstance(type_name, str) else None
    if message_cls is None:
        raise MessageError(f"unknown message type '{type_name}'")
    try:
        return message_cls.from_payload(data)  # type: ignore[attr-defined]
    except KeyError as exc:
        raise MessageError(f"'{type_name}' message is missing field {exc}") from exc
    except (TypeError, AttributeError, ValueError) as exc:
        if isinstance(exc, MessageError):
            raise
        raise MessageError(f"malformed '{type_name}' message: {exc}") from exc