"""Request-response client the control node uses to talk to edge nodes."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Protocol

from livemix_control.messages import (
    ChangeSourceStreamingStateRequest,
    GeneralResponse,
    GetVideoSourceByNameRequest,
    GetVideoSourceByNameResponse,
    ListActiveRecordingsRequest,
    ListActiveRecordingsResponse,
    MessageError,
    Recording,
    StartVideoRecordingRequest,
    StopVideoRecordingRequest,
    VideoSource,
    encode_message,
    parse_raw_message,
)

__all__ = ["EdgeRequestError", "ReqRespMessage", "RequestCallParam", "EdgeRequestClient"]

logger = logging.getLogger(__name__)


class EdgeRequestError(RuntimeError):
    """Raised when a request to, or from, an edge node cannot be completed."""


@dataclass
class ReqRespMessage:
    """A request or response passing through the request-response transport."""

    sender_id: str = ""
    request_id: str = ""
    payload: bytes = b""


@dataclass
class RequestCallParam:
    """How an outbound request is to be carried out and its answers delivered."""

    resp_handler: Callable[[ReqRespMessage], None]
    timeout_handler: Callable[[], None]
    expected_responses_count: int = 1
    blocking: bool = False
    timeout: float = 0.0


class RequestResponseTransport(Protocol):
    def set_inbound_request_handler(self, handler: Callable[[ReqRespMessage], None]) -> None: ...

    def request(
        self, target_id: str, message: bytes, metadata: dict, param: RequestCallParam
    ) -> str: ...

    def respond(
        self, original: ReqRespMessage, message: bytes, metadata: dict, blocking: bool
    ) -> None: ...


@dataclass
class _PendingRequest:
    expected: int
    responses: list[Any] = field(default_factory=list)
    failure: Optional[Exception] = None
    done: threading.Event = field(default_factory=threading.Event)
    lock: threading.Lock = field(default_factory=threading.Lock)

    def on_response(self, message: ReqRespMessage) -> None:
        try:
            parsed = parse_raw_message(message.payload)
        except MessageError as exc:
            with self.lock:
                self.failure = exc
            self.done.set()
            return
        with self.lock:
            self.responses.append(parsed)
            if len(self.responses) >= self.expected:
                self.done.set()

    def on_timeout(self) -> None:
        with self.lock:
            if self.failure is None:
                self.failure = EdgeRequestError("request timed out")
        self.done.set()


class EdgeRequestClient:
    """Makes requests to edge nodes and answers the requests they send."""

    def __init__(
        self,
        client_name: str,
        core_client: RequestResponseTransport,
        request_timeout: float | timedelta,
    ) -> None:
        self.client_name = client_name
        self._core = core_client
        self._request_timeout = (
            request_timeout.total_seconds()
            if isinstance(request_timeout, timedelta)
            else float(request_timeout)
        )
        self._manager: Any = None
        self._handlers: dict[type, Callable[[Any, ReqRespMessage], Any]] = {
            GetVideoSourceByNameRequest: self._handle_video_source_info,
            ListActiveRecordingsRequest: self._handle_active_recordings,
        }
        core_client.set_inbound_request_handler(self.process_inbound_request)

    def install_reference_to_manager(self, manager: Any) -> None:
        """Set the system manager that answers inbound requests."""
        self._manager = manager

    # ----------------------------------------------------------------------------------
    # Inbound requests

    def process_inbound_request(self, message: ReqRespMessage) -> None:
        """Handle one request from an edge node and send back the response."""
        request = parse_raw_message(message.payload)
        handler = self._handlers.get(type(request))
        if handler is None:
            raise EdgeRequestError(
                f"no handler for request type '{type(request).__name__}'"
            )
        response = handler(request, message)
        self._core.respond(message, encode_message(response), {}, False)

    def _require_manager(self, message: ReqRespMessage) -> Any:
        if self._manager is None:
            logger.error(
                "Unable to start handling request %s from %s: no manager installed",
                message.request_id,
                message.sender_id,
            )
            raise EdgeRequestError("no reference to SystemManager set yet")
        return self._manager

    def _handle_video_source_info(
        self, request: GetVideoSourceByNameRequest, message: ReqRespMessage
    ) -> Any:
        manager = self._require_manager(message)
        try:
            source = manager.get_video_source_by_name(request.target_name)
        except Exception as exc:
            logger.error("Failed to read video source '%s' info: %s", request.target_name, exc)
            return GeneralResponse(False, str(exc))
        return GetVideoSourceByNameResponse(source)

    def _handle_active_recordings(
        self, request: ListActiveRecordingsRequest, message: ReqRespMessage
    ) -> Any:
        manager = self._require_manager(message)
        try:
            recordings = manager.list_recording_sessions_of_source(request.source_id, True)
        except Exception as exc:
            logger.error(
                "Failed to get active recording of source '%s': %s", request.source_id, exc
            )
            return GeneralResponse(False, str(exc))
        return ListActiveRecordingsResponse(list(recordings))

    # ----------------------------------------------------------------------------------
    # Outbound requests

    def _make_request(self, description: str, target_id: str, payload: bytes) -> list[Any]:
        pending = _PendingRequest(expected=1)
        param = RequestCallParam(
            resp_handler=pending.on_response,
            timeout_handler=pending.on_timeout,
            expected_responses_count=1,
            blocking=False,
            timeout=self._request_timeout,
        )
        self._core.request(target_id, payload, {}, param)
        if not pending.done.wait(self._request_timeout):
            raise EdgeRequestError(f"{description}: request timed out")
        if pending.failure is not None:
            raise EdgeRequestError(f"{description}: {pending.failure}") from pending.failure
        return pending.responses

    def _basic_request_response(self, target_id: str, description: str, payload: bytes) -> None:
        answer = self._make_request(description, target_id, payload)[0]
        if isinstance(answer, GeneralResponse):
            if not answer.success:
                raise EdgeRequestError(answer.error_msg)
            return
        logger.error("%s: unable to parse response", description)
        raise EdgeRequestError(f"unknown supported response type '{type(answer).__name__}'")

    @staticmethod
    def _target_of(source: VideoSource) -> str:
        if source.req_resp_target_id is None:
            raise EdgeRequestError("video source have not reported a request-response target ID")
        return source.req_resp_target_id

    def change_video_streaming_state(self, source: VideoSource, new_state: int) -> None:
        """Ask the source's edge node to change its streaming state."""
        target = self._target_of(source)
        payload = encode_message(ChangeSourceStreamingStateRequest(source.id, new_state))
        self._basic_request_response(
            target, f"Change video source '{source.name}' streaming state", payload
        )

    def start_recording_session(self, source: VideoSource, recording: Recording) -> None:
        """Ask the source's edge node to start a recording session."""
        target = self._target_of(source)
        payload = encode_message(StartVideoRecordingRequest(recording))
        self._basic_request_response(
            target,
            f"Start recording session '{recording.id}' on video source '{source.name}'",
            payload,
        )

    def stop_recording_session(
        self, source: VideoSource, recording_id: str, end_time: datetime
    ) -> None:
        """Ask the source's edge node to stop a recording session."""
        target = self._target_of(source)
        payload = encode_message(StopVideoRecordingRequest(recording_id, end_time))
        self._basic_request_response(
            target,
            f"Stop recording session '{recording_id}' on video source '{source.name}'",
            payload,
        )