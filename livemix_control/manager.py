"""System operations manager of the control node."""

from __future__ import annotations

import logging
import time
from contextlib import closing
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Protocol

from livemix_control.housekeeping import (
    SourceUnreachableError,
    SystemStatistics,
    check_source_reachable,
    collect_statistics,
    delete_unassociated_recording_segments,
    disable_dead_sources,
)
from livemix_control.messages import (
    MessageError,
    Recording,
    RecordingSegmentReport,
    VideoSegment,
    VideoSource,
    VideoSourceStatusReport,
    parse_raw_message,
)
from livemix_control.timers import IntervalTimer

__all__ = ["SystemManager"]

logger = logging.getLogger(__name__)

METRICS_REGISTERED_SOURCES = "livemix_control_manager_registered_source_count"
METRICS_CONNECTED_SOURCES = "livemix_control_manager_connected_source_count"
METRICS_REGISTERED_RECORDINGS = "livemix_control_manager_registered_recording_count"
METRICS_ACTIVE_RECORDINGS = "livemix_control_manager_active_recording_count"

_REPORT_INTERVAL = timedelta(seconds=30)
_METRICS_LABELS = {"controller": "true"}


class Gauge(Protocol):
    def set(self, value: float, labels: dict[str, str]) -> None: ...


class MetricsCollector(Protocol):
    def install_gauge(self, name: str, description: str, label_names: list[str]) -> Gauge: ...


def _as_timedelta(value: float | timedelta) -> timedelta:
    if isinstance(value, timedelta):
        return value
    return timedelta(seconds=float(value))


class SystemManager:
    """Coordinates video sources, recording sessions and their segments."""

    def __init__(
        self,
        db_conns: Any,
        rr_client: Any,
        s3: Any,
        max_age_for_source_status_report: float | timedelta,
        segment_cleanup_interval: float | timedelta,
        metrics: Optional[MetricsCollector] = None,
    ) -> None:
        self._db_conns = db_conns
        self._rr_client = rr_client
        self._s3 = s3
        self.max_age_for_source_status_report = _as_timedelta(max_age_for_source_status_report)

        self._gauges: dict[str, Gauge] = {}
        if metrics is not None:
            for name, description in (
                (METRICS_REGISTERED_SOURCES, "Tracking registered video sources"),
                (METRICS_CONNECTED_SOURCES, "Tracking connected video sources"),
                (METRICS_REGISTERED_RECORDINGS, "Tracking registered video recording sessions"),
                (METRICS_ACTIVE_RECORDINGS, "Tracking active video recording sessions"),
            ):
                self._gauges[name] = metrics.install_gauge(name, description, ["controller"])

        self._timers = [
            IntervalTimer("recording-segment-cleanup-timer"),
            IntervalTimer("metrics-reporting-timer"),
            IntervalTimer("video-source-health-check-timer"),
        ]
        cleanup_timer, metrics_timer, health_timer = self._timers
        cleanup_timer.start(
            _as_timedelta(segment_cleanup_interval),
            self.delete_unassociated_recording_segments,
            False,
        )
        metrics_timer.start(_REPORT_INTERVAL, self.write_metrics, False)
        health_timer.start(_REPORT_INTERVAL, self.video_source_health_check, False)

    def _db(self) -> Any:
        return closing(self._db_conns.new_persistance_manager())

    def _check_reachable(self, source: VideoSource) -> None:
        check_source_reachable(source, self.max_age_for_source_status_report)

    def ready(self) -> None:
        """Raise if the persistence layer is not ready."""
        with self._db() as db_client:
            db_client.ready()

    def stop(self, timeout: float = 5.0) -> None:
        """Stop background work, waiting at most ``timeout`` seconds."""
        for timer in self._timers:
            timer.stop()
        deadline = time.monotonic() + timeout
        for timer in self._timers:
            if not timer.join(max(0.0, deadline - time.monotonic())):
                raise TimeoutError("system manager background work did not stop in time")

    # ----------------------------------------------------------------------------------
    # Video sources

    def define_video_source(
        self,
        name: str,
        segment_len: int,
        playlist_uri: Optional[str],
        description: Optional[str],
    ) -> str:
        """Create a video source and return its ID."""
        with self._db() as db_client:
            return db_client.define_video_source(name, segment_len, playlist_uri, description)

    def get_video_source(self, source_id: str) -> VideoSource:
        with self._db() as db_client:
            return db_client.get_video_source(source_id)

    def get_video_source_by_name(self, name: str) -> VideoSource:
        with self._db() as db_client:
            return db_client.get_video_source_by_name(name)

    def list_video_sources(self) -> list[VideoSource]:
        with self._db() as db_client:
            return db_client.list_video_sources()

    def update_video_source(self, new_setting: VideoSource) -> None:
        """Update a source's name, description and playlist URI."""
        with self._db() as db_client:
            db_client.update_video_source(new_setting)

    def change_video_source_stream_state(self, source_id: str, streaming: int) -> None:
        """Persist a source's new streaming state and ask its edge node to apply it."""
        with self._db() as db_client:
            try:
                entry = db_client.get_video_source(source_id)
            except Exception:
                logger.exception("Unable to find video source '%s'", source_id)
                raise
            try:
                self._check_reachable(entry)
            except SourceUnreachableError:
                logger.exception("Can't make request to source '%s'", source_id)
                raise
            try:
                db_client.change_video_source_stream_state(source_id, streaming)
            except Exception:
                logger.exception("Failed to persist streaming state change of '%s'", source_id)
                raise
            try:
                self._rr_client.change_video_streaming_state(entry, streaming)
            except Exception as exc:
                logger.error("Streaming state change request to '%s' failed: %s", source_id, exc)
                db_client.mark_external_error(exc)
                raise

    def delete_video_source(self, source_id: str) -> None:
        with self._db() as db_client:
            db_client.delete_video_source(source_id)

    # ----------------------------------------------------------------------------------
    # Recording sessions

    def define_recording_session(
        self,
        source_id: str,
        alias: Optional[str],
        description: Optional[str],
        start_time: datetime,
    ) -> str:
        """Create a recording session and ask the source's edge node to start it."""
        with self._db() as db_client:
            try:
                source = db_client.get_video_source(source_id)
            except Exception:
                logger.exception("Unable to find video source '%s'", source_id)
                raise
            try:
                self._check_reachable(source)
            except SourceUnreachableError:
                logger.exception("Can't make request to source '%s'", source_id)
                raise
            try:
                recording_id = db_client.define_recording_session(
                    source_id, alias, description, start_time
                )
            except Exception:
                logger.exception("Unable to define new recording for source '%s'", source_id)
                raise
            try:
                recording = db_client.get_recording_session(recording_id)
            except Exception:
                logger.exception("Unable to retrieve new recording entry '%s'", recording_id)
                raise
            logger.info("Defined new recording '%s' for source '%s'", recording_id, source_id)

            try:
                self._rr_client.start_recording_session(source, recording)
            except Exception as exc:
                logger.error(
                    "Unable to command source '%s' to start recording '%s': %s",
                    source_id,
                    recording_id,
                    exc,
                )
                db_client.mark_external_error(exc)
                raise
            logger.info("Commanded source '%s' to start recording '%s'", source_id, recording_id)
            return recording_id

    def get_recording_session(self, recording_id: str) -> Recording:
        with self._db() as db_client:
            return db_client.get_recording_session(recording_id)

    def get_recording_session_by_alias(self, alias: str) -> Recording:
        with self._db() as db_client:
            return db_client.get_recording_session_by_alias(alias)

    def list_recording_sessions(self) -> list[Recording]:
        with self._db() as db_client:
            return db_client.list_recording_sessions()

    def list_recording_sessions_of_source(self, source_id: str, active: bool) -> list[Recording]:
        """List a source's recording sessions; only the active ones if ``active``."""
        with self._db() as db_client:
            return db_client.list_recording_sessions_of_source(source_id, active)

    def mark_end_of_recording_session(
        self, recording_id: str, end_time: datetime, force: bool
    ) -> None:
        """End a recording session and ask its source to stop it.

        With ``force``, failures to reach the source are ignored.
        """
        with self._db() as db_client:
            try:
                recording = db_client.get_recording_session(recording_id)
            except Exception:
                logger.exception("Unable to retrieve recording entry '%s'", recording_id)
                raise
            try:
                source = db_client.get_video_source(recording.source_id)
            except Exception:
                logger.exception("Unable to retrieve video source '%s'", recording.source_id)
                raise

            if recording.active != 1:
                logger.info("Recording session '%s' already complete", recording_id)
                return

            try:
                db_client.mark_end_of_recording_session(recording_id, end_time)
            except Exception:
                logger.exception("Failed to mark recording '%s' as ended", recording_id)
                raise

            try:
                self._check_reachable(source)
            except SourceUnreachableError as exc:
                logger.error("Can't make request to source '%s': %s", source.id, exc)
                if force:
                    return
                db_client.mark_external_error(exc)
                raise

            logger.info("Requesting source '%s' to stop recording '%s'", source.id, recording_id)
            try:
                self._rr_client.stop_recording_session(source, recording.id, end_time)
            except Exception as exc:
                logger.error(
                    "Unable to command source '%s' to stop recording '%s': %s",
                    source.id,
                    recording_id,
                    exc,
                )
                if force:
                    return
                db_client.mark_external_error(exc)
                raise
            logger.info("Source '%s' has stopped recording '%s'", source.id, recording_id)

    def update_recording_session(self, new_setting: Recording) -> None:
        """Update a recording session's alias and description."""
        with self._db() as db_client:
            db_client.update_recording_session(new_setting)

    def delete_recording_session(self, recording_id: str, force: bool) -> None:
        """End a recording session, then delete it."""
        self.mark_end_of_recording_session(recording_id, datetime.now(timezone.utc), force)
        with self._db() as db_client:
            db_client.delete_recording_session(recording_id)

    def stop_all_active_recording_of_source(self, source_id: str, current_time: datetime) -> None:
        """End every active recording session of a source.

        Failures on individual sessions are logged, not raised.
        """
        with self._db() as db_client:
            try:
                source = db_client.get_video_source(source_id)
            except Exception:
                logger.exception("Unable to find video source '%s'", source_id)
                raise
            try:
                self._check_reachable(source)
            except SourceUnreachableError:
                logger.exception("Can't make request to source '%s'", source_id)
                raise

            logger.info("Stopping all recording sessions of source '%s'", source_id)
            try:
                sessions = db_client.list_recording_sessions_of_source(source_id, True)
            except Exception:
                logger.exception("Unable to list active recordings of source '%s'", source_id)
                raise
            if not sessions:
                return

            for session in sessions:
                try:
                    db_client.mark_end_of_recording_session(session.id, current_time)
                except Exception as exc:
                    logger.error("Failed to mark recording '%s' as ended: %s", session.id, exc)
            for session in sessions:
                try:
                    self._rr_client.stop_recording_session(source, session.id, current_time)
                except Exception as exc:
                    logger.error("Stop recording '%s' request failed: %s", session.id, exc)
            logger.info("Stopped all recording sessions of source '%s'", source_id)

    # ----------------------------------------------------------------------------------
    # Segments

    def list_all_segments_of_recording(self, recording_id: str) -> list[VideoSegment]:
        with self._db() as db_client:
            return db_client.list_all_segments_of_recording(recording_id)

    # ----------------------------------------------------------------------------------
    # Utilities

    def process_broadcast_msgs(
        self,
        pub_timestamp: datetime,
        msg: bytes,
        metadata: Optional[dict[str, str]],
    ) -> None:
        """Record the content of a broadcast message; unknown kinds are ignored."""
        with self._db() as db_client:
            try:
                parsed = parse_raw_message(msg)
            except MessageError as exc:
                logger.error("Unable to parse the broadcast message: %s", exc)
                db_client.mark_external_error(exc)
                raise

            if isinstance(parsed, VideoSourceStatusReport):
                try:
                    db_client.update_video_source_stats(
                        parsed.source_id,
                        parsed.request_response_target_id,
                        parsed.local_timestamp,
                    )
                except Exception:
                    logger.exception(
                        "Unable to record status report of source '%s'", parsed.source_id
                    )
                    raise
            elif isinstance(parsed, RecordingSegmentReport):
                try:
                    db_client.register_recording_segments(parsed.recording_ids, parsed.segments)
                except Exception:
                    logger.exception(
                        "Unable to record new segments of recordings %s", parsed.recording_ids
                    )
                    raise
            else:
                logger.debug(
                    "Ignoring unsupported broadcast message type '%s'", type(parsed).__name__
                )

    def delete_unassociated_recording_segments(self) -> dict[str, list[str]]:
        """Purge recording segments tied to no recording; return the deleted keys by bucket."""
        with self._db() as db_client:
            return delete_unassociated_recording_segments(db_client, self._s3)

    def write_metrics(self) -> SystemStatistics:
        """Compute system statistics and publish them to the installed gauges."""
        with self._db() as db_client:
            stats = collect_statistics(db_client, self.max_age_for_source_status_report)
        for name, value in (
            (METRICS_REGISTERED_SOURCES, stats.registered_sources),
            (METRICS_CONNECTED_SOURCES, stats.connected_sources),
            (METRICS_REGISTERED_RECORDINGS, stats.registered_recordings),
            (METRICS_ACTIVE_RECORDINGS, stats.active_recordings),
        ):
            gauge = self._gauges.get(name)
            if gauge is not None:
                gauge.set(float(value), dict(_METRICS_LABELS))
        return stats

    def video_source_health_check(self) -> list[VideoSource]:
        """Disable sources that stopped reporting; return the ones disabled."""
        with self._db() as db_client:
            return disable_dead_sources(db_client, self.max_age_for_source_status_report)