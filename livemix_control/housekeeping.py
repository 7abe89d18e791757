"""Periodic housekeeping for the control node: reachability, statistics and cleanup."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Optional
from urllib.parse import urlparse

from livemix_control.messages import VideoSegment, VideoSource

__all__ = [
    "SourceUnreachableError",
    "SystemStatistics",
    "check_source_reachable",
    "cleanup_object_key",
    "group_segments_by_bucket",
    "delete_unassociated_recording_segments",
    "collect_statistics",
    "disable_dead_sources",
]

logger = logging.getLogger(__name__)


class SourceUnreachableError(RuntimeError):
    """Raised when a video source cannot currently accept requests."""


@dataclass(frozen=True)
class SystemStatistics:
    """Counts of sources and recordings known to the system."""

    registered_sources: int = 0
    connected_sources: int = 0
    registered_recordings: int = 0
    active_recordings: int = 0


def _as_timedelta(value: float | timedelta) -> timedelta:
    if isinstance(value, timedelta):
        return value
    return timedelta(seconds=float(value))


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def check_source_reachable(
    source: VideoSource,
    max_age: float | timedelta,
    now: Optional[datetime] = None,
) -> None:
    """Raise unless the source has a request target and reported within ``max_age``."""
    window = _as_timedelta(max_age)
    current = _as_utc(now) if now is not None else datetime.now(timezone.utc)

    if source.req_resp_target_id is None:
        raise SourceUnreachableError(
            f"video source '{source.id}' have not reported a request-response target ID"
        )
    if source.source_local_time is None or _as_utc(source.source_local_time) + window < current:
        raise SourceUnreachableError(
            f"video source '{source.id}' have not sent a status report within last {window}"
        )


def cleanup_object_key(key: str) -> str:
    """Turn a URI path into an object key by dropping its leading slashes."""
    return key.lstrip("/")


def group_segments_by_bucket(segments: Iterable[VideoSegment]) -> dict[str, list[str]]:
    """Group segment object keys by the bucket named in each segment's URI."""
    by_bucket: dict[str, list[str]] = {}
    for segment in segments:
        uri = segment.segment.uri
        try:
            parsed = urlparse(uri)
        except ValueError:
            logger.error("Unable to parse segment URI '%s'", uri)
            continue
        by_bucket.setdefault(parsed.netloc, []).append(cleanup_object_key(parsed.path))
    return by_bucket


def delete_unassociated_recording_segments(db_client: Any, s3: Any) -> dict[str, list[str]]:
    """Purge segments tied to no recording from the database and object storage.

    Returns the object keys deleted, grouped by bucket. If deleting from a bucket
    fails, every error is reported to the database client and the first is raised.
    """
    try:
        segments = db_client.delete_unassociated_recording_segments()
    except Exception:
        logger.exception("Failed to purge recording segments not related to any recordings")
        raise

    if not segments:
        return {}

    logger.info("Found %d recording segments un-associated with any recording", len(segments))

    by_bucket = group_segments_by_bucket(segments)
    for bucket, keys in by_bucket.items():
        logger.info("Deleting %d unassociated recording segments in bucket '%s'", len(keys), bucket)
        errors = list(s3.delete_objects(bucket, keys) or [])
        if errors:
            for error in errors:
                db_client.mark_external_error(error)
            logger.error(
                "Failed to purge unassociated recording segments in bucket '%s': %s",
                bucket,
                "; ".join(str(error) for error in errors),
            )
            raise errors[0]
        logger.info("Deleted %d unassociated recording segments in bucket '%s'", len(keys), bucket)

    return by_bucket


def collect_statistics(db_client: Any, max_age: float | timedelta) -> SystemStatistics:
    """Count registered and connected sources, and all and active recordings."""
    sources = db_client.list_video_sources()
    now = datetime.now(timezone.utc)

    connected = 0
    total_recordings = 0
    active_recordings = 0
    for source in sources:
        try:
            check_source_reachable(source, max_age, now)
        except SourceUnreachableError:
            pass
        else:
            connected += 1
        recordings = db_client.list_recording_sessions_of_source(source.id, False)
        total_recordings += len(recordings)
        active_recordings += sum(1 for recording in recordings if recording.active == 1)

    return SystemStatistics(
        registered_sources=len(sources),
        connected_sources=connected,
        registered_recordings=total_recordings,
        active_recordings=active_recordings,
    )


def disable_dead_sources(db_client: Any, max_age: float | timedelta) -> list[VideoSource]:
    """Stop streaming and end active recordings of sources that stopped reporting.

    Returns the sources that were disabled.
    """
    sources = db_client.list_video_sources()
    now = datetime.now(timezone.utc)

    dead: list[VideoSource] = []
    for source in sources:
        try:
            check_source_reachable(source, max_age, now)
        except SourceUnreachableError:
            dead.append(source)

    for source in dead:
        db_client.change_video_source_stream_state(source.id, -1)
        logger.debug("Disabled streaming for dead video source '%s'", source.id)

        recordings = db_client.list_recording_sessions_of_source(source.id, True)
        for recording in recordings:
            db_client.mark_end_of_recording_session(recording.id, now)
        if recordings:
            logger.debug("Stopped all recordings of dead video source '%s'", source.id)

    return dead