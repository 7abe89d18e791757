"""Live stream video segment manager running within the control node."""

from __future__ import annotations

import logging
from contextlib import closing
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Protocol

from livemix_control.messages import Segment, VideoSegmentWithData
from livemix_control.timers import IntervalTimer

__all__ = ["LiveStreamSegmentManager"]

logger = logging.getLogger(__name__)


class SegmentMetrics(Protocol):
    def record_segment(self, size: int, labels: dict[str, str]) -> None: ...


class LiveStreamSegmentManager:
    """Records live stream segments, caches their content and forgets old ones."""

    def __init__(
        self,
        db_conns: Any,
        cache: Any,
        tracking_window: float | timedelta,
        metrics: Optional[SegmentMetrics] = None,
    ) -> None:
        self._db_conns = db_conns
        self._cache = cache
        self.tracking_window = (
            tracking_window
            if isinstance(tracking_window, timedelta)
            else timedelta(seconds=float(tracking_window))
        )
        self._metrics = metrics
        self._timer = IntervalTimer("live-stream-segment-purge")
        self._timer.start(self.tracking_window, self.purge_old_segments, False)

    def ready(self) -> None:
        """Raise if the persistence layer is not ready."""
        with closing(self._db_conns.new_persistance_manager()) as db_client:
            db_client.ready()

    def register_live_stream_segment(
        self, source_id: str, segment: Segment, content: bytes
    ) -> None:
        """Persist a new segment of a source and cache its content."""
        with closing(self._db_conns.new_persistance_manager()) as db_client:
            try:
                segment_id = db_client.register_live_stream_segment(source_id, segment)
            except Exception:
                logger.exception(
                    "Failed to record segment '%s' of source '%s'", segment.name, source_id
                )
                raise
            try:
                entry = db_client.get_live_stream_segment(segment_id)
            except Exception:
                logger.exception(
                    "Failed to read segment '%s' of source '%s' back", segment.name, source_id
                )
                raise
            logger.debug(
                "Recorded new segment '%s' (%s) of source '%s'",
                segment.name,
                segment_id,
                source_id,
            )

            with_data = VideoSegmentWithData(
                id=entry.id, source_id=entry.source_id, segment=entry.segment, content=content
            )
            try:
                self._cache.cache_segment(with_data, self.tracking_window)
            except Exception:
                logger.exception("Unable to cache segment '%s'", segment_id)
                raise

            if self._metrics is not None:
                self._metrics.record_segment(len(content), {"source": entry.source_id})

    def purge_old_segments(self) -> None:
        """Forget segments older than the tracking window."""
        time_limit = datetime.now(timezone.utc) - self.tracking_window
        with closing(self._db_conns.new_persistance_manager()) as db_client:
            db_client.delete_old_live_stream_segments(time_limit)

    def stop(self, timeout: float = 5.0) -> None:
        """Stop background work, waiting at most ``timeout`` seconds."""
        self._timer.stop()
        if not self._timer.join(timeout):
            raise TimeoutError("segment manager background work did not stop in time")