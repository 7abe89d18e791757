# livemix_control

The control-node logic of a live video system. It keeps track of video sources,
recording sessions and recorded segments, and it sends commands to the edge nodes
that capture the video. The package has no dependencies outside the standard
library.

## Installation

```
pip install .
```

To install with the test dependencies:

```
pip install ".[test]"
```

## Modules

- `livemix_control.messages` holds the data records and the wire messages.
  - The records are `VideoSource`, `Recording`, `VideoSegment`, `VideoSegmentWithData` and `Segment`.
  - The messages passed between control and edge nodes are:
    - `GeneralResponse`
    - `GetVideoSourceByNameRequest` / `GetVideoSourceByNameResponse`
    - `ListActiveRecordingsRequest` / `ListActiveRecordingsResponse`
    - `ChangeSourceStreamingStateRequest`
    - `StartVideoRecordingRequest`
    - `StopVideoRecordingRequest`
    - `VideoSourceStatusReport`
    - `RecordingSegmentReport`
  - `encode_message` turns a message into JSON bytes. The JSON carries a `"type"` field.
  - `parse_raw_message` reads a message back.
  - Bad JSON, an unknown type, a missing field or a malformed field raises `MessageError`.
- `livemix_control.edge_client` provides `EdgeRequestClient`. It takes:
  - a client name;
  - a transport object;
  - a request timeout, in seconds or as a `timedelta`.

  To send a request to a source's edge node, call one of these:
  - `change_video_streaming_state`
  - `start_recording_session`
  - `stop_recording_session`

  Each call waits for a single `GeneralResponse`. It raises `EdgeRequestError` in these cases:
  - the source has no request-response target ID;
  - the response reports a failure, with the response's error message;
  - the request times out;
  - the response is of an unexpected type.

  `process_inbound_request` answers requests that edge nodes send. These are
  lookups of a video source by name and lists of a source's active recordings.
  It uses the manager set with `install_reference_to_manager`. It raises
  `EdgeRequestError` if no manager has been set. `ReqRespMessage` and
  `RequestCallParam` are the records exchanged with the transport.
- `livemix_control.timers` provides `IntervalTimer`, which runs a callback in a
  daemon thread every interval, or once with `one_shot`. Errors raised by the
  callback are logged and do not stop the timer. `stop()` signals the thread, and
  `join(timeout)` waits for it to finish.
- `livemix_control.segments` provides `LiveStreamSegmentManager`.
  - `register_live_stream_segment` persists a live-stream segment, reads it back and caches it with its content for the tracking window.
  - If a metrics object is given, the segment's size is recorded with it.
  - A timer calls `purge_old_segments` every tracking window. That call deletes segments older than the window.
- `livemix_control.housekeeping` holds helpers for periodic maintenance:
  - `check_source_reachable` raises `SourceUnreachableError` if a source has no request target, or has not reported within the allowed age.
  - `cleanup_object_key` turns a URI path into an object key.
  - `group_segments_by_bucket` groups segment object keys by bucket.
  - `delete_unassociated_recording_segments` purges orphaned segments from the database and from object storage.
  - `collect_statistics` returns a `SystemStatistics`.
  - `disable_dead_sources` stops streaming and ends active recordings of sources that stopped reporting.
- `livemix_control.manager` provides `SystemManager`, which manages video
  sources and recording sessions.
  - `process_broadcast_msgs` records status reports and recording segment reports. It ignores other message types.
  - Three background timers run:
    - segment cleanup, at the interval given;
    - `write_metrics`, every 30 seconds;
    - `video_source_health_check`, every 30 seconds.
  - `stop(timeout)` shuts the timers down.
  - It raises `TimeoutError` if the timers do not finish within the timeout.

## Collaborators you supply

The managers work with objects that you pass in. They use these methods on them:

- **Database connection manager**: `new_persistance_manager()` returns a client.
  The managers close that client after each operation. The client provides:
  - `ready`
  - the video-source methods: `get_video_source`, `list_video_sources`, `change_video_source_stream_state`, and so on
  - the recording-session methods
  - `register_live_stream_segment`, `get_live_stream_segment` and `delete_old_live_stream_segments`
  - `register_recording_segments` and `delete_unassociated_recording_segments`
  - `update_video_source_stats`
  - `mark_external_error`
- **Edge client**: normally an `EdgeRequestClient`.
- **Object storage**: `delete_objects(bucket, keys)` returns a list of errors. The list is empty on success.
- **Segment cache**: `cache_segment(segment_with_data, ttl)`.
- **Transport** for `EdgeRequestClient`:
  - `set_inbound_request_handler(handler)`
  - `request(target_id, message, metadata, param)`
  - `respond(original, message, metadata, blocking)`
- **Metrics**, optional.
  - For `SystemManager`: `install_gauge(name, description, label_names)` returns a gauge with `set(value, labels)`.
  - For `LiveStreamSegmentManager`: `record_segment(size, labels)`.

## What this package does not do

It has no database, no object-storage client, no segment cache, no message bus
or request-response transport, no HTTP API and no command to run. These must be
provided by the application that uses it.

## Example

```python
from livemix_control.messages import (
    GetVideoSourceByNameRequest,
    encode_message,
    parse_raw_message,
)

raw = encode_message(GetVideoSourceByNameRequest(target_name="camera-1"))
request = parse_raw_message(raw)
assert request.target_name == "camera-1"
```

```python
from livemix_control.manager import SystemManager

manager = SystemManager(db_conns, rr_client, s3, max_age_for_source_status_report=60,
                        segment_cleanup_interval=3600, metrics=None)
try:
    recording_id = manager.define_recording_session(source_id, None, None, start_time)
finally:
    manager.stop(timeout=5)
```

## Running the tests

```
pytest
```