from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, call
from uuid import uuid4

import pytest

from livemix_control.housekeeping import SourceUnreachableError
from livemix_control.manager import (
    METRICS_ACTIVE_RECORDINGS,
    METRICS_CONNECTED_SOURCES,
    METRICS_REGISTERED_RECORDINGS,
    METRICS_REGISTERED_SOURCES,
    SystemManager,
)
from livemix_control.messages import (
    MessageError,
    Recording,
    RecordingSegmentReport,
    Segment,
    VideoSegment,
    VideoSource,
    VideoSourceStatusReport,
    encode_message,
)


def _id() -> str:
    return str(uuid4())


class FakeGauge:
    def __init__(self):
        self.values = []

    def set(self, value, labels):
        self.values.append((value, labels))


class FakeMetrics:
    def __init__(self):
        self.gauges = {}

    def install_gauge(self, name, description, label_names):
        gauge = FakeGauge()
        self.gauges[name] = (gauge, label_names)
        return gauge


@pytest.fixture
def db():
    return MagicMock()


@pytest.fixture
def rr():
    return MagicMock()


@pytest.fixture
def s3():
    return MagicMock()


@pytest.fixture
def manager(db, rr, s3):
    conns = MagicMock()
    conns.new_persistance_manager.return_value = db
    uut = SystemManager(conns, rr, s3, timedelta(minutes=1), timedelta(hours=1), None)
    yield uut
    uut.stop()


@pytest.fixture
def now():
    return datetime.now(timezone.utc)


def _live_source(now):
    return VideoSource(id=_id(), req_resp_target_id=_id(), source_local_time=now)


def test_process_source_status_broadcast(manager, db, now):
    report = VideoSourceStatusReport(_id(), _id(), now)
    manager.process_broadcast_msgs(now, encode_message(report), None)
    db.update_video_source_stats.assert_called_once_with(
        report.source_id, report.request_response_target_id, now
    )
    db.close.assert_called()


def test_process_recording_segments_broadcast(manager, db, now):
    report = RecordingSegmentReport(
        [_id(), _id(), _id()],
        [VideoSegment(id=_id(), source_id=_id(), segment=Segment(name=_id()))],
    )
    manager.process_broadcast_msgs(now, encode_message(report), None)
    db.register_recording_segments.assert_called_once_with(report.recording_ids, report.segments)


def test_process_invalid_broadcast(manager, db, now):
    with pytest.raises(MessageError):
        manager.process_broadcast_msgs(now, b"not json", None)
    assert db.mark_external_error.call_count == 1


def test_stream_state_change_without_target(manager, db, rr):
    source = VideoSource(id=_id())
    db.get_video_source.return_value = source
    with pytest.raises(SourceUnreachableError):
        manager.change_video_source_stream_state(source.id, 1)
    rr.change_video_streaming_state.assert_not_called()


def test_stream_state_change_stale_report(manager, db, rr, now):
    source = VideoSource(
        id=_id(), req_resp_target_id=_id(), source_local_time=now - timedelta(minutes=2)
    )
    db.get_video_source.return_value = source
    with pytest.raises(SourceUnreachableError):
        manager.change_video_source_stream_state(source.id, 1)
    db.change_video_source_stream_state.assert_not_called()


def test_stream_state_change_persist_fails(manager, db, rr, now):
    source = _live_source(now)
    db.get_video_source.return_value = source
    db.change_video_source_stream_state.side_effect = RuntimeError("dummy error")
    with pytest.raises(RuntimeError, match="dummy error"):
        manager.change_video_source_stream_state(source.id, 1)
    rr.change_video_streaming_state.assert_not_called()


def test_stream_state_change_success(manager, db, rr, now):
    source = _live_source(now)
    db.get_video_source.return_value = source
    manager.change_video_source_stream_state(source.id, 1)
    db.change_video_source_stream_state.assert_called_once_with(source.id, 1)
    rr.change_video_streaming_state.assert_called_once_with(source, 1)


def test_stream_state_change_request_fails(manager, db, rr, now):
    source = _live_source(now)
    db.get_video_source.return_value = source
    error = RuntimeError("dummy error")
    rr.change_video_streaming_state.side_effect = error
    with pytest.raises(RuntimeError, match="dummy error"):
        manager.change_video_source_stream_state(source.id, 1)
    db.mark_external_error.assert_called_once_with(error)


def test_define_recording_unknown_source(manager, db, now):
    db.get_video_source.side_effect = RuntimeError("dummy error")
    with pytest.raises(RuntimeError) as info:
        manager.define_recording_session(_id(), None, None, now)
    assert str(info.value) == "dummy error"


def test_define_recording_db_fails(manager, db, rr, now):
    source = _live_source(now)
    db.get_video_source.return_value = source
    db.define_recording_session.side_effect = RuntimeError("dummy error")
    with pytest.raises(RuntimeError) as info:
        manager.define_recording_session(source.id, None, None, now)
    assert str(info.value) == "dummy error"
    rr.start_recording_session.assert_not_called()


def test_define_recording_request_fails(manager, db, rr, now):
    source = _live_source(now)
    recording = Recording(id=_id(), source_id=source.id)
    db.get_video_source.return_value = source
    db.define_recording_session.return_value = recording.id
    db.get_recording_session.return_value = recording
    error = RuntimeError("dummy error")
    rr.start_recording_session.side_effect = error
    with pytest.raises(RuntimeError) as info:
        manager.define_recording_session(source.id, None, None, now)
    assert str(info.value) == "dummy error"
    db.mark_external_error.assert_called_once_with(error)


def test_define_recording_success(manager, db, rr, now):
    source = _live_source(now)
    recording = Recording(id=_id(), source_id=source.id)
    db.get_video_source.return_value = source
    db.define_recording_session.return_value = recording.id
    db.get_recording_session.return_value = recording
    assert manager.define_recording_session(source.id, "alias", None, now) == recording.id
    db.define_recording_session.assert_called_once_with(source.id, "alias", None, now)
    rr.start_recording_session.assert_called_once_with(source, recording)


def test_mark_end_unknown_recording(manager, db, now):
    db.get_recording_session.side_effect = RuntimeError("dummy error")
    with pytest.raises(RuntimeError) as info:
        manager.mark_end_of_recording_session(_id(), now, False)
    assert str(info.value) == "dummy error"


def test_mark_end_unknown_source(manager, db, now):
    db.get_recording_session.return_value = Recording(id=_id(), source_id=_id())
    db.get_video_source.side_effect = RuntimeError("dummy error")
    with pytest.raises(RuntimeError) as info:
        manager.mark_end_of_recording_session(_id(), now, False)
    assert str(info.value) == "dummy error"


def _setup_recording(db, now, active=1):
    source = _live_source(now)
    recording = Recording(id=_id(), source_id=source.id, active=active)
    db.get_recording_session.return_value = recording
    db.get_video_source.return_value = source
    return source, recording


def test_mark_end_db_fails(manager, db, rr, now):
    _, recording = _setup_recording(db, now)
    db.mark_end_of_recording_session.side_effect = RuntimeError("dummy error")
    with pytest.raises(RuntimeError) as info:
        manager.mark_end_of_recording_session(recording.id, now, False)
    assert str(info.value) == "dummy error"
    rr.stop_recording_session.assert_not_called()


def test_mark_end_request_fails(manager, db, rr, now):
    source, recording = _setup_recording(db, now)
    error = RuntimeError("dummy error")
    rr.stop_recording_session.side_effect = error
    with pytest.raises(RuntimeError) as info:
        manager.mark_end_of_recording_session(recording.id, now, False)
    assert str(info.value) == "dummy error"
    db.mark_external_error.assert_called_once_with(error)


def test_mark_end_success(manager, db, rr, now):
    source, recording = _setup_recording(db, now)
    manager.mark_end_of_recording_session(recording.id, now, False)
    db.mark_end_of_recording_session.assert_called_once_with(recording.id, now)
    rr.stop_recording_session.assert_called_once_with(source, recording.id, now)


def test_mark_end_request_fails_forced(manager, db, rr, now):
    source, recording = _setup_recording(db, now)
    rr.stop_recording_session.side_effect = RuntimeError("dummy error")
    manager.mark_end_of_recording_session(recording.id, now, True)
    assert rr.stop_recording_session.call_count == 1
    db.mark_external_error.assert_not_called()


def test_mark_end_already_complete(manager, db, rr, now):
    _, recording = _setup_recording(db, now, active=-1)
    manager.mark_end_of_recording_session(recording.id, now, True)
    db.mark_end_of_recording_session.assert_not_called()
    rr.stop_recording_session.assert_not_called()


def test_mark_end_unreachable_source(manager, db, rr, now):
    recording = Recording(id=_id(), source_id=_id(), active=1)
    db.get_recording_session.return_value = recording
    db.get_video_source.return_value = VideoSource(id=recording.source_id)
    with pytest.raises(SourceUnreachableError):
        manager.mark_end_of_recording_session(recording.id, now, False)
    assert db.mark_external_error.call_count == 1
    rr.stop_recording_session.assert_not_called()


def test_delete_recording_session(manager, db, rr, now):
    _, recording = _setup_recording(db, now)
    manager.delete_recording_session(recording.id, False)
    db.delete_recording_session.assert_called_once_with(recording.id)
    assert rr.stop_recording_session.call_count == 1


def test_stop_all_unknown_source(manager, db, now):
    db.get_video_source.side_effect = RuntimeError("dummy error")
    with pytest.raises(RuntimeError) as info:
        manager.stop_all_active_recording_of_source(_id(), now)
    assert str(info.value) == "dummy error"


def test_stop_all_list_fails(manager, db, now):
    source = _live_source(now)
    db.get_video_source.return_value = source
    db.list_recording_sessions_of_source.side_effect = RuntimeError("dummy error")
    with pytest.raises(RuntimeError) as info:
        manager.stop_all_active_recording_of_source(source.id, now)
    assert str(info.value) == "dummy error"


def test_stop_all_no_sessions(manager, db, rr, now):
    source = _live_source(now)
    db.get_video_source.return_value = source
    db.list_recording_sessions_of_source.return_value = []
    manager.stop_all_active_recording_of_source(source.id, now)
    db.list_recording_sessions_of_source.assert_called_once_with(source.id, True)
    rr.stop_recording_session.assert_not_called()


def test_stop_all_one_request_fails(manager, db, rr, now):
    source = _live_source(now)
    sessions = [Recording(id=_id()), Recording(id=_id())]
    db.get_video_source.return_value = source
    db.list_recording_sessions_of_source.return_value = sessions
    rr.stop_recording_session.side_effect = [None, RuntimeError("dummy error")]
    manager.stop_all_active_recording_of_source(source.id, now)
    assert db.mark_end_of_recording_session.call_args_list == [
        call(sessions[0].id, now),
        call(sessions[1].id, now),
    ]
    assert rr.stop_recording_session.call_args_list == [
        call(source, sessions[0].id, now),
        call(source, sessions[1].id, now),
    ]


def test_purge_no_segments(manager, db, s3):
    db.delete_unassociated_recording_segments.return_value = []
    assert manager.delete_unassociated_recording_segments() == {}
    s3.delete_objects.assert_not_called()


def test_purge_segments_from_two_buckets(manager, db, s3):
    bucket0, bucket1 = _id(), _id()
    segments = []
    expected = {bucket0: [], bucket1: []}
    for bucket in (bucket0, bucket1):
        for _ in range(3):
            name = f"{_id()}.ts"
            segments.append(
                VideoSegment(id=_id(), segment=Segment(name=name, uri=f"s3://{bucket}/{name}"))
            )
            expected[bucket].append(name)
    db.delete_unassociated_recording_segments.return_value = segments
    s3.delete_objects.return_value = []

    assert manager.delete_unassociated_recording_segments() == expected
    s3.delete_objects.assert_has_calls(
        [call(bucket0, expected[bucket0]), call(bucket1, expected[bucket1])], any_order=True
    )


def test_purge_s3_failure(manager, db, s3):
    db.delete_unassociated_recording_segments.return_value = [
        VideoSegment(id=_id(), segment=Segment(name="a.ts", uri="s3://bucket/a.ts"))
    ]
    error = RuntimeError("s3 failure")
    s3.delete_objects.return_value = [error]
    with pytest.raises(RuntimeError, match="s3 failure"):
        manager.delete_unassociated_recording_segments()
    db.mark_external_error.assert_called_once_with(error)


def test_simple_delegations(manager, db):
    source = VideoSource(id=_id(), name="cam")
    db.get_video_source_by_name.return_value = source
    db.define_video_source.return_value = "new-id"
    assert manager.get_video_source_by_name("cam") is source
    assert manager.define_video_source("cam", 4, None, "desc") == "new-id"
    db.define_video_source.assert_called_once_with("cam", 4, None, "desc")
    manager.delete_video_source(source.id)
    db.delete_video_source.assert_called_once_with(source.id)


def test_write_metrics(db, rr, s3, now):
    metrics = FakeMetrics()
    conns = MagicMock()
    conns.new_persistance_manager.return_value = db
    uut = SystemManager(conns, rr, s3, 60, 3600, metrics)
    try:
        live = _live_source(now)
        dead = VideoSource(id=_id())
        db.list_video_sources.return_value = [live, dead]
        db.list_recording_sessions_of_source.side_effect = [
            [Recording(id=_id(), active=1), Recording(id=_id(), active=-1)],
            [Recording(id=_id(), active=1)],
        ]
        stats = uut.write_metrics()
    finally:
        uut.stop()

    assert stats.registered_sources == 2
    assert stats.connected_sources == 1
    assert stats.registered_recordings == 3
    assert stats.active_recordings == 2
    labels = {"controller": "true"}
    assert metrics.gauges[METRICS_REGISTERED_SOURCES][0].values == [(2.0, labels)]
    assert metrics.gauges[METRICS_CONNECTED_SOURCES][0].values == [(1.0, labels)]
    assert metrics.gauges[METRICS_REGISTERED_RECORDINGS][0].values == [(3.0, labels)]
    assert metrics.gauges[METRICS_ACTIVE_RECORDINGS][0].values == [(2.0, labels)]
    assert metrics.gauges[METRICS_ACTIVE_RECORDINGS][1] == ["controller"]


def test_video_source_health_check(manager, db, now):
    live = _live_source(now)
    dead = VideoSource(id=_id())
    recording = Recording(id=_id(), source_id=dead.id, active=1)
    db.list_video_sources.return_value = [live, dead]
    db.list_recording_sessions_of_source.return_value = [recording]

    assert manager.video_source_health_check() == [dead]
    db.change_video_source_stream_state.assert_called_once_with(dead.id, -1)
    assert db.mark_end_of_recording_session.call_args[0][0] == recording.id