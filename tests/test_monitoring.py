"""MonitoringService: request tracking, metrics, archiving, live streams."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from ccrouter.engine.models import RequestStatus, WorkerResponse
from ccrouter.shared.services.monitoring import MonitoringService


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2025, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += timedelta(milliseconds=ms)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def service(tmp_path: Path, clock: FakeClock) -> MonitoringService:
    return MonitoringService(
        tmp_path / "monitoring",
        tmp_path / "logs" / "requests",
        clock=clock,
    )


def _day_log_lines(service: MonitoringService) -> list[dict]:
    path = service.day_log_path()
    if not path.exists():
        return []
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


def test_start_request_records_pending_entry(service: MonitoringService):
    request_id = service.start_request("POST", "/v1/messages", session_id="s1")
    assert request_id.startswith("req_")

    entry = service.get_request(request_id)
    assert entry.status is RequestStatus.PENDING
    assert entry.session_id == "s1"


def test_missing_session_id_becomes_default(service: MonitoringService):
    request_id = service.start_request("GET", "/v1/models")
    assert service.get_request(request_id).session_id == "default"


def test_average_response_time_is_mean_of_successes(service, clock):
    for duration in (100, 200, 300):
        request_id = service.start_request("POST", "/v1/messages", session_id="s1")
        clock.advance(duration)
        service.end_request(request_id)

    metrics = service.get_session_metrics("s1")
    assert metrics.request_count == 3
    assert metrics.average_response_time_ms == pytest.approx(200.0)
    assert metrics.timed_success_count == 3


def test_errors_count_but_do_not_move_the_mean(service, clock):
    ok = service.start_request("POST", "/v1/messages", session_id="s1")
    clock.advance(100)
    service.end_request(ok)

    bad = service.start_request("POST", "/v1/messages", session_id="s1")
    clock.advance(5000)
    service.end_request(bad, error="upstream timeout")

    metrics = service.get_session_metrics("s1")
    assert metrics.request_count == 2
    assert metrics.error_count == 1
    assert metrics.average_response_time_ms == pytest.approx(100.0)
    assert service.get_request(bad).error == "upstream timeout"


def test_end_request_extracts_model_and_usage(service, clock):
    request_id = service.start_request("POST", "/v1/messages", session_id="s1")
    clock.advance(50)
    service.end_request(request_id, response={
        "body": {
            "model": "openrouter,gpt-4",
            "usage": {"input_tokens": 12, "output_tokens": 34},
        },
    })

    entry = service.get_request(request_id)
    assert entry.provider == "openrouter"
    assert entry.model == "gpt-4"
    assert entry.duration_ms == 50

    metrics = service.get_session_metrics("s1")
    assert metrics.total_input_tokens == 12
    assert metrics.total_output_tokens == 34
    assert metrics.providers == {"openrouter": 1}
    assert metrics.models == {"gpt-4": 1}


def test_end_request_accepts_worker_response(service):
    request_id = service.start_request("POST", "/v1/messages", session_id="s1")
    service.end_request(request_id, response=WorkerResponse(model="claude", input_tokens=5))
    assert service.get_request(request_id).model == "claude"
    assert service.get_request(request_id).input_tokens == 5


def test_repeated_terminal_updates_count_once(service):
    request_id = service.start_request("POST", "/v1/messages", session_id="s1")
    service.update_request(request_id, status="success", duration_ms=10)
    service.update_request(request_id, status="success", duration_ms=10)
    assert service.get_session_metrics("s1").request_count == 1


def test_terminal_update_appends_one_log_line(service):
    request_id = service.start_request("POST", "/v1/messages", session_id="s1")
    service.update_request(request_id, model="gpt-4")
    assert _day_log_lines(service) == []

    service.update_request(request_id, status=RequestStatus.ERROR, error="boom")
    lines = _day_log_lines(service)
    assert len(lines) == 1
    assert lines[0]["id"] == request_id
    assert lines[0]["status"] == "error"


def test_unknown_field_leaves_entry_untouched(service):
    request_id = service.start_request("POST", "/v1/messages", session_id="s1")
    with pytest.raises(TypeError):
        service.update_request(request_id, model="gpt-4", bogus=1)

    entry = service.get_request(request_id)
    assert entry.model is None
    assert entry.status is RequestStatus.PENDING


def test_unknown_request_ids_are_ignored(service):
    service.update_request("req_missing", status="success")
    service.end_request("req_missing")
    assert service.get_all_session_metrics() == []


def test_metrics_are_persisted_and_reloaded(tmp_path, service, clock):
    request_id = service.start_request("POST", "/v1/messages", session_id="s1")
    clock.advance(80)
    service.end_request(request_id)

    data = json.loads(service.metrics_file.read_text(encoding="utf-8"))
    assert data["sessions"][0]["sessionId"] == "s1"
    assert "lastUpdated" in data

    reloaded = MonitoringService(tmp_path / "monitoring", tmp_path / "logs" / "requests")
    assert reloaded.get_session_metrics("s1").average_response_time_ms == pytest.approx(80.0)


def test_corrupt_metrics_file_starts_empty(tmp_path):
    monitoring_dir = tmp_path / "monitoring"
    monitoring_dir.mkdir()
    (monitoring_dir / "metrics.json").write_text("{broken", encoding="utf-8")

    service = MonitoringService(monitoring_dir, tmp_path / "requests")
    assert service.get_all_session_metrics() == []


def test_capacity_overflow_archives_oldest_batch(service, clock):
    ids = []
    for _ in range(1001):
        ids.append(service.start_request("GET", "/v1/models", session_id="s1"))
        clock.advance(1)

    assert len(service) == 901
    archived = _day_log_lines(service)
    assert [line["id"] for line in archived] == ids[:100]
    assert service.get_request(ids[0]) is None
    assert service.get_request(ids[100]) is not None

    for _ in range(99):
        service.start_request("GET", "/v1/models", session_id="s1")
        clock.advance(1)
    assert len(service) == 1000


def test_recent_requests_newest_first_and_filtered(service, clock):
    first = service.start_request("GET", "/v1/a", session_id="s1")
    clock.advance(1)
    service.start_request("GET", "/v1/b", session_id="s2")
    clock.advance(1)
    third = service.start_request("GET", "/v1/c", session_id="s1")

    recent = service.get_recent_requests("s1")
    assert [r.id for r in recent] == [third, first]
    assert len(service.get_recent_requests(limit=1)) == 1


def test_clear_logs_by_session(service):
    service.start_request("GET", "/v1/a", session_id="s1")
    keep = service.start_request("GET", "/v1/b", session_id="s2")

    assert service.clear_logs("s1") == 1
    assert [r.id for r in service.get_recent_requests()] == [keep]
    assert service.clear_logs() == 1
    assert len(service) == 0


def test_reset_metrics_persists(service):
    request_id = service.start_request("GET", "/v1/a", session_id="s1")
    service.end_request(request_id)
    service.reset_metrics("s1")

    assert service.get_session_metrics("s1") is None
    data = json.loads(service.metrics_file.read_text(encoding="utf-8"))
    assert data["sessions"] == []


def test_listener_exception_does_not_break_start_request(service):
    def _boom(payload):
        raise RuntimeError("listener failed")

    service.broadcaster.subscribe("request:start", _boom)
    request_id = service.start_request("GET", "/v1/a", session_id="s1")
    assert service.get_request(request_id) is not None


def test_stream_initial_frame_is_capped_at_fifty(service, clock):
    for _ in range(60):
        service.start_request("GET", "/v1/a", session_id="s1")
        clock.advance(1)

    stream = service.stream_logs("s1")
    first = stream.get_nowait()
    assert first["type"] == "initial"
    assert len(first["data"]) == 50
    stream.close()


def test_stream_initial_then_metrics_then_live(service):
    done = service.start_request("GET", "/v1/a", session_id="s1")
    service.end_request(done)

    stream = service.stream_logs("s1")
    assert stream.get_nowait()["type"] == "initial"
    metrics_frame = stream.get_nowait()
    assert metrics_frame["type"] == "metrics"
    assert metrics_frame["data"]["sessionId"] == "s1"
    assert stream.get_nowait() is None

    service.start_request("GET", "/v1/b", session_id="other")
    assert stream.get_nowait() is None

    live_id = service.start_request("GET", "/v1/c", session_id="s1")
    live = stream.get_nowait()
    assert live["type"] == "log"
    assert live["data"]["id"] == live_id
    stream.close()


def test_unfiltered_stream_gets_all_metrics_and_notices(service):
    stream = service.stream_logs()
    assert stream.get_nowait()["type"] == "initial"
    assert stream.get_nowait() == {"type": "metrics", "data": []}

    service.clear_logs()
    service.reset_metrics()
    assert stream.get_nowait()["type"] == "cleared"
    assert stream.get_nowait()["type"] == "reset"
    stream.close()


def test_closed_stream_receives_nothing_and_unsubscribes(service):
    baseline = service.broadcaster.listener_count()
    stream = service.stream_logs("s1")
    assert service.broadcaster.listener_count() > baseline

    stream.close()
    service.start_request("GET", "/v1/a", session_id="s1")

    assert stream.get_nowait() is None
    assert service.broadcaster.listener_count() == baseline


@pytest.mark.asyncio
async def test_stream_frames_async_get(service):
    stream = service.stream_logs()
    frame = await stream.get(timeout=0.1)
    assert frame["type"] == "initial"
    stream.close()
    assert await stream.get(timeout=0.01) is None
