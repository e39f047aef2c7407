import asyncio

import orjson
import pytest
from fastapi.testclient import TestClient

from api import main as api_main
from api.main import app
from pipeline import ordered_pool
from pipeline.events import ItemEvent
from pipeline.llm_provider import ProviderUnavailableError
from pipeline.meetings_service import FetchError
from pipeline.models import EnrichedResult

client = TestClient(app)


@pytest.fixture(autouse=True)
def no_rate_limits(monkeypatch):
    monkeypatch.setattr(api_main.limiter, "enabled", False)


def _parse_sse(body: str):
    """Split an SSE body into (event, data) pairs."""
    events = []
    for block in body.strip().split("\n\n"):
        fields = dict(line.split(": ", 1) for line in block.split("\n"))
        events.append((fields["event"], orjson.loads(fields["data"])))
    return events


def _fake_fetch(items, seen=None):
    async def _fetch(date_range):
        if seen is not None:
            seen.append(date_range)
        return items

    return _fetch


def test_read_root():
    response = client.get("/")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_health():
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert "timestamp" in response.json()


def test_meetings_stream_is_ordered_sse(monkeypatch, make_meetings, sample_decision):
    items = make_meetings(4)
    seen = []

    async def process(meeting):
        # Later meetings finish first.
        await asyncio.sleep(0.01 * (4 - meeting.id))
        if meeting.id == 2:
            raise RuntimeError("Gemini failed")
        return EnrichedResult(pdf_text="minutes", decisions=[sample_decision])

    monkeypatch.setattr(ordered_pool, "fetch_ordered_meetings", _fake_fetch(items, seen))
    monkeypatch.setattr(ordered_pool, "process_meeting", process)

    response = client.get("/api/meetings?startDate=2026-01-01&endDate=2026-01-31")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.headers["cache-control"] == "no-cache"
    events = _parse_sse(response.text)
    assert [name for name, _ in events] == ["meeting"] * 4 + ["complete"]
    assert [data["id"] for _, data in events[:4]] == [0, 1, 2, 3]
    assert "decisions" not in events[2][1]
    assert events[0][1]["decisions"][0]["title"] == sample_decision.title
    assert events[0][1]["meetingType"] == items[0].meeting_type
    assert events[-1][1] == {"count": 4}
    assert seen[0].start_date == "2026-01-01"
    assert seen[0].end_date == "2026-01-31"


def test_meetings_stream_without_dates_uses_open_range(monkeypatch):
    seen = []
    monkeypatch.setattr(ordered_pool, "fetch_ordered_meetings", _fake_fetch([], seen))

    response = client.get("/api/meetings")

    assert _parse_sse(response.text) == [("complete", {"count": 0})]
    assert seen[0].start_date is None
    assert seen[0].end_date is None


def test_meetings_stream_reports_fetch_failure_as_error_event(monkeypatch):
    async def failing_fetch(date_range):
        raise FetchError("API returned status 502")

    monkeypatch.setattr(ordered_pool, "fetch_ordered_meetings", failing_fetch)

    response = client.get("/api/meetings")

    assert response.status_code == 200
    assert _parse_sse(response.text) == [("error", {"message": "API returned status 502"})]


@pytest.mark.parametrize("query", ["startDate=2026/01/01", "endDate=2026-13-40", "startDate=yesterday"])
def test_meetings_stream_rejects_bad_dates(monkeypatch, query):
    async def never_called(date_range):
        raise AssertionError("pipeline must not start")

    monkeypatch.setattr(ordered_pool, "fetch_ordered_meetings", never_called)

    response = client.get(f"/api/meetings?{query}")

    assert response.status_code == 400


def test_meetings_test_endpoint_returns_sample(mocker, make_meetings):
    mocker.patch.object(api_main, "load_ordered_meetings", return_value=make_meetings(12))

    response = client.get("/api/meetings/test")

    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["totalCount"] == 12
    assert data["sampleCount"] == 10
    assert data["meetings"][0]["meetingUrl"].startswith("https://")


def test_meetings_test_endpoint_reports_fetch_failure(mocker):
    mocker.patch.object(api_main, "load_ordered_meetings", side_effect=FetchError("API returned status 401"))

    response = client.get("/api/meetings/test")

    assert response.status_code == 500
    assert response.json() == {
        "success": False,
        "error": "Failed to fetch meetings",
        "message": "API returned status 401",
    }


@pytest.mark.parametrize("body", [{}, {"prompt": ""}, {"prompt": "   "}])
def test_extract_decisions_requires_prompt(body):
    response = client.post("/api/extract-decisions", json=body)
    assert response.status_code == 400


def test_extract_decisions_without_key_is_unavailable(mocker):
    mocker.patch.object(api_main, "get_provider", return_value=None)

    response = client.post("/api/extract-decisions", json={"prompt": "minutes"})

    assert response.status_code == 503


def test_extract_decisions_returns_decisions(mocker, sample_decision):
    provider = mocker.MagicMock()
    mocker.patch.object(api_main, "get_provider", return_value=provider)
    extract = mocker.patch.object(api_main, "extract_meeting_decisions", return_value=[sample_decision])

    response = client.post("/api/extract-decisions", json={"prompt": "THAT Council approve"})

    assert response.status_code == 200
    assert response.json() == {"success": True, "decisions": [sample_decision.model_dump(mode="json")]}
    extract.assert_called_once_with("THAT Council approve", provider)


def test_extract_decisions_provider_failure_is_bad_gateway(mocker):
    mocker.patch.object(api_main, "get_provider", return_value=mocker.MagicMock())
    mocker.patch.object(api_main, "extract_meeting_decisions", side_effect=ProviderUnavailableError("down"))

    response = client.post("/api/extract-decisions", json={"prompt": "minutes"})

    assert response.status_code == 502
    assert "Gemini" in response.json()["detail"]


def test_finished_run_reports_client_disconnect(caplog):
    async def scenario():
        sink = api_main.QueueEventSink()
        stream = sink.stream()
        sink.emit(ItemEvent(0, {"id": 0}))
        await stream.__anext__()
        await stream.aclose()
        sink.emit(ItemEvent(0, {"id": 0}))

        async def done():
            return None

        run = asyncio.create_task(done())
        await run
        with caplog.at_level("INFO", logger="council-decisions-api"):
            api_main._finish_run(run, sink=sink)

    asyncio.run(scenario())

    assert any("after client disconnect (1 events not delivered)" in r.getMessage() for r in caplog.records)


def test_finished_run_without_disconnect_logs_nothing(caplog):
    async def scenario():
        sink = api_main.QueueEventSink()
        sink.close()

        async def done():
            return None

        run = asyncio.create_task(done())
        await run
        with caplog.at_level("INFO", logger="council-decisions-api"):
            api_main._finish_run(run, sink=sink)

    asyncio.run(scenario())

    assert not any("client disconnect" in r.getMessage() for r in caplog.records)
