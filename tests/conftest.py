import pytest

from pipeline.models import MeetingDecision, MeetingRecord


class RecordingSink:
    """
    In-memory EventSink that records everything the pipeline pushes.

    Emits after close are counted, not recorded, so tests can assert that the
    pipeline never wrote past the terminal event.
    """

    def __init__(self):
        self.events = []
        self.close_calls = 0
        self.emits_after_close = 0
        self._closed = False

    @property
    def closed(self):
        return self._closed

    def emit(self, event):
        if self._closed:
            self.emits_after_close += 1
            return
        self.events.append(event)

    def close(self):
        self.close_calls += 1
        self._closed = True

    @property
    def names(self):
        return [event.name for event in self.events]

    @property
    def item_indices(self):
        return [event.index for event in self.events if event.name == "meeting"]

    @property
    def items(self):
        return [event for event in self.events if event.name == "meeting"]


@pytest.fixture
def recording_sink():
    return RecordingSink()


@pytest.fixture
def make_meetings():
    def _make(count):
        return [
            MeetingRecord(
                id=idx,
                meeting_type=f"Regular Council Meeting {idx}",
                status="Completed",
                event_date=f"2026-01-{28 - idx:02d}T18:00:00",
                meeting_url=f"https://council.vancouver.ca/20260{idx}/regu.htm",
            )
            for idx in range(count)
        ]

    return _make


@pytest.fixture
def sample_decision():
    return MeetingDecision(
        title="Decision on the Broadway bike lane",
        content="THAT Council approve the Broadway protected bike lane.",
        location=(49.2632, -123.1386),
        summary="Council approved a protected bike lane on Broadway.",
    )


@pytest.fixture(autouse=True)
def reset_process_state():
    """
    Prevents cross-test pollution from process-local caches and singletons.
    """
    from pipeline import llm_provider, pdf_extractor

    pdf_extractor.clear_cache()
    llm_provider.reset_provider()
    yield
    pdf_extractor.clear_cache()
    llm_provider.reset_provider()
