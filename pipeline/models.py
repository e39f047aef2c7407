"""
Data shapes shared by the fetcher, the processor and the ordered pipeline.

Wire models (MeetingRecord, MeetingDecision) are pydantic so the stream payload
keeps the camelCase keys the frontend already reads. Per-item outcomes are
plain frozen dataclasses: they never cross the wire directly, only through
to_payload().
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from pipeline.config import STREAM_INCLUDE_PDF_TEXT


class DateRangeFilter(BaseModel):
    """Inclusive YYYY-MM-DD bounds. Either side may be open."""

    start_date: Optional[str] = None
    end_date: Optional[str] = None

    def describe(self) -> str:
        return f"{self.start_date or 'any'} to {self.end_date or 'any'}"


class MeetingRecord(BaseModel):
    """
    One council meeting as returned by the city API.

    `id` is the meeting's position in the ordered list the pipeline works on,
    so it doubles as the stream identity the frontend keys on.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: int
    meeting_type: str = Field("", alias="meetingType")
    status: str = ""
    event_date: str = Field("", alias="eventDate")
    meeting_url: str = Field("", alias="meetingUrl")

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True)


class MeetingDecision(BaseModel):
    title: str
    content: str
    location: Optional[Tuple[float, float]] = None
    summary: str

    @field_validator("location", mode="before")
    @classmethod
    def _lat_lng_or_none(cls, value):
        # The model answers "no location" as [] as often as null.
        if isinstance(value, (list, tuple)) and len(value) == 2:
            if all(isinstance(v, (int, float)) and not isinstance(v, bool) for v in value):
                return value
        return None


class EnrichedResult(BaseModel):
    """
    What the processor produced for one meeting.

    Either field may be None when its stage was skipped (no minutes link,
    Gemini not configured) rather than failed.
    """

    pdf_text: Optional[str] = None
    decisions: Optional[List[MeetingDecision]] = None


@dataclass(frozen=True)
class EnrichedOutcome:
    index: int
    item: MeetingRecord
    result: EnrichedResult

    enriched = True

    def to_payload(self) -> dict:
        payload = self.item.to_wire()
        if self.result.pdf_text and STREAM_INCLUDE_PDF_TEXT:
            payload["pdfText"] = self.result.pdf_text
        if self.result.decisions is not None:
            payload["decisions"] = [d.model_dump() for d in self.result.decisions]
        return payload


@dataclass(frozen=True)
class DegradedOutcome:
    index: int
    item: MeetingRecord
    reason: str = ""

    enriched = False

    def to_payload(self) -> dict:
        # Degraded meetings are streamed exactly as fetched.
        return self.item.to_wire()


ProcessingOutcome = Union[EnrichedOutcome, DegradedOutcome]
