import asyncio
import logging

from pipeline.decisions import extract_meeting_decisions
from pipeline.llm_provider import ProviderError, get_provider
from pipeline.models import EnrichedResult, MeetingRecord
from pipeline.pdf_extractor import extract_meeting_text


logger = logging.getLogger("meeting-processor")


class ProcessingError(RuntimeError):
    """Decision extraction failed for one meeting."""


async def process_meeting(meeting: MeetingRecord) -> EnrichedResult:
    """
    Enrich one meeting: minutes text first, then Gemini decisions.

    Skipped stages leave their field as None (no minutes PDF, no API key).
    A failed model call raises ProcessingError; the ordered pipeline then
    streams this meeting without decisions.
    """
    pdf_text = await asyncio.to_thread(extract_meeting_text, meeting)
    if not pdf_text:
        return EnrichedResult()

    provider = get_provider()
    if provider is None:
        return EnrichedResult(pdf_text=pdf_text)

    logger.info(f"Processing meeting {meeting.id} with {provider.name}...")
    try:
        decisions = await asyncio.to_thread(extract_meeting_decisions, pdf_text, provider)
    except (ProviderError, ValueError) as exc:
        raise ProcessingError(f"Decision extraction failed for meeting {meeting.id}: {exc}") from exc

    logger.info(f"Extracted {len(decisions)} decisions from meeting {meeting.id}")
    return EnrichedResult(pdf_text=pdf_text, decisions=decisions)
