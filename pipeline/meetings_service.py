import asyncio
import logging
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util import Retry

from pipeline.config import (
    COUNCIL_SITE_BASE_URL,
    MEETINGS_API_PROBE_TIMEOUT_SECONDS,
    MEETINGS_API_TIMEOUT_SECONDS,
    VANCOUVER_API_BASE_URL,
    VANCOUVER_API_KEY,
)
from pipeline.models import DateRangeFilter, MeetingRecord


logger = logging.getLogger("council-meetings")

MEETINGS_ENDPOINT = f"{VANCOUVER_API_BASE_URL}/CouncilMeetings"

# Keys the API has been seen to wrap the meeting list in.
_LIST_WRAPPER_KEYS = ("data", "items", "results", "meetings")


class FetchError(RuntimeError):
    """The meeting list could not be retrieved from the city API."""


def _api_key_header_candidates(api_key: str) -> List[Dict[str, str]]:
    # The API has accepted different header spellings over time.
    return [
        {"X-API-Key": api_key},
        {"Api-Key": api_key},
        {"API-Key": api_key},
        {"X-API-KEY": api_key},
        {"Authorization": f"Bearer {api_key}"},
        {"Authorization": api_key},
        {"apikey": api_key},
    ]


def build_meetings_session() -> requests.Session:
    """
    Build a requests session with a small retry budget for transient 5xx errors.
    """
    session = requests.Session()
    retry_strategy = Retry(
        total=2,
        backoff_factor=0.2,
        status_forcelist=[500, 502, 503, 504],
        allowed_methods={"GET"},
    )
    adapter = HTTPAdapter(max_retries=retry_strategy)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


def find_working_auth_headers(
    session: requests.Session,
    api_key: str = VANCOUVER_API_KEY,
) -> Optional[Dict[str, str]]:
    """
    Try each API-key header format against the list endpoint.

    Returns the first header dict that gets a 200, or None when none does
    (the caller then sends the key as an `apiKey` query parameter).
    """
    params = {"type": "previous"}
    for headers in _api_key_header_candidates(api_key):
        header_name = next(iter(headers))
        try:
            response = session.get(
                MEETINGS_ENDPOINT,
                params=params,
                headers=headers,
                timeout=MEETINGS_API_PROBE_TIMEOUT_SECONDS,
            )
        except requests.RequestException as e:
            logger.debug(f"API key header {header_name} failed: {e}")
            continue
        if response.status_code == 200:
            logger.info(f"Meetings API accepted header: {header_name}")
            return headers
        logger.debug(f"API key header {header_name} rejected: HTTP {response.status_code}")
    return None


def _unwrap_meeting_list(data: Any) -> List[Dict[str, Any]]:
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        for key in _LIST_WRAPPER_KEYS:
            value = data.get(key)
            if isinstance(value, list):
                return value
    return []


def _absolute_meeting_url(raw_url: str) -> str:
    url = (raw_url or "").strip()
    if url and not url.startswith("http"):
        url = f"{COUNCIL_SITE_BASE_URL}{url if url.startswith('/') else '/' + url}"
    return url


def to_meeting_record(raw: Dict[str, Any], idx: int) -> MeetingRecord:
    return MeetingRecord(
        id=idx,
        meeting_type=raw.get("eventTitle") or "",
        status=raw.get("locationStatus") or "",
        event_date=raw.get("eventDateStart") or "",
        meeting_url=_absolute_meeting_url(raw.get("relatedURL") or ""),
    )


def fetch_all_meetings(
    meeting_type: str = "previous",
    session: Optional[requests.Session] = None,
) -> List[MeetingRecord]:
    """
    Fetch every meeting of `meeting_type` from the Vancouver council API.

    Raises FetchError on transport failures, non-200 responses and
    non-JSON bodies.
    """
    http = session or build_meetings_session()
    headers = find_working_auth_headers(http)
    params: Dict[str, str] = {"type": meeting_type}
    if headers is None:
        params["apiKey"] = VANCOUVER_API_KEY

    logger.info(f"Fetching all {meeting_type} meetings...")
    try:
        response = http.get(
            MEETINGS_ENDPOINT,
            params=params,
            headers=headers,
            timeout=MEETINGS_API_TIMEOUT_SECONDS,
        )
    except requests.RequestException as e:
        raise FetchError(f"Meetings API request failed: {e}") from e

    if response.status_code != 200:
        raise FetchError(f"API returned status {response.status_code}")

    try:
        data = response.json()
    except ValueError as e:
        raise FetchError("Meetings API returned a non-JSON body") from e

    meetings = [
        to_meeting_record(raw, idx)
        for idx, raw in enumerate(_unwrap_meeting_list(data))
        if isinstance(raw, dict)
    ]
    logger.info(f"Fetched {len(meetings)} meetings")
    return meetings


def _meeting_day(meeting: MeetingRecord) -> Optional[date]:
    when = _parse_event_datetime(meeting.event_date)
    return when.date() if when else None


def filter_meetings_by_date(
    meetings: List[MeetingRecord],
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
) -> List[MeetingRecord]:
    """
    Keep meetings whose event day falls within [start_date, end_date].

    Bounds are YYYY-MM-DD strings. Meetings without a parseable date are
    dropped whenever a bound is given.
    """
    if not start_date and not end_date:
        return list(meetings)

    kept = []
    for meeting in meetings:
        day = _meeting_day(meeting)
        if day is None:
            continue
        day_str = day.isoformat()
        if start_date and day_str < start_date:
            continue
        if end_date and day_str > end_date:
            continue
        kept.append(meeting)
    return kept


def sort_meetings_by_date(meetings: List[MeetingRecord]) -> List[MeetingRecord]:
    """Most recent first. Meetings with unparseable dates go last."""
    dated = []
    undated = []
    for meeting in meetings:
        when = _parse_event_datetime(meeting.event_date)
        if when is None:
            undated.append(meeting)
        else:
            dated.append((when, meeting))
    # reverse=True keeps ties in input order.
    dated.sort(key=lambda pair: pair[0], reverse=True)
    return [meeting for _, meeting in dated] + undated


def _parse_event_datetime(value: str) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        # Compare everything as naive UTC; the API normally sends naive local times.
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def load_ordered_meetings(date_range: DateRangeFilter) -> List[MeetingRecord]:
    all_meetings = fetch_all_meetings("previous")
    filtered = filter_meetings_by_date(all_meetings, date_range.start_date, date_range.end_date)
    logger.info(f"Filtered to {len(filtered)} meetings ({date_range.describe()})")
    ordered = sort_meetings_by_date(filtered)
    # Stream identity is the position in the ordered list.
    return [meeting.model_copy(update={"id": idx}) for idx, meeting in enumerate(ordered)]


async def fetch_ordered_meetings(date_range: DateRangeFilter) -> List[MeetingRecord]:
    """Async fetcher used by the pipeline; the blocking HTTP runs in a thread."""
    return await asyncio.to_thread(load_ordered_meetings, date_range)
