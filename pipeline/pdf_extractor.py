import logging
import threading
import time
from typing import Dict, Optional
from urllib.parse import urljoin

import requests
from bs4 import BeautifulSoup
from tika import parser

from pipeline.config import (
    FILE_READ_CHUNK_SIZE,
    MAX_FILE_SIZE_BYTES,
    MEETING_PAGE_TIMEOUT_SECONDS,
    MINUTES_LINK_TEXT,
    PDF_DOWNLOAD_TIMEOUT_SECONDS,
    TIKA_MAX_ATTEMPTS,
    TIKA_MIN_EXTRACTED_CHARS_FOR_NO_OCR,
    TIKA_OCR_FALLBACK_ENABLED,
    TIKA_RETRY_BACKOFF_MULTIPLIER,
    TIKA_SERVER_ENDPOINT,
    TIKA_TIMEOUT_SECONDS,
)
from pipeline.metrics import record_pdf_extraction
from pipeline.models import MeetingRecord


logger = logging.getLogger("pdf-extractor")

# Extracted minutes text keyed by meeting URL.
# Process-local: every API worker process keeps its own copy.
_text_cache: Dict[str, str] = {}
_cache_lock = threading.Lock()


def get_cached_text(meeting_url: str) -> Optional[str]:
    with _cache_lock:
        return _text_cache.get(meeting_url)


def _store_cached_text(meeting_url: str, text: str) -> None:
    with _cache_lock:
        _text_cache[meeting_url] = text


def clear_cache() -> None:
    with _cache_lock:
        _text_cache.clear()
    logger.info("PDF text cache cleared")


def _build_session() -> requests.Session:
    session = requests.Session()
    # Security: ignore .netrc / proxy credentials from the host environment.
    session.trust_env = False
    return session


def find_minutes_link(page_html: str, page_url: str) -> Optional[str]:
    """
    Return the absolute URL of the first "read the minutes" link on a meeting page.
    """
    soup = BeautifulSoup(page_html or "", "html.parser")
    for anchor in soup.find_all("a"):
        text = " ".join(anchor.get_text(" ").split()).lower()
        if MINUTES_LINK_TEXT in text:
            href = (anchor.get("href") or "").strip()
            if not href:
                return None
            return urljoin(page_url, href)
    return None


def extract_pdf_text(pdf_bytes: bytes, *, ocr_fallback_enabled=None, min_chars_threshold=None) -> str:
    """
    Extracts plain text from PDF bytes using the Apache Tika server.

    Fast path uses only the digital text layer. If that comes back empty or too
    short and OCR fallback is enabled, we retry with OCR (much slower).
    """

    def _tika_extract_with_strategy(ocr_strategy: str) -> str:
        for attempt in range(TIKA_MAX_ATTEMPTS):
            try:
                parsed = parser.from_buffer(
                    pdf_bytes,
                    serverEndpoint=TIKA_SERVER_ENDPOINT,
                    headers={"X-Tika-PDFOcrStrategy": ocr_strategy},
                    requestOptions={"timeout": TIKA_TIMEOUT_SECONDS},
                )
                if parsed and "content" in parsed:
                    return (parsed["content"] or "").strip()
                raise ValueError("Tika returned empty response")
            except (ValueError, OSError, requests.RequestException) as e:
                if attempt < TIKA_MAX_ATTEMPTS - 1:
                    wait_time = (attempt + 1) * TIKA_RETRY_BACKOFF_MULTIPLIER
                    logger.warning(
                        f"Tika issue (ocr_strategy={ocr_strategy}), retrying in {wait_time}s... "
                        f"(Attempt {attempt + 1}/{TIKA_MAX_ATTEMPTS})"
                    )
                    time.sleep(wait_time)
                else:
                    logger.error(
                        f"Tika extraction failed (ocr_strategy={ocr_strategy}) after {TIKA_MAX_ATTEMPTS} attempts: {e}"
                    )
        return ""

    if ocr_fallback_enabled is None:
        ocr_fallback_enabled = TIKA_OCR_FALLBACK_ENABLED
    if min_chars_threshold is None:
        min_chars_threshold = TIKA_MIN_EXTRACTED_CHARS_FOR_NO_OCR

    no_ocr_text = _tika_extract_with_strategy("no_ocr")
    if no_ocr_text and len(no_ocr_text) >= min_chars_threshold:
        return no_ocr_text

    if ocr_fallback_enabled:
        ocr_text = _tika_extract_with_strategy("ocr_only")
        return ocr_text or no_ocr_text

    return no_ocr_text


def _download_pdf(session: requests.Session, pdf_url: str, meeting_id: int) -> Optional[bytes]:
    """
    Download the minutes PDF into memory, refusing anything over the size cap.
    """
    response = session.get(pdf_url, stream=True, timeout=PDF_DOWNLOAD_TIMEOUT_SECONDS)
    try:
        if response.status_code != 200:
            logger.info(f"Meeting {meeting_id}: PDF download failed (HTTP {response.status_code})")
            return None

        content_length = response.headers.get("Content-Length")
        if content_length and content_length.isdigit() and int(content_length) > MAX_FILE_SIZE_BYTES:
            logger.warning(f"Meeting {meeting_id}: skipping {pdf_url}, too large ({content_length} bytes)")
            return None

        body = bytearray()
        for chunk in response.iter_content(chunk_size=FILE_READ_CHUNK_SIZE):
            body.extend(chunk)
            if len(body) > MAX_FILE_SIZE_BYTES:
                logger.warning(f"Meeting {meeting_id}: skipping {pdf_url}, exceeded {MAX_FILE_SIZE_BYTES} bytes")
                return None
        return bytes(body)
    finally:
        response.close()


def extract_meeting_text(meeting: MeetingRecord, session: Optional[requests.Session] = None) -> Optional[str]:
    """
    Find, download and extract the minutes PDF for one meeting.

    What this does:
    1. Fetches the meeting's HTML page
    2. Finds the "read the minutes" link
    3. Downloads the PDF it points to
    4. Extracts text with Tika

    Every failure here is soft: we log it and return None so the meeting is
    still streamed, just without decisions.
    """
    meeting_id = meeting.id
    meeting_url = meeting.meeting_url
    if not meeting_url:
        logger.info(f"Meeting {meeting_id}: Empty or missing meetingUrl")
        record_pdf_extraction("no_url")
        return None

    cached = get_cached_text(meeting_url)
    if cached is not None:
        logger.info(f"Meeting {meeting_id}: Using cached PDF text")
        record_pdf_extraction("cached")
        return cached

    http = session or _build_session()
    try:
        logger.info(f"Meeting {meeting_id}: Fetching page...")
        page = http.get(meeting_url, timeout=MEETING_PAGE_TIMEOUT_SECONDS)
        if page.status_code != 200:
            logger.info(f"Meeting {meeting_id}: HTTP {page.status_code} for meeting page")
            record_pdf_extraction("page_unavailable")
            return None

        pdf_url = find_minutes_link(page.text, meeting_url)
        if not pdf_url:
            logger.info(f"Meeting {meeting_id}: No '{MINUTES_LINK_TEXT}' link found")
            record_pdf_extraction("no_minutes_link")
            return None

        logger.info(f"Meeting {meeting_id}: Downloading PDF from {pdf_url}")
        pdf_bytes = _download_pdf(http, pdf_url, meeting_id)
        if not pdf_bytes:
            record_pdf_extraction("download_failed")
            return None

        text = extract_pdf_text(pdf_bytes)
        if not text:
            logger.info(f"Meeting {meeting_id}: No text extracted from PDF")
            record_pdf_extraction("empty")
            return None
    except requests.Timeout:
        logger.info(f"Meeting {meeting_id}: Request timeout")
        record_pdf_extraction("timeout")
        return None
    except requests.RequestException as e:
        logger.info(f"Meeting {meeting_id}: Error - {e}")
        record_pdf_extraction("error")
        return None
    finally:
        if session is None:
            http.close()

    logger.info(f"Meeting {meeting_id}: Extracted {len(text)} characters")
    _store_cached_text(meeting_url, text)
    record_pdf_extraction("ok")
    return text
