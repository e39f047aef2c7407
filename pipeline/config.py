"""
Pipeline Configuration Constants

Every tunable number used by the meetings stream lives here, next to a comment
explaining what it controls. Values come from the environment so Docker/compose
profiles can change them without code edits.

How to use these constants:
----------------------------
    from pipeline.config import PIPELINE_WORKER_COUNT

    await run_pipeline(date_range, PIPELINE_WORKER_COUNT, sink)

Tests that need a different value should use monkeypatch.setenv() and then
importlib.reload(pipeline.config).
"""

import os


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes"}


# =============================================================================
# ORDERED PIPELINE CONFIGURATION
# =============================================================================

# Number of concurrent workers pulling meetings from the shared claim cursor.
# Each worker runs one meeting at a time (PDF extraction, then Gemini), so this
# is also the maximum number of in-flight Gemini calls per request.
# 3 keeps us well under the free-tier Gemini rate limit.
PIPELINE_WORKER_COUNT = max(1, int(os.getenv("PIPELINE_WORKER_COUNT", "3")))

# Include the extracted minutes text in every streamed meeting event.
# Off by default: the frontend never renders it and it can be hundreds of KB.
STREAM_INCLUDE_PDF_TEXT = _env_flag("STREAM_INCLUDE_PDF_TEXT")

# Number of meetings returned by the /api/meetings/test connectivity endpoint.
TEST_ENDPOINT_SAMPLE_SIZE = 10


# =============================================================================
# VANCOUVER COUNCIL MEETINGS API
# =============================================================================

VANCOUVER_API_BASE_URL = os.getenv(
    "VANCOUVER_API_BASE_URL",
    "https://api.vancouver.ca/App/CouncilMeetings/CouncilMeetings.API/api",
).rstrip("/")

VANCOUVER_API_KEY = os.getenv("VANCOUVER_API_KEY", "")

# Relative meeting URLs returned by the API are rooted here.
COUNCIL_SITE_BASE_URL = os.getenv("COUNCIL_SITE_BASE_URL", "https://council.vancouver.ca").rstrip("/")

# Timeout for each API-key header probe. Probes are cheap; fail fast.
MEETINGS_API_PROBE_TIMEOUT_SECONDS = 10

# Timeout for the real meeting-list request (the list can be large).
MEETINGS_API_TIMEOUT_SECONDS = int(os.getenv("MEETINGS_API_TIMEOUT_SECONDS", "30"))


# =============================================================================
# MINUTES DOWNLOAD CONFIGURATION
# =============================================================================

# Timeout for fetching the meeting HTML page that links to the minutes.
MEETING_PAGE_TIMEOUT_SECONDS = int(os.getenv("MEETING_PAGE_TIMEOUT_SECONDS", "30"))

# Timeout for downloading the minutes PDF itself.
PDF_DOWNLOAD_TIMEOUT_SECONDS = int(os.getenv("PDF_DOWNLOAD_TIMEOUT_SECONDS", "60"))

# Maximum PDF size to download: 100MB
# Minutes are usually under 2MB; anything larger is almost certainly a full
# packet we don't want to hold in memory.
MAX_FILE_SIZE_BYTES = 104857600  # 100 * 1024 * 1024

# Chunk size when streaming the PDF body into memory: 8KB
FILE_READ_CHUNK_SIZE = 8192

# Link text that marks the minutes PDF on a council meeting page.
MINUTES_LINK_TEXT = "read the minutes"


# =============================================================================
# TIKA TEXT EXTRACTION CONFIGURATION
# =============================================================================

TIKA_SERVER_ENDPOINT = os.getenv("TIKA_SERVER_ENDPOINT", "http://tika:9998")

# Tika can take time with large PDFs (OCR, complex layouts)
TIKA_TIMEOUT_SECONDS = int(os.getenv("TIKA_TIMEOUT_SECONDS", "60"))

# Number of attempts per extraction strategy before giving up on a PDF.
TIKA_MAX_ATTEMPTS = 3

# When Tika fails, we wait (attempt x multiplier) seconds before retrying
TIKA_RETRY_BACKOFF_MULTIPLIER = 2

# Retry with OCR when the digital text layer is empty or too short.
TIKA_OCR_FALLBACK_ENABLED = _env_flag("TIKA_OCR_FALLBACK_ENABLED")
TIKA_MIN_EXTRACTED_CHARS_FOR_NO_OCR = int(os.getenv("TIKA_MIN_EXTRACTED_CHARS_FOR_NO_OCR", "200"))


# =============================================================================
# GEMINI CONFIGURATION
# =============================================================================

GEMINI_API_KEY = os.getenv("GEMINI_API_KEY", "")
GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-2.5-flash")
GEMINI_API_BASE_URL = os.getenv(
    "GEMINI_API_BASE_URL",
    "https://generativelanguage.googleapis.com/v1beta",
).rstrip("/")

# Decision extraction over long minutes can take a while on the model side.
GEMINI_TIMEOUT_SECONDS = max(5, int(os.getenv("GEMINI_TIMEOUT_SECONDS", "120")))

# Retries per Gemini call. Zero by default: a failed meeting is streamed
# without decisions instead of holding up every later meeting.
GEMINI_MAX_RETRIES = max(0, int(os.getenv("GEMINI_MAX_RETRIES", "0")))

GEMINI_TEMPERATURE = float(os.getenv("GEMINI_TEMPERATURE", "0.1"))

# Maximum minutes text sent to the model (chars).
# Gemini's window is far larger; this caps cost on unusually long minutes.
LLM_DECISIONS_MAX_TEXT = int(os.getenv("LLM_DECISIONS_MAX_TEXT", "400000"))


# =============================================================================
# API CONFIGURATION
# =============================================================================

ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.getenv("ALLOWED_ORIGINS", "http://localhost:5173,http://localhost:3000").split(",")
    if origin.strip()
]

# Each stream request fans out into many Gemini calls; keep this low.
MEETINGS_STREAM_RATE_LIMIT = os.getenv("MEETINGS_STREAM_RATE_LIMIT", "10/minute")
EXTRACT_DECISIONS_RATE_LIMIT = os.getenv("EXTRACT_DECISIONS_RATE_LIMIT", "20/minute")
