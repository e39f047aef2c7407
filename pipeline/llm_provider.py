from __future__ import annotations

import logging
import threading
import time
from typing import Optional, Protocol, runtime_checkable

import requests

from pipeline.config import (
    GEMINI_API_BASE_URL,
    GEMINI_API_KEY,
    GEMINI_MAX_RETRIES,
    GEMINI_MODEL,
    GEMINI_TEMPERATURE,
    GEMINI_TIMEOUT_SECONDS,
)
from pipeline.metrics import (
    record_provider_request,
    record_provider_retry,
    record_provider_timeout,
)


logger = logging.getLogger("llm-provider")


class ProviderError(RuntimeError):
    """Gemini could not produce decisions for this input."""


class ProviderConfigError(ProviderError):
    """Provider cannot be constructed (missing API key)."""


class ProviderTimeoutError(ProviderError):
    """Gemini did not answer within GEMINI_TIMEOUT_SECONDS."""


class ProviderUnavailableError(ProviderError):
    """Connection failure or non-2xx status from the Gemini endpoint."""


class ProviderResponseError(ProviderError):
    """Gemini answered, but with no usable JSON text."""


@runtime_checkable
class DecisionProvider(Protocol):
    name: str
    model_name: str

    def generate_json(self, prompt: str, *, response_schema: dict, operation: str = "generate_json") -> str: ...


class GeminiProvider:
    """
    Calls the Gemini generateContent REST endpoint in JSON response mode.

    Blocking (requests); the async pipeline runs it in a worker thread.
    """

    name = "gemini"

    def __init__(
        self,
        api_key: str = GEMINI_API_KEY,
        *,
        model_name: str = GEMINI_MODEL,
        base_url: str = GEMINI_API_BASE_URL,
        timeout_seconds: int = GEMINI_TIMEOUT_SECONDS,
        max_retries: int = GEMINI_MAX_RETRIES,
        temperature: float = GEMINI_TEMPERATURE,
        session: Optional[requests.Session] = None,
    ):
        if not api_key:
            raise ProviderConfigError("GEMINI_API_KEY is not configured")
        self.api_key = api_key
        self.model_name = model_name
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = max(5, int(timeout_seconds))
        self.max_retries = max(0, int(max_retries))
        self.temperature = float(temperature)
        self.session = session or requests.Session()

    @property
    def endpoint(self) -> str:
        return f"{self.base_url}/models/{self.model_name}:generateContent"

    def _payload(self, prompt: str, response_schema: dict) -> dict:
        return {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {
                "temperature": self.temperature,
                "responseMimeType": "application/json",
                "responseSchema": response_schema,
            },
        }

    @staticmethod
    def _response_text(data: dict) -> str:
        candidates = data.get("candidates") or []
        if not candidates:
            feedback = data.get("promptFeedback") or {}
            raise ProviderResponseError(f"No candidates in response (blockReason={feedback.get('blockReason')})")
        parts = ((candidates[0] or {}).get("content") or {}).get("parts") or []
        text = "".join(part.get("text") or "" for part in parts if isinstance(part, dict)).strip()
        if not text:
            raise ProviderResponseError(
                f"Empty response payload (finishReason={candidates[0].get('finishReason')})"
            )
        return text

    def _post_once(self, payload: dict, operation: str, attempt: int) -> str:
        """
        One HTTP round trip. Always logs one line and records one request sample.
        """
        started = time.perf_counter()
        outcome = "error"
        usage = {}
        try:
            response = self.session.post(
                self.endpoint,
                json=payload,
                headers={"x-goog-api-key": self.api_key, "Content-Type": "application/json"},
                timeout=self.timeout_seconds,
            )
            response.raise_for_status()
            try:
                data = response.json()
            except ValueError as exc:
                raise ProviderResponseError("Response body is not JSON") from exc
            usage = data.get("usageMetadata") or {}
            text = self._response_text(data)
            outcome = "ok"
            return text
        except requests.exceptions.Timeout:
            outcome = "timeout"
            record_provider_timeout(self.name, operation, self.model_name)
            raise
        except requests.exceptions.RequestException:
            outcome = "unavailable"
            raise
        except ProviderError:
            outcome = "response_error"
            raise
        finally:
            duration_ms = (time.perf_counter() - started) * 1000.0
            logger.info(
                "provider_request provider=%s model=%s operation=%s attempt=%s outcome=%s duration_ms=%.2f "
                "prompt_tokens=%s output_tokens=%s",
                self.name,
                self.model_name,
                operation,
                attempt,
                outcome,
                duration_ms,
                usage.get("promptTokenCount", ""),
                usage.get("candidatesTokenCount", ""),
            )
            record_provider_request(self.name, operation, self.model_name, outcome, duration_ms)

    def generate_json(self, prompt: str, *, response_schema: dict, operation: str = "generate_json") -> str:
        """
        Return the model's JSON answer as text.

        Transport failures are retried up to max_retries times. A malformed
        answer (ProviderResponseError) is raised immediately.
        """
        payload = self._payload(prompt, response_schema)
        attempts = self.max_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                return self._post_once(payload, operation, attempt)
            except requests.exceptions.RequestException as exc:
                if attempt < attempts:
                    record_provider_retry(self.name, operation, self.model_name)
                    continue
                if isinstance(exc, requests.exceptions.Timeout):
                    raise ProviderTimeoutError(f"Gemini request timed out after {attempts} attempt(s): {exc}") from exc
                raise ProviderUnavailableError(f"Gemini unavailable after {attempts} attempt(s): {exc}") from exc
        raise ProviderUnavailableError("Gemini unavailable")


_provider: Optional[GeminiProvider] = None
# Set once construction failed for lack of a key; the key cannot appear later
# in this process, so we stop retrying (and warning) per meeting.
_provider_disabled = False
_provider_lock = threading.Lock()


def get_provider() -> Optional[GeminiProvider]:
    """
    Lazily build the process-wide Gemini provider.

    Returns None when no API key is configured, so callers can skip decision
    extraction instead of failing every meeting. The warning is logged once.
    """
    global _provider, _provider_disabled
    if _provider is not None or _provider_disabled:
        return _provider
    with _provider_lock:
        if _provider is None and not _provider_disabled:
            try:
                _provider = GeminiProvider(GEMINI_API_KEY)
            except ProviderConfigError as exc:
                logger.warning(f"Decision extraction disabled: {exc}")
                _provider_disabled = True
    return _provider


def reset_provider() -> None:
    global _provider, _provider_disabled
    with _provider_lock:
        _provider = None
        _provider_disabled = False
