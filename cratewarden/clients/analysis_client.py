"""
Transport to the remote code-analysis service.

The gateway only depends on the ``AnalysisTransport`` protocol: send a prompt,
get the model's text back, or raise ``TransportError`` / ``QuotaExceededError``.
``GeminiTransport`` implements it against the Gemini ``generateContent`` API.
"""

import json
import logging
import re
from typing import Any, Protocol

import httpx

from ..constants import (
    DEFAULT_ANALYSIS_ENDPOINT,
    DEFAULT_MAX_OUTPUT_TOKENS,
    DEFAULT_REQUEST_TIMEOUT,
    DEFAULT_TEMPERATURE,
    USER_AGENT,
)
from ..core.exceptions import AnalysisError, QuotaExceededError, TransportError

logger = logging.getLogger(__name__)

_QUOTA_MARKERS = ("quota", "resource_exhausted")
_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*s?\s*$")


class AnalysisTransport(Protocol):
    """Anything that can turn a prompt into model text."""

    async def send(self, prompt: str, model: str) -> str: ...


def parse_retry_after(headers: httpx.Headers | dict[str, str], body: Any) -> float | None:
    """Extract a retry hint in seconds from a ``Retry-After`` header or a
    Gemini ``RetryInfo`` error detail (``"retryDelay": "37s"``)."""
    details = []
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict):
            details = error.get("details") or []
    for detail in details:
        if isinstance(detail, dict) and "retryDelay" in detail:
            match = _DURATION_RE.match(str(detail["retryDelay"]))
            if match:
                return float(match.group(1))

    header = headers.get("retry-after") if headers else None
    if header:
        match = _DURATION_RE.match(header)
        if match:
            return float(match.group(1))
    return None


def is_quota_exhausted(status: int, body_text: str) -> bool:
    """A 429 that names quota exhaustion, as opposed to plain throttling."""
    if status != 429:
        return False
    lowered = body_text.lower()
    return any(marker in lowered for marker in _QUOTA_MARKERS)


def error_for_response(response: httpx.Response) -> AnalysisError:
    """Translate an HTTP error response into the matching project error."""
    body_text = response.text
    try:
        body = response.json()
    except ValueError:
        body = None
    retry_after = parse_retry_after(response.headers, body)

    message = body_text[:300]
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        message = body["error"].get("message") or message

    if is_quota_exhausted(response.status_code, body_text):
        return QuotaExceededError(
            f"Analysis service quota exhausted: {message}", retry_after=retry_after
        )
    return TransportError(
        f"Analysis service returned HTTP {response.status_code}: {message}",
        status=response.status_code,
        retry_after=retry_after,
        response_body=body_text,
    )


def extract_text(data: dict[str, Any]) -> str:
    """Concatenate the text parts of the first candidate."""
    if "error" in data:
        error = data["error"] or {}
        raise TransportError(
            f"Analysis service error: {error.get('message', 'unknown error')}",
            status=error.get("code"),
        )

    candidates = data.get("candidates") or []
    for candidate in candidates:
        parts = (candidate.get("content") or {}).get("parts") or []
        texts = [part["text"] for part in parts if isinstance(part.get("text"), str)]
        if texts:
            return "".join(texts)
        finish_reason = candidate.get("finishReason")
        if finish_reason:
            logger.warning(f"Analysis candidate returned no text (finishReason={finish_reason})")

    raise TransportError("Analysis service response contained no text", status=200)


class GeminiTransport:
    """Sends prompts to the Gemini ``generateContent`` endpoint."""

    def __init__(
        self,
        api_key: str,
        endpoint: str = DEFAULT_ANALYSIS_ENDPOINT,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
        temperature: float = DEFAULT_TEMPERATURE,
        max_output_tokens: int = DEFAULT_MAX_OUTPUT_TOKENS,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.api_key = api_key
        self.endpoint = endpoint.rstrip("/")
        self.timeout = timeout
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens
        self._client = client

    def _url(self, model: str) -> str:
        return f"{self.endpoint}/v1beta/models/{model}:generateContent"

    def _payload(self, prompt: str) -> dict[str, Any]:
        return {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {
                "temperature": self.temperature,
                "maxOutputTokens": self.max_output_tokens,
            },
        }

    async def send(self, prompt: str, model: str) -> str:
        """POST one prompt and return the model's text.

        Raises:
            QuotaExceededError: HTTP 429 naming quota exhaustion.
            TransportError: Any other HTTP error, timeout or connection error.
        """
        headers = {
            "x-goog-api-key": self.api_key,
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
        }
        logger.debug(f"Sending {len(prompt)} chars to {model}")

        try:
            if self._client is not None:
                response = await self._client.post(
                    self._url(model), headers=headers, json=self._payload(prompt),
                    timeout=self.timeout,
                )
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(
                        self._url(model), headers=headers, json=self._payload(prompt)
                    )
        except httpx.TimeoutException as e:
            raise TransportError(f"Analysis request timed out: {e}") from e
        except httpx.RequestError as e:
            raise TransportError(f"Analysis request failed: {e}") from e

        if response.status_code >= 400:
            raise error_for_response(response)

        try:
            data = response.json()
        except (json.JSONDecodeError, ValueError) as e:
            raise TransportError(
                f"Analysis service returned invalid JSON: {e}", status=response.status_code
            ) from e
        return extract_text(data)

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
