"""Production client that speaks an HTTP JSON responses API."""

from __future__ import annotations

import json
import os
from typing import Any, Callable, Dict, Optional

from .llm_client import ChunkCallback, LLMClient, LLMResponseFormatError, LLMTransportError

__all__ = ["ResponsesClient"]


Transport = Callable[[Dict[str, Any]], str]

API_KEY_VARIABLES = ("PLANFORGE_API_KEY", "OPENAI_API_KEY")
TIMEOUT_VARIABLE = "PLANFORGE_LLM_TIMEOUT"


def _timeout_from_env(default: float) -> float:
    try:
        value = float(os.environ.get(TIMEOUT_VARIABLE, ""))
    except ValueError:
        return default
    return value if value > 0 else default


class ResponsesClient(LLMClient):
    """Thin adapter around a responses-style text generation endpoint."""

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        base_url: str = "https://api.openai.com/v1/responses",
        model: str = "gpt-5",
        transport: Optional[Transport] = None,
        timeout: float = 120.0,
        max_attempts: int = 3,
        retry_delay: float = 0.5,
    ) -> None:
        super().__init__(model=model, max_attempts=max_attempts, retry_delay=retry_delay)
        self._api_key = api_key or next((os.environ[name] for name in API_KEY_VARIABLES if os.environ.get(name)), None)
        if transport is None and not self._api_key:
            raise ValueError("An API key is required when using the default transport.")
        self._endpoint = base_url
        self._timeout = _timeout_from_env(timeout)
        self._transport = transport if transport is not None else self._post_json

    def _raw_invoke(self, payload: Dict[str, Any], *, on_chunk: Optional[ChunkCallback] = None) -> str:
        """Send the request over the configured transport."""
        try:
            raw_response = self._transport(payload)
        except LLMTransportError:
            raise
        except Exception as error:  # noqa: BLE001 - transport errors are normalised for retry
            raise LLMTransportError(f"Network issue: transport rejected the request: {error}") from error

        text = self._extract_output_text(raw_response)
        if text is None:
            raise LLMResponseFormatError("Response did not contain output text.")
        if on_chunk is not None:
            on_chunk(text)
        return text

    def _post_json(self, payload: Dict[str, Any]) -> str:
        """POST ``payload`` to the endpoint and return the response body."""
        import urllib.error
        import urllib.request

        request = urllib.request.Request(
            self._endpoint,
            data=json.dumps(payload).encode("utf-8"),
            headers={"Authorization": f"Bearer {self._api_key}", "Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout) as response:
                body = response.read()
        except TimeoutError as error:  # pragma: no cover - network-dependent
            raise LLMTransportError("Request timeout while waiting for the model.") from error
        except urllib.error.HTTPError as error:  # pragma: no cover - network-dependent
            detail = error.read().decode("utf-8", errors="ignore")
            raise LLMTransportError(_describe_http_failure(error.code, detail)) from error
        except urllib.error.URLError as error:  # pragma: no cover - network-dependent
            raise LLMTransportError(f"Network issue: failed to reach endpoint: {error.reason}") from error

        return body.decode("utf-8")

    @classmethod
    def _extract_output_text(cls, raw_response: str) -> Optional[str]:
        """Extract generated text from a responses payload."""
        if not raw_response:
            return None

        try:
            data = json.loads(raw_response)
        except json.JSONDecodeError:
            return raw_response

        if not isinstance(data, dict):
            return raw_response

        direct = data.get("output_text")
        if isinstance(direct, str) and direct.strip():
            return direct

        for container in (data.get("output"), data.get("choices")):
            text = cls._collect_text(container)
            if text:
                return text
        return None

    @staticmethod
    def _collect_text(container: Any) -> Optional[str]:
        """Concatenate text fragments found in an output or choices list."""
        if not isinstance(container, list):
            return None
        fragments: list[str] = []
        for item in container:
            if not isinstance(item, dict):
                continue
            contents = item.get("content")
            if isinstance(contents, list):
                for content_item in contents:
                    if isinstance(content_item, dict) and isinstance(content_item.get("text"), str):
                        fragments.append(content_item["text"])
            message = item.get("message")
            if isinstance(message, dict) and isinstance(message.get("content"), str):
                fragments.append(message["content"])
        text = "".join(fragments)
        return text if text.strip() else None


def _describe_http_failure(status: int, body: str) -> str:
    """Phrase HTTP failures so transient ones are recognisable downstream."""
    snippet = body[:200]
    if status == 429:
        return f"Rate limit exceeded (HTTP 429): {snippet}"
    if status in (500, 502, 503):
        return f"AI service unavailable (HTTP {status}): {snippet}"
    if status == 529:
        return f"Model overloaded (HTTP {status}): {snippet}"
    if status == 504:
        return f"Gateway timeout (HTTP {status}): {snippet}"
    return f"HTTP {status}: {snippet}"
