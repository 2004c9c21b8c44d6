"""Content-generation client base class shared by all language-model integrations."""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Sequence

from ..cancellation import CancellationToken

__all__ = [
    "ChunkCallback",
    "GenerationRequest",
    "LLMClient",
    "LLMClientError",
    "LLMResponseFormatError",
    "LLMRetryError",
    "LLMTransportError",
]

ChunkCallback = Callable[[str], None]


class LLMClientError(RuntimeError):
    """Base error raised for content-generation client failures."""


class LLMTransportError(LLMClientError):
    """Raised when the underlying transport fails to return a response."""


class LLMResponseFormatError(LLMClientError):
    """Raised when the model returns an empty or unreadable payload."""


class LLMRetryError(LLMClientError):
    """Raised after exhausting retries due to repeated transport or format failures."""


@dataclass(slots=True)
class GenerationRequest:
    """Text-generation request sent to a model."""

    prompt_parts: Sequence[str]
    model: Optional[str] = None
    system_instruction: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    temperature: float = 0.0

    @property
    def prompt(self) -> str:
        return "\n\n".join(part for part in self.prompt_parts if part and part.strip())

    def to_payload(self, default_model: str) -> Dict[str, Any]:
        """Render a transport-ready payload for a responses-style API."""

        def _message(role: str, text: str) -> Dict[str, Any]:
            return {"role": role, "content": [{"type": "input_text", "text": text}]}

        messages: list[Dict[str, Any]] = []
        if self.system_instruction:
            messages.append(_message("system", self.system_instruction))
        messages.append(_message("user", self.prompt))

        payload: Dict[str, Any] = {"model": self.model or default_model, "input": messages}
        if self.temperature not in (None, 0.0):
            payload["temperature"] = self.temperature
        if self.metadata:
            max_metadata_len = 512
            serialised: Dict[str, str] = {}
            for key, value in self.metadata.items():
                formatted = value if isinstance(value, str) else json.dumps(value, separators=(",", ":"), sort_keys=True)
                if len(formatted) > max_metadata_len:
                    formatted = f"{formatted[: max_metadata_len - 3]}..."
                serialised[key] = formatted
            payload["metadata"] = serialised
        return payload


class LLMClient:
    """High-level helper that retries transport failures and rejects empty output."""

    def __init__(self, model: str, *, max_attempts: int = 3, retry_delay: float = 0.5) -> None:
        self._model = model
        self._max_attempts = max(1, max_attempts)
        self._retry_delay = retry_delay

    @property
    def model(self) -> str:
        """Return the default model name configured for this client."""
        return self._model

    def generate(
        self,
        prompt_parts: Sequence[str],
        *,
        model: Optional[str] = None,
        system_instruction: Optional[str] = None,
        on_chunk: Optional[ChunkCallback] = None,
        cancellation: Optional[CancellationToken] = None,
    ) -> str:
        """Generate text for ``prompt_parts``; satisfies the content-generation contract."""
        request = GenerationRequest(
            prompt_parts=list(prompt_parts),
            model=model,
            system_instruction=system_instruction,
        )
        return self.complete(request, on_chunk=on_chunk, cancellation=cancellation)

    def complete(
        self,
        request: GenerationRequest,
        *,
        on_chunk: Optional[ChunkCallback] = None,
        cancellation: Optional[CancellationToken] = None,
    ) -> str:
        """Invoke the model, retrying transport and format failures."""
        last_error: Optional[Exception] = None
        payload = request.to_payload(self._model)

        for attempt in range(1, self._max_attempts + 1):
            if cancellation is not None:
                cancellation.raise_if_cancelled()
            try:
                text = self._raw_invoke(payload, on_chunk=on_chunk)
                if not text or not text.strip():
                    raise LLMResponseFormatError("Model returned an empty response.")
                return text
            except (LLMTransportError, LLMResponseFormatError) as error:
                last_error = error
                if attempt >= self._max_attempts:
                    break
                if cancellation is not None:
                    cancellation.sleep(self._retry_delay)
                else:
                    time.sleep(self._retry_delay)

        raise LLMRetryError(
            f"Failed to produce a response after {self._max_attempts} attempt(s) for model "
            f"{request.model or self._model}: {last_error}"
        ) from last_error

    def _raw_invoke(self, payload: Dict[str, Any], *, on_chunk: Optional[ChunkCallback] = None) -> str:
        """Perform the transport call. Subclasses must implement."""
        raise NotImplementedError("Subclasses must implement _raw_invoke().")
