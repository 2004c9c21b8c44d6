"""Convenience exports for planforge content-generation clients."""

from .llm_client import (
    GenerationRequest,
    LLMClient,
    LLMClientError,
    LLMResponseFormatError,
    LLMRetryError,
    LLMTransportError,
)
from .responses import ResponsesClient

__all__ = [
    "GenerationRequest",
    "LLMClient",
    "LLMClientError",
    "LLMResponseFormatError",
    "LLMRetryError",
    "LLMTransportError",
    "ResponsesClient",
]
