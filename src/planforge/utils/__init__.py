"""Small helpers shared across planforge modules."""

from .json_payload import (
    JsonPayloadError,
    escape_control_characters,
    extract_json_object,
    normalise_json_string,
    strip_code_fence,
    strip_trailing_commas,
)
from .slug import slugify

__all__ = [
    "JsonPayloadError",
    "escape_control_characters",
    "extract_json_object",
    "normalise_json_string",
    "slugify",
    "strip_code_fence",
    "strip_trailing_commas",
]
