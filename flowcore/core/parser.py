"""Structured output parsing for model responses.

Model backends return free text. The payload is taken from, in order:
1. The last fenced ```json block
2. The outermost {...} span in the text

Reasoning blocks (<think>...</think>) are removed first so JSON-looking
scratch work is never picked up.
"""

import json
import re
from typing import TypeVar

from pydantic import BaseModel, ValidationError

_FENCED_JSON = re.compile(r"```json\s*([\s\S]*?)\s*```")
_BRACED_SPAN = re.compile(r"\{[\s\S]*\}")
_THINK_BLOCK = re.compile(r"<think>[\s\S]*?</think>", re.IGNORECASE)


class ParsingError(Exception):
    """Failed to find a JSON payload in a model response."""

    pass


class InvalidOutputError(Exception):
    """Model output doesn't match the expected schema."""

    pass


T = TypeVar("T", bound=BaseModel)


def strip_reasoning(raw_output: str) -> str:
    """Remove <think> blocks emitted by reasoning models."""
    return _THINK_BLOCK.sub("", raw_output).strip()


def extract_json_block(raw_output: str) -> str | None:
    """Extract the last fenced ```json block, if any."""
    matches = _FENCED_JSON.findall(raw_output)
    if not matches:
        return None
    return matches[-1].strip()


def extract_json_text(raw_output: str) -> str | None:
    """Extract a JSON object from free text: fenced block first, then braces."""
    text = strip_reasoning(raw_output)
    block = extract_json_block(text)
    if block:
        return block
    match = _BRACED_SPAN.search(text)
    if match:
        return match.group(0)
    return None


def parse_model_output(raw_output: str, schema: type[T]) -> T:
    """Extract and validate structured output from a model response.

    Raises:
        ParsingError: If no JSON payload is found or it is not valid JSON
        InvalidOutputError: If JSON doesn't match schema
    """
    json_str = extract_json_text(raw_output)
    if not json_str:
        raise ParsingError("No JSON object found in model output.")

    try:
        return schema.model_validate_json(json_str)
    except ValidationError as e:
        # Pydantic ValidationError includes JSON syntax errors (type=json_invalid)
        error_str = str(e)
        if "json_invalid" in error_str.lower() or "invalid json" in error_str.lower():
            raise ParsingError(f"Invalid JSON in output: {e}")
        raise InvalidOutputError(f"Output doesn't match {schema.__name__} schema: {e}")
    except json.JSONDecodeError as e:
        raise ParsingError(f"Invalid JSON in output: {e}")
