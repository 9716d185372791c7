"""
Structured LLM calls with a tagged result.

`invoke_structured` returns exactly one of:
  - Structured(value): the model produced output matching the schema
  - RawText(text):     the model answered, but not in the schema's shape
  - Failed(error):     the call itself failed

Callers decide whether to try the second-pass parsers below
(`extract_json_array`, `extract_json_object`); they are only meant for the
RawText / Failed cases.
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Generic, Optional, TypeVar, Union

logger = logging.getLogger(__name__)

T = TypeVar("T")

_ARRAY_RE = re.compile(r"\[.*?\]", re.DOTALL)
_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)


@dataclass(frozen=True)
class Structured(Generic[T]):
    value: T


@dataclass(frozen=True)
class RawText:
    text: str


@dataclass(frozen=True)
class Failed:
    error: BaseException


StructuredResult = Union[Structured, RawText, Failed]


def message_text(message) -> str:
    """Plain text of an LLM response (string or content-block list)."""
    if message is None:
        return ""
    content = getattr(message, "content", message)
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict) and block.get("type") == "text":
                parts.append(block.get("text", ""))
        return "".join(parts)
    return str(content)


def invoke_structured(llm, schema, messages: list, name: str) -> StructuredResult:
    """Call `llm` with structured output for `schema` (a pydantic model)."""
    try:
        runnable = llm.with_structured_output(schema, name=name, include_raw=True)
        output = runnable.invoke(messages)
    except Exception as e:
        return Failed(e)

    if isinstance(output, schema):
        return Structured(output)
    if not isinstance(output, dict):
        return Failed(TypeError(f"Unexpected structured output: {type(output).__name__}"))

    parsed = output.get("parsed")
    if parsed is not None:
        if isinstance(parsed, dict):
            try:
                parsed = schema.model_validate(parsed)
            except Exception as e:
                return Failed(e)
        return Structured(parsed)

    text = message_text(output.get("raw"))
    if text.strip():
        return RawText(text)
    return Failed(output.get("parsing_error") or ValueError("Empty structured output"))


def invoke_text(llm, messages: list) -> str:
    """Plain completion; returns the response text."""
    return message_text(llm.invoke(messages))


def extract_json_array(raw: str) -> Optional[list]:
    """
    Find a JSON array in model output (bare, in a code block, or inline).

    Returns None when no array can be parsed.
    """
    raw = (raw or "").strip()
    candidates = [raw] if raw.startswith("[") else []
    candidates.extend(m.group() for m in _ARRAY_RE.finditer(raw))
    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(parsed, list):
            return parsed
    return None


def extract_json_object(raw: str) -> Optional[dict[str, Any]]:
    """Find the outermost JSON object in model output, or None."""
    match = _OBJECT_RE.search(raw or "")
    if not match:
        return None
    try:
        parsed = json.loads(match.group())
    except ValueError:
        return None
    return parsed if isinstance(parsed, dict) else None


def clean_strings(items) -> list[str]:
    """Keep non-blank strings, stripped, first occurrence only."""
    result = []
    seen = set()
    for item in items or []:
        if not isinstance(item, str):
            continue
        text = item.strip()
        if text and text not in seen:
            seen.add(text)
            result.append(text)
    return result
