"""Recover a JSON object from free-form LLM output.

Model responses are supposed to be a single JSON object but arrive wrapped in
markdown fences, preceded by prose, or cut off by the output token limit.
``extract_json`` never raises; ``parse_llm_json`` is the strict entry point
that turns an unrecoverable response into :class:`LLMOutputError`.
"""

from __future__ import annotations

import json
import re
from typing import Any, Dict, List, Optional

from json_repair import repair_json

from core.logging import get_logger

logger = get_logger(__name__)

RAW_EXCERPT_LENGTH = 300

_FENCED_BLOCK = re.compile(r"```(?:json)?\s*([\s\S]*?)```")
_DANGLING_KEY = re.compile(r',\s*"[^"]*"\s*:\s*$')
_INCOMPLETE_KEY = re.compile(r',\s*"[^"]*$')
_TRAILING_COMMA = re.compile(r",\s*$")

_CLOSERS = {"{": "}", "[": "]"}


class LLMOutputError(ValueError):
    """Raised when model output cannot be turned into a JSON object."""

    def __init__(self, message: str, *, raw_excerpt: str = "") -> None:
        super().__init__(message)
        self.raw_excerpt = raw_excerpt

    def to_detail(self) -> Dict[str, str]:
        return {"message": str(self), "raw_excerpt": self.raw_excerpt}


def _is_valid_json(text: str) -> bool:
    try:
        json.loads(text)
    except ValueError:
        return False
    return True


def extract_matching_braces(text: str, start: int) -> str:
    """Slice from ``start`` through the brace closing it, or to the end when truncated."""

    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if escaped:
            escaped = False
            continue
        if char == "\\":
            escaped = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return text[start : index + 1]
    return text[start:].strip()


def close_json(text: str) -> str:
    """Balance truncated JSON: drop the dangling tail, close the open string, then close openers LIFO."""

    trimmed = _DANGLING_KEY.sub("", text)
    trimmed = _INCOMPLETE_KEY.sub("", trimmed)
    trimmed = _TRAILING_COMMA.sub("", trimmed)

    stack: List[str] = []
    in_string = False
    escaped = False
    for char in trimmed:
        if escaped:
            escaped = False
            continue
        if char == "\\":
            escaped = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if char in _CLOSERS:
            stack.append(char)
        elif char in ("}", "]") and stack:
            stack.pop()

    if in_string:
        trimmed += '"'
    while stack:
        trimmed += _CLOSERS[stack.pop()]
    return trimmed


def _library_repair(text: str) -> Optional[str]:
    """Last resort for malformed JSON that brace balancing cannot fix, e.g. single quotes."""
    try:
        repaired = repair_json(text)
    except Exception as exc:
        logger.warning("json_repair failed on LLM output: %s", exc)
        return None
    if not isinstance(repaired, str):
        return None
    try:
        decoded = json.loads(repaired)
    except ValueError:
        return None
    if not isinstance(decoded, dict) or not decoded:
        return None
    return repaired


def _from_fenced_block(text: str) -> Optional[str]:
    match = _FENCED_BLOCK.search(text)
    if not match or not match.group(1):
        return None
    content = match.group(1).strip()
    if _is_valid_json(content):
        return content
    repaired = close_json(content)
    if _is_valid_json(repaired):
        logger.warning("Fenced JSON block was malformed; returning repaired content.")
        return repaired
    repaired = _library_repair(content)
    if repaired is not None:
        logger.warning("Fenced JSON block was malformed; returning library-repaired content.")
        return repaired
    logger.warning("Fenced JSON block unrecoverable; falling back to brace matching.")
    return None


def extract_json(text: str) -> str:
    """Best-effort JSON document from model text. Never raises."""

    fenced = _from_fenced_block(text)
    if fenced is not None:
        return fenced

    first_brace = text.find("{")
    if first_brace == -1:
        return text.strip()

    candidate = extract_matching_braces(text, first_brace)
    if _is_valid_json(candidate):
        return candidate

    logger.warning("LLM response truncated; closing JSON (%d chars). Data may be incomplete.", len(candidate))
    closed = close_json(candidate)
    if _is_valid_json(closed):
        return closed
    repaired = _library_repair(candidate)
    if repaired is not None:
        logger.warning("Closing braces was not enough; returning library-repaired JSON.")
        return repaired
    return closed


def parse_llm_json(text: Optional[str]) -> Dict[str, Any]:
    """Extract, repair and decode a JSON object, raising ``LLMOutputError`` when impossible."""

    raw = text or ""
    excerpt = raw[:RAW_EXCERPT_LENGTH]
    candidate = extract_json(raw)
    try:
        payload = json.loads(candidate)
    except ValueError as exc:
        raise LLMOutputError(f"LLM output is not valid JSON: {exc}", raw_excerpt=excerpt) from exc
    if not isinstance(payload, dict):
        raise LLMOutputError(
            f"LLM output decoded to {type(payload).__name__}, expected object",
            raw_excerpt=excerpt,
        )
    return payload


__all__ = [
    "LLMOutputError",
    "RAW_EXCERPT_LENGTH",
    "close_json",
    "extract_json",
    "extract_matching_braces",
    "parse_llm_json",
]
