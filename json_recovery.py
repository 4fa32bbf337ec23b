"""
json_recovery.py - Pull a JSON object out of free-form model text.

Vision and text models are asked for "JSON only" but routinely wrap it in
markdown fences or add a sentence before it. Parsing is an ordered list of
strategies; each returns a dict or None and the first dict wins:

    1. fenced block      ```json { ... } ```  or  ``` { ... } ```
    2. bare object       first balanced top-level { ... } span
    3. give up           -> JSONRecoveryError
"""

from __future__ import annotations

import json
import re
from typing import Any, Callable, Optional

from logging_config import get_logger

logger = get_logger(__name__)

_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*(.*?)```", re.DOTALL)


class JSONRecoveryError(ValueError):
    """No strategy produced a JSON object."""


def _as_object(candidate: str) -> Optional[dict[str, Any]]:
    try:
        parsed = json.loads(candidate)
    except (json.JSONDecodeError, TypeError):
        return None
    return parsed if isinstance(parsed, dict) else None


def _fenced_block(text: str) -> Optional[dict[str, Any]]:
    for match in _FENCE_RE.finditer(text):
        parsed = _as_object(match.group(1).strip())
        if parsed is not None:
            return parsed
    return None


def _balanced_span(text: str, start: int) -> Optional[str]:
    """Return text[start:end] for the object opening at `start`, skipping braces inside strings."""
    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        ch = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start : index + 1]
    return None


def _bare_object(text: str) -> Optional[dict[str, Any]]:
    start = text.find("{")
    while start != -1:
        span = _balanced_span(text, start)
        if span is None:
            return None
        parsed = _as_object(span)
        if parsed is not None:
            return parsed
        start = text.find("{", start + 1)
    return None


STRATEGIES: tuple[tuple[str, Callable[[str], Optional[dict[str, Any]]]], ...] = (
    ("fenced", _fenced_block),
    ("bare", _bare_object),
)


def recover_json(text: Optional[str]) -> dict[str, Any]:
    """Return the first JSON object found in `text`.

    Raises:
        JSONRecoveryError: when the text is empty or no strategy succeeds.
    """
    if text is None or not str(text).strip():
        raise JSONRecoveryError("model response is empty")

    body = str(text)
    for name, strategy in STRATEGIES:
        parsed = strategy(body)
        if parsed is not None:
            logger.debug("json_recovered | strategy=%s | keys=%s", name, sorted(parsed))
            return parsed

    preview = body.strip().replace("\n", " ")[:120]
    raise JSONRecoveryError(f"no JSON object found in model response: {preview!r}")


def try_recover_json(text: Optional[str]) -> Optional[dict[str, Any]]:
    """Like `recover_json` but returns None instead of raising."""
    try:
        return recover_json(text)
    except JSONRecoveryError:
        return None
