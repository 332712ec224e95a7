from __future__ import annotations

import json
import logging
import re
from typing import Any

logger = logging.getLogger(__name__)

_JSON_BLOCK = re.compile(r"```json\s*([\s\S]*?)```")
_CODE_BLOCK = re.compile(r"```\s*([\s\S]*?)```")

ACTIONABLE_PATTERNS = [
    re.compile(r"you (?:could|might|can) (?:try|explore|look into|experiment with)", re.I),
    re.compile(r"(?:try|consider) (?:running|using|implementing|adding)", re.I),
    re.compile(r"(?:next|follow.?up) (?:steps?|questions?|exercises?)", re.I),
    re.compile(r"here(?:'s| is| are) (?:an? )?(?:exercise|challenge|experiment)", re.I),
    re.compile(r"\b[1-3]\.\s+(?:try|explore|what if|consider|how about)", re.I),
    re.compile(r"to (?:deepen|further|continue) your understanding", re.I),
    re.compile(r"(?:practice|hands-?on) exercise", re.I),
]


def _loads(candidate: str, what: str, context: str | None) -> Any:
    try:
        return json.loads(candidate)
    except ValueError:
        if context:
            logger.debug("Failed to parse %s in %s", what, context)
        return None


def extract_json(text: str, context: str | None = None) -> Any:
    """Pull a JSON value out of free-form AI output.

    Tries, in order: a fenced ```json block, a fenced block that starts with
    ``{`` or ``[``, the first brace-balanced object, then the whole text.
    Returns None when nothing parses.
    """
    if not text:
        return None

    match = _JSON_BLOCK.search(text)
    if match:
        parsed = _loads(match.group(1).strip(), "json code block", context)
        if parsed is not None:
            return parsed

    match = _CODE_BLOCK.search(text)
    if match:
        block = match.group(1).strip()
        if block.startswith(("{", "[")):
            parsed = _loads(block, "generic code block", context)
            if parsed is not None:
                return parsed

    start = text.find("{")
    if start != -1:
        depth = 0
        for index in range(start, len(text)):
            if text[index] == "{":
                depth += 1
            elif text[index] == "}":
                depth -= 1
            if depth == 0:
                parsed = _loads(text[start : index + 1], "extracted object", context)
                if parsed is not None:
                    return parsed
                break

    parsed = _loads(text.strip(), "raw text", context)
    if parsed is None and context:
        logger.warning("No JSON found in %s", context)
    return parsed


def detect_actionable_content(content: str) -> bool:
    """True when a reply suggests follow-ups such as exercises or next steps."""
    return any(pattern.search(content) for pattern in ACTIONABLE_PATTERNS)


FEEDBACK_MARKER = "---FEEDBACK---"
FEEDBACK_END_MARKER = "---END FEEDBACK---"
_FEEDBACK_SECTION = re.compile(r"---FEEDBACK---\s*([\s\S]*?)(?:---END FEEDBACK---|$)")


def parse_evaluation_response(text: str) -> dict[str, Any] | None:
    """Full evaluation result from a finished reply, or None when it has no JSON."""
    parsed = extract_json(text)
    if not isinstance(parsed, dict):
        return None

    feedback = parsed.get("feedback") or ""
    match = _FEEDBACK_SECTION.search(text)
    if match and match.group(1).strip():
        feedback = match.group(1).strip()

    result: dict[str, Any] = {
        "isCorrect": bool(parsed.get("isCorrect", False)),
        "feedback": feedback or "Unable to provide detailed feedback.",
        "strengths": parsed.get("strengths") or [],
        "improvements": parsed.get("improvements") or [],
    }
    for key in ("score", "nextSteps"):
        if parsed.get(key) is not None:
            result[key] = parsed[key]
    return result


def parse_partial_evaluation(text: str) -> dict[str, Any] | None:
    """The metadata block of a reply still streaming, once it is complete JSON."""
    parsed = extract_json(text)
    if not isinstance(parsed, dict) or "isCorrect" not in parsed:
        return None
    partial: dict[str, Any] = {
        "isCorrect": bool(parsed["isCorrect"]),
        "strengths": parsed.get("strengths") or [],
        "improvements": parsed.get("improvements") or [],
    }
    for key in ("score", "nextSteps"):
        if parsed.get(key) is not None:
            partial[key] = parsed[key]
    return partial


def extract_streaming_feedback(text: str) -> str:
    """Feedback text after the marker so far; empty until the marker arrives."""
    start = text.find(FEEDBACK_MARKER)
    if start == -1:
        return ""
    after = text[start + len(FEEDBACK_MARKER) :]
    end = after.find(FEEDBACK_END_MARKER)
    return (after if end == -1 else after[:end]).strip()
