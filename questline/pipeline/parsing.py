"""Model output parsing: code fences, JSON repair, hidden state reports."""

import json
import logging
import re
from typing import Any

from questline.prompts import STATE_REPORT_END, STATE_REPORT_START

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```(?:json)?\s*\n?([\s\S]*?)\n?```")
_REPORT_RE = re.compile(
    re.escape(STATE_REPORT_START) + r"\s*([\s\S]*?)\s*" + re.escape(STATE_REPORT_END)
)
# An opening delimiter the model never closed hides everything after it.
_DANGLING_RE = re.compile(re.escape(STATE_REPORT_START) + r"[\s\S]*$")


def strip_code_fences(text: str) -> str:
    """Return the body of the first ``` fence, or the trimmed text."""
    text = (text or "").strip()
    match = _FENCE_RE.search(text)
    if match:
        return match.group(1).strip()
    return text


def extract_json_object(raw: str) -> dict[str, Any] | None:
    """Find the first complete JSON object in raw text by brace matching.

    String literals (and escapes inside them) are skipped, so braces in
    narrative text do not unbalance the scan.
    """
    start = raw.find("{")
    if start == -1:
        return None
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(raw)):
        ch = raw[i]
        if escaped:
            escaped = False
            continue
        if ch == "\\":
            escaped = True
            continue
        if ch == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                try:
                    parsed = json.loads(raw[start:i + 1])
                except ValueError:
                    return None
                return parsed if isinstance(parsed, dict) else None
    return None


def parse_json_response(content: str, repair: bool = False) -> dict[str, Any] | None:
    """Parse a model's JSON reply. Returns None when it cannot be parsed.

    With `repair`, a reply with prose around the object is recovered by
    brace matching.
    """
    text = strip_code_fences(content)
    try:
        parsed = json.loads(text)
    except ValueError:
        if not repair:
            return None
        logger.warning("JSON parse failed, attempting repair")
        parsed = extract_json_object(text)
        if parsed is None:
            logger.error("JSON repair failed: %.200s", content)
        return parsed
    return parsed if isinstance(parsed, dict) else None


def extract_state_report(text: str) -> tuple[str, dict[str, Any] | None]:
    """Split narrator output into (visible narrative, state report).

    Every delimited block is removed from the narrative. The report is the
    first block's JSON; an unparseable block is logged and dropped.
    """
    report = None
    match = _REPORT_RE.search(text or "")
    if match:
        body = strip_code_fences(match.group(1))
        try:
            parsed = json.loads(body)
        except ValueError:
            logger.warning("Unparseable state report dropped: %.200s", body)
        else:
            if isinstance(parsed, dict):
                report = parsed
    clean = _REPORT_RE.sub("", text or "")
    clean = _DANGLING_RE.sub("", clean)
    clean = clean.replace(STATE_REPORT_END, "")
    return clean.strip(), report
