"""Helpers for parsing and repairing JSON from LLM outputs."""

from __future__ import annotations

import json
import re
from typing import Callable, Dict, Optional

CODE_FENCE_RE = re.compile(r"^\s*```(?:json)?\s*|\s*```\s*$", re.IGNORECASE | re.MULTILINE)
LINE_COMMENT_RE = re.compile(r"(?m)^\s*//.*?$")
BLOCK_COMMENT_RE = re.compile(r"/\*.*?\*/", re.DOTALL)
TRAILING_COMMA_RE = re.compile(r",(\s*[}\]])")

SUMMARY_TEXT_RE = re.compile(r"summary[:\s]*([\s\S]*?)(?=mermaid|$)", re.IGNORECASE)
MERMAID_TEXT_RE = re.compile(r"mermaid[:\s]*([\s\S]*?)(?=\n\n|$)", re.IGNORECASE)


def strip_code_fences(text: str) -> str:
    """Remove Markdown code fences from text."""
    return CODE_FENCE_RE.sub("", text).strip()


def strip_json_comments(text: str) -> str:
    text = BLOCK_COMMENT_RE.sub("", text)
    return LINE_COMMENT_RE.sub("", text)


def remove_trailing_commas(text: str) -> str:
    prev = None
    while prev != text:
        prev = text
        text = TRAILING_COMMA_RE.sub(r"\1", text)
    return text


def extract_first_object(text: str) -> Optional[str]:
    """Extract the first balanced JSON object, respecting quoted strings."""
    start = text.find("{")
    if start == -1:
        return None

    depth = 0
    in_str = False
    esc = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_str:
            if esc:
                esc = False
            elif ch == "\\":
                esc = True
            elif ch == '"':
                in_str = False
            continue
        if ch == '"':
            in_str = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start:i + 1]
    return None


def best_effort_json_text(raw: str) -> Optional[str]:
    s = strip_code_fences(raw)
    s = strip_json_comments(s).strip()
    extracted = extract_first_object(s)
    if extracted:
        s = extracted
    s = remove_trailing_commas(s)
    return s if s else None


def _loads_object(text: str) -> Optional[dict]:
    try:
        value = json.loads(text)
    except ValueError:
        return None
    return value if isinstance(value, dict) else None


def parse_json_object(raw: str) -> Optional[dict]:
    """Parse ``raw`` directly, then after light clean-up; None when neither works."""
    parsed = _loads_object(raw)
    if parsed is not None:
        return parsed
    cleaned = best_effort_json_text(raw)
    if cleaned:
        return _loads_object(cleaned)
    return None


def parse_or_repair_json(
    raw: str,
    repair: Optional[Callable[[str], str]] = None,
    *,
    log: Optional[Callable[[str], None]] = None,
) -> Optional[dict]:
    """Parse JSON directly or fall back to one repair round trip.

    ``repair`` receives the raw reply and returns the model's corrected text.
    """
    parsed = parse_json_object(raw)
    if parsed is not None or repair is None:
        return parsed

    if log is not None:
        log("[LLM] reply was not valid JSON, requesting repair")
    repaired = repair(raw)
    return parse_json_object(repaired)


def extract_labelled_text(raw: str) -> Dict[str, str]:
    """Pull ``summary``/``mermaid_content`` out of a free-text reply."""
    summary_m = SUMMARY_TEXT_RE.search(raw)
    mermaid_m = MERMAID_TEXT_RE.search(raw)
    summary = summary_m.group(1).strip() if summary_m else ""
    return {
        "summary": summary or raw.strip(),
        "mermaid_content": mermaid_m.group(1).strip() if mermaid_m else "",
    }
