"""Extraction, repair, and completeness validation of model output.

The model is asked for one JSON object mapping file paths to file contents, but
what comes back is often wrapped in prose or code fences, and the file contents
frequently contain raw newlines and quotes that break JSON parsing.

Pipeline:
- Stage A: extract the JSON-looking payload from the raw text.
- Stage B: parse it directly.
- Stage C: on parse failure, tokenize ``"path.ext": "content"`` entries and
  re-serialize them canonically.
- Stage D: require the four sentinel files of a runnable Vue/Vite project.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from .models import ValidationResult

logger = logging.getLogger(__name__)

REQUIRED_FILES: tuple[str, ...] = ("package.json", "index.html", "src/main.js", "src/App.vue")
RECOGNIZED_EXTENSIONS: tuple[str, ...] = (
    "json",
    "js",
    "mjs",
    "cjs",
    "jsx",
    "ts",
    "tsx",
    "vue",
    "html",
    "css",
    "scss",
    "less",
    "md",
    "txt",
    "svg",
)

_JSON_FENCE_RE = re.compile(r"```json\s*(.*?)\s*```", re.DOTALL | re.IGNORECASE)
_ANY_FENCE_RE = re.compile(r"```[A-Za-z0-9_-]*\s*(.*?)\s*```", re.DOTALL)
# Content is a raw run of non-quote/non-backslash characters or escaped pairs,
# so embedded raw newlines and braces are tolerated.
_FILE_ENTRY_RE = re.compile(
    r'"([^"\n]+\.(?:' + "|".join(RECOGNIZED_EXTENSIONS) + r'))"\s*:\s*"((?:[^"\\]|\\.)*)"',
    re.DOTALL,
)
_ESCAPE_PAIR_RE = re.compile(r"\\(u[0-9a-fA-F]{4}|.)", re.DOTALL)
_ESCAPE_MAP = {
    '"': '"',
    "\\": "\\",
    "/": "/",
    "n": "\n",
    "r": "\r",
    "t": "\t",
    "b": "\b",
    "f": "\f",
}
_STRAY_CONTROL_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f-\x9f]")
_MAX_ENTRIES = 500


def extract_json_payload(text: str) -> str:
    """Stage A: return the most JSON-looking slice of ``text`` (or ``text`` itself)."""
    stripped = text.strip()
    if stripped.startswith("{"):
        return stripped

    fenced = _JSON_FENCE_RE.search(text)
    if fenced and fenced.group(1).strip():
        return fenced.group(1).strip()

    for match in _ANY_FENCE_RE.finditer(text):
        candidate = match.group(1).strip()
        if candidate.startswith("{"):
            return candidate

    first = text.find("{")
    last = text.rfind("}")
    if first != -1 and last > first:
        return text[first : last + 1]

    logger.warning("repair event=extract_failed chars=%d", len(text))
    return text


def scan_file_entries(text: str) -> list[tuple[str, str]]:
    """Tokenizer pass: locate ``"path.ext": "raw content"`` pairs, content still escaped."""
    entries: list[tuple[str, str]] = []
    for match in _FILE_ENTRY_RE.finditer(text):
        entries.append((match.group(1), match.group(2)))
        if len(entries) >= _MAX_ENTRIES:
            logger.warning("repair event=entry_cap_reached cap=%d", _MAX_ENTRIES)
            break
    return entries


def unescape_content(raw: str) -> str:
    """Undo JSON-style escapes in one left-to-right pass; unknown escapes stay literal."""
    return _ESCAPE_PAIR_RE.sub(_unescape_pair, raw)


def _unescape_pair(match: re.Match[str]) -> str:
    escaped = match.group(1)
    if len(escaped) == 5:
        return chr(int(escaped[1:], 16))
    return _ESCAPE_MAP.get(escaped, match.group(0))


def escape_content(value: str) -> str:
    """Escape text for a JSON string literal: backslash first, then quote, newline, CR, tab."""
    escaped = (
        value.replace("\\", "\\\\")
        .replace('"', '\\"')
        .replace("\n", "\\n")
        .replace("\r", "\\r")
        .replace("\t", "\\t")
    )
    return _STRAY_CONTROL_RE.sub(lambda match: f"\\u{ord(match.group(0)):04x}", escaped)


def repair_json_payload(text: str) -> tuple[str, int]:
    """Stage C: rebuild a syntactically valid JSON object from recognizable file entries.

    Returns the rebuilt text and the number of entries recovered. With zero
    entries a last-resort cleanup is returned instead, which may still not parse.
    """
    entries = scan_file_entries(text)
    if entries:
        rebuilt: dict[str, str] = {}
        for path, raw_content in entries:
            rebuilt[escape_content(unescape_content(path))] = escape_content(
                unescape_content(raw_content)
            )
        body = ",\n  ".join(f'"{path}": "{content}"' for path, content in rebuilt.items())
        logger.info("repair event=rebuilt entries=%d", len(rebuilt))
        return "{\n  " + body + "\n}", len(rebuilt)

    logger.warning("repair event=no_entries action=last_resort")
    # Quotes are left alone: without entry boundaries there is no telling
    # structural quotes from ones inside values.
    cleaned = _STRAY_CONTROL_RE.sub("", text)
    cleaned = cleaned.replace("\r", "\\r").replace("\n", "\\n").replace("\t", "\\t")
    return cleaned, 0


def check_required_files(file_map: dict[str, str]) -> str | None:
    """Stage D: return the first missing sentinel, matched as a key substring."""
    paths = list(file_map)
    for required in REQUIRED_FILES:
        if not any(required in path for path in paths):
            return required
    return None


def coerce_file_map(parsed: Any) -> dict[str, str] | None:
    """Normalize a parsed JSON value into ``path -> text``; None when not an object."""
    if not isinstance(parsed, dict):
        return None
    files: dict[str, str] = {}
    for path, content in parsed.items():
        key = str(path).replace("\\", "/")
        if isinstance(content, str):
            files[key] = content
        elif content is None:
            files[key] = ""
        else:
            # e.g. package.json emitted as a nested object instead of a string.
            files[key] = json.dumps(content, indent=2, ensure_ascii=False)
    return files


def parse_file_map(text: str | None) -> dict[str, str] | None:
    """Best-effort parse of already-cleaned text; None when it does not parse."""
    if not text:
        return None
    try:
        return coerce_file_map(json.loads(text))
    except json.JSONDecodeError:
        return None


def validate_generated_code(raw: str) -> ValidationResult:
    """Run extraction, parse, repair, and completeness checks on one model response."""
    extracted = extract_json_payload(raw)
    cleaned_code = extracted if extracted != raw else None
    repaired = False

    try:
        parsed: Any = json.loads(extracted)
    except json.JSONDecodeError as exc:
        logger.info(
            "repair event=direct_parse_failed line=%d col=%d reason=%s",
            exc.lineno,
            exc.colno,
            exc.msg,
        )
        candidate, entry_count = repair_json_payload(extracted)
        if candidate != raw:
            cleaned_code = candidate
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError as repair_exc:
            logger.warning("repair event=repair_failed reason=%s", repair_exc.msg)
            return ValidationResult(
                valid=False,
                cleaned_code=cleaned_code,
                error=f"invalid code format: {repair_exc.msg}",
            )
        repaired = entry_count > 0

    file_map = coerce_file_map(parsed)
    if file_map is None:
        return ValidationResult(
            valid=False,
            cleaned_code=cleaned_code,
            error="generated payload is not a JSON object",
            repaired=repaired,
        )

    missing = check_required_files(file_map)
    if missing is not None:
        logger.warning("repair event=missing_artifact name=%s files=%d", missing, len(file_map))
        return ValidationResult(
            valid=False,
            cleaned_code=cleaned_code,
            error=f"missing required artifact: {missing}",
            repaired=repaired,
        )

    return ValidationResult(
        valid=True,
        parsed_code=file_map,
        cleaned_code=cleaned_code,
        repaired=repaired,
    )
