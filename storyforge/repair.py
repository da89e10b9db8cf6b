"""Tolerant parsing of structured generator output.

The generator is asked for JSON but routinely returns something else: JSON
wrapped in markdown fences or prose, JSON with trailing commas, or JSON cut
off mid-stream when it runs out of tokens. `repair()` turns any of that into
the best structured value it can, trying increasingly lenient tiers:

  1. strip fences, strict parse                           → parsed
  2. balanced-delimiter scan from the first { or [,
     strict parse of that span                            → extracted
  3. normalising rewrites on the span (bare keys,
     trailing commas), strict parse                       → normalized
  4. per-collection salvage of complete array items,
     plus complete top-level scalars                      → partial
  5. typed, explicitly flagged empty fallback             → fallback

`repair()` never raises.
"""

import copy
import enum
import json
import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

RAW_EXCERPT_LIMIT = 3000


class RepairStatus(str, enum.Enum):
    PARSED = "parsed"
    EXTRACTED = "extracted"
    NORMALIZED = "normalized"
    PARTIAL = "partial"
    FALLBACK = "fallback"


@dataclass(frozen=True)
class RepairResult:
    value: Any
    status: RepairStatus

    @property
    def repaired(self) -> bool:
        return self.status is not RepairStatus.PARSED

    @property
    def partial(self) -> bool:
        return self.status is RepairStatus.PARTIAL

    @property
    def fallback(self) -> bool:
        return self.status is RepairStatus.FALLBACK


# ---------------------------------------------------------------------------
# Fallback shapes, keyed by the stage that expects them
# ---------------------------------------------------------------------------

FALLBACK_SHAPES: dict[str, dict[str, Any]] = {
    "classification": {
        "genre": "unknown",
        "themes": [],
        "mainConflict": "Unable to analyze - parsing failed",
        "setting": "unknown",
        "timePeriod": "unknown",
    },
    "extraction": {
        "characters": [],
        "locations": [],
        "objects": [],
        "events": [],
        "relationships": [],
        "plotThreads": [],
    },
    "timeline": {
        "chronologicalEvents": [],
        "flashbacks": [],
        "flashForwards": [],
        "causalChains": [],
        "temporalIssues": [],
        "storyDuration": "Unable to determine - parsing failed",
        "narrativePace": "Unable to analyze - parsing failed",
    },
    "validation": {
        "contradictions": [],
        "intentionalChoices": [],
        "errors": [],
        "warnings": ["Failed to parse AI response properly"],
        "continuityScore": 0,
        "recommendations": ["Please try running the analysis again"],
    },
    "suggestions": {
        "sceneSuggestions": [],
        "plotDevelopments": [],
        "dialogueImprovements": [],
        "characterArcGuidance": [],
        "themeReinforcements": [],
        "alternativeScenarios": [],
    },
    "chapter": {
        "characters": [],
        "locations": [],
        "objects": [],
        "events": [],
        "relationships": [],
        "plotThreads": [],
        "stateChanges": [],
        "temporalMarkers": [],
        "summary": "",
    },
}

# Checked in order; the first shape with a keyword present in the raw text wins.
_SHAPE_KEYWORDS: list[tuple[str, tuple[str, ...]]] = [
    ("timeline", ("chronological", "timeline", "temporal", "flashback")),
    ("validation", ("contradiction", "continuity")),
    ("suggestions", ("suggestion", "plotdevelopment", "dialogueimprovement")),
    ("extraction", ("characters", "locations", "relationships", "plotthreads")),
    ("classification", ("genre", "themes", "narrativestructure")),
]

DEFAULT_COLLECTIONS: tuple[str, ...] = tuple(dict.fromkeys(
    key
    for shape in FALLBACK_SHAPES.values()
    for key, value in shape.items()
    if isinstance(value, list)
))


def infer_shape(raw: str) -> str | None:
    """Guess which stage a raw response was meant for from its keywords."""
    lowered = raw.lower().replace("_", "").replace(" ", "")
    for shape, keywords in _SHAPE_KEYWORDS:
        if any(k in lowered for k in keywords):
            return shape
    return None


def excerpt(raw: str, limit: int = RAW_EXCERPT_LIMIT) -> str:
    if len(raw) > limit:
        return raw[:limit] + "...[truncated]"
    return raw


def fallback_value(raw: str, expected: str | None = None) -> dict[str, Any]:
    """Build an explicitly flagged, structurally valid empty value."""
    shape = expected if expected in FALLBACK_SHAPES else infer_shape(raw)
    if shape is None:
        value: dict[str, Any] = {"error": "Failed to parse response"}
        message = "The generator returned an unexpected response format."
    else:
        value = copy.deepcopy(FALLBACK_SHAPES[shape])
        message = "The generator returned an incomplete or malformed JSON response."
    value["_parse_error"] = True
    value["_error_message"] = message
    value["_raw_response"] = excerpt(raw)
    return value


# ---------------------------------------------------------------------------
# Scanning helpers
# ---------------------------------------------------------------------------

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)


def strip_fences(text: str) -> str:
    """Remove markdown code fences, including an unclosed opening fence."""
    cleaned = text.strip()
    match = _FENCE_RE.search(cleaned)
    if match:
        return match.group(1).strip()
    if cleaned.startswith("```"):
        cleaned = cleaned[3:]
        if cleaned[:4].lower() == "json":
            cleaned = cleaned[4:]
    if cleaned.endswith("```"):
        cleaned = cleaned[:-3]
    return cleaned.strip()


def _string_end(text: str, start: int) -> int:
    """Index of the quote closing the string opened at `start`, or -1."""
    i = start + 1
    n = len(text)
    while i < n:
        ch = text[i]
        if ch == "\\":
            i += 2
            continue
        if ch == '"':
            return i
        i += 1
    return -1


def _skip(text: str, i: int, chars: str = " \t\r\n") -> int:
    n = len(text)
    while i < n and text[i] in chars:
        i += 1
    return i


def _first_opener(text: str) -> int:
    positions = [p for p in (text.find("{"), text.find("[")) if p != -1]
    return min(positions) if positions else -1


def _container_end(text: str, start: int) -> int:
    """Index just past the closer matching the opener at `start`, or -1."""
    depth = 0
    i = start
    n = len(text)
    while i < n:
        ch = text[i]
        if ch == '"':
            end = _string_end(text, i)
            if end == -1:
                return -1
            i = end + 1
            continue
        if ch in "{[":
            depth += 1
        elif ch in "}]":
            depth -= 1
            if depth == 0:
                return i + 1
        i += 1
    return -1


def extract_balanced(text: str) -> str | None:
    """Return the span of the first balanced {...} or [...] in `text`.

    Trailing prose is ignored. If the value never closes (truncated output),
    everything from the opener to the end of input is returned.
    """
    start = _first_opener(text)
    if start == -1:
        return None
    end = _container_end(text, start)
    if end == -1:
        return text[start:]
    return text[start:end]


def strip_trailing_commas(text: str) -> str:
    """Drop commas that directly precede a closing } or ], outside strings."""
    out: list[str] = []
    i = 0
    n = len(text)
    while i < n:
        ch = text[i]
        if ch == '"':
            end = _string_end(text, i)
            if end == -1:
                out.append(text[i:])
                break
            out.append(text[i:end + 1])
            i = end + 1
            continue
        if ch == ",":
            j = _skip(text, i + 1)
            if j < n and text[j] in "}]":
                i += 1
                continue
        out.append(ch)
        i += 1
    return "".join(out)


def _is_key_start(ch: str) -> bool:
    return ch.isascii() and (ch.isalpha() or ch == "_")


def quote_bare_keys(text: str) -> str:
    """Quote unquoted object keys, outside strings.

    '{genre: "noir", themes: []}' → '{"genre": "noir", "themes": []}'

    Only identifiers that follow { or , and precede a colon are touched, so
    bare values such as true or null are left alone.
    """
    out: list[str] = []
    prev = ""
    i = 0
    n = len(text)
    while i < n:
        ch = text[i]
        if ch == '"':
            end = _string_end(text, i)
            if end == -1:
                out.append(text[i:])
                break
            out.append(text[i:end + 1])
            prev = '"'
            i = end + 1
            continue
        if _is_key_start(ch) and prev in ("{", ","):
            j = i
            while j < n and (_is_key_start(text[j]) or text[j].isdigit()):
                j += 1
            colon = _skip(text, j)
            if colon < n and text[colon] == ":":
                out.append(f'"{text[i:j]}"')
                prev = '"'
                i = j
                continue
        out.append(ch)
        if not ch.isspace():
            prev = ch
        i += 1
    return "".join(out)


def normalize(span: str) -> str:
    """Quote bare keys, strip trailing commas and anything after the last closer."""
    fixed = strip_trailing_commas(quote_bare_keys(span))
    last = max(fixed.rfind("}"), fixed.rfind("]"))
    if last != -1:
        fixed = fixed[:last + 1]
    return fixed


def _top_level_values(text: str) -> dict[str, int]:
    """Map each key of the outermost object to the index where its value starts."""
    positions: dict[str, int] = {}
    start = text.find("{")
    if start == -1:
        return positions
    depth = 0
    i = start
    n = len(text)
    while i < n:
        ch = text[i]
        if ch == '"':
            end = _string_end(text, i)
            if end == -1:
                break
            if depth == 1:
                colon = _skip(text, end + 1)
                if colon < n and text[colon] == ":":
                    value = _skip(text, colon + 1)
                    if value < n:
                        positions.setdefault(text[i + 1:end], value)
            i = end + 1
            continue
        if ch in "{[":
            depth += 1
        elif ch in "}]":
            depth -= 1
        i += 1
    return positions


def _item_end(text: str, i: int) -> int:
    """Index just past the array item starting at `i`, or -1 if it is cut off."""
    ch = text[i]
    if ch in "{[":
        return _container_end(text, i)
    if ch == '"':
        end = _string_end(text, i)
        return -1 if end == -1 else end + 1
    n = len(text)
    j = i
    while j < n and text[j] not in ",]}" and not text[j].isspace():
        j += 1
    # a bare number running into end-of-input may itself be truncated
    return -1 if j >= n else j


def _complete_items(text: str, pos: int) -> list[Any]:
    items: list[Any] = []
    i = pos
    n = len(text)
    while True:
        i = _skip(text, i, " \t\r\n,")
        if i >= n or text[i] in "]}":
            break
        end = _item_end(text, i)
        if end == -1:
            break
        raw = text[i:end]
        try:
            items.append(json.loads(raw))
        except json.JSONDecodeError:
            try:
                items.append(json.loads(strip_trailing_commas(raw)))
            except json.JSONDecodeError:
                logger.debug("Skipping malformed array item: %.80r", raw)
        i = end
    return items


def salvage_collections(text: str, keys: Iterable[str]) -> dict[str, list[Any]]:
    """Recover every complete item of each named top-level array.

    Each collection is scanned independently; an incomplete tail item is
    discarded, complete items are returned exactly as parsed.
    """
    values = _top_level_values(text)
    return {
        key: _complete_items(text, values[key] + 1)
        for key in keys
        if key in values and text[values[key]] == "["
    }


def salvage_scalars(text: str) -> dict[str, Any]:
    """Recover the complete string, number and literal values of the outermost object.

    A value cut off by the end of input is dropped.
    """
    found: dict[str, Any] = {}
    for key, pos in _top_level_values(text).items():
        if text[pos] in "{[":
            continue
        end = _item_end(text, pos)
        if end == -1:
            continue
        try:
            found[key] = json.loads(text[pos:end])
        except json.JSONDecodeError:
            logger.debug("Skipping malformed value for %r", key)
    return found


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def repair(
    text: str | None,
    *,
    expected: str | None = None,
    collections: Iterable[str] | None = None,
) -> RepairResult:
    """Parse `text` into a structured value, repairing it if needed.

    Args:
        text:        Raw generator output.
        expected:    Fallback shape to use if nothing can be recovered
                     (a key of FALLBACK_SHAPES). Inferred from the text if None.
        collections: Top-level array keys to salvage item by item.
                     Defaults to every collection key of every shape.
    """
    raw = text or ""
    try:
        return _repair(raw, expected, collections)
    except Exception:
        logger.exception("Unexpected error while repairing output; using fallback")
        return RepairResult(fallback_value(raw, expected), RepairStatus.FALLBACK)


def _repair(
    raw: str, expected: str | None, collections: Iterable[str] | None
) -> RepairResult:
    cleaned = strip_fences(raw)
    try:
        return RepairResult(json.loads(cleaned), RepairStatus.PARSED)
    except json.JSONDecodeError:
        logger.debug("Direct parse failed, attempting extraction")

    span = extract_balanced(cleaned)
    if span is not None:
        try:
            return RepairResult(json.loads(span), RepairStatus.EXTRACTED)
        except json.JSONDecodeError:
            pass
        try:
            value = json.loads(normalize(span))
            logger.info("Recovered output after normalising rewrites")
            return RepairResult(value, RepairStatus.NORMALIZED)
        except json.JSONDecodeError:
            pass

    keys = tuple(collections) if collections is not None else DEFAULT_COLLECTIONS
    quoted = quote_bare_keys(cleaned)
    salvaged = salvage_collections(quoted, keys)
    if any(salvaged.values()):
        logger.warning(
            "Output truncated or malformed; salvaged %d item(s) from %s",
            sum(len(v) for v in salvaged.values()),
            ", ".join(k for k, v in salvaged.items() if v),
        )
        return RepairResult({**salvage_scalars(quoted), **salvaged}, RepairStatus.PARTIAL)

    logger.warning(
        "No structured value could be recovered. First 200 chars: %r", cleaned[:200]
    )
    return RepairResult(fallback_value(cleaned, expected), RepairStatus.FALLBACK)
