# parsing/recovery.py
"""Structured-output recovery for free-form LLM responses.

Models are asked for a JSON object but wrap it in prose, code fences or doubled
braces, or truncate it. ``recover_structured`` runs one ordered fallback chain
and reports which tier produced the answer:

``JSON``
    A brace-balanced object was found and parsed.
``LABELED_LINE``
    A labeled section ("Revised text:" and similar) or a string field from a
    broken JSON body was extracted.
``PROSE``
    Fences and brace fragments were stripped and enough prose remained.
``RAW``
    Nothing better was found; the input is returned untouched.

For non-empty input the recovered text is never empty.
"""

from __future__ import annotations

import json
import math
import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, TypeVar

import structlog

from config import settings
from models import CritiqueResult, RevisionResult, Weakness

logger = structlog.get_logger(__name__)

T = TypeVar("T")

_FENCED_BLOCK_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```", re.IGNORECASE)
_LEADING_FENCE_RE = re.compile(r"^```[a-zA-Z]*\s*")
_TRAILING_FENCE_RE = re.compile(r"\s*```\s*$")
_ANY_FENCE_RE = re.compile(r"```[a-zA-Z]*")
_BLANK_RUN_RE = re.compile(r"\n{3,}")


class RecoveryTier(str, Enum):
    JSON = "json"
    LABELED_LINE = "labeled_line"
    PROSE = "prose"
    RAW = "raw"


@dataclass(frozen=True)
class LabeledPattern:
    """A regex whose first group captures the wanted text.

    ``json_string`` marks captures taken from inside a JSON string literal,
    which need their escapes undone.
    """

    pattern: re.Pattern[str]
    json_string: bool = False


@dataclass
class RecoveryResult(Generic[T]):
    tier: RecoveryTier
    text: str
    data: dict[str, Any] | None = None
    value: T | None = None

    @property
    def structured(self) -> bool:
        return self.tier is RecoveryTier.JSON


def _json_field_pattern(*names: str) -> LabeledPattern:
    alternatives = "|".join(re.escape(n) for n in names)
    return LabeledPattern(
        re.compile(rf'"(?:{alternatives})"\s*:\s*"((?:[^"\\]|\\.)+)'),
        json_string=True,
    )


def _section_pattern(*labels: str) -> LabeledPattern:
    alternatives = "|".join(re.escape(label) for label in labels)
    return LabeledPattern(
        re.compile(
            rf"(?:{alternatives})\s*[:：]\s*((?:[^\n]*\S[^\n]*(?:\n|$))+)",
            re.IGNORECASE,
        )
    )


REVISION_PATTERNS: tuple[LabeledPattern, ...] = (
    _json_field_pattern("revisedText", "revised_text"),
    _section_pattern(
        "revised text", "改訂後の文章", "改善された文章", "改訂された文章"
    ),
)

CRITIQUE_PATTERNS: tuple[LabeledPattern, ...] = (
    _json_field_pattern("summary"),
    _section_pattern("overall assessment", "summary", "総評", "全体評価"),
)


def strip_code_fences(text: str) -> str:
    """Unwrap a leading fenced block, or drop stray fence markers."""
    trimmed = text.strip()
    if trimmed.startswith("```"):
        match = _FENCED_BLOCK_RE.search(trimmed)
        if match:
            return match.group(1).strip()
    trimmed = _LEADING_FENCE_RE.sub("", trimmed)
    return _TRAILING_FENCE_RE.sub("", trimmed).strip()


def strip_double_braces(text: str) -> str:
    """Remove one layer of ``{{ ... }}`` wrapping when present at both ends."""
    trimmed = text.strip()
    if trimmed.startswith("{{") and trimmed.endswith("}}"):
        return trimmed[1:-1].strip()
    return trimmed


def _match_brace(text: str, start: int) -> int:
    """Index of the brace closing the one at ``start``, or -1."""
    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return index
    return -1


def find_brace_candidates(text: str) -> list[str]:
    """All non-overlapping brace-balanced substrings, left to right.

    An opening brace that is never closed (a truncated object) is skipped and
    the scan resumes at the next character.
    """
    candidates: list[str] = []
    position = text.find("{")
    while position != -1:
        end = _match_brace(text, position)
        if end == -1:
            position = text.find("{", position + 1)
            continue
        candidates.append(text[position : end + 1])
        position = text.find("{", end + 1)
    return candidates


def extract_json_candidate(text: str) -> str | None:
    """Run the fence, double-brace and longest-candidate steps on ``text``."""
    cleaned = strip_double_braces(strip_code_fences(text))
    candidates = find_brace_candidates(cleaned)
    if not candidates:
        return None
    longest = max(candidates, key=len)
    return strip_double_braces(longest.strip())


def recover_json(text: str) -> dict[str, Any] | None:
    """Parse the most plausible JSON object in ``text``, or return None."""
    if not text or not text.strip():
        return None
    candidate = extract_json_candidate(text)
    if candidate is None:
        return None
    try:
        data = json.loads(candidate)
    except json.JSONDecodeError as exc:
        logger.debug(
            "JSON candidate failed to parse", error=str(exc), candidate=candidate[:200]
        )
        return None
    if not isinstance(data, dict):
        return None
    return data


def _unescape_json_string(raw: str) -> str:
    try:
        return json.loads(f'"{raw}"', strict=False)
    except json.JSONDecodeError:
        # truncated mid-escape; undo the common escapes by hand
        return (
            raw.replace("\\n", "\n")
            .replace("\\t", "\t")
            .replace('\\"', '"')
            .replace("\\\\", "\\")
        )


def extract_labeled(
    text: str, patterns: Sequence[LabeledPattern], min_length: int | None = None
) -> str | None:
    """First labeled capture longer than ``min_length`` characters."""
    minimum = settings.MIN_RECOVERED_TEXT_LENGTH if min_length is None else min_length
    for labeled in patterns:
        for match in labeled.pattern.finditer(text):
            captured = match.group(1)
            if labeled.json_string:
                captured = _unescape_json_string(captured)
            captured = captured.strip()
            if len(captured) > minimum:
                return captured
    return None


def strip_structural_noise(text: str) -> str:
    """Drop code fences and brace-balanced fragments, keeping the prose."""
    prose = _ANY_FENCE_RE.sub("", text)
    for fragment in find_brace_candidates(prose):
        prose = prose.replace(fragment, "")
    return _BLANK_RUN_RE.sub("\n\n", prose).strip()


def recover_structured(
    text: str,
    patterns: Sequence[LabeledPattern] = (),
    accept: Callable[[dict[str, Any]], bool] | None = None,
    min_length: int | None = None,
    label: str = "response",
) -> RecoveryResult[Any]:
    """Run the full fallback chain on ``text``.

    ``accept`` may veto a parsed object, for example one whose main field is
    too short, sending the chain on to the text tiers.
    """
    minimum = settings.MIN_RECOVERED_TEXT_LENGTH if min_length is None else min_length
    raw = text or ""

    data = recover_json(raw)
    if data is not None:
        if accept is None or accept(data):
            return RecoveryResult(
                RecoveryTier.JSON, extract_json_candidate(raw) or raw, data
            )
        logger.info(f"{label}: parsed JSON rejected, trying text fallbacks")
    else:
        logger.info(f"{label}: no parseable JSON object, trying text fallbacks")

    labeled = extract_labeled(raw, patterns, minimum)
    if labeled:
        logger.info(f"{label}: recovered via labeled section", length=len(labeled))
        return RecoveryResult(RecoveryTier.LABELED_LINE, labeled)

    prose = strip_structural_noise(raw)
    if len(prose) > minimum:
        logger.info(f"{label}: recovered via prose fallback", length=len(prose))
        return RecoveryResult(RecoveryTier.PROSE, prose)

    logger.warning(f"{label}: structured recovery failed, using raw text")
    return RecoveryResult(RecoveryTier.RAW, raw)


def _coerce_score(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    # json.loads accepts Infinity and NaN, and "1e999" overflows to inf
    if not math.isfinite(number):
        return None
    return max(0, min(10, round(number)))


def _coerce_str_list(value: Any) -> list[str]:
    if isinstance(value, str):
        return [value.strip()] if value.strip() else []
    if isinstance(value, list):
        return [str(v).strip() for v in value if v is not None and str(v).strip()]
    return []


def critique_from_data(data: dict[str, Any]) -> CritiqueResult:
    """Build a ``CritiqueResult``, discarding weaknesses without aspect or problem."""
    weaknesses: list[Weakness] = []
    raw_weaknesses = data.get("weaknesses")
    for item in raw_weaknesses if isinstance(raw_weaknesses, list) else []:
        if not isinstance(item, dict):
            continue
        aspect = str(item.get("aspect") or "").strip()
        problem = str(item.get("problem") or "").strip()
        if not aspect or not problem:
            logger.debug("Discarding invalid weakness entry", entry=str(item)[:200])
            continue
        weaknesses.append(
            Weakness(
                aspect=aspect,
                problem=problem,
                score=_coerce_score(item.get("score")),
                solutions=_coerce_str_list(
                    item.get("solutions") or item.get("suggestions")
                ),
            )
        )
    summary = data.get("summary") or data.get("overall") or ""
    return CritiqueResult(summary=str(summary).strip(), weaknesses=weaknesses)


def _revised_text_of(data: dict[str, Any]) -> str:
    value = data.get("revisedText") or data.get("revised_text") or ""
    return value if isinstance(value, str) else ""


def revision_from_data(data: dict[str, Any]) -> RevisionResult:
    summary = data.get("improvementSummary") or data.get("improvement_summary") or ""
    return RevisionResult(
        revised_text=_revised_text_of(data).strip(),
        improvement_summary=str(summary).strip(),
        changes=_coerce_str_list(data.get("changes")),
    )


def _looks_like_critique(data: dict[str, Any]) -> bool:
    return "weaknesses" in data or "summary" in data


def parse_critique(text: str) -> RecoveryResult[CritiqueResult]:
    """Recover a phase-1 critique.

    ``value`` is set only for the JSON tier; other tiers leave the recovered
    text as unstructured guidance in ``text``.
    """
    result = recover_structured(
        text, CRITIQUE_PATTERNS, accept=_looks_like_critique, label="Critique"
    )
    if result.data is not None:
        result.value = critique_from_data(result.data)
    return result


def parse_revision(text: str) -> RecoveryResult[RevisionResult]:
    """Recover a phase-2 revision. ``value`` is set for any non-empty input."""
    minimum = settings.MIN_RECOVERED_TEXT_LENGTH

    def _long_enough(data: dict[str, Any]) -> bool:
        return len(_revised_text_of(data).strip()) > minimum

    result = recover_structured(
        text, REVISION_PATTERNS, accept=_long_enough, label="Revision"
    )
    if result.tier is RecoveryTier.RAW:
        # a short but well-formed revision still beats the raw response body
        data = recover_json(text)
        if data is not None and _revised_text_of(data).strip():
            result = RecoveryResult(
                RecoveryTier.JSON, extract_json_candidate(text) or text, data
            )

    if result.data is not None:
        result.value = revision_from_data(result.data)
    elif result.text:
        result.value = RevisionResult(revised_text=result.text)
    return result
