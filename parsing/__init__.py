# parsing/__init__.py
"""Parsing utilities for structured LLM output."""

from .recovery import (
    CRITIQUE_PATTERNS,
    REVISION_PATTERNS,
    LabeledPattern,
    RecoveryResult,
    RecoveryTier,
    critique_from_data,
    extract_json_candidate,
    extract_labeled,
    find_brace_candidates,
    parse_critique,
    parse_revision,
    recover_json,
    recover_structured,
    revision_from_data,
    strip_code_fences,
    strip_double_braces,
    strip_structural_noise,
)

__all__ = [
    "CRITIQUE_PATTERNS",
    "REVISION_PATTERNS",
    "LabeledPattern",
    "RecoveryResult",
    "RecoveryTier",
    "critique_from_data",
    "extract_json_candidate",
    "extract_labeled",
    "find_brace_candidates",
    "parse_critique",
    "parse_revision",
    "recover_json",
    "recover_structured",
    "revision_from_data",
    "strip_code_fences",
    "strip_double_braces",
    "strip_structural_noise",
]
