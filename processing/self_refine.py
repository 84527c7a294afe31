# processing/self_refine.py
"""Two-phase critique-then-revise improvement of a chapter draft.

The workflow runs ``IDLE -> CRITIQUING -> REVISING -> DONE`` and ends in
``FAILED`` or ``CANCELLED`` from either active state. It is all-or-nothing:
nothing is recorded unless the revision phase produces usable text.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

import structlog

from config import settings
from core.ai_service import AIService
from core.cancellation import CancelToken
from core.errors import missing_api_key
from models import (
    AIRequest,
    AISettings,
    CritiqueResult,
    ImprovementLogEntry,
    Provider,
    RequestType,
    Weakness,
)
from parsing import RecoveryTier, parse_critique, parse_revision
from storage.history import ImprovementLogStore

logger = structlog.get_logger(__name__)

TRUNCATION_NOTE = "\n\n[truncated]"
NO_SUMMARY_TEXT = "No improvement summary was returned."
_IMPORTANT_LINE_KEYWORDS = ("problem", "improve", "weakness", "score", "issue")
_NOT_SET = "Not set"


class RefineState(str, Enum):
    IDLE = "idle"
    CRITIQUING = "critiquing"
    REVISING = "revising"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


class CritiqueStatus(str, Enum):
    """How much structure the phase-1 critique yielded."""

    STRUCTURED = "structured"
    NO_WEAKNESSES = "no_weaknesses"
    UNSTRUCTURED = "unstructured"


@dataclass
class RefineContext:
    project_id: str
    chapter_id: str
    draft: str
    project_title: str = ""
    chapter_title: str = ""
    chapter_summary: str = ""


@dataclass
class SelfRefineOutcome:
    state: RefineState
    revised_text: str = ""
    error: str | None = None
    critique: CritiqueResult | None = None
    critique_status: CritiqueStatus | None = None
    critique_summary: str = ""
    critique_tier: RecoveryTier | None = None
    revision_tier: RecoveryTier | None = None
    log_entry: ImprovementLogEntry | None = None

    @property
    def ok(self) -> bool:
        return self.state is RefineState.DONE


def truncate_draft(draft: str, limit: int | None = None) -> str:
    limit = settings.SELF_REFINE_MAX_DRAFT_CHARS if limit is None else limit
    if len(draft) <= limit:
        return draft
    return draft[:limit] + TRUNCATION_NOTE


def _format_weakness(weakness: Weakness, with_score: bool) -> str:
    solutions = ", ".join(weakness.solutions[:2])
    header = f"[{weakness.aspect}]"
    if with_score:
        header += f" (score: {weakness.score}/10)"
    return f"{header}\nProblem: {weakness.problem}\nSolutions: {solutions}"


def summarize_critique(critique: CritiqueResult | None, raw_text: str) -> str:
    """Short human-readable digest of a critique, capped in length.

    Low-scoring weaknesses come first (at most five); without scores the first
    three are used. Unstructured critiques are reduced to their most relevant
    lines.
    """
    summary = ""
    if critique is not None:
        summary = critique.summary
        low_scores = [
            w
            for w in critique.weaknesses
            if w.score is not None and w.score <= settings.CRITIQUE_LOW_SCORE_THRESHOLD
        ][:5]
        if low_scores:
            parts = [_format_weakness(w, with_score=True) for w in low_scores]
        else:
            parts = [
                _format_weakness(w, with_score=False)
                for w in critique.weaknesses[:3]
            ]
        if parts:
            summary = "\n\n".join(parts)
            if critique.summary:
                summary += f"\n\nOverall: {critique.summary}"
    else:
        lines = [line for line in raw_text.splitlines() if line.strip()]
        important = [
            line
            for line in lines
            if any(k in line.lower() for k in _IMPORTANT_LINE_KEYWORDS)
        ]
        summary = "\n".join((important or lines)[:10])

    limit = settings.CRITIQUE_SUMMARY_MAX_CHARS
    if len(summary) > limit:
        summary = summary[:limit] + "..."
    return summary


class SelfRefineWorkflow:
    """Drive one critique/revise cycle through ``AIService``."""

    def __init__(
        self,
        service: AIService,
        log_store: ImprovementLogStore | None = None,
        on_state_change: Callable[[RefineState], None] | None = None,
    ) -> None:
        self.service = service
        self.log_store = log_store
        self.on_state_change = on_state_change
        self.state = RefineState.IDLE

    def _transition(self, state: RefineState) -> None:
        logger.info(f"Self-refine: {self.state.value} -> {state.value}")
        self.state = state
        if self.on_state_change is not None:
            try:
                self.on_state_change(state)
            except Exception as exc:  # listeners must not break the workflow
                logger.warning("Self-refine state listener raised", error=str(exc))

    def _fail(self, message: str, **extra) -> SelfRefineOutcome:
        logger.error(f"Self-refine failed: {message}")
        self._transition(RefineState.FAILED)
        return SelfRefineOutcome(RefineState.FAILED, error=message, **extra)

    def _cancelled(self) -> SelfRefineOutcome:
        self._transition(RefineState.CANCELLED)
        return SelfRefineOutcome(RefineState.CANCELLED)

    async def run(
        self,
        context: RefineContext,
        ai_settings: AISettings,
        cancel_token: CancelToken | None = None,
    ) -> SelfRefineOutcome:
        """Critique ``context.draft`` and rewrite it. Never raises."""
        self.state = RefineState.IDLE
        if not context.draft.strip():
            return self._fail("There is no draft text to improve.")
        provider = ai_settings.provider
        if provider is not Provider.LOCAL and not ai_settings.encrypted_key_for():
            return self._fail(missing_api_key(provider.value).user_message())

        token = cancel_token or CancelToken()
        truncated = truncate_draft(context.draft)
        base_variables = {
            "projectTitle": context.project_title or _NOT_SET,
            "chapterTitle": context.chapter_title or _NOT_SET,
            "chapterSummary": context.chapter_summary or _NOT_SET,
            "currentText": truncated,
        }

        self._transition(RefineState.CRITIQUING)
        critique_prompt = self.service.build_prompt(
            "draft", "critique", base_variables
        )
        critique_response = await self.service.generate_content(
            AIRequest(
                prompt=critique_prompt,
                type=RequestType.DRAFT,
                settings=ai_settings,
                cancel_token=token,
            )
        )
        if critique_response.cancelled or token.cancelled:
            return self._cancelled()
        if critique_response.error:
            return self._fail(critique_response.error)
        if not critique_response.content.strip():
            return self._fail("The critique phase returned no content.")

        recovered = parse_critique(critique_response.content)
        critique = recovered.value
        if critique is None:
            status = CritiqueStatus.UNSTRUCTURED
            critique_result = critique_response.content
        else:
            status = (
                CritiqueStatus.STRUCTURED
                if critique.weaknesses
                else CritiqueStatus.NO_WEAKNESSES
            )
            critique_result = json.dumps(
                critique.model_dump(mode="json"), ensure_ascii=False, indent=2
            )
        critique_summary = summarize_critique(critique, critique_response.content)
        logger.info(
            "Critique recovered",
            tier=recovered.tier.value,
            status=status.value,
            weaknesses=len(critique.weaknesses) if critique else 0,
        )
        extra = {
            "critique": critique,
            "critique_status": status,
            "critique_summary": critique_summary,
            "critique_tier": recovered.tier,
        }

        if token.cancelled:
            return self._cancelled()

        self._transition(RefineState.REVISING)
        revision_prompt = self.service.build_prompt(
            "draft",
            "revise",
            {
                **base_variables,
                "critiqueResult": critique_result,
                "currentLength": str(len(context.draft)),
            },
        )
        revision_response = await self.service.generate_content(
            AIRequest(
                prompt=revision_prompt,
                type=RequestType.DRAFT,
                settings=ai_settings,
                cancel_token=token,
            )
        )
        if revision_response.cancelled or token.cancelled:
            # the critique is discarded along with the in-flight revision
            return self._cancelled()
        if revision_response.error:
            return self._fail(revision_response.error, **extra)
        if not revision_response.content.strip():
            return self._fail("The revision phase returned no content.", **extra)

        revision = parse_revision(revision_response.content)
        if revision.value is None or not revision.value.revised_text.strip():
            return self._fail("The revision phase returned no revised text.", **extra)
        revised_text = revision.value.revised_text

        entry = ImprovementLogEntry(
            chapter_id=context.chapter_id,
            phase1_critique=critique_response.content,
            phase2_summary=revision.value.improvement_summary or NO_SUMMARY_TEXT,
            phase2_changes=revision.value.changes,
            original_length=len(context.draft),
            revised_length=len(revised_text),
        )
        if self.log_store is not None:
            try:
                await self.log_store.append(context.project_id, entry)
            except Exception as exc:
                logger.error(
                    "Failed to store improvement log", error=str(exc), exc_info=True
                )

        self._transition(RefineState.DONE)
        return SelfRefineOutcome(
            RefineState.DONE,
            revised_text=revised_text,
            revision_tier=revision.tier,
            log_entry=entry,
            **extra,
        )
