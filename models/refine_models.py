# models/refine_models.py
"""Structures produced by the self-refine workflow and the bounded stores."""

from __future__ import annotations

import time
import uuid
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def _new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def _now_ms() -> int:
    return int(time.time() * 1000)


class RefineBaseModel(BaseModel):
    """Base model supporting mapping style access."""

    model_config = ConfigDict(from_attributes=True, extra="allow")

    def __getitem__(self, item: str) -> Any:  # pragma: no cover - convenience
        return getattr(self, item)

    def get(
        self, item: str, default: Any = None
    ) -> Any:  # pragma: no cover - convenience
        return getattr(self, item, default)


class Weakness(RefineBaseModel):
    aspect: str
    problem: str
    score: int | None = Field(default=None, ge=0, le=10)
    solutions: list[str] = Field(default_factory=list)


class CritiqueResult(RefineBaseModel):
    """Phase-1 output: an overall summary and a list of weaknesses."""

    summary: str = ""
    weaknesses: list[Weakness] = Field(default_factory=list)


class RevisionResult(RefineBaseModel):
    """Phase-2 output: rewritten text plus a change log."""

    revised_text: str
    improvement_summary: str = ""
    changes: list[str] = Field(default_factory=list)


class ImprovementLogEntry(RefineBaseModel):
    id: str = Field(default_factory=lambda: _new_id("log"))
    timestamp: int = Field(default_factory=_now_ms)
    chapter_id: str
    phase1_critique: str
    phase2_summary: str
    phase2_changes: list[str] = Field(default_factory=list)
    original_length: int
    revised_length: int


class SnapshotSource(str, Enum):
    MANUAL = "manual"
    AI_GENERATE = "ai-generate"
    AI_ENHANCE = "ai-enhance"
    RESTORE = "restore"


class ChapterData(RefineBaseModel):
    """The chapter fields captured by a history snapshot."""

    title: str = ""
    summary: str = ""
    characters: list[str] = Field(default_factory=list)
    setting: str = ""
    mood: str = ""
    key_events: list[str] = Field(default_factory=list)


class HistorySnapshot(RefineBaseModel):
    id: str = Field(default_factory=lambda: _new_id("history"))
    chapter_id: str
    timestamp: int = Field(default_factory=_now_ms)
    source: SnapshotSource = SnapshotSource.MANUAL
    data: ChapterData
    description: str | None = None


class AILogEntry(RefineBaseModel):
    """Audit record for one AI call. Extra metadata keys are allowed."""

    id: str = Field(default_factory=lambda: _new_id("ai"))
    timestamp: int = Field(default_factory=_now_ms)
    type: str
    prompt: str
    response: str
    error: str | None = None
