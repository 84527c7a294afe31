"""Central package for StoryForge data models."""

from .ai_models import (
    AIRequest,
    AIResponse,
    AISettings,
    Provider,
    RequestType,
    split_data_url,
)
from .refine_models import (
    AILogEntry,
    ChapterData,
    CritiqueResult,
    HistorySnapshot,
    ImprovementLogEntry,
    RevisionResult,
    SnapshotSource,
    Weakness,
)

__all__ = [
    "AIRequest",
    "AIResponse",
    "AISettings",
    "Provider",
    "RequestType",
    "split_data_url",
    "AILogEntry",
    "ChapterData",
    "CritiqueResult",
    "HistorySnapshot",
    "ImprovementLogEntry",
    "RevisionResult",
    "SnapshotSource",
    "Weakness",
]
