# storage/history.py
"""Chapter undo history, self-refine improvement logs and the AI audit log."""

from __future__ import annotations

import structlog

from config import settings
from models import (
    AILogEntry,
    ChapterData,
    HistorySnapshot,
    ImprovementLogEntry,
    SnapshotSource,
)
from storage.bounded_store import BoundedStore, KeyValueStore

logger = structlog.get_logger(__name__)


def chapter_partition(project_id: str, chapter_id: str) -> str:
    return f"{project_id}:{chapter_id}"


class ChapterHistoryService:
    """Per-chapter snapshots of chapter outlines, newest first."""

    def __init__(
        self,
        backend: KeyValueStore | None = None,
        capacity: int | None = None,
    ) -> None:
        self._store: BoundedStore[HistorySnapshot] = BoundedStore(
            "history",
            HistorySnapshot,
            capacity or settings.MAX_HISTORY_SNAPSHOTS,
            backend,
        )

    @property
    def capacity(self) -> int:
        return self._store.capacity

    async def save_snapshot(
        self,
        project_id: str,
        chapter_id: str,
        data: ChapterData,
        source: SnapshotSource = SnapshotSource.MANUAL,
        description: str | None = None,
    ) -> HistorySnapshot | None:
        if not project_id or not chapter_id:
            logger.warning(
                "Snapshot skipped: project and chapter ids are required",
                project_id=project_id,
                chapter_id=chapter_id,
            )
            return None
        snapshot = HistorySnapshot(
            chapter_id=chapter_id,
            source=source,
            data=data.model_copy(deep=True),
            description=description,
        )
        await self._store.add(chapter_partition(project_id, chapter_id), snapshot)
        return snapshot

    async def get_snapshots(
        self, project_id: str, chapter_id: str
    ) -> list[HistorySnapshot]:
        return await self._store.list(chapter_partition(project_id, chapter_id))

    async def get_project_snapshots(
        self, project_id: str
    ) -> dict[str, list[HistorySnapshot]]:
        """Snapshots for every chapter of ``project_id`` touched this session."""
        result: dict[str, list[HistorySnapshot]] = {}
        prefix = f"{project_id}:"
        for partition in self._store.partitions():
            if partition.startswith(prefix):
                result[partition[len(prefix) :]] = await self._store.list(partition)
        return result

    async def restore_snapshot(
        self, project_id: str, chapter_id: str, snapshot_id: str
    ) -> ChapterData | None:
        """Return the snapshot's chapter data and record the restore itself."""
        partition = chapter_partition(project_id, chapter_id)
        snapshot = await self._store.get(partition, snapshot_id)
        if snapshot is None:
            logger.warning(
                "Snapshot not found", chapter_id=chapter_id, snapshot_id=snapshot_id
            )
            return None
        await self.save_snapshot(
            project_id,
            chapter_id,
            snapshot.data,
            SnapshotSource.RESTORE,
            description=f"Restored from {snapshot.id}",
        )
        return snapshot.data.model_copy(deep=True)

    async def delete_snapshot(
        self, project_id: str, chapter_id: str, snapshot_id: str
    ) -> bool:
        return await self._store.remove(
            chapter_partition(project_id, chapter_id), snapshot_id
        )

    async def clear_chapter(self, project_id: str, chapter_id: str) -> int:
        return await self._store.clear(chapter_partition(project_id, chapter_id))

    async def clear_project(self, project_id: str) -> int:
        removed = 0
        for chapter_id in await self.get_project_snapshots(project_id):
            removed += await self.clear_chapter(project_id, chapter_id)
        return removed


class ImprovementLogStore:
    """Self-refine improvement logs, capped per chapter."""

    def __init__(
        self,
        backend: KeyValueStore | None = None,
        capacity: int | None = None,
    ) -> None:
        self._store: BoundedStore[ImprovementLogEntry] = BoundedStore(
            "improvement-log",
            ImprovementLogEntry,
            capacity or settings.MAX_IMPROVEMENT_LOGS,
            backend,
        )

    async def append(self, project_id: str, entry: ImprovementLogEntry) -> None:
        await self._store.add(chapter_partition(project_id, entry.chapter_id), entry)

    async def get_logs(
        self, project_id: str, chapter_id: str
    ) -> list[ImprovementLogEntry]:
        return await self._store.list(chapter_partition(project_id, chapter_id))

    async def clear(self, project_id: str, chapter_id: str) -> int:
        return await self._store.clear(chapter_partition(project_id, chapter_id))


class AILogStore:
    """Audit trail of AI calls, one partition per project."""

    def __init__(
        self,
        backend: KeyValueStore | None = None,
        capacity: int | None = None,
        project_id: str = "default",
    ) -> None:
        self.project_id = project_id
        self._store: BoundedStore[AILogEntry] = BoundedStore(
            "ai-log", AILogEntry, capacity or settings.MAX_AI_LOGS, backend
        )

    async def add(self, entry: AILogEntry) -> None:
        await self._store.add(self.project_id, entry)

    async def get_logs(self) -> list[AILogEntry]:
        return await self._store.list(self.project_id)

    async def clear(self) -> int:
        return await self._store.clear(self.project_id)
