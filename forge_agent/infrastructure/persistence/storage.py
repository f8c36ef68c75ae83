from abc import ABC, abstractmethod
from typing import Dict, Any, List, Optional, Sequence, Tuple
from datetime import datetime, timezone
import asyncio

from forge_agent.domain.models.artifacts import StageArtifact
from forge_agent.domain.models.records import (
    UserArtifact,
    ReadingRollup,
    UserMemory,
    UserSignal,
    VaultEntry,
)


class PipelineStorage(ABC):
    """Typed storage collaborator used by the pipeline.

    Every read and write is a typed query keyed by (run, stage) or
    (user, filters). Upserts make reruns idempotent.
    """

    # Stage artifacts

    @abstractmethod
    async def upsert_stage_artifact(self, artifact: StageArtifact) -> None:
        pass

    @abstractmethod
    async def get_stage_artifact(self, run_id: str, stage: str) -> Optional[StageArtifact]:
        pass

    @abstractmethod
    async def list_stage_artifacts(self, run_id: str) -> List[StageArtifact]:
        """Artifacts for a run, oldest first"""
        pass

    @abstractmethod
    async def delete_stage_artifacts(self, run_id: str) -> int:
        pass

    @abstractmethod
    async def delete_expired_stage_artifacts(self, now: datetime) -> int:
        pass

    # Vault entries

    @abstractmethod
    async def upsert_vault_entry(self, entry: VaultEntry) -> None:
        pass

    @abstractmethod
    async def get_vault_entry(self, run_id: str, stage: str) -> Optional[VaultEntry]:
        pass

    @abstractmethod
    async def delete_vault_entries(self, run_id: str) -> int:
        pass

    @abstractmethod
    async def delete_expired_vault_entries(self, now: datetime) -> int:
        pass

    # User artifacts and reading history

    @abstractmethod
    async def query_user_artifacts(
        self,
        user_id: str,
        types: Sequence[str],
        status: str = "active",
        scopes: Optional[Sequence[str]] = None,
        created_after: Optional[datetime] = None,
        created_before: Optional[datetime] = None,
        book: Optional[str] = None,
        chapter: Optional[int] = None,
        limit: int = 20,
    ) -> List[UserArtifact]:
        """Matching artifacts, newest first.

        `book` and `chapter` match the artifact's metadata reference.
        """
        pass

    @abstractmethod
    async def query_reading_rollups(
        self,
        user_id: str,
        book_id: Optional[str] = None,
        chapter: Optional[int] = None,
        read_after: Optional[datetime] = None,
        read_before: Optional[datetime] = None,
        limit: int = 10,
    ) -> List[ReadingRollup]:
        """Matching rollups, most recently read first"""
        pass

    # Durable memories

    @abstractmethod
    async def find_memory(self, user_id: str, memory_type: str, value: Dict[str, Any]) -> Optional[UserMemory]:
        """Active memory with exactly this type and value"""
        pass

    @abstractmethod
    async def get_memory(self, memory_id: str) -> Optional[UserMemory]:
        pass

    @abstractmethod
    async def create_memory(self, memory: UserMemory) -> UserMemory:
        pass

    @abstractmethod
    async def update_memory(self, memory_id: str, updates: Dict[str, Any]) -> Optional[UserMemory]:
        pass

    @abstractmethod
    async def touch_memories(self, memory_ids: Sequence[str], at: datetime) -> int:
        """Bump access stats for the given memories"""
        pass

    # Signals

    @abstractmethod
    async def find_signal(self, user_id: str, signal_type: str, value: Dict[str, Any]) -> Optional[UserSignal]:
        pass

    @abstractmethod
    async def create_signal(self, signal: UserSignal) -> UserSignal:
        pass

    @abstractmethod
    async def update_signal(self, signal_id: str, updates: Dict[str, Any]) -> Optional[UserSignal]:
        pass

    @abstractmethod
    async def delete_signal(self, signal_id: str) -> bool:
        pass

    @abstractmethod
    async def delete_expired_signals(self, now: datetime) -> int:
        pass

    # Analytics

    @abstractmethod
    async def append_analytics_event(self, event: Dict[str, Any]) -> None:
        pass


def _reference_field(artifact: UserArtifact, field: str) -> Any:
    reference = artifact.metadata.get("reference")
    if isinstance(reference, dict):
        return reference.get(field)
    return None


class InMemoryStorage(PipelineStorage):
    """Process-local storage backend, guarded by an asyncio lock"""

    def __init__(self):
        self.stage_artifacts: Dict[Tuple[str, str], StageArtifact] = {}
        self.vault_entries: Dict[Tuple[str, str], VaultEntry] = {}
        self.user_artifacts: Dict[str, UserArtifact] = {}
        self.reading_rollups: List[ReadingRollup] = []
        self.memories: Dict[str, UserMemory] = {}
        self.signals: Dict[str, UserSignal] = {}
        self.analytics_events: List[Dict[str, Any]] = []
        self._lock = asyncio.Lock()

    # Seeding helpers

    async def add_user_artifact(self, artifact: UserArtifact) -> None:
        async with self._lock:
            self.user_artifacts[artifact.id] = artifact

    async def add_reading_rollup(self, rollup: ReadingRollup) -> None:
        async with self._lock:
            self.reading_rollups.append(rollup)

    async def list_memories(self, user_id: str) -> List[UserMemory]:
        async with self._lock:
            return [m for m in self.memories.values() if m.user_id == user_id]

    async def list_signals(self, user_id: str) -> List[UserSignal]:
        async with self._lock:
            return [s for s in self.signals.values() if s.user_id == user_id]

    # Stage artifacts

    async def upsert_stage_artifact(self, artifact: StageArtifact) -> None:
        async with self._lock:
            self.stage_artifacts[(artifact.run_id, artifact.stage.value)] = artifact

    async def get_stage_artifact(self, run_id: str, stage: str) -> Optional[StageArtifact]:
        async with self._lock:
            return self.stage_artifacts.get((run_id, stage))

    async def list_stage_artifacts(self, run_id: str) -> List[StageArtifact]:
        async with self._lock:
            artifacts = [a for (rid, _), a in self.stage_artifacts.items() if rid == run_id]
        return sorted(artifacts, key=lambda a: a.created_at)

    async def delete_stage_artifacts(self, run_id: str) -> int:
        async with self._lock:
            keys = [key for key in self.stage_artifacts if key[0] == run_id]
            for key in keys:
                del self.stage_artifacts[key]
            return len(keys)

    async def delete_expired_stage_artifacts(self, now: datetime) -> int:
        async with self._lock:
            keys = [
                key for key, a in self.stage_artifacts.items()
                if a.expires_at is not None and a.expires_at < now
            ]
            for key in keys:
                del self.stage_artifacts[key]
            return len(keys)

    # Vault entries

    async def upsert_vault_entry(self, entry: VaultEntry) -> None:
        async with self._lock:
            self.vault_entries[(entry.run_id, entry.stage)] = entry

    async def get_vault_entry(self, run_id: str, stage: str) -> Optional[VaultEntry]:
        async with self._lock:
            return self.vault_entries.get((run_id, stage))

    async def delete_vault_entries(self, run_id: str) -> int:
        async with self._lock:
            keys = [key for key in self.vault_entries if key[0] == run_id]
            for key in keys:
                del self.vault_entries[key]
            return len(keys)

    async def delete_expired_vault_entries(self, now: datetime) -> int:
        async with self._lock:
            keys = [key for key, e in self.vault_entries.items() if e.expires_at < now]
            for key in keys:
                del self.vault_entries[key]
            return len(keys)

    # User artifacts and reading history

    async def query_user_artifacts(
        self,
        user_id: str,
        types: Sequence[str],
        status: str = "active",
        scopes: Optional[Sequence[str]] = None,
        created_after: Optional[datetime] = None,
        created_before: Optional[datetime] = None,
        book: Optional[str] = None,
        chapter: Optional[int] = None,
        limit: int = 20,
    ) -> List[UserArtifact]:
        async with self._lock:
            rows = list(self.user_artifacts.values())

        matches = []
        for a in rows:
            if a.user_id != user_id or a.type not in types or a.status != status:
                continue
            if scopes is not None and a.scope not in scopes:
                continue
            if created_after and a.created_at < created_after:
                continue
            if created_before and a.created_at > created_before:
                continue
            if book is not None and _reference_field(a, "book") != book:
                continue
            if chapter is not None and _reference_field(a, "chapter") != chapter:
                continue
            matches.append(a)

        matches.sort(key=lambda a: a.created_at, reverse=True)
        return matches[:limit]

    async def query_reading_rollups(
        self,
        user_id: str,
        book_id: Optional[str] = None,
        chapter: Optional[int] = None,
        read_after: Optional[datetime] = None,
        read_before: Optional[datetime] = None,
        limit: int = 10,
    ) -> List[ReadingRollup]:
        async with self._lock:
            rows = list(self.reading_rollups)

        matches = []
        for r in rows:
            if r.user_id != user_id:
                continue
            if book_id is not None and r.book_id != book_id:
                continue
            if chapter is not None and r.chapter != chapter:
                continue
            if read_after or read_before:
                if r.last_read_at is None:
                    continue
                if read_after and r.last_read_at < read_after:
                    continue
                if read_before and r.last_read_at > read_before:
                    continue
            matches.append(r)

        oldest = datetime.min.replace(tzinfo=timezone.utc)
        matches.sort(key=lambda r: r.last_read_at or oldest, reverse=True)
        return matches[:limit]

    # Durable memories

    async def find_memory(self, user_id: str, memory_type: str, value: Dict[str, Any]) -> Optional[UserMemory]:
        async with self._lock:
            for memory in self.memories.values():
                if (
                    memory.user_id == user_id
                    and memory.memory_type == memory_type
                    and memory.value == value
                    and memory.is_active
                ):
                    return memory
            return None

    async def get_memory(self, memory_id: str) -> Optional[UserMemory]:
        async with self._lock:
            return self.memories.get(memory_id)

    async def create_memory(self, memory: UserMemory) -> UserMemory:
        async with self._lock:
            self.memories[memory.id] = memory
            return memory

    async def update_memory(self, memory_id: str, updates: Dict[str, Any]) -> Optional[UserMemory]:
        async with self._lock:
            memory = self.memories.get(memory_id)
            if memory is None:
                return None
            updated = memory.model_copy(update=updates)
            self.memories[memory_id] = updated
            return updated

    async def touch_memories(self, memory_ids: Sequence[str], at: datetime) -> int:
        async with self._lock:
            touched = 0
            for memory_id in memory_ids:
                memory = self.memories.get(memory_id)
                if memory is None:
                    continue
                self.memories[memory_id] = memory.model_copy(update={
                    "last_accessed_at": at,
                    "access_count": memory.access_count + 1,
                })
                touched += 1
            return touched

    # Signals

    async def find_signal(self, user_id: str, signal_type: str, value: Dict[str, Any]) -> Optional[UserSignal]:
        async with self._lock:
            for signal in self.signals.values():
                if signal.user_id == user_id and signal.signal_type == signal_type and signal.value == value:
                    return signal
            return None

    async def create_signal(self, signal: UserSignal) -> UserSignal:
        async with self._lock:
            self.signals[signal.id] = signal
            return signal

    async def update_signal(self, signal_id: str, updates: Dict[str, Any]) -> Optional[UserSignal]:
        async with self._lock:
            signal = self.signals.get(signal_id)
            if signal is None:
                return None
            updated = signal.model_copy(update=updates)
            self.signals[signal_id] = updated
            return updated

    async def delete_signal(self, signal_id: str) -> bool:
        async with self._lock:
            return self.signals.pop(signal_id, None) is not None

    async def delete_expired_signals(self, now: datetime) -> int:
        async with self._lock:
            expired = [sid for sid, s in self.signals.items() if s.expires_at < now]
            for sid in expired:
                del self.signals[sid]
            return len(expired)

    # Analytics

    async def append_analytics_event(self, event: Dict[str, Any]) -> None:
        async with self._lock:
            self.analytics_events.append(event)
