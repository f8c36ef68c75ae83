"""Side-effect gateway: the only path through which a run mutates anything.

`create_side_effects` hands out the real gateway when the run permits
writes and a no-op gateway otherwise. The no-op gateway logs what would
have happened and touches nothing.
"""
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, TypeVar
from datetime import datetime, timezone
import json
import structlog
from pydantic import BaseModel, Field

from forge_agent.domain.context.memory.cache_memory_store import CacheMemoryStore
from forge_agent.domain.context.state.state_manager import UserStateManager
from forge_agent.domain.errors import WriteForbiddenError
from forge_agent.domain.models.records import UserMemory, UserSignal
from forge_agent.domain.models.run_context import RunContext, WritePolicy, are_side_effects_enabled
from forge_agent.infrastructure.observability.logging import MetricsCollector, pipeline_logger
from forge_agent.infrastructure.persistence.storage import PipelineStorage

logger = structlog.get_logger(__name__)

T = TypeVar("T")

DEFAULT_CACHE_TTL_SECONDS = 3600


class MemoryWrite(BaseModel):
    memory_type: str
    value: Dict[str, Any]
    strength: float = 0.5
    occurrences: int = 1
    source: str = "side_effect"


class ConversationState(BaseModel):
    last_message_at: Optional[datetime] = None
    message_count: Optional[int] = None
    topic_summary: Optional[str] = None


class AnalyticsEvent(BaseModel):
    type: str
    properties: Dict[str, Any] = Field(default_factory=dict)


class SideEffects(ABC):
    """Every mutation a run may perform"""

    # Durable memory

    @abstractmethod
    async def write_memory(self, user_id: str, memory: MemoryWrite) -> Optional[UserMemory]:
        pass

    @abstractmethod
    async def update_access_stats(self, memory_ids: Sequence[str]) -> None:
        pass

    @abstractmethod
    async def reinforce_memory(self, memory_id: str, occurrences: int, strength: float) -> None:
        pass

    # Signals

    @abstractmethod
    async def record_signal(self, signal: UserSignal) -> None:
        pass

    @abstractmethod
    async def update_signal(self, signal_id: str, updates: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    async def delete_signal(self, signal_id: str) -> None:
        pass

    # Cache

    @abstractmethod
    async def set_cache(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        pass

    @abstractmethod
    async def invalidate_cache(self, pattern: str) -> None:
        pass

    # User state and gamification

    @abstractmethod
    async def update_last_seen(self, user_id: str) -> None:
        pass

    @abstractmethod
    async def update_conversation_state(self, user_id: str, state: ConversationState) -> None:
        pass

    @abstractmethod
    async def increment_streak(self, user_id: str) -> None:
        pass

    @abstractmethod
    async def award_badge(self, user_id: str, badge: str) -> None:
        pass

    # Analytics

    @abstractmethod
    async def log_analytics(self, event: AnalyticsEvent) -> None:
        pass

    @abstractmethod
    async def increment_counter(self, key: str) -> None:
        pass


class RealSideEffects(SideEffects):
    """Gateway backed by storage, the cache store and the user state manager"""

    def __init__(
        self,
        run_id: str,
        storage: PipelineStorage,
        cache: CacheMemoryStore,
        state_manager: UserStateManager,
    ):
        self.run_id = run_id
        self.storage = storage
        self.cache = cache
        self.state_manager = state_manager

    def _log(self, operation: str, **details: Any) -> None:
        pipeline_logger.log_side_effect(operation, self.run_id, executed=True, details=details)

    async def write_memory(self, user_id: str, memory: MemoryWrite) -> Optional[UserMemory]:
        now = datetime.now(timezone.utc)
        created = await self.storage.create_memory(UserMemory(
            user_id=user_id,
            memory_type=memory.memory_type,
            value=memory.value,
            strength=memory.strength,
            occurrences=memory.occurrences,
            source=memory.source,
            first_seen_at=now,
            last_seen_at=now,
        ))
        self._log("write_memory", memory_type=memory.memory_type, memory_id=created.id)
        return created

    async def update_access_stats(self, memory_ids: Sequence[str]) -> None:
        if not memory_ids:
            return
        touched = await self.storage.touch_memories(list(memory_ids), datetime.now(timezone.utc))
        self._log("update_access_stats", count=touched)

    async def reinforce_memory(self, memory_id: str, occurrences: int, strength: float) -> None:
        await self.storage.update_memory(memory_id, {
            "occurrences": occurrences,
            "strength": strength,
            "last_seen_at": datetime.now(timezone.utc),
        })
        self._log("reinforce_memory", memory_id=memory_id, occurrences=occurrences)

    async def record_signal(self, signal: UserSignal) -> None:
        await self.storage.create_signal(signal)
        self._log("record_signal", signal_type=signal.signal_type)

    async def update_signal(self, signal_id: str, updates: Dict[str, Any]) -> None:
        await self.storage.update_signal(signal_id, updates)
        self._log("update_signal", signal_id=signal_id)

    async def delete_signal(self, signal_id: str) -> None:
        await self.storage.delete_signal(signal_id)
        self._log("delete_signal", signal_id=signal_id)

    async def set_cache(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        await self.cache.set(key, value, ttl=ttl or DEFAULT_CACHE_TTL_SECONDS)

    async def invalidate_cache(self, pattern: str) -> None:
        removed = await self.cache.invalidate(pattern)
        self._log("invalidate_cache", pattern=pattern, removed=removed)

    async def update_last_seen(self, user_id: str) -> None:
        await self.state_manager.update_last_seen(user_id)

    async def update_conversation_state(self, user_id: str, state: ConversationState) -> None:
        await self.state_manager.update_conversation_state(user_id, state.model_dump(exclude_none=True))

    async def increment_streak(self, user_id: str) -> None:
        streak = await self.state_manager.increment_streak(user_id)
        self._log("increment_streak", streak=streak)

    async def award_badge(self, user_id: str, badge: str) -> None:
        awarded = await self.state_manager.award_badge(user_id, badge)
        self._log("award_badge", badge=badge, awarded=awarded)

    async def log_analytics(self, event: AnalyticsEvent) -> None:
        await self.storage.append_analytics_event({
            "type": event.type,
            "properties": event.properties,
            "run_id": self.run_id,
            "recorded_at": datetime.now(timezone.utc).isoformat(),
        })
        logger.info("analytics_event", event_type=event.type, run_id=self.run_id)

    async def increment_counter(self, key: str) -> None:
        await self.state_manager.increment_counter(key)


class NoOpSideEffects(SideEffects):
    """Records what would have been mutated; performs no writes"""

    def __init__(self, run_id: str, metrics: Optional[MetricsCollector] = None):
        self.run_id = run_id
        self.metrics = metrics
        self.blocked: List[str] = []

    def _block(self, operation: str, *args: Any) -> None:
        self.blocked.append(operation)
        preview = json.dumps(args, default=str)[:200]
        pipeline_logger.log_side_effect(operation, self.run_id, executed=False, details={"args": preview})
        if self.metrics:
            self.metrics.increment_counter("side_effects_blocked", tags={"operation": operation})

    async def write_memory(self, user_id: str, memory: MemoryWrite) -> Optional[UserMemory]:
        self._block("write_memory", user_id, memory.model_dump())
        return None

    async def update_access_stats(self, memory_ids: Sequence[str]) -> None:
        self._block("update_access_stats", list(memory_ids))

    async def reinforce_memory(self, memory_id: str, occurrences: int, strength: float) -> None:
        self._block("reinforce_memory", memory_id, occurrences, strength)

    async def record_signal(self, signal: UserSignal) -> None:
        self._block("record_signal", signal.model_dump())

    async def update_signal(self, signal_id: str, updates: Dict[str, Any]) -> None:
        self._block("update_signal", signal_id, updates)

    async def delete_signal(self, signal_id: str) -> None:
        self._block("delete_signal", signal_id)

    async def set_cache(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        self._block("set_cache", key, ttl)

    async def invalidate_cache(self, pattern: str) -> None:
        self._block("invalidate_cache", pattern)

    async def update_last_seen(self, user_id: str) -> None:
        self._block("update_last_seen", user_id)

    async def update_conversation_state(self, user_id: str, state: ConversationState) -> None:
        self._block("update_conversation_state", user_id, state.model_dump())

    async def increment_streak(self, user_id: str) -> None:
        self._block("increment_streak", user_id)

    async def award_badge(self, user_id: str, badge: str) -> None:
        self._block("award_badge", user_id, badge)

    async def log_analytics(self, event: AnalyticsEvent) -> None:
        self._block("log_analytics", event.model_dump())

    async def increment_counter(self, key: str) -> None:
        self._block("increment_counter", key)


def create_side_effects(
    ctx: RunContext,
    storage: PipelineStorage,
    cache: CacheMemoryStore,
    state_manager: UserStateManager,
    metrics: Optional[MetricsCollector] = None,
) -> SideEffects:
    """Real gateway only when both the side-effect and write policies permit it"""
    if not are_side_effects_enabled(ctx):
        return NoOpSideEffects(ctx.run_id, metrics=metrics)
    return RealSideEffects(ctx.run_id, storage, cache, state_manager)


def assert_write_allowed(ctx: RunContext, operation: str) -> None:
    if ctx.write_policy == WritePolicy.FORBID:
        raise WriteForbiddenError(f'Write operation "{operation}" blocked in debug mode')


async def with_side_effect_logging(
    ctx: RunContext,
    operation: str,
    fn: Callable[[], Awaitable[T]],
) -> Optional[T]:
    """Run fn only when side effects are enabled; failures are logged and re-raised"""
    if not are_side_effects_enabled(ctx):
        logger.info("Skipped side effect", operation=operation, run_id=ctx.run_id, reason="disabled")
        return None

    try:
        result = await fn()
    except Exception as e:
        logger.error("Side effect failed", operation=operation, run_id=ctx.run_id, error=str(e))
        raise

    logger.info("Completed side effect", operation=operation, run_id=ctx.run_id)
    return result
