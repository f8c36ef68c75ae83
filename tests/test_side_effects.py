import pytest

from forge_agent.domain.context.memory.cache_memory_store import CacheMemoryStore
from forge_agent.domain.context.state.side_effects import (
    AnalyticsEvent,
    ConversationState,
    MemoryWrite,
    NoOpSideEffects,
    RealSideEffects,
    assert_write_allowed,
    create_side_effects,
    with_side_effect_logging,
)
from forge_agent.domain.context.state.state_manager import UserStateManager
from forge_agent.domain.errors import WriteForbiddenError
from forge_agent.domain.models.run_context import (
    ExecutionMode,
    SideEffectPolicy,
    WritePolicy,
    are_side_effects_enabled,
)
from forge_agent.infrastructure.observability.logging import MetricsCollector


@pytest.fixture
def backends():
    return CacheMemoryStore(), UserStateManager()


class TestPolicies:

    def test_debug_defaults_disable_everything(self, make_ctx):
        ctx = make_ctx(mode=ExecutionMode.DEBUG)

        assert ctx.side_effects == SideEffectPolicy.DISABLED
        assert ctx.write_policy == WritePolicy.FORBID
        assert not are_side_effects_enabled(ctx)

    def test_both_policies_must_allow(self, make_ctx):
        assert are_side_effects_enabled(make_ctx())
        assert not are_side_effects_enabled(make_ctx(write_policy=WritePolicy.FORBID))
        assert not are_side_effects_enabled(make_ctx(side_effects=SideEffectPolicy.DISABLED))

    def test_debug_with_explicit_overrides(self, make_ctx):
        ctx = make_ctx(
            mode=ExecutionMode.DEBUG,
            side_effects=SideEffectPolicy.ENABLED,
            write_policy=WritePolicy.ALLOW,
        )
        assert are_side_effects_enabled(ctx)

    def test_assert_write_allowed(self, make_ctx):
        assert_write_allowed(make_ctx(), "write_memory")
        with pytest.raises(WriteForbiddenError):
            assert_write_allowed(make_ctx(mode=ExecutionMode.DEBUG), "write_memory")


class TestGatewaySelection:

    def test_real_gateway_for_permissive_run(self, storage, backends, make_ctx):
        gateway = create_side_effects(make_ctx(), storage, *backends)
        assert isinstance(gateway, RealSideEffects)

    def test_noop_gateway_when_writes_forbidden(self, storage, backends, make_ctx):
        gateway = create_side_effects(make_ctx(write_policy=WritePolicy.FORBID), storage, *backends)
        assert isinstance(gateway, NoOpSideEffects)

    @pytest.mark.asyncio
    async def test_noop_gateway_touches_nothing(self, storage, backends, make_ctx):
        metrics = MetricsCollector()
        cache, state = backends
        gateway = create_side_effects(make_ctx(mode=ExecutionMode.DEBUG), storage, cache, state, metrics=metrics)

        await gateway.write_memory("user-1", MemoryWrite(memory_type="faith_stage", value={"stage": "seeking"}))
        await gateway.set_cache("user:1:plan", {"a": 1})
        await gateway.increment_streak("user-1")
        await gateway.log_analytics(AnalyticsEvent(type="chat_started"))

        assert gateway.blocked == ["write_memory", "set_cache", "increment_streak", "log_analytics"]
        assert metrics.metrics["side_effects_blocked"] == 4
        assert await storage.list_memories("user-1") == []
        assert await cache.get("user:1:plan") is None
        assert await state.get_state("user-1") is None
        assert storage.analytics_events == []


class TestRealGateway:

    @pytest.mark.asyncio
    async def test_memory_writes_and_access_stats(self, storage, backends, make_ctx):
        gateway = create_side_effects(make_ctx(), storage, *backends)

        memory = await gateway.write_memory(
            "user-1", MemoryWrite(memory_type="struggle_theme", value={"theme": "discipline"}, strength=0.4),
        )
        await gateway.update_access_stats([memory.id])
        await gateway.reinforce_memory(memory.id, occurrences=5, strength=0.7)

        stored = await storage.get_memory(memory.id)
        assert stored.access_count == 1
        assert stored.last_accessed_at is not None
        assert stored.occurrences == 5
        assert stored.strength == 0.7

    @pytest.mark.asyncio
    async def test_cache_and_state(self, storage, backends, make_ctx):
        cache, state = backends
        gateway = create_side_effects(make_ctx(), storage, cache, state)

        await gateway.set_cache("user:1:plan", "cached")
        await gateway.set_cache("user:1:memories", "cached")
        await gateway.set_cache("user:2:plan", "cached")
        await gateway.invalidate_cache("user:1:*")
        await gateway.update_last_seen("user-1")
        await gateway.update_conversation_state("user-1", ConversationState(message_count=3))
        await gateway.increment_streak("user-1")
        await gateway.award_badge("user-1", "first_chat")
        await gateway.award_badge("user-1", "first_chat")
        await gateway.increment_counter("chats")

        assert await cache.get("user:1:plan") is None
        assert await cache.get("user:2:plan") == "cached"
        user_state = await state.get_state("user-1")
        assert user_state["streak"] == 1
        assert user_state["badges"] == ["first_chat"]
        assert user_state["conversation"] == {"message_count": 3}
        assert "last_seen_at" in user_state
        assert state.counters == {"chats": 1}

    @pytest.mark.asyncio
    async def test_analytics_event_recorded(self, storage, backends, make_ctx):
        ctx = make_ctx()
        gateway = create_side_effects(ctx, storage, *backends)

        await gateway.log_analytics(AnalyticsEvent(type="chat_started", properties={"platform": "ios"}))

        assert storage.analytics_events[0]["type"] == "chat_started"
        assert storage.analytics_events[0]["run_id"] == ctx.run_id


class TestSideEffectLogging:

    @pytest.mark.asyncio
    async def test_skipped_when_disabled(self, make_ctx):
        calls = []

        async def effect():
            calls.append(1)
            return "done"

        assert await with_side_effect_logging(make_ctx(mode=ExecutionMode.DEBUG), "op", effect) is None
        assert await with_side_effect_logging(make_ctx(), "op", effect) == "done"
        assert calls == [1]

    @pytest.mark.asyncio
    async def test_failures_are_reraised(self, make_ctx):
        async def effect():
            raise RuntimeError("disk full")

        with pytest.raises(RuntimeError):
            await with_side_effect_logging(make_ctx(), "op", effect)


class TestBackends:

    @pytest.mark.asyncio
    async def test_cache_expiry(self):
        cache = CacheMemoryStore()
        await cache.set("fresh", 1)
        await cache.set("stale", 2, ttl=-1)

        assert await cache.clear_expired() == 1
        assert await cache.get("fresh") == 1
        assert await cache.get("stale") is None

    @pytest.mark.asyncio
    async def test_clear_state(self):
        state = UserStateManager()
        await state.increment_streak("user-1")

        await state.clear_state("user-1")

        assert await state.get_state("user-1") is None
