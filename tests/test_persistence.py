from datetime import datetime, timedelta, timezone

import pytest

from forge_agent.domain.errors import VaultConfigurationError, VaultDecryptionError
from forge_agent.domain.models.artifacts import StageArtifact
from forge_agent.domain.models.run_context import ExecutionMode, PipelineStage
from forge_agent.domain.redaction import MAX_PREVIEW_LENGTH, redact_preview
from forge_agent.infrastructure.persistence.artifact_store import ArtifactStore
from forge_agent.infrastructure.security.vault import (
    Vault,
    build_vault_ref,
    decrypt,
    encrypt,
    parse_vault_ref,
    resolve_vault_key,
)

KEY = bytes(range(32))


def artifact(ctx, stage=PipelineStage.INGRESS, created_at=None):
    return StageArtifact(
        trace_id=ctx.trace_id,
        run_id=ctx.run_id,
        stage=stage,
        schema_version="v1",
        summary="ok",
        created_at=created_at or datetime.now(timezone.utc),
    )


class TestVaultKey:

    def test_development_fallback_is_stable(self):
        assert resolve_vault_key(None, "development") == resolve_vault_key("", "development")
        assert len(resolve_vault_key(None, "development")) == 32

    def test_key_required_outside_development(self):
        with pytest.raises(VaultConfigurationError):
            resolve_vault_key(None, "production")

    def test_key_must_be_32_hex_bytes(self):
        assert resolve_vault_key("ab" * 32, "production") == bytes([0xAB]) * 32
        with pytest.raises(VaultConfigurationError):
            resolve_vault_key("ab" * 16, "production")
        with pytest.raises(VaultConfigurationError):
            resolve_vault_key("zz" * 32, "production")


class TestCipher:

    def test_round_trip_uses_fresh_iv(self):
        first = encrypt(KEY, "secret prompt")
        second = encrypt(KEY, "secret prompt")

        assert first[1] != second[1]
        assert decrypt(KEY, *first) == "secret prompt"

    def test_tampered_ciphertext_rejected(self):
        ciphertext, iv, tag = encrypt(KEY, "secret prompt")
        flipped = format(int(ciphertext[:2], 16) ^ 0x01, "02x") + ciphertext[2:]

        with pytest.raises(VaultDecryptionError):
            decrypt(KEY, flipped, iv, tag)
        with pytest.raises(VaultDecryptionError):
            decrypt(bytes(32), ciphertext, iv, tag)


class TestVaultRefs:

    def test_build_and_parse(self):
        ref = build_vault_ref("run_abc", PipelineStage.PROMPT_ASSEMBLY)

        assert ref == "vault://run_abc/PROMPT_ASSEMBLY"
        assert parse_vault_ref(ref) == ("run_abc", PipelineStage.PROMPT_ASSEMBLY)

    def test_malformed_refs(self):
        assert parse_vault_ref("https://example.com") is None
        assert parse_vault_ref("vault://run_abc/NOT_A_STAGE") is None


class TestVault:

    @pytest.mark.asyncio
    async def test_debug_store_and_retrieve(self, storage, make_ctx):
        ctx = make_ctx(mode=ExecutionMode.DEBUG)
        vault = Vault(storage, KEY)

        ref = await vault.store(ctx, PipelineStage.MODEL_CALL, {"content": "hello"})

        assert ref == f"vault://{ctx.run_id}/MODEL_CALL"
        entry = storage.vault_entries[(ctx.run_id, "MODEL_CALL")]
        assert "hello" not in entry.ciphertext
        assert entry.expires_at - entry.created_at == timedelta(days=7)
        assert await vault.retrieve_ref(ref) == {"content": "hello"}

    @pytest.mark.asyncio
    async def test_prod_run_stores_nothing(self, storage, make_ctx):
        ref = await Vault(storage, KEY).store(make_ctx(), PipelineStage.MODEL_CALL, {"content": "hello"})

        assert ref == ""
        assert storage.vault_entries == {}

    @pytest.mark.asyncio
    async def test_tampered_entry_reads_as_missing(self, storage, make_ctx):
        ctx = make_ctx(mode=ExecutionMode.DEBUG)
        vault = Vault(storage, KEY)
        await vault.store(ctx, PipelineStage.MODEL_CALL, {"content": "hello"})
        key = (ctx.run_id, "MODEL_CALL")
        storage.vault_entries[key] = storage.vault_entries[key].model_copy(update={"auth_tag": "00" * 16})

        assert await vault.retrieve(ctx.run_id, PipelineStage.MODEL_CALL) is None

    @pytest.mark.asyncio
    async def test_delete_and_cleanup(self, storage, make_ctx):
        ctx = make_ctx(mode=ExecutionMode.DEBUG)
        vault = Vault(storage, KEY)
        await vault.store(ctx, PipelineStage.INGRESS, {"a": 1})
        await vault.store(ctx, PipelineStage.MODEL_CALL, {"b": 2})
        key = (ctx.run_id, "INGRESS")
        storage.vault_entries[key] = storage.vault_entries[key].model_copy(update={
            "expires_at": datetime.now(timezone.utc) - timedelta(seconds=1),
        })

        assert await vault.cleanup_expired() == 1
        assert await vault.delete(ctx.run_id) == 1
        assert storage.vault_entries == {}

    def test_rejects_short_key(self, storage):
        with pytest.raises(VaultConfigurationError):
            Vault(storage, b"short")


class TestArtifactStore:

    @pytest.mark.asyncio
    async def test_expiry_depends_on_mode(self, storage, make_ctx):
        store = ArtifactStore(storage)
        debug_ctx = make_ctx(mode=ExecutionMode.DEBUG)
        prod_ctx = make_ctx()

        assert await store.persist(debug_ctx, artifact(debug_ctx))
        assert await store.persist(prod_ctx, artifact(prod_ctx))

        now = datetime.now(timezone.utc)
        debug_ttl = (await store.get_artifact(debug_ctx.run_id, PipelineStage.INGRESS)).expires_at - now
        prod_ttl = (await store.get_artifact(prod_ctx.run_id, PipelineStage.INGRESS)).expires_at - now
        assert timedelta(days=6) < debug_ttl <= timedelta(days=7)
        assert timedelta(days=29) < prod_ttl <= timedelta(days=30)

    @pytest.mark.asyncio
    async def test_one_artifact_per_stage_in_creation_order(self, storage, make_ctx):
        store = ArtifactStore(storage)
        ctx = make_ctx()
        start = datetime.now(timezone.utc)

        await store.persist(ctx, artifact(ctx, PipelineStage.CONTEXT_CANDIDATES, start + timedelta(seconds=2)))
        await store.persist(ctx, artifact(ctx, PipelineStage.INGRESS, start))
        await store.persist(ctx, artifact(ctx, PipelineStage.INGRESS, start + timedelta(seconds=1)))

        stages = [a.stage for a in await store.get_artifacts(ctx.run_id)]
        assert stages == [PipelineStage.INGRESS, PipelineStage.CONTEXT_CANDIDATES]
        assert await store.delete_artifacts(ctx.run_id) == 2

    @pytest.mark.asyncio
    async def test_cleanup_expired(self, storage, make_ctx):
        store = ArtifactStore(storage)
        ctx = make_ctx()
        await store.persist(ctx, artifact(ctx))
        key = (ctx.run_id, "INGRESS")
        storage.stage_artifacts[key] = storage.stage_artifacts[key].model_copy(update={
            "expires_at": datetime.now(timezone.utc) - timedelta(minutes=1),
        })

        assert await store.cleanup_expired() == 1
        assert await store.get_artifacts(ctx.run_id) == []


class TestPreviewRedaction:

    def test_pii_across_cut_point_is_fully_redacted(self):
        preview = redact_preview("x" * 140 + " john.doe@example.com")

        assert len(preview) <= MAX_PREVIEW_LENGTH
        assert "john" not in preview
        assert preview == "x" * 140 + " [EMAIL]"

    def test_long_text_is_bounded(self):
        preview = redact_preview("call 555-123-4567 " + "y" * 300)

        assert len(preview) == MAX_PREVIEW_LENGTH
        assert preview.startswith("call [PHONE] ")
        assert preview.endswith("...")

    def test_short_text_unchanged(self):
        assert redact_preview("") == ""
        assert redact_preview("A quiet morning") == "A quiet morning"
