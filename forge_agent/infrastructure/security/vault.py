"""Encrypted storage for unredacted stage content.

Artifacts carry redacted previews only; the full prompt, messages and raw
provider responses are AES-256-GCM encrypted here and addressed by
`vault://<run_id>/<STAGE>`. Entries are written in debug mode only and
expire after 7 days.
"""
from typing import Any, Optional, Tuple
from datetime import datetime, timedelta, timezone
import hashlib
import json
import re
import secrets
import structlog
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from forge_agent.domain.errors import VaultConfigurationError, VaultDecryptionError
from forge_agent.domain.models.records import VaultEntry
from forge_agent.domain.models.run_context import RunContext, PipelineStage, is_debug_mode
from forge_agent.infrastructure.persistence.storage import PipelineStorage


logger = structlog.get_logger(__name__)

NONCE_SIZE = 12
TAG_SIZE = 16
VAULT_TTL_DAYS = 7
VAULT_REF_PATTERN = re.compile(r"^vault://([^/]+)/(.+)$")


def resolve_vault_key(key_hex: Optional[str], environment: str) -> bytes:
    """Resolve the 256-bit vault key.

    Development falls back to a deterministic key; every other environment
    requires a 64-hex-char key.
    """
    if not key_hex:
        if environment == "development":
            return hashlib.sha256(b"dev-vault-key").digest()
        raise VaultConfigurationError("VAULT_ENCRYPTION_KEY environment variable is required")

    try:
        key = bytes.fromhex(key_hex)
    except ValueError as e:
        raise VaultConfigurationError("VAULT_ENCRYPTION_KEY must be hex encoded") from e
    if len(key) != 32:
        raise VaultConfigurationError("VAULT_ENCRYPTION_KEY must be 32 bytes (64 hex chars)")
    return key


def encrypt(key: bytes, plaintext: str) -> Tuple[str, str, str]:
    """Encrypt text, returning hex (ciphertext, iv, auth_tag)"""
    iv = secrets.token_bytes(NONCE_SIZE)
    sealed = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
    ciphertext, tag = sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]
    return ciphertext.hex(), iv.hex(), tag.hex()


def decrypt(key: bytes, ciphertext_hex: str, iv_hex: str, auth_tag_hex: str) -> str:
    """Verify the tag and decrypt; raises VaultDecryptionError on any failure"""
    try:
        iv = bytes.fromhex(iv_hex)
        sealed = bytes.fromhex(ciphertext_hex) + bytes.fromhex(auth_tag_hex)
        return AESGCM(key).decrypt(iv, sealed, None).decode("utf-8")
    except (InvalidTag, ValueError) as e:
        raise VaultDecryptionError("Vault content failed authentication") from e


def build_vault_ref(run_id: str, stage: PipelineStage) -> str:
    return f"vault://{run_id}/{PipelineStage(stage).value}"


def parse_vault_ref(ref: str) -> Optional[Tuple[str, PipelineStage]]:
    """Split a vault reference into (run_id, stage)"""
    match = VAULT_REF_PATTERN.match(ref or "")
    if not match:
        return None
    try:
        return match.group(1), PipelineStage(match.group(2))
    except ValueError:
        return None


class Vault:
    """Debug-only encrypted store keyed by (run, stage)"""

    def __init__(self, storage: PipelineStorage, key: bytes):
        if len(key) != 32:
            raise VaultConfigurationError("Vault key must be 32 bytes")
        self.storage = storage
        self._key = key

    async def store(self, ctx: RunContext, stage: PipelineStage, raw_content: Any) -> str:
        """Encrypt and upsert content; returns the vault ref, or "" when skipped or failed"""

        if not is_debug_mode(ctx):
            return ""

        try:
            content = json.dumps(raw_content, default=str)
            ciphertext, iv, auth_tag = encrypt(self._key, content)
            now = datetime.now(timezone.utc)
            await self.storage.upsert_vault_entry(VaultEntry(
                run_id=ctx.run_id,
                stage=PipelineStage(stage).value,
                ciphertext=ciphertext,
                iv=iv,
                auth_tag=auth_tag,
                created_at=now,
                expires_at=now + timedelta(days=VAULT_TTL_DAYS),
            ))
        except Exception as e:
            logger.error("Failed to store vault content", run_id=ctx.run_id, stage=str(stage), error=str(e))
            return ""

        return build_vault_ref(ctx.run_id, stage)

    async def retrieve(self, run_id: str, stage: PipelineStage) -> Optional[Any]:
        """Decrypt stored content; None when missing or unreadable"""

        entry = await self.storage.get_vault_entry(run_id, PipelineStage(stage).value)
        if entry is None:
            return None

        try:
            return json.loads(decrypt(self._key, entry.ciphertext, entry.iv, entry.auth_tag))
        except (VaultDecryptionError, ValueError) as e:
            logger.error("Failed to decrypt vault content", run_id=run_id, stage=str(stage), error=str(e))
            return None

    async def retrieve_ref(self, ref: str) -> Optional[Any]:
        parsed = parse_vault_ref(ref)
        if parsed is None:
            return None
        return await self.retrieve(*parsed)

    async def delete(self, run_id: str) -> int:
        return await self.storage.delete_vault_entries(run_id)

    async def cleanup_expired(self) -> int:
        count = await self.storage.delete_expired_vault_entries(datetime.now(timezone.utc))
        if count:
            logger.info("Cleaned up expired vault entries", count=count)
        return count
