"""
Multipublish Token Store
========================
Platform OAuth tokens per (user, platform), the contract the orchestrator
consumes, and the refresh glue that keeps them current.

Tokens live in `platform_tokens` as an AES-GCM encrypted JSON blob:
  {"kid": "v2", "nonce": "...", "data": "..."}

TOKEN_ENC_KEYS format:
  v1:BASE64_32_BYTES_KEY,v2:BASE64_32_BYTES_KEY
Newest should be last. Old keys remain to decrypt.
"""

from __future__ import annotations

import base64
import json
import logging
import secrets
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, List, Optional

import asyncpg
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .context import Platform, PlatformAccount, TokenGrant

logger = logging.getLogger("multipublish.tokens")

# Fields stored inside the encrypted blob; everything else on the account is a column
_BLOB_FIELDS = ("access_token", "refresh_token")


# ============================================================
# Encryption
# ============================================================

def parse_enc_keys(raw: str) -> Dict[str, bytes]:
    """Parse TOKEN_ENC_KEYS into an ordered {kid: key} map (oldest first)."""
    if not raw:
        raise RuntimeError("TOKEN_ENC_KEYS is required")

    keys: Dict[str, bytes] = {}
    clean = raw.strip().strip('"').replace("\\n", "")
    parts = [p.strip() for p in clean.split(",") if p.strip()]

    for part in parts:
        if ":" not in part:
            continue
        kid, b64key = part.split(":", 1)
        key = base64.b64decode(b64key.strip())
        if len(key) != 32:
            raise RuntimeError(f"TOKEN_ENC_KEYS invalid: {kid} must decode to 32 bytes")
        keys[kid.strip()] = key

    if not keys:
        raise RuntimeError("TOKEN_ENC_KEYS parsed empty/invalid; fix env var.")

    def _ver(k: str) -> int:
        try:
            return int(k.lstrip("v"))
        except ValueError:
            return 0

    ordered = sorted(keys.keys(), key=_ver)
    return {k: keys[k] for k in ordered}


class TokenCipher:
    """Encrypts token payloads with the newest key; decrypts with any known key."""

    def __init__(self, keys: Dict[str, bytes]):
        if not keys:
            raise ValueError("At least one encryption key is required")
        self.keys = keys
        self.current_key_id = list(keys.keys())[-1]

    @classmethod
    def from_env_value(cls, raw: str) -> "TokenCipher":
        return cls(parse_enc_keys(raw))

    def encrypt(self, data: dict) -> dict:
        aesgcm = AESGCM(self.keys[self.current_key_id])
        nonce = secrets.token_bytes(12)
        ciphertext = aesgcm.encrypt(nonce, json.dumps(data).encode("utf-8"), None)
        return {
            "kid": self.current_key_id,
            "nonce": base64.b64encode(nonce).decode("utf-8"),
            "data": base64.b64encode(ciphertext).decode("utf-8"),
        }

    def decrypt(self, blob: Any) -> dict:
        if isinstance(blob, str):
            blob = json.loads(blob)
        kid = blob.get("kid", self.current_key_id)
        if kid not in self.keys:
            raise ValueError(f"Unknown key ID: {kid}")
        aesgcm = AESGCM(self.keys[kid])
        nonce = base64.b64decode(blob["nonce"])
        ciphertext = base64.b64decode(blob["data"])
        return json.loads(aesgcm.decrypt(nonce, ciphertext, None).decode("utf-8"))


# ============================================================
# Contract
# ============================================================

class TokenStore(ABC):
    """Identity+token store contract consumed by the orchestrator."""

    @abstractmethod
    async def find(self, user_id: str, platform: Platform) -> Optional[PlatformAccount]:
        ...

    @abstractmethod
    async def update(self, account_id: str, fields: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def delete(self, user_id: str, platform: Platform) -> None:
        ...

    async def connected_platforms(self, user_id: str) -> List[Platform]:
        connected = []
        for platform in Platform:
            if await self.find(user_id, platform) is not None:
                connected.append(platform)
        return connected


class PostgresTokenStore(TokenStore):
    """asyncpg-backed store over the `platform_tokens` table."""

    def __init__(self, pool: asyncpg.Pool, cipher: TokenCipher):
        self.pool = pool
        self.cipher = cipher

    def _row_to_account(self, row) -> Optional[PlatformAccount]:
        try:
            payload = self.cipher.decrypt(row["token_blob"])
        except Exception as e:
            logger.error(f"Failed to decrypt token for {row['user_id']}/{row['platform']}: {e}")
            return None
        access_token = payload.get("access_token")
        if not access_token:
            return None
        return PlatformAccount(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            platform=Platform.parse(row["platform"]),
            access_token=access_token,
            refresh_token=payload.get("refresh_token"),
            expires_at=row["expires_at"],
            extra={k: v for k, v in payload.items() if k not in _BLOB_FIELDS},
        )

    async def find(self, user_id: str, platform: Platform) -> Optional[PlatformAccount]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT id, user_id, platform, token_blob, expires_at
                FROM platform_tokens
                WHERE user_id = $1 AND platform = $2
                """,
                user_id,
                platform.value,
            )
        return self._row_to_account(row) if row else None

    async def update(self, account_id: str, fields: Dict[str, Any]) -> None:
        """Merge ``fields`` into the stored token. Last write wins."""
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    "SELECT token_blob, expires_at FROM platform_tokens WHERE id = $1 FOR UPDATE",
                    account_id,
                )
                if not row:
                    logger.warning(f"Token update skipped, account {account_id} no longer exists")
                    return

                payload = self.cipher.decrypt(row["token_blob"])
                for key, value in fields.items():
                    if key == "expires_at":
                        continue
                    if key == "extra" and isinstance(value, dict):
                        payload.update(value)
                    else:
                        payload[key] = value

                expires_at: Optional[datetime] = fields.get("expires_at", row["expires_at"])
                await conn.execute(
                    """
                    UPDATE platform_tokens
                    SET token_blob = $2::jsonb,
                        expires_at = $3,
                        updated_at = NOW()
                    WHERE id = $1
                    """,
                    account_id,
                    json.dumps(self.cipher.encrypt(payload)),
                    expires_at,
                )

    async def delete(self, user_id: str, platform: Platform) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                "DELETE FROM platform_tokens WHERE user_id = $1 AND platform = $2",
                user_id,
                platform.value,
            )

    async def save(self, account: PlatformAccount) -> None:
        """Upsert a freshly connected account (written by the OAuth callback)."""
        payload = {"access_token": account.access_token, **account.extra}
        if account.refresh_token:
            payload["refresh_token"] = account.refresh_token
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO platform_tokens (user_id, platform, token_blob, expires_at, updated_at)
                VALUES ($1, $2, $3::jsonb, $4, NOW())
                ON CONFLICT (user_id, platform) DO UPDATE SET
                  token_blob = EXCLUDED.token_blob,
                  expires_at = EXCLUDED.expires_at,
                  updated_at = NOW()
                """,
                account.user_id,
                account.platform.value,
                json.dumps(self.cipher.encrypt(payload)),
                account.expires_at,
            )

    async def connected_platforms(self, user_id: str) -> List[Platform]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("SELECT platform FROM platform_tokens WHERE user_id = $1", user_id)
        connected = []
        for row in rows:
            try:
                connected.append(Platform.parse(row["platform"]))
            except ValueError:
                continue
        return connected


# ============================================================
# Refresh glue
# ============================================================

async def refresh_account(store: TokenStore, adapter, account: PlatformAccount) -> PlatformAccount:
    """
    Refresh ``account`` through its platform adapter and persist the grant.

    A rotated refresh token overwrites the stored one; a consumed refresh
    token must never be reused.

    Raises:
        AuthError: the platform rejected the refresh.
        RefreshUnsupported: the platform or stored account cannot refresh.
    """
    grant: TokenGrant = await adapter.refresh_token(account)
    fields = grant.to_fields()
    if account.id:
        await store.update(account.id, fields)
    logger.info(
        f"Token refreshed platform={account.platform.value} user={account.user_id} "
        f"rotated_refresh={bool(grant.refresh_token)}"
    )
    return replace(
        account,
        access_token=grant.access_token,
        refresh_token=grant.refresh_token or account.refresh_token,
        expires_at=fields.get("expires_at", account.expires_at),
    )
