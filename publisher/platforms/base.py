"""
Platform adapter interface.

Each adapter hides one platform's publish protocol behind the canonical
{submitted, processing, success, failed} contract:

  submit(access_token, media_url, metadata)            -> SubmitResult
  poll_status(access_token, external_job_id, context)  -> PollResult
  refresh_token(account)                               -> TokenGrant
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx

from ..context import Platform, PlatformAccount, PollResult, PublishMetadata, SubmitResult, TokenGrant
from ..errors import AuthError, RemoteError, ValidationError

logger = logging.getLogger("multipublish.platforms")

DEFAULT_HTTP_TIMEOUT = httpx.Timeout(connect=10.0, read=120.0, write=120.0, pool=10.0)


def safe_json(resp: httpx.Response) -> Dict[str, Any]:
    """Parse a response body for diagnostics, dropping anything that looks like a secret."""
    try:
        data = resp.json()
    except ValueError:
        return {"text": (resp.text or "")[:4000]}
    if isinstance(data, dict):
        out = {}
        for k, v in data.items():
            lk = str(k).lower()
            if "token" in lk or "secret" in lk or "authorization" in lk:
                continue
            out[k] = v
        return out
    return {"data": data}


class PlatformAdapter(ABC):
    """Base class for the per-platform publish protocols."""

    platform: Platform
    # False for platforms whose submit already returns a terminal state
    poll_based: bool = True

    def __init__(self, config, client: httpx.AsyncClient):
        self.config = config
        self.client = client

    @property
    def name(self) -> str:
        return self.platform.value

    @abstractmethod
    async def submit(self, access_token: str, media_url: str, metadata: PublishMetadata) -> SubmitResult:
        """Start the publish job on the platform."""

    @abstractmethod
    async def poll_status(
        self,
        access_token: str,
        external_job_id: str,
        job_context: Optional[Dict[str, Any]] = None,
    ) -> PollResult:
        """Classify the platform's current job status."""

    @abstractmethod
    async def refresh_token(self, account: PlatformAccount) -> TokenGrant:
        """Exchange stored credentials for a fresh access token."""

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------

    def _bearer(self, access_token: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {access_token}"}

    def _require(self, **fields: Any):
        missing = [name for name, value in fields.items() if not value]
        if missing:
            raise ValidationError(
                f"Missing required fields: {', '.join(missing)}",
                details={"missing": missing},
                platform=self.name,
            )

    def _is_auth_failure(self, resp: httpx.Response, body: Dict[str, Any]) -> bool:
        return resp.status_code == 401

    def _check(self, resp: httpx.Response, action: str) -> Dict[str, Any]:
        """
        Return the parsed body of a successful response.

        Raises:
            AuthError: token rejected.
            RemoteError: any other non-2xx response, with the raw body attached.
        """
        body = safe_json(resp)
        if self._is_auth_failure(resp, body):
            logger.warning(f"{self.name}: {action} rejected token (HTTP {resp.status_code})")
            raise AuthError(
                f"{action} rejected the access token",
                details={"http_status": resp.status_code, "body": body},
                platform=self.name,
            )
        if not resp.is_success:
            logger.error(f"{self.name}: {action} failed: {resp.status_code} {resp.text[:300]}")
            raise RemoteError(
                f"{action} failed with HTTP {resp.status_code}",
                http_status=resp.status_code,
                raw_body=body,
                platform=self.name,
            )
        return body

    async def _fetch_media(self, media_url: str) -> httpx.Response:
        resp = await self.client.get(media_url)
        if not resp.is_success:
            raise RemoteError(
                "Could not retrieve video from temporary storage",
                http_status=resp.status_code,
                raw_body=(resp.text or "")[:500],
                platform=self.name,
            )
        return resp
