"""
Instagram adapter (Instagram API with Instagram Login).

Flow (URL-based, required by Meta):
  1. GET /me?fields=id,username                     -> ig_user_id
  2. POST /{ig_user_id}/media  (REELS, video_url)    -> container id
  3. Poll GET /{container_id}?fields=status_code     until FINISHED
  4. POST /{ig_user_id}/media_publish (creation_id)  -> media id

Reaching FINISHED is not success on its own: only a successful
media_publish call is.
"""

import logging
from typing import Any, Dict, Optional

import httpx

from ..config import InstagramConfig
from ..context import (
    DELIVERY_PUBLISHED,
    Platform,
    PlatformAccount,
    PollResult,
    PublishMetadata,
    PublishStatus,
    SubmitResult,
    TokenGrant,
)
from ..errors import AuthError, ErrorCode, RemoteError
from .base import PlatformAdapter, safe_json

logger = logging.getLogger("multipublish.platforms.instagram")

CAPTION_MAX = 2200

# Graph API error code for invalid/expired OAuth tokens
OAUTH_EXCEPTION_CODE = 190


class InstagramAdapter(PlatformAdapter):
    platform = Platform.INSTAGRAM
    poll_based = True

    def __init__(self, config: InstagramConfig, client: httpx.AsyncClient):
        super().__init__(config, client)

    @property
    def _api(self) -> str:
        return f"{self.config.graph_url.rstrip('/')}/{self.config.api_version}"

    def _is_auth_failure(self, resp: httpx.Response, body: Dict[str, Any]) -> bool:
        if resp.status_code == 401:
            return True
        error = body.get("error")
        if isinstance(error, dict):
            try:
                return int(error.get("code", 0)) == OAUTH_EXCEPTION_CODE
            except (TypeError, ValueError):
                return False
        return False

    async def _resolve_account(self, access_token: str) -> Dict[str, Any]:
        # Legacy endpoint: token in the query string
        resp = await self.client.get(
            f"{self.config.graph_url.rstrip('/')}/me",
            params={"fields": "id,username", "access_token": access_token},
        )
        body = self._check(resp, "Instagram account lookup")
        if not body.get("id"):
            raise RemoteError(
                "Instagram Professional Account Required: no account id returned. "
                "Convert the account to Business or Creator and reconnect.",
                http_status=resp.status_code,
                raw_body=body,
                platform=self.name,
            )
        return body

    async def submit(self, access_token: str, media_url: str, metadata: PublishMetadata) -> SubmitResult:
        self._require(media_url=media_url)

        account = await self._resolve_account(access_token)
        ig_user_id = str(account["id"])

        caption = (metadata.caption or "")[:CAPTION_MAX]
        logger.info(f"Instagram: Creating Reels container for ig_user_id={ig_user_id}")
        resp = await self.client.post(
            f"{self._api}/{ig_user_id}/media",
            headers=self._bearer(access_token),
            data={
                "media_type": "REELS",
                "video_url": media_url,
                "caption": caption,
            },
        )
        body = self._check(resp, "Container creation")

        container_id = body.get("id")
        if not container_id:
            raise RemoteError(
                "No container id returned from media endpoint",
                http_status=resp.status_code,
                raw_body=body,
                platform=self.name,
            )

        logger.info(f"Instagram: Container created, container_id={container_id}")
        return SubmitResult(
            external_job_id=str(container_id),
            status=PublishStatus.SUBMITTED,
            job_context={"ig_user_id": ig_user_id, "username": account.get("username")},
            raw=body,
        )

    async def poll_status(
        self,
        access_token: str,
        external_job_id: str,
        job_context: Optional[Dict[str, Any]] = None,
    ) -> PollResult:
        resp = await self.client.get(
            f"{self._api}/{external_job_id}",
            headers=self._bearer(access_token),
            params={"fields": "status_code,status"},
        )
        body = self._check(resp, "Container status check")
        raw_status = str(body.get("status_code") or "UNKNOWN")

        if raw_status == "FINISHED":
            ig_user_id = (job_context or {}).get("ig_user_id") or "me"
            return await self._publish(access_token, ig_user_id, external_job_id)
        if raw_status == "ERROR":
            return PollResult(
                status=PublishStatus.FAILED,
                raw_status=raw_status,
                error_code=ErrorCode.CONTAINER_ERROR.value,
                error_message=f"Container processing failed: {body.get('status', 'Unknown error')}",
                raw=body,
            )
        if raw_status == "EXPIRED":
            return PollResult(
                status=PublishStatus.FAILED,
                raw_status=raw_status,
                error_code=ErrorCode.CONTAINER_EXPIRED.value,
                error_message="Container expired before publishing",
                raw=body,
            )
        # IN_PROGRESS or anything unrecognised
        return PollResult(status=PublishStatus.PROCESSING, raw_status=raw_status, raw=body)

    async def _publish(self, access_token: str, ig_user_id: str, container_id: str) -> PollResult:
        resp = await self.client.post(
            f"{self._api}/{ig_user_id}/media_publish",
            headers=self._bearer(access_token),
            data={"creation_id": container_id},
        )
        try:
            body = self._check(resp, "Media publish")
        except RemoteError as e:
            return PollResult(
                status=PublishStatus.FAILED,
                raw_status="FINISHED",
                error_code=ErrorCode.PUBLISH_FAILED.value,
                error_message=f"Publish failed: {e.message}",
                raw=e.raw_body,
            )

        media_id = body.get("id")
        if not media_id:
            return PollResult(
                status=PublishStatus.FAILED,
                raw_status="FINISHED",
                error_code=ErrorCode.PUBLISH_FAILED.value,
                error_message="Publish returned no media id",
                raw=body,
            )

        logger.info(f"Instagram publish complete: media_id={media_id}")
        return PollResult(
            status=PublishStatus.SUCCESS,
            raw_status="FINISHED",
            platform_video_id=str(media_id),
            delivery=DELIVERY_PUBLISHED,
            raw=body,
        )

    async def refresh_token(self, account: PlatformAccount) -> TokenGrant:
        """Extend a long-lived token. Instagram refreshes with the access token itself."""
        resp = await self.client.get(
            f"{self.config.graph_url.rstrip('/')}/refresh_access_token",
            params={"grant_type": "ig_refresh_token", "access_token": account.access_token},
        )
        body = safe_json(resp)
        if self._is_auth_failure(resp, body) or resp.status_code == 400:
            raise AuthError(f"Instagram token refresh failed: {resp.text[:200]}", details=body, platform=self.name)
        if not resp.is_success:
            raise RemoteError("Instagram token refresh failed", http_status=resp.status_code,
                              raw_body=body, platform=self.name)

        data = resp.json()
        if not data.get("access_token"):
            raise RemoteError("Invalid response from Instagram API", http_status=resp.status_code,
                              raw_body=body, platform=self.name)
        return TokenGrant(access_token=data["access_token"], expires_in=data.get("expires_in"), raw=body)
