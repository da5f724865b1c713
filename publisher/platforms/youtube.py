"""
YouTube adapter.

Flow: fetch media -> POST metadata (resumable session, Location header)
-> PUT binary -> video_id. The upload completes inside `submit`, so the
state machine is submitted -> success|failed in one step.
"""

import logging
from typing import Any, Dict, Optional

import httpx

from ..config import YouTubeConfig
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
from ..errors import AuthError, ErrorCode, RefreshUnsupported, RemoteError
from .base import PlatformAdapter, safe_json

logger = logging.getLogger("multipublish.platforms.youtube")

TITLE_MAX = 100
DESCRIPTION_MAX = 5000


class YouTubeAdapter(PlatformAdapter):
    platform = Platform.YOUTUBE
    poll_based = False

    def __init__(self, config: YouTubeConfig, client: httpx.AsyncClient):
        super().__init__(config, client)

    def _is_auth_failure(self, resp: httpx.Response, body: Dict[str, Any]) -> bool:
        if resp.status_code == 401:
            return True
        error = body.get("error")
        if isinstance(error, dict):
            if error.get("status") == "UNAUTHENTICATED":
                return True
            for item in error.get("errors") or []:
                if isinstance(item, dict) and item.get("reason") == "authError":
                    return True
        return False

    async def submit(self, access_token: str, media_url: str, metadata: PublishMetadata) -> SubmitResult:
        self._require(media_url=media_url, title=metadata.title)

        media = await self._fetch_media(media_url)
        video_data = media.content
        content_type = media.headers.get("content-type", "video/mp4")

        body = {
            "snippet": {
                "title": metadata.title[:TITLE_MAX],
                "description": (metadata.caption or "")[:DESCRIPTION_MAX],
                "categoryId": self.config.category_id,
            },
            "status": {
                "privacyStatus": metadata.privacy or self.config.default_privacy,
                "selfDeclaredMadeForKids": False,
            },
        }

        init_resp = await self.client.post(
            self.config.upload_url,
            params={"uploadType": "resumable", "part": "snippet,status"},
            headers={
                **self._bearer(access_token),
                "Content-Type": "application/json",
                "X-Upload-Content-Type": content_type,
                "X-Upload-Content-Length": str(len(video_data)),
            },
            json=body,
        )
        self._check(init_resp, "Resumable upload init")

        upload_url = init_resp.headers.get("Location")
        if not upload_url:
            raise RemoteError(
                "No upload URL in resumable init response",
                http_status=init_resp.status_code,
                raw_body=safe_json(init_resp),
                platform=self.name,
            )

        upload_resp = await self.client.put(
            upload_url,
            content=video_data,
            headers={**self._bearer(access_token), "Content-Type": content_type},
        )
        result = self._check(upload_resp, "Video upload")

        video_id = result.get("id")
        if not video_id:
            raise RemoteError(
                "Upload finished without a video id",
                http_status=upload_resp.status_code,
                raw_body=result,
                platform=self.name,
            )

        logger.info(f"YouTube upload complete: video_id={video_id} bytes={len(video_data)}")
        return SubmitResult(
            external_job_id=video_id,
            status=PublishStatus.SUCCESS,
            platform_video_id=video_id,
            platform_url=f"https://www.youtube.com/watch?v={video_id}",
            delivery=DELIVERY_PUBLISHED,
            raw=result,
        )

    async def poll_status(
        self,
        access_token: str,
        external_job_id: str,
        job_context: Optional[Dict[str, Any]] = None,
    ) -> PollResult:
        """Satisfies the adapter interface; never called by the orchestrator since uploads finish in submit (poll_based=False)."""
        resp = await self.client.get(
            "https://www.googleapis.com/youtube/v3/videos",
            params={"id": external_job_id, "part": "status"},
            headers=self._bearer(access_token),
        )
        body = self._check(resp, "Video status lookup")

        items = body.get("items") or []
        if not items:
            return PollResult(status=PublishStatus.PROCESSING, raw=body)

        raw_status = str((items[0].get("status") or {}).get("uploadStatus") or "")
        s = raw_status.lower()
        if s in ("processed", "uploaded"):
            return PollResult(
                status=PublishStatus.SUCCESS,
                raw_status=raw_status,
                platform_video_id=external_job_id,
                platform_url=f"https://www.youtube.com/watch?v={external_job_id}",
                delivery=DELIVERY_PUBLISHED,
                raw=body,
            )
        if s in ("failed", "rejected", "deleted"):
            return PollResult(
                status=PublishStatus.FAILED,
                raw_status=raw_status,
                error_code=ErrorCode.UPLOAD_FAILED.value,
                error_message=f"YouTube reported upload status {raw_status}",
                raw=body,
            )
        return PollResult(status=PublishStatus.PROCESSING, raw_status=raw_status, raw=body)

    async def refresh_token(self, account: PlatformAccount) -> TokenGrant:
        if not account.refresh_token:
            raise RefreshUnsupported("No YouTube refresh_token stored; reconnect required", platform=self.name)
        if not self.config.configured:
            raise RefreshUnsupported("YouTube OAuth client is not configured", platform=self.name)

        resp = await self.client.post(
            self.config.token_url,
            data={
                "client_id": self.config.client_id,
                "client_secret": self.config.client_secret,
                "refresh_token": account.refresh_token,
                "grant_type": "refresh_token",
            },
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        body = safe_json(resp)
        if resp.status_code in (400, 401):
            raise AuthError(f"Google refresh failed: {resp.text[:200]}", details=body, platform=self.name)
        if not resp.is_success:
            raise RemoteError("Google refresh failed", http_status=resp.status_code, raw_body=body, platform=self.name)

        data = resp.json()
        if not data.get("access_token"):
            raise RemoteError("Google refresh returned no access_token", raw_body=body, platform=self.name)
        return TokenGrant(
            access_token=data["access_token"],
            # Google only returns a refresh token when it rotates one
            refresh_token=data.get("refresh_token"),
            expires_in=data.get("expires_in"),
            raw=body,
        )
