"""
TikTok adapter (Content Posting API v2).

Flow: creator_info query -> HEAD media (size/type) -> init FILE_UPLOAD
-> PUT chunks to upload_url -> publish_id, then poll
/post/publish/status/fetch/ until terminal.

A TikTok "success" means the video was handed to the creator's account
(private post / inbox), not that it is publicly visible. Results carry
delivery="handed_off" so callers never confuse the two.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterator, Optional, Tuple

import httpx

from ..config import TikTokConfig
from ..context import (
    DELIVERY_HANDED_OFF,
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

logger = logging.getLogger("multipublish.platforms.tiktok")

MIN_CHUNK_SIZE = 5 * 1024 * 1024        # TikTok minimum; smaller files go as one chunk
OPTIMAL_CHUNK_SIZE = 10 * 1024 * 1024   # smaller chunks survive flaky networks better
MAX_CHUNK_COUNT = 1000
TITLE_MAX = 2200

SUCCESS_STATUSES = {"PUBLISH_SUCCESSFUL", "PUBLISHED", "PUBLISH_COMPLETE"}
FAILED_STATUSES = {"PUBLISH_FAILED", "FAILED"}


def classify_status(raw_status: Optional[str]) -> PublishStatus:
    """Map TikTok's publish status vocabulary onto the canonical states."""
    s = str(raw_status or "").upper()
    if s in SUCCESS_STATUSES:
        return PublishStatus.SUCCESS
    if s in FAILED_STATUSES:
        return PublishStatus.FAILED
    # UPLOAD_SUCCESSFUL still needs processing on TikTok's side;
    # PROCESSING_UPLOAD / PROCESSING_DOWNLOAD / unknown keep polling
    return PublishStatus.PROCESSING


@dataclass(frozen=True)
class ChunkPlan:
    video_size: int
    chunk_size: int
    total_chunk_count: int

    def ranges(self) -> Iterator[Tuple[int, int]]:
        """Inclusive byte ranges; the final chunk absorbs the remainder."""
        for i in range(self.total_chunk_count):
            start = i * self.chunk_size
            if i == self.total_chunk_count - 1:
                end = self.video_size - 1
            else:
                end = start + self.chunk_size - 1
            yield start, end


def plan_chunks(video_size: int) -> ChunkPlan:
    if video_size <= 0:
        raise ValueError("video_size must be positive")
    if video_size < MIN_CHUNK_SIZE:
        return ChunkPlan(video_size, video_size, 1)

    chunk_size = OPTIMAL_CHUNK_SIZE
    if video_size < chunk_size:
        chunk_size = video_size
    total = video_size // chunk_size
    if total > MAX_CHUNK_COUNT:
        chunk_size = max(-(-video_size // MAX_CHUNK_COUNT), MIN_CHUNK_SIZE)
        total = video_size // chunk_size
    return ChunkPlan(video_size, chunk_size, total)


class TikTokAdapter(PlatformAdapter):
    platform = Platform.TIKTOK
    poll_based = True

    def __init__(self, config: TikTokConfig, client: httpx.AsyncClient):
        super().__init__(config, client)

    @property
    def _api(self) -> str:
        return self.config.api_url.rstrip("/")

    def _is_auth_failure(self, resp: httpx.Response, body: Dict[str, Any]) -> bool:
        if resp.status_code == 401:
            return True
        error = body.get("error")
        return isinstance(error, dict) and error.get("code") == "access_token_invalid"

    def _check(self, resp: httpx.Response, action: str) -> Dict[str, Any]:
        body = super()._check(resp, action)
        # TikTok can answer 200 with an error envelope
        error = body.get("error")
        if isinstance(error, dict) and error.get("code") not in (None, "", "ok"):
            raise RemoteError(
                f"{action} failed: {error.get('message') or error.get('code')}",
                http_status=resp.status_code,
                raw_body=body,
                platform=self.name,
            )
        return body

    def _json_headers(self, access_token: str) -> Dict[str, str]:
        return {**self._bearer(access_token), "Content-Type": "application/json; charset=UTF-8"}

    async def query_creator_info(self, access_token: str) -> Dict[str, Any]:
        resp = await self.client.post(
            f"{self._api}/post/publish/creator_info/query/",
            headers=self._json_headers(access_token),
        )
        body = self._check(resp, "Creator info query")
        return body.get("data") or {}

    def _privacy_level(self, creator_info: Dict[str, Any]) -> str:
        wanted = self.config.privacy_level
        options = creator_info.get("privacy_level_options") or []
        if options and wanted not in options:
            logger.warning(f"TikTok: privacy level {wanted} not offered ({options}), using SELF_ONLY")
            return "SELF_ONLY"
        return wanted

    async def _probe_media(self, media_url: str) -> Tuple[int, str]:
        """Size and content type from a HEAD. (0, default type) when HEAD is refused; presigned GET URLs reject HEAD."""
        resp = await self.client.head(media_url)
        if not resp.is_success:
            logger.warning(f"TikTok: HEAD on media returned {resp.status_code}, measuring with GET")
            return 0, "video/mp4"
        content_type = resp.headers.get("content-type", "video/mp4")
        size = int(resp.headers.get("content-length") or 0)
        return size, content_type

    async def submit(self, access_token: str, media_url: str, metadata: PublishMetadata) -> SubmitResult:
        self._require(media_url=media_url)

        creator_info = await self.query_creator_info(access_token)
        privacy_level = self._privacy_level(creator_info)

        video_size, content_type = await self._probe_media(media_url)
        video_data: Optional[bytes] = None
        if video_size <= 0:
            media = await self._fetch_media(media_url)
            video_data = media.content
            video_size = len(video_data)
            content_type = media.headers.get("content-type", content_type)
        plan = plan_chunks(video_size)
        logger.info(
            f"TikTok: {video_size} bytes in {plan.total_chunk_count} chunk(s) of {plan.chunk_size} bytes"
        )

        title = (metadata.caption or metadata.title or "")[:TITLE_MAX]
        init_resp = await self.client.post(
            f"{self._api}/post/publish/video/init/",
            headers=self._json_headers(access_token),
            json={
                "post_info": {
                    "title": title,
                    "privacy_level": privacy_level,
                    "disable_duet": False,
                    "disable_comment": False,
                    "disable_stitch": False,
                    "video_cover_timestamp_ms": 0,
                },
                "source_info": {
                    "source": "FILE_UPLOAD",
                    "video_size": plan.video_size,
                    "chunk_size": plan.chunk_size,
                    "total_chunk_count": plan.total_chunk_count,
                },
            },
        )
        body = self._check(init_resp, "Upload init")

        data = body.get("data") or {}
        publish_id = data.get("publish_id")
        upload_url = data.get("upload_url")
        if not publish_id or not upload_url:
            raise RemoteError("Invalid response from TikTok init", http_status=init_resp.status_code,
                              raw_body=body, platform=self.name)

        if video_data is None:
            video_data = (await self._fetch_media(media_url)).content
        if len(video_data) != plan.video_size:
            raise RemoteError(
                f"Media size changed between probe ({plan.video_size}) and download ({len(video_data)})",
                platform=self.name,
            )

        for index, (start, end) in enumerate(plan.ranges()):
            await self._upload_chunk(upload_url, video_data[start:end + 1], start, end, plan, content_type, index)

        logger.info(f"TikTok upload accepted: publish_id={publish_id}")
        return SubmitResult(
            external_job_id=str(publish_id),
            status=PublishStatus.SUBMITTED,
            job_context={"privacy_level": privacy_level},
            raw=body,
        )

    async def _upload_chunk(self, upload_url: str, chunk: bytes, start: int, end: int,
                            plan: ChunkPlan, content_type: str, index: int):
        attempts = max(1, self.config.chunk_retries)
        label = f"Chunk {index + 1}/{plan.total_chunk_count}"
        last_error = ""
        for attempt in range(1, attempts + 1):
            try:
                resp = await self.client.put(
                    upload_url,
                    content=chunk,
                    headers={
                        "Content-Type": content_type,
                        "Content-Range": f"bytes {start}-{end}/{plan.video_size}",
                        "Content-Length": str(len(chunk)),
                    },
                )
                if resp.is_success:
                    logger.debug(f"TikTok: {label} uploaded")
                    return
                last_error = f"HTTP {resp.status_code}: {resp.text[:200]}"
            except httpx.TransportError as e:
                last_error = str(e) or e.__class__.__name__

            if attempt < attempts:
                logger.warning(f"TikTok: {label} attempt {attempt} failed ({last_error}), retrying")
                await asyncio.sleep(self.config.chunk_retry_delay)

        raise RemoteError(
            f"{label} upload failed after {attempts} attempts: {last_error}",
            raw_body=last_error,
            platform=self.name,
            code=ErrorCode.UPLOAD_FAILED,
        )

    async def poll_status(
        self,
        access_token: str,
        external_job_id: str,
        job_context: Optional[Dict[str, Any]] = None,
    ) -> PollResult:
        resp = await self.client.post(
            f"{self._api}/post/publish/status/fetch/",
            headers=self._json_headers(access_token),
            json={"publish_id": external_job_id},
        )
        body = self._check(resp, "Publish status fetch")

        data = body.get("data") or {}
        raw_status = data.get("status")
        status = classify_status(raw_status)

        if status == PublishStatus.SUCCESS:
            post_ids = data.get("publicaly_available_post_id") or []
            video_id = str(post_ids[0]) if post_ids else data.get("item_id")
            return PollResult(
                status=status,
                raw_status=raw_status,
                platform_video_id=video_id,
                delivery=DELIVERY_HANDED_OFF,
                raw=body,
            )
        if status == PublishStatus.FAILED:
            return PollResult(
                status=status,
                raw_status=raw_status,
                error_code=ErrorCode.PUBLISH_FAILED.value,
                error_message=f"TikTok publish failed: {data.get('fail_reason') or raw_status}",
                raw=body,
            )
        return PollResult(status=status, raw_status=raw_status, raw=body)

    async def refresh_token(self, account: PlatformAccount) -> TokenGrant:
        """Refresh grant. TikTok rotates the refresh token; the old one stops working."""
        if not account.refresh_token:
            raise RefreshUnsupported("No TikTok refresh_token stored; reconnect required", platform=self.name)
        if not self.config.configured:
            raise RefreshUnsupported("TikTok client credentials are not configured", platform=self.name)

        resp = await self.client.post(
            f"{self._api}/oauth/token/",
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            data={
                "client_key": self.config.client_key,
                "client_secret": self.config.client_secret,
                "grant_type": "refresh_token",
                "refresh_token": account.refresh_token,
            },
        )
        body = safe_json(resp)
        try:
            data = resp.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}
        error = data.get("error")
        # TikTok wraps tokens under "data" sometimes. Normalize.
        if isinstance(data.get("data"), dict):
            data = data["data"]
            error = error or data.get("error")
        if isinstance(error, dict):
            error = error.get("code") not in (None, "", "ok") and error.get("code")

        if resp.status_code in (400, 401) or error:
            raise AuthError(f"TikTok refresh failed: {resp.text[:200]}", details=body, platform=self.name)
        if not resp.is_success:
            raise RemoteError("TikTok refresh failed", http_status=resp.status_code, raw_body=body, platform=self.name)
        if not data.get("access_token"):
            raise RemoteError("TikTok refresh returned no access_token", raw_body=body, platform=self.name)

        return TokenGrant(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_in=data.get("expires_in"),
            raw=body,
        )
