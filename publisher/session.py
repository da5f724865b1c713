"""
Multipublish Upload Session
===========================
Fans one upload out to every platform the user both selected and connected.

  stage_media()  -> copy the file to temporary public storage
  run(job)       -> one PublishOrchestrator per platform, run concurrently
  summary()      -> per-platform banners, never a single pass/fail

Platforms run independently: one platform's failure never alters another's
outcome. The only shared object is the MediaCleanup coordinator.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .config import PollConfig
from .context import (
    DELIVERY_HANDED_OFF,
    Platform,
    PlatformPublishState,
    PublishStatus,
    UploadJob,
)
from .errors import ErrorCode, PublishError
from .orchestrator import PublishOrchestrator
from .platforms.base import PlatformAdapter
from .storage import TemporaryStorage
from .token_store import TokenStore
from .transcode import compress_video

logger = logging.getLogger("multipublish.session")

PLATFORM_LABELS = {
    Platform.YOUTUBE: "YouTube",
    Platform.INSTAGRAM: "Instagram",
    Platform.TIKTOK: "TikTok",
}

RAW_DETAIL_MAX = 300


# ============================================================
# Temporary media cleanup
# ============================================================

class MediaCleanup:
    """
    Deletes the staged media at most once.

    Deletion is requested by the first orchestrator that reaches success and
    runs once every holder has released the media, so a platform that still
    fetches the URL (Instagram pulls video_url itself) is never cut off.
    Nothing is deleted when every platform fails.
    """

    def __init__(self, storage: Optional[TemporaryStorage], media_url: str, holders: int = 1):
        self.storage = storage
        self.media_url = media_url
        self.holders = holders
        self.requested_by: Optional[Platform] = None
        self.attempted = False
        self.deleted = False
        self.error: Optional[str] = None

    async def request(self, platform: Platform):
        if self.requested_by is None:
            self.requested_by = platform
        await self._maybe_delete()

    async def release(self):
        self.holders = max(0, self.holders - 1)
        await self._maybe_delete()

    async def _maybe_delete(self):
        if self.attempted or self.requested_by is None or self.holders > 0:
            return
        self.attempted = True
        if self.storage is None or not self.media_url or not self.storage.owns(self.media_url):
            logger.warning(f"publish.cleanup url={self.media_url} skipped: not a temporary storage object")
            return
        try:
            await self.storage.delete(self.media_url)
            self.deleted = True
        except Exception as e:
            # A failed or repeated delete never fails a publish
            self.error = str(e)
        level = logging.INFO if self.deleted else logging.WARNING
        logger.log(
            level,
            f"publish.cleanup url={self.media_url} requested_by={self.requested_by.value} "
            f"deleted={self.deleted} error={self.error}",
            extra={"event": "publish.cleanup", "deleted": self.deleted, "requested_by": self.requested_by.value},
        )


# ============================================================
# Summary
# ============================================================

def _raw_detail(details: Dict[str, Any]) -> Optional[str]:
    raw = details.get("body") if details.get("body") is not None else details.get("raw")
    if raw in (None, "", {}):
        return None
    text = raw if isinstance(raw, str) else json.dumps(raw, default=str)
    return text[:RAW_DETAIL_MAX]


def banner_for(platform: Platform, state: Optional[PlatformPublishState]) -> str:
    label = PLATFORM_LABELS[platform]
    if state is None or not state.is_terminal:
        return f"{label} is still processing your video."

    if state.status == PublishStatus.SUCCESS:
        if state.delivery == DELIVERY_HANDED_OFF:
            return f"Video sent to your {label} account. Open {label} to review and post it."
        msg = f"Successfully uploaded to {label}!"
        if state.platform_url:
            msg += f" {state.platform_url}"
        return msg

    msg = f"{label} upload failed: {state.last_error or state.error_code}"
    detail = _raw_detail(state.details)
    if detail:
        msg += f" ({detail})"
    if state.reconnect_required:
        msg += f" Reconnect your {label} account and try again."
    return msg


@dataclass
class PlatformOutcome:
    platform: Platform
    status: PublishStatus
    attempted: bool
    banner: str
    state: Optional[PlatformPublishState] = None

    def to_dict(self) -> dict:
        out = {
            "platform": self.platform.value,
            "status": self.status.value,
            "attempted": self.attempted,
            "banner": self.banner,
        }
        if self.state is not None:
            out.update({k: v for k, v in self.state.to_dict().items() if k not in ("platform", "status")})
        return out


@dataclass
class SessionSummary:
    job_id: str
    outcomes: Dict[Platform, PlatformOutcome] = field(default_factory=dict)
    media_deleted: bool = False

    @property
    def succeeded(self) -> List[str]:
        return [p.value for p, o in self.outcomes.items() if o.status == PublishStatus.SUCCESS]

    @property
    def failed(self) -> List[str]:
        return [p.value for p, o in self.outcomes.items() if o.status == PublishStatus.FAILED]

    @property
    def pending(self) -> List[str]:
        return [p.value for p, o in self.outcomes.items() if not o.status.is_terminal]

    @property
    def finished(self) -> bool:
        return not self.pending

    def to_dict(self) -> dict:
        return {
            "job_id": self.job_id,
            "finished": self.finished,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "pending": self.pending,
            "media_deleted": self.media_deleted,
            "platforms": {p.value: o.to_dict() for p, o in self.outcomes.items()},
        }


# ============================================================
# Session
# ============================================================

class UploadSession:
    """Drives one UploadJob across its platforms."""

    def __init__(
        self,
        adapters: Dict[Platform, PlatformAdapter],
        token_store: TokenStore,
        storage: Optional[TemporaryStorage] = None,
        poll: Optional[PollConfig] = None,
        refresh_skew_sec: int = 300,
        compress_target_mb: float = 0,
    ):
        self.adapters = adapters
        self.token_store = token_store
        self.storage = storage
        self.poll = poll or PollConfig()
        self.refresh_skew_sec = refresh_skew_sec
        self.compress_target_mb = compress_target_mb
        self.cancel_event = asyncio.Event()
        self.job: Optional[UploadJob] = None
        self.cleanup: Optional[MediaCleanup] = None
        self.attempted: List[Platform] = []

    async def stage_media(self, name: str, data: bytes, content_type: str = "video/mp4") -> str:
        """Copy the upload to temporary public storage and return its URL."""
        if self.storage is None:
            raise PublishError(ErrorCode.STORAGE_FAILED, "Temporary storage is not configured")

        if self.compress_target_mb:
            try:
                data, name = await compress_video(data, name, self.compress_target_mb)
                content_type = "video/mp4"
            except PublishError as e:
                logger.warning(f"Compression skipped, staging original: {e.message}")

        url = await self.storage.put(name, data, content_type)
        logger.info(f"Staged media name={name} bytes={len(data)}")
        return url

    async def run(self, job: UploadJob) -> SessionSummary:
        self.job = job
        selected = [p for p in Platform if p in job.target_platforms]

        connected: List[Platform] = []
        for platform in selected:
            account = await self.token_store.find(job.user_id, platform)
            if account is None or platform not in self.adapters:
                state = job.new_state(platform)
                state.mark_failed(
                    ErrorCode.NOT_CONNECTED.value,
                    f"{PLATFORM_LABELS[platform]} is not connected",
                    reconnect_required=True,
                )
                logger.info(f"{platform.value}: skipped, not connected (job={job.job_id})")
            else:
                connected.append(platform)
        self.attempted = connected

        if not connected:
            logger.warning(f"No connected platforms for upload job {job.job_id}")
            return self.summary()

        self.cleanup = MediaCleanup(self.storage, job.source_media_url, holders=len(connected))
        orchestrators = [
            PublishOrchestrator(
                self.adapters[platform],
                self.token_store,
                poll=self.poll,
                cleanup=self.cleanup,
                cancel_event=self.cancel_event,
                refresh_skew_sec=self.refresh_skew_sec,
            )
            for platform in connected
        ]
        logger.info(f"Publishing job={job.job_id} to platforms: {[p.value for p in connected]}")

        results = await asyncio.gather(*(o.run(job) for o in orchestrators), return_exceptions=True)
        for platform, result in zip(connected, results):
            if isinstance(result, BaseException):
                logger.error(f"{platform.value}: orchestrator crashed: {result!r}")
                state = job.per_platform_state.get(platform)
                if state is not None and not state.is_terminal:
                    state.mark_failed(ErrorCode.INTERNAL.value, str(result) or result.__class__.__name__)

        summary = self.summary()
        logger.info(
            f"Publish complete job={job.job_id}: succeeded={summary.succeeded}, failed={summary.failed}"
        )
        return summary

    def cancel(self):
        self.cancel_event.set()

    def summary(self) -> SessionSummary:
        if self.job is None:
            raise RuntimeError("Session has not been run")
        outcomes: Dict[Platform, PlatformOutcome] = {}
        for platform in Platform:
            if platform not in self.job.target_platforms:
                continue
            state = self.job.per_platform_state.get(platform)
            outcomes[platform] = PlatformOutcome(
                platform=platform,
                status=state.status if state is not None else PublishStatus.IDLE,
                attempted=platform in self.attempted,
                banner=banner_for(platform, state),
                state=state,
            )
        return SessionSummary(
            job_id=self.job.job_id,
            outcomes=outcomes,
            media_deleted=bool(self.cleanup and self.cleanup.deleted),
        )
