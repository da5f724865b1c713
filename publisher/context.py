"""
Multipublish Job Context
========================
Data carried through one upload: the job, its per-platform publish state,
and the stored platform account it publishes with.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from .errors import InvalidTransition


class Platform(str, Enum):
    YOUTUBE = "youtube"
    INSTAGRAM = "instagram"
    TIKTOK = "tiktok"

    @classmethod
    def parse(cls, value: str) -> "Platform":
        return cls(str(value).lower().strip())


class PublishStatus(str, Enum):
    """Canonical status shared by every platform."""
    IDLE = "idle"
    SUBMITTED = "submitted"
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (PublishStatus.SUCCESS, PublishStatus.FAILED)


# Allowed transitions of the per-platform state machine
_TRANSITIONS = {
    PublishStatus.IDLE: {PublishStatus.SUBMITTED, PublishStatus.FAILED},
    PublishStatus.SUBMITTED: {PublishStatus.PROCESSING, PublishStatus.SUCCESS, PublishStatus.FAILED},
    PublishStatus.PROCESSING: {PublishStatus.PROCESSING, PublishStatus.SUCCESS, PublishStatus.FAILED},
    PublishStatus.SUCCESS: set(),
    PublishStatus.FAILED: set(),
}

# Delivery kinds: a TikTok "success" only means the video reached the creator's account
DELIVERY_PUBLISHED = "published"
DELIVERY_HANDED_OFF = "handed_off"


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class PlatformAccount:
    """Stored OAuth credentials for one (user, platform). Owned by the token store."""
    user_id: str
    platform: Platform
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    id: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def is_expired(self, skew_seconds: int = 300, now: Optional[datetime] = None) -> bool:
        """True when the token expires within ``skew_seconds``. Unknown expiry counts as valid."""
        if self.expires_at is None:
            return False
        now = now or _now_utc()
        expires_at = self.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return (expires_at - now) <= timedelta(seconds=skew_seconds)


@dataclass
class TokenGrant:
    """Result of a token refresh. ``refresh_token`` is set only when the platform rotated it."""
    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[float] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    def expires_at(self, now: Optional[datetime] = None) -> Optional[datetime]:
        if not self.expires_in:
            return None
        return (now or _now_utc()) + timedelta(seconds=float(self.expires_in))

    def to_fields(self) -> Dict[str, Any]:
        """Fields for ``TokenStore.update``."""
        fields: Dict[str, Any] = {"access_token": self.access_token}
        if self.refresh_token:
            fields["refresh_token"] = self.refresh_token
        expires_at = self.expires_at()
        if expires_at is not None:
            fields["expires_at"] = expires_at
        return fields


@dataclass(frozen=True)
class PublishMetadata:
    title: str = ""
    caption: str = ""
    privacy: Optional[str] = None


@dataclass
class SubmitResult:
    """What an adapter's submit step returns."""
    external_job_id: str
    status: PublishStatus = PublishStatus.SUBMITTED
    job_context: Dict[str, Any] = field(default_factory=dict)
    platform_video_id: Optional[str] = None
    platform_url: Optional[str] = None
    delivery: Optional[str] = None
    raw: Any = None


@dataclass
class PollResult:
    """Canonical classification of one status poll."""
    status: PublishStatus
    raw_status: Optional[str] = None
    platform_video_id: Optional[str] = None
    platform_url: Optional[str] = None
    delivery: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    raw: Any = None


@dataclass
class PlatformPublishState:
    """State of one (UploadJob, platform) pair. Terminal states never change."""
    platform: Platform
    status: PublishStatus = PublishStatus.IDLE
    external_job_id: Optional[str] = None
    job_context: Dict[str, Any] = field(default_factory=dict)
    raw_status: Optional[str] = None
    platform_video_id: Optional[str] = None
    platform_url: Optional[str] = None
    delivery: Optional[str] = None
    error_code: Optional[str] = None
    last_error: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    reconnect_required: bool = False
    poll_attempts: int = 0
    refresh_attempts: int = 0
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def transition(self, target: PublishStatus):
        """Move to ``target``; raises InvalidTransition out of a terminal state."""
        if target not in _TRANSITIONS[self.status]:
            raise InvalidTransition(self.status.value, target.value, platform=self.platform.value)
        self.status = target
        if target.is_terminal:
            self.finished_at = _now_utc()

    def mark_submitted(self, result: SubmitResult):
        if self.external_job_id is not None:
            raise InvalidTransition(self.status.value, PublishStatus.SUBMITTED.value, platform=self.platform.value)
        self.started_at = self.started_at or _now_utc()
        self.external_job_id = result.external_job_id
        self.job_context = dict(result.job_context)
        self.transition(PublishStatus.SUBMITTED)

    def mark_success(self, video_id: Optional[str] = None, url: Optional[str] = None,
                     delivery: Optional[str] = DELIVERY_PUBLISHED, raw: Any = None):
        self.platform_video_id = video_id or self.platform_video_id
        self.platform_url = url or self.platform_url
        self.delivery = delivery
        if raw is not None:
            self.details["raw"] = raw
        self.transition(PublishStatus.SUCCESS)

    def mark_failed(self, code: str, message: str, details: Optional[dict] = None,
                    reconnect_required: bool = False):
        self.error_code = code
        self.last_error = message
        if details:
            self.details.update(details)
        self.reconnect_required = reconnect_required
        self.transition(PublishStatus.FAILED)

    def to_dict(self) -> dict:
        return {
            "platform": self.platform.value,
            "status": self.status.value,
            "external_job_id": self.external_job_id,
            "raw_status": self.raw_status,
            "video_id": self.platform_video_id,
            "url": self.platform_url,
            "delivery": self.delivery,
            "error_code": self.error_code,
            "error": self.last_error,
            "details": self.details,
            "reconnect_required": self.reconnect_required,
            "poll_attempts": self.poll_attempts,
        }


@dataclass
class UploadJob:
    """
    One user upload fanned out to several platforms.

    Ephemeral: lives only as long as the session driving its polling loop.
    """
    user_id: str
    source_media_url: str
    title: str = ""
    caption: str = ""
    target_platforms: Set[Platform] = field(default_factory=set)
    privacy: Optional[str] = None
    job_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    per_platform_state: Dict[Platform, PlatformPublishState] = field(default_factory=dict)
    created_at: datetime = field(default_factory=_now_utc)

    @property
    def metadata(self) -> PublishMetadata:
        return PublishMetadata(title=self.title, caption=self.caption, privacy=self.privacy)

    def new_state(self, platform: Platform) -> PlatformPublishState:
        """Start a fresh state for ``platform``; refuses while one is outstanding."""
        current = self.per_platform_state.get(platform)
        if current is not None and current.external_job_id and not current.is_terminal:
            raise InvalidTransition(current.status.value, PublishStatus.SUBMITTED.value, platform=platform.value)
        state = PlatformPublishState(platform=platform)
        self.per_platform_state[platform] = state
        return state

    def get_success_platforms(self) -> List[str]:
        return [p.value for p, s in self.per_platform_state.items() if s.status == PublishStatus.SUCCESS]

    def get_failed_platforms(self) -> List[str]:
        return [p.value for p, s in self.per_platform_state.items() if s.status == PublishStatus.FAILED]
