"""
Multipublish Publish Orchestrator
=================================
Drives one (UploadJob, platform) pair to a terminal state:

  1. Load the account from the token store (proactive refresh when it
     expires within the skew window)
  2. submit() -> on AuthError refresh once and retry
  3. poll_status() every interval until terminal, the attempt/time bound,
     or cancellation
  4. On success request deletion of the temporary media object

Exactly one refresh attempt happens per run, whichever step triggers it.
Every step emits a `publish.*` log event with key=value fields.
"""

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Any, Optional

import httpx

from .config import PollConfig
from .context import (
    Platform,
    PlatformAccount,
    PlatformPublishState,
    PublishStatus,
    UploadJob,
)
from .errors import (
    AuthError,
    CancelRequested,
    ErrorCode,
    InvalidTransition,
    PollTimeoutError,
    PublishError,
    RefreshUnsupported,
    RemoteError,
    error_from_exception,
)
from .platforms.base import PlatformAdapter
from .token_store import TokenStore, refresh_account

if TYPE_CHECKING:
    from .session import MediaCleanup

logger = logging.getLogger("multipublish.orchestrator")

MAX_REFRESH_ATTEMPTS = 1


class PublishOrchestrator:
    """Publishes one upload job to one platform."""

    def __init__(
        self,
        adapter: PlatformAdapter,
        token_store: TokenStore,
        poll: Optional[PollConfig] = None,
        cleanup: Optional["MediaCleanup"] = None,
        cancel_event: Optional[asyncio.Event] = None,
        refresh_skew_sec: int = 300,
    ):
        self.adapter = adapter
        self.token_store = token_store
        self.poll = poll or PollConfig()
        self.cleanup = cleanup
        self.cancel_event = cancel_event
        self.refresh_skew_sec = refresh_skew_sec

    @property
    def platform(self) -> Platform:
        return self.adapter.platform

    # ------------------------------------------------------------------
    # Logging
    # ------------------------------------------------------------------

    def _event(self, level: int, event: str, job: UploadJob, **fields: Any):
        fields = {"platform": self.adapter.name, "job_id": job.job_id, **fields}
        kv = " ".join(f"{k}={v}" for k, v in fields.items())
        logger.log(level, f"{event} {kv}", extra={"event": event, **fields})

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def run(self, job: UploadJob) -> PlatformPublishState:
        """Run the full publish flow. Always returns a terminal state."""
        try:
            state = job.new_state(self.platform)
        except InvalidTransition:
            if self.cleanup is not None:
                await self.cleanup.release()
            raise
        started = time.monotonic()
        try:
            await self._publish(job, state)
        except CancelRequested:
            self._terminalize(state, ErrorCode.CANCELLED.value, "Publishing was cancelled")
        except asyncio.CancelledError:
            self._terminalize(state, ErrorCode.CANCELLED.value, "Publishing was cancelled")
            raise
        except (AuthError, RefreshUnsupported) as e:
            self._terminalize(state, e.code.value, e.message, e.details, reconnect_required=True)
        except PollTimeoutError as e:
            self._terminalize(state, e.code.value, f"{e.message}. {e.HINT}", e.details)
        except PublishError as e:
            self._terminalize(state, e.code.value, e.message, e.details)
        except Exception as e:
            err = error_from_exception(e, platform=self.adapter.name)
            logger.exception(f"{self.adapter.name}: unexpected publish error: {e}")
            self._terminalize(state, err.code.value, err.message, err.details)
        finally:
            if self.cleanup is not None:
                if state.status == PublishStatus.SUCCESS:
                    await self.cleanup.request(self.platform)
                await self.cleanup.release()

        self._event(
            logging.INFO if state.status == PublishStatus.SUCCESS else logging.WARNING,
            "publish.terminal",
            job,
            status=state.status.value,
            error_code=state.error_code,
            delivery=state.delivery,
            video_id=state.platform_video_id,
            reconnect_required=state.reconnect_required,
            poll_attempts=state.poll_attempts,
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        return state

    def _terminalize(self, state: PlatformPublishState, code: str, message: str,
                     details: Optional[dict] = None, reconnect_required: bool = False):
        if state.is_terminal:
            return
        state.mark_failed(code, message, details=details, reconnect_required=reconnect_required)

    def _check_cancel(self, job: UploadJob):
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise CancelRequested(job.job_id)

    async def _publish(self, job: UploadJob, state: PlatformPublishState):
        self._check_cancel(job)

        account = await self.token_store.find(job.user_id, self.platform)
        if account is None:
            raise AuthError(
                f"{self.adapter.name} account is not connected",
                platform=self.adapter.name,
                code=ErrorCode.NOT_CONNECTED,
            )

        if account.is_expired(self.refresh_skew_sec):
            account = await self._proactive_refresh(job, state, account)

        # Submit (one refresh-and-retry on AuthError)
        try:
            result = await self.adapter.submit(account.access_token, job.source_media_url, job.metadata)
        except AuthError as e:
            account = await self._refresh_after_auth_error(job, state, account, e)
            result = await self.adapter.submit(account.access_token, job.source_media_url, job.metadata)

        state.mark_submitted(result)
        self._event(logging.INFO, "publish.submit", job,
                    external_job_id=result.external_job_id, status=result.status.value)

        if result.status == PublishStatus.SUCCESS:
            state.mark_success(result.platform_video_id, result.platform_url, result.delivery, raw=result.raw)
            return
        if result.status == PublishStatus.FAILED:
            state.mark_failed(ErrorCode.PUBLISH_FAILED.value, "Platform rejected the upload",
                              details={"raw": result.raw})
            return
        if not self.adapter.poll_based:
            # Accepted without a terminal answer and nothing to poll
            state.mark_success(result.platform_video_id, result.platform_url, result.delivery, raw=result.raw)
            return

        await self._poll(job, state, account)

    # ------------------------------------------------------------------
    # Token refresh
    # ------------------------------------------------------------------

    async def _refresh(self, job: UploadJob, state: PlatformPublishState, account: PlatformAccount,
                       reason: str) -> PlatformAccount:
        state.refresh_attempts += 1
        refreshed = await refresh_account(self.token_store, self.adapter, account)
        self._event(logging.INFO, "publish.refreshed", job, reason=reason)
        return refreshed

    async def _proactive_refresh(self, job: UploadJob, state: PlatformPublishState,
                                 account: PlatformAccount) -> PlatformAccount:
        """Refresh ahead of expiry. A failure here falls back to the stored token."""
        try:
            return await self._refresh(job, state, account, reason="expiring")
        except (PublishError, httpx.HTTPError) as e:
            self._event(logging.WARNING, "publish.refreshed", job, reason="expiring",
                        outcome="failed", error=str(e))
            return account

    async def _refresh_after_auth_error(self, job: UploadJob, state: PlatformPublishState,
                                        account: PlatformAccount, error: AuthError) -> PlatformAccount:
        if state.refresh_attempts >= MAX_REFRESH_ATTEMPTS:
            raise error
        try:
            return await self._refresh(job, state, account, reason="auth_error")
        except RefreshUnsupported:
            raise
        except (AuthError, RemoteError) as e:
            raise AuthError(
                f"Token refresh failed: {e.message}",
                details={**e.details, "original_error": error.message},
                platform=self.adapter.name,
                code=ErrorCode.REFRESH_FAILED,
            )
        except httpx.HTTPError as e:
            raise AuthError(
                f"Token refresh failed: {e}",
                details={"original_error": error.message},
                platform=self.adapter.name,
                code=ErrorCode.REFRESH_FAILED,
            )

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    async def _wait(self, job: UploadJob, seconds: float):
        if self.cancel_event is None or seconds <= 0:
            await asyncio.sleep(max(seconds, 0))
        else:
            try:
                await asyncio.wait_for(self.cancel_event.wait(), timeout=seconds)
            except asyncio.TimeoutError:
                pass
        self._check_cancel(job)

    def _bound_exceeded(self, attempts: int, deadline: Optional[float]) -> bool:
        if attempts >= self.poll.max_attempts:
            return True
        return deadline is not None and time.monotonic() >= deadline

    async def _poll(self, job: UploadJob, state: PlatformPublishState, account: PlatformAccount):
        deadline = None
        if self.poll.max_seconds:
            deadline = time.monotonic() + self.poll.max_seconds

        while True:
            if self._bound_exceeded(state.poll_attempts, deadline):
                raise PollTimeoutError(
                    f"{self.adapter.name} did not finish processing after {state.poll_attempts} checks",
                    attempts=state.poll_attempts,
                    platform=self.adapter.name,
                )

            await self._wait(job, self.poll.interval_seconds)
            state.poll_attempts += 1

            try:
                result = await self.adapter.poll_status(
                    account.access_token, state.external_job_id, state.job_context
                )
            except AuthError as e:
                account = await self._refresh_after_auth_error(job, state, account, e)
                continue
            except (RemoteError, httpx.TransportError) as e:
                # Transient; counts against the bound
                self._event(logging.WARNING, "publish.polled", job,
                            attempt=state.poll_attempts, outcome="error", error=str(e))
                state.details["last_poll_error"] = str(e)
                continue

            state.raw_status = result.raw_status
            self._event(logging.DEBUG, "publish.polled", job, attempt=state.poll_attempts,
                        raw_status=result.raw_status, status=result.status.value)

            if result.status == PublishStatus.SUCCESS:
                state.mark_success(result.platform_video_id, result.platform_url, result.delivery, raw=result.raw)
                return
            if result.status == PublishStatus.FAILED:
                state.mark_failed(
                    result.error_code or ErrorCode.PUBLISH_FAILED.value,
                    result.error_message or f"{self.adapter.name} reported {result.raw_status}",
                    details={"raw": result.raw},
                )
                return
            state.transition(PublishStatus.PROCESSING)
