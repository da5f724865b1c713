"""Tests for the publish orchestrator: refresh budget, poll loop, cleanup and cancellation."""

import asyncio
import logging
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from conftest import MEDIA_URL, USER_ID, FakeAdapter, FakeStorage, InMemoryTokenStore, make_account, mock_client
from publisher.config import InstagramConfig, PollConfig, TikTokConfig, YouTubeConfig
from publisher.context import Platform, PollResult, PublishStatus, SubmitResult, UploadJob
from publisher.errors import AuthError, ErrorCode, RefreshUnsupported, RemoteError
from publisher.orchestrator import PublishOrchestrator
from publisher.platforms.instagram import InstagramAdapter
from publisher.platforms.tiktok import TikTokAdapter
from publisher.platforms.youtube import YouTubeAdapter
from publisher.session import MediaCleanup

PROCESSING = PollResult(status=PublishStatus.PROCESSING, raw_status="IN_PROGRESS")
SUCCESS = PollResult(status=PublishStatus.SUCCESS, raw_status="FINISHED", platform_video_id="media-1")


def make_job(*platforms, title="Title") -> UploadJob:
    return UploadJob(
        user_id=USER_ID,
        source_media_url=MEDIA_URL,
        title=title,
        caption="caption",
        target_platforms=set(platforms),
    )


def orchestrate(adapter, token_store, poll_config, storage=None, **kwargs) -> PublishOrchestrator:
    cleanup = MediaCleanup(storage, MEDIA_URL) if storage is not None else None
    return PublishOrchestrator(adapter, token_store, poll=poll_config, cleanup=cleanup, **kwargs)


class TestRefreshBudget:

    @pytest.mark.asyncio
    async def test_auth_error_on_submit_refreshes_exactly_once(self, token_store, poll_config):
        adapter = FakeAdapter(Platform.INSTAGRAM, submit=[AuthError("expired")])

        state = await orchestrate(adapter, token_store, poll_config).run(make_job(Platform.INSTAGRAM))

        assert state.status == PublishStatus.FAILED
        assert state.reconnect_required is True
        assert len(adapter.refresh_calls) == 1
        assert len(adapter.submit_calls) == 2

    @pytest.mark.asyncio
    async def test_refreshed_token_is_persisted_and_used_for_retry(self, token_store, poll_config):
        adapter = FakeAdapter(
            Platform.INSTAGRAM,
            submit=[AuthError("expired"), SubmitResult(external_job_id="c-1")],
            polls=[SUCCESS],
        )

        state = await orchestrate(adapter, token_store, poll_config).run(make_job(Platform.INSTAGRAM))

        assert state.status == PublishStatus.SUCCESS
        assert adapter.submit_calls == ["instagram-token", "fresh-token"]
        assert adapter.poll_calls == ["fresh-token"]
        assert token_store.updates[0][1]["access_token"] == "fresh-token"

    @pytest.mark.asyncio
    async def test_proactive_refresh_consumes_the_budget(self, poll_config):
        expiring = datetime.now(timezone.utc) + timedelta(seconds=60)
        store = InMemoryTokenStore([make_account(Platform.TIKTOK, expires_at=expiring)])
        adapter = FakeAdapter(Platform.TIKTOK, submit=[AuthError("rejected")])

        state = await orchestrate(adapter, store, poll_config).run(make_job(Platform.TIKTOK))

        assert len(adapter.refresh_calls) == 1
        assert adapter.submit_calls == ["fresh-token"]
        assert state.status == PublishStatus.FAILED
        assert state.reconnect_required is True

    @pytest.mark.asyncio
    async def test_valid_token_is_not_refreshed(self, poll_config):
        later = datetime.now(timezone.utc) + timedelta(hours=2)
        store = InMemoryTokenStore([make_account(Platform.TIKTOK, expires_at=later)])
        adapter = FakeAdapter(Platform.TIKTOK)

        state = await orchestrate(adapter, store, poll_config).run(make_job(Platform.TIKTOK))

        assert state.status == PublishStatus.SUCCESS
        assert adapter.refresh_calls == []

    @pytest.mark.asyncio
    async def test_refresh_unsupported_requires_reconnect(self, token_store, poll_config):
        adapter = FakeAdapter(
            Platform.YOUTUBE,
            submit=[AuthError("expired")],
            refresh=[RefreshUnsupported("no refresh token")],
            poll_based=False,
        )

        state = await orchestrate(adapter, token_store, poll_config).run(make_job(Platform.YOUTUBE))

        assert state.status == PublishStatus.FAILED
        assert state.error_code == ErrorCode.REFRESH_UNSUPPORTED.value
        assert state.reconnect_required is True

    @pytest.mark.asyncio
    async def test_auth_error_while_polling_uses_same_budget(self, token_store, poll_config):
        adapter = FakeAdapter(
            Platform.INSTAGRAM,
            submit=[AuthError("expired"), SubmitResult(external_job_id="c-1")],
            polls=[AuthError("expired again")],
        )

        state = await orchestrate(adapter, token_store, poll_config).run(make_job(Platform.INSTAGRAM))

        assert state.status == PublishStatus.FAILED
        assert state.reconnect_required is True
        assert len(adapter.refresh_calls) == 1

    @pytest.mark.asyncio
    async def test_not_connected(self, poll_config):
        adapter = FakeAdapter(Platform.TIKTOK)

        state = await orchestrate(adapter, InMemoryTokenStore(), poll_config).run(make_job(Platform.TIKTOK))

        assert state.error_code == ErrorCode.NOT_CONNECTED.value
        assert state.reconnect_required is True
        assert adapter.submit_calls == []


class TestPolling:

    @pytest.mark.asyncio
    async def test_polling_is_bounded(self, token_store):
        adapter = FakeAdapter(Platform.TIKTOK, polls=[PROCESSING])
        poll = PollConfig(interval_seconds=0, max_attempts=7)

        state = await orchestrate(adapter, token_store, poll).run(make_job(Platform.TIKTOK))

        assert state.status == PublishStatus.FAILED
        assert state.error_code == ErrorCode.TIMEOUT.value
        assert "check back later" in state.last_error
        assert len(adapter.poll_calls) == 7
        assert state.reconnect_required is False

    @pytest.mark.asyncio
    async def test_transient_errors_count_against_the_bound(self, token_store, poll_config):
        adapter = FakeAdapter(
            Platform.TIKTOK,
            polls=[RemoteError("502 from status fetch", http_status=502), PROCESSING, SUCCESS],
        )

        state = await orchestrate(adapter, token_store, poll_config).run(make_job(Platform.TIKTOK))

        assert state.status == PublishStatus.SUCCESS
        assert state.poll_attempts == 3

    @pytest.mark.asyncio
    async def test_remote_failure_keeps_raw_payload(self, token_store, poll_config, storage):
        raw = {"data": {"status": "PUBLISH_FAILED"}}
        failed = PollResult(status=PublishStatus.FAILED, raw_status="PUBLISH_FAILED", error_message="bad", raw=raw)
        adapter = FakeAdapter(Platform.TIKTOK, polls=[failed])

        state = await orchestrate(adapter, token_store, poll_config, storage).run(make_job(Platform.TIKTOK))

        assert state.status == PublishStatus.FAILED
        assert state.details["raw"] == raw
        assert storage.delete_calls == []

    @pytest.mark.asyncio
    async def test_cancellation_terminalizes_failed(self, token_store):
        cancel = asyncio.Event()
        adapter = FakeAdapter(Platform.INSTAGRAM, polls=[PROCESSING])
        adapter.on_poll = lambda n: cancel.set() if n == 2 else None
        poll = PollConfig(interval_seconds=0.01, max_attempts=50)

        state = await orchestrate(adapter, token_store, poll, cancel_event=cancel).run(make_job(Platform.INSTAGRAM))

        assert state.status == PublishStatus.FAILED
        assert state.error_code == ErrorCode.CANCELLED.value
        assert len(adapter.poll_calls) == 2

    @pytest.mark.asyncio
    async def test_emits_structured_events(self, token_store, poll_config, caplog):
        adapter = FakeAdapter(Platform.INSTAGRAM, polls=[PROCESSING, SUCCESS])

        with caplog.at_level(logging.DEBUG, logger="multipublish"):
            await orchestrate(adapter, token_store, poll_config).run(make_job(Platform.INSTAGRAM))

        events = [getattr(r, "event", None) for r in caplog.records]
        assert "publish.submit" in events
        assert events.count("publish.polled") == 2
        assert "publish.terminal" in events


class TestCleanup:

    @pytest.mark.asyncio
    async def test_success_deletes_media_once(self, token_store, poll_config, storage):
        adapter = FakeAdapter(Platform.TIKTOK)

        state = await orchestrate(adapter, token_store, poll_config, storage).run(make_job(Platform.TIKTOK))

        assert state.status == PublishStatus.SUCCESS
        assert storage.delete_calls == [MEDIA_URL]

    @pytest.mark.asyncio
    async def test_delete_failure_never_fails_the_job(self, token_store, poll_config):
        storage = FakeStorage(fail_delete=True)
        adapter = FakeAdapter(Platform.TIKTOK)

        state = await orchestrate(adapter, token_store, poll_config, storage).run(make_job(Platform.TIKTOK))

        assert state.status == PublishStatus.SUCCESS
        assert len(storage.delete_calls) == 1

    @pytest.mark.asyncio
    async def test_no_transition_after_terminal(self, token_store, poll_config):
        adapter = FakeAdapter(Platform.TIKTOK)
        job = make_job(Platform.TIKTOK)

        state = await orchestrate(adapter, token_store, poll_config).run(job)
        again = await orchestrate(adapter, token_store, poll_config).run(job)

        assert state.status == PublishStatus.SUCCESS
        assert again is not state
        assert job.per_platform_state[Platform.TIKTOK] is again


class TestWithRealAdapters:

    @pytest.mark.asyncio
    async def test_youtube_succeeds_in_one_step_without_polling(self, token_store, poll_config, storage):
        def handler(request):
            if request.url.host == "media.test":
                return httpx.Response(200, content=b"x" * (10 * 1024 * 1024))
            if request.method == "POST":
                return httpx.Response(200, headers={"Location": "https://upload.test/session"})
            return httpx.Response(200, json={"id": "yt-1"})

        adapter = YouTubeAdapter(YouTubeConfig(), mock_client(handler))

        state = await orchestrate(adapter, token_store, poll_config, storage).run(make_job(Platform.YOUTUBE))

        assert state.status == PublishStatus.SUCCESS
        assert state.platform_video_id == "yt-1"
        assert state.poll_attempts == 0
        assert storage.delete_calls == [MEDIA_URL]

    @pytest.mark.asyncio
    async def test_instagram_publishes_once_after_finished(self, token_store, poll_config, storage):
        statuses = ["IN_PROGRESS", "IN_PROGRESS", "FINISHED"]
        publish_calls = []

        def handler(request):
            path = request.url.path
            if path == "/me":
                return httpx.Response(200, json={"id": "ig-1", "username": "alice"})
            if path.endswith("/media_publish"):
                publish_calls.append(request)
                return httpx.Response(200, json={"id": "media-9"})
            if path.endswith("/media"):
                return httpx.Response(200, json={"id": "container-1"})
            return httpx.Response(200, json={"status_code": statuses.pop(0)})

        adapter = InstagramAdapter(InstagramConfig(), mock_client(handler))

        state = await orchestrate(adapter, token_store, poll_config, storage).run(make_job(Platform.INSTAGRAM))

        assert state.status == PublishStatus.SUCCESS
        assert state.platform_video_id == "media-9"
        assert state.poll_attempts == 3
        assert len(publish_calls) == 1
        assert storage.delete_calls == [MEDIA_URL]

    @pytest.mark.asyncio
    async def test_tiktok_publish_failed_keeps_media(self, token_store, poll_config, storage):
        ok = {"code": "ok"}

        def handler(request):
            path = request.url.path
            if request.url.host == "media.test":
                if request.method == "HEAD":
                    return httpx.Response(200, headers={"content-length": "4", "content-type": "video/mp4"})
                return httpx.Response(200, content=b"abcd")
            if path.endswith("/creator_info/query/"):
                return httpx.Response(200, json={"data": {}, "error": ok})
            if path.endswith("/video/init/"):
                return httpx.Response(200, json={"data": {"publish_id": "p-1", "upload_url": "https://up.test/u"}, "error": ok})
            if request.method == "PUT":
                return httpx.Response(201)
            return httpx.Response(200, json={"data": {"status": "PUBLISH_FAILED", "fail_reason": "file_format_check_failed"}, "error": ok})

        adapter = TikTokAdapter(TikTokConfig(chunk_retry_delay=0), mock_client(handler))

        state = await orchestrate(adapter, token_store, poll_config, storage).run(make_job(Platform.TIKTOK))

        assert state.status == PublishStatus.FAILED
        assert state.details["raw"]["data"]["fail_reason"] == "file_format_check_failed"
        assert storage.delete_calls == []
        assert MEDIA_URL in storage.objects
