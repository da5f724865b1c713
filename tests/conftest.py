"""Shared test fixtures and fakes.

The token store and the temporary storage are replaced by in-memory fakes;
platform adapters are either scripted fakes or the real adapters wired to an
``httpx.MockTransport``.
"""

from __future__ import annotations

from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
import pytest

from publisher.config import PollConfig
from publisher.context import (
    Platform,
    PlatformAccount,
    PollResult,
    PublishStatus,
    SubmitResult,
    TokenGrant,
)
from publisher.errors import ErrorCode, PublishError
from publisher.platforms.base import PlatformAdapter
from publisher.storage import TemporaryStorage
from publisher.token_store import TokenStore

USER_ID = "user-1"
MEDIA_URL = "https://media.test/tmp/video.mp4"


class InMemoryTokenStore(TokenStore):
    """Token store keeping accounts in a dict, recording every update."""

    def __init__(self, accounts: Optional[List[PlatformAccount]] = None):
        self.accounts: Dict[Tuple[str, Platform], PlatformAccount] = {}
        self.updates: List[Tuple[str, Dict[str, Any]]] = []
        for account in accounts or []:
            self.add(account)

    def add(self, account: PlatformAccount) -> PlatformAccount:
        if account.id is None:
            account = replace(account, id=f"acct-{account.platform.value}")
        self.accounts[(account.user_id, account.platform)] = account
        return account

    async def find(self, user_id: str, platform: Platform) -> Optional[PlatformAccount]:
        account = self.accounts.get((user_id, platform))
        return replace(account) if account else None

    async def update(self, account_id: str, fields: Dict[str, Any]) -> None:
        self.updates.append((account_id, dict(fields)))
        for key, account in self.accounts.items():
            if account.id == account_id:
                self.accounts[key] = replace(account, **fields)

    async def delete(self, user_id: str, platform: Platform) -> None:
        self.accounts.pop((user_id, platform), None)


class FakeStorage(TemporaryStorage):
    """Dict-backed storage. ``fail_delete`` makes every delete raise."""

    def __init__(self, page_size: int = 1000, fail_delete: bool = False):
        self.objects: Dict[str, bytes] = {}
        self.delete_calls: List[str] = []
        self.page_size = page_size
        self.fail_delete = fail_delete

    async def put(self, name: str, data: bytes, content_type: str = "video/mp4") -> str:
        url = f"https://media.test/tmp/{name}"
        self.objects[url] = data
        return url

    async def delete(self, url: str) -> None:
        self.delete_calls.append(url)
        if self.fail_delete:
            raise PublishError(ErrorCode.STORAGE_FAILED, f"delete failed for {url}")
        self.objects.pop(url, None)

    def owns(self, url: str) -> bool:
        return url.startswith("https://media.test/tmp/")

    async def list(self, cursor: Optional[str] = None):
        urls = sorted(self.objects)
        start = int(cursor or 0)
        page = urls[start:start + self.page_size]
        nxt = start + self.page_size
        return page, (str(nxt) if nxt < len(urls) else None)


class FakeAdapter(PlatformAdapter):
    """
    Scripted adapter. Each list holds results (or exceptions to raise) in call order;
    the last entry repeats once the script runs out.
    """

    def __init__(
        self,
        platform: Platform,
        submit: Optional[List[Any]] = None,
        polls: Optional[List[Any]] = None,
        refresh: Optional[List[Any]] = None,
        poll_based: bool = True,
    ):
        super().__init__(None, None)
        self.platform = platform
        self.poll_based = poll_based
        self.submit_script = submit or [SubmitResult(external_job_id="job-1")]
        self.poll_script = polls or [PollResult(status=PublishStatus.SUCCESS, platform_video_id="vid-1")]
        self.refresh_script = refresh or [TokenGrant(access_token="fresh-token", expires_in=3600)]
        self.submit_calls: List[str] = []
        self.poll_calls: List[str] = []
        self.refresh_calls: List[PlatformAccount] = []
        self.on_poll: Optional[Callable[[int], None]] = None

    @staticmethod
    def _next(script: List[Any], index: int) -> Any:
        item = script[min(index, len(script) - 1)]
        if isinstance(item, BaseException):
            raise item
        return item

    async def submit(self, access_token, media_url, metadata):
        self.submit_calls.append(access_token)
        return self._next(self.submit_script, len(self.submit_calls) - 1)

    async def poll_status(self, access_token, external_job_id, job_context=None):
        self.poll_calls.append(access_token)
        if self.on_poll is not None:
            self.on_poll(len(self.poll_calls))
        return self._next(self.poll_script, len(self.poll_calls) - 1)

    async def refresh_token(self, account):
        self.refresh_calls.append(account)
        return self._next(self.refresh_script, len(self.refresh_calls) - 1)


def make_account(platform: Platform, **kwargs) -> PlatformAccount:
    fields = {
        "user_id": USER_ID,
        "platform": platform,
        "access_token": f"{platform.value}-token",
        "refresh_token": f"{platform.value}-refresh",
    }
    fields.update(kwargs)
    return PlatformAccount(**fields)


def mock_client(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture
def poll_config() -> PollConfig:
    return PollConfig(interval_seconds=0, max_attempts=5)


@pytest.fixture
def token_store() -> InMemoryTokenStore:
    return InMemoryTokenStore([make_account(p) for p in Platform])


@pytest.fixture
def storage() -> FakeStorage:
    store = FakeStorage()
    store.objects[MEDIA_URL] = b"video-bytes"
    return store
