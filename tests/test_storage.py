"""Tests for the R2 temporary storage, with a stubbed boto3 client."""

from unittest.mock import MagicMock

import pytest

from publisher.config import StorageConfig
from publisher.errors import ErrorCode, PublishError
from publisher.storage import LIST_PAGE_SIZE, R2Storage

PUBLIC = "https://pub-123.r2.dev"


def make_storage(public_url=PUBLIC):
    client = MagicMock()
    config = StorageConfig(
        account_id="acct",
        access_key_id="key",
        secret_access_key="secret",
        bucket_name="bucket",
        public_url=public_url,
    )
    return R2Storage(config, client=client), client


class TestKeys:

    def test_make_key_keeps_name_under_prefix(self):
        storage, _ = make_storage()

        key = storage.make_key("my/clip.mp4")

        assert key.startswith("tmp/")
        assert key.endswith("_my_clip.mp4")

    def test_public_url_round_trip(self):
        storage, _ = make_storage()

        url = storage.url_for_key("tmp/20260101_000000_ab12cd34_my clip.mp4")

        assert url == f"{PUBLIC}/tmp/20260101_000000_ab12cd34_my%20clip.mp4"
        assert storage.key_for_url(url) == "tmp/20260101_000000_ab12cd34_my clip.mp4"

    def test_presigned_path_style_url(self):
        storage, client = make_storage(public_url="")
        client.generate_presigned_url.return_value = (
            "https://acct.r2.cloudflarestorage.com/bucket/tmp/x.mp4?X-Amz-Signature=abc"
        )

        url = storage.url_for_key("tmp/x.mp4")

        assert storage.key_for_url(url) == "tmp/x.mp4"

    def test_url_without_key(self):
        storage, _ = make_storage()

        with pytest.raises(PublishError):
            storage.key_for_url("https://elsewhere.test/")


class TestOperations:

    @pytest.mark.asyncio
    async def test_put_returns_public_url(self):
        storage, client = make_storage()

        url = await storage.put("clip.mp4", b"data", "video/mp4")

        kwargs = client.put_object.call_args.kwargs
        assert kwargs["Bucket"] == "bucket"
        assert kwargs["Body"] == b"data"
        assert kwargs["ContentType"] == "video/mp4"
        assert url == f"{PUBLIC}/{kwargs['Key']}"

    @pytest.mark.asyncio
    async def test_put_failure_is_storage_error(self):
        storage, client = make_storage()
        client.put_object.side_effect = RuntimeError("boom")

        with pytest.raises(PublishError) as exc:
            await storage.put("clip.mp4", b"data")
        assert exc.value.code == ErrorCode.STORAGE_FAILED

    @pytest.mark.asyncio
    async def test_delete_uses_key_from_url(self):
        storage, client = make_storage()

        await storage.delete(f"{PUBLIC}/tmp/x.mp4")

        client.delete_object.assert_called_once_with(Bucket="bucket", Key="tmp/x.mp4")

    @pytest.mark.asyncio
    async def test_delete_all_walks_every_page(self):
        storage, client = make_storage()
        client.list_objects_v2.side_effect = [
            {"Contents": [{"Key": "tmp/a"}, {"Key": "tmp/b"}], "IsTruncated": True, "NextContinuationToken": "next"},
            {"Contents": [{"Key": "tmp/c"}], "IsTruncated": False},
        ]

        deleted = await storage.delete_all()

        assert deleted == 3
        first, second = client.list_objects_v2.call_args_list
        assert first.kwargs["MaxKeys"] == LIST_PAGE_SIZE
        assert "ContinuationToken" not in first.kwargs
        assert second.kwargs["ContinuationToken"] == "next"
        keys = [c.kwargs["Key"] for c in client.delete_object.call_args_list]
        assert keys == ["tmp/a", "tmp/b", "tmp/c"]


class TestOwnership:

    def test_foreign_host_is_refused(self):
        storage, _ = make_storage(public_url="https://cdn.example.com")

        assert storage.owns("https://attacker.example/tmp/victim_video.mp4") is False
        with pytest.raises(PublishError) as exc:
            storage.key_for_url("https://attacker.example/tmp/victim_video.mp4")
        assert exc.value.code == ErrorCode.STORAGE_FAILED

    def test_lookalike_public_host_is_refused(self):
        storage, _ = make_storage(public_url="https://cdn.example.com")

        assert storage.owns("https://cdn.example.com.attacker.example/tmp/x.mp4") is False

    def test_key_outside_temporary_prefix_is_refused(self):
        storage, _ = make_storage()

        assert storage.owns(f"{PUBLIC}/keep/original.mp4") is False
        assert storage.owns(f"{PUBLIC}/tmp/clip.mp4") is True

    def test_endpoint_url_must_name_the_bucket(self):
        storage, _ = make_storage(public_url="")

        assert storage.owns("https://acct.r2.cloudflarestorage.com/bucket/tmp/x.mp4") is True
        assert storage.owns("https://acct.r2.cloudflarestorage.com/other-bucket/tmp/x.mp4") is False

    @pytest.mark.asyncio
    async def test_delete_of_foreign_url_touches_nothing(self):
        storage, client = make_storage(public_url="https://cdn.example.com")

        with pytest.raises(PublishError):
            await storage.delete("https://attacker.example/tmp/victim_video.mp4")
        client.delete_object.assert_not_called()
