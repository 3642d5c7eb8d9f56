"""Tests for push authentication and the push handler."""

import pytest

from gradesync.sync import (
    AuthError,
    ChangeApplier,
    ChangeLogStore,
    PushedBuffer,
    PushHandler,
    RecordStore,
    SyncDatabase,
    ValidationError,
)
from gradesync.sync.push import check_token


class TestCheckToken:
    def test_no_secret_configured(self):
        check_token(None, None)
        check_token("", "anything")

    def test_matching_token(self):
        check_token("s3cret", "s3cret")

    @pytest.mark.parametrize("provided", [None, "", "wrong", "s3cret "])
    def test_mismatch(self, provided):
        with pytest.raises(AuthError):
            check_token("s3cret", provided)


@pytest.fixture
def handler():
    db = SyncDatabase(":memory:")
    db.connect()
    records = RecordStore(db)
    applier = ChangeApplier(records, ChangeLogStore(db))
    yield PushHandler(applier, PushedBuffer(preserve_type=True), token="s3cret")
    db.close()


class TestPushHandler:
    @pytest.mark.asyncio
    async def test_auth_checked_before_payload(self, handler):
        """Test a bad token is reported even for a malformed body."""
        with pytest.raises(AuthError):
            await handler.push({"changes": "nope"}, "wrong")

    @pytest.mark.asyncio
    async def test_invalid_payload(self, handler):
        with pytest.raises(ValidationError, match="Invalid changes payload"):
            await handler.push({"changes": "nope"}, "s3cret")

    @pytest.mark.asyncio
    async def test_buffer_excludes_failed_and_stale(self, handler):
        """Test only applied or duplicate items enter the buffer."""
        result = await handler.push(
            {
                "changes": [
                    {"id": "S1", "doc": {}, "timestamp": 200},
                    {"id": "S1", "doc": {}, "timestamp": 100},
                    {"id": "", "doc": {}},
                    {"id": "S2", "type": "delete", "timestamp": 300},
                ]
            },
            "s3cret",
        )

        assert result["ok"] is False
        buffered = {(i.id, i.ts, i.type) for i in handler.pushed.items()}
        assert buffered == {("S1", 200, "upsert"), ("S2", 300, "delete")}

    @pytest.mark.asyncio
    async def test_empty_batch_clears_buffer(self, handler):
        await handler.push({"changes": [{"id": "S1", "doc": {}, "timestamp": 1}]}, "s3cret")
        result = await handler.push({"changes": []}, "s3cret")

        assert result["ok"] is True
        assert result["total"] == 0
        assert len(handler.pushed) == 0
