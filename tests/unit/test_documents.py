"""Unit tests for documents.py."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from lspmux.config import EvictionPolicy
from lspmux.documents import INITIAL_VERSION, DocumentSync
from lspmux.errors import DocumentStateError
from lspmux.paths import file_to_uri


@pytest.fixture
def transport():
    mock = MagicMock()
    mock.send_notification = AsyncMock()
    return mock


@pytest.fixture
def sync(transport):
    return DocumentSync(transport)


def sent(transport, method: str) -> list[dict]:
    return [c.args[1] for c in transport.send_notification.await_args_list if c.args[0] == method]


# ------------------------------------------------------------------
# open / change / close
# ------------------------------------------------------------------


@pytest.mark.unit
async def test_open_starts_at_version_one(sync, transport):
    await sync.open("/proj/a.ts", "typescript", "const a = 1;")

    assert sync.is_open("/proj/a.ts")
    assert sync.version("/proj/a.ts") == INITIAL_VERSION == 1
    params = sent(transport, "textDocument/didOpen")[0]
    assert params["textDocument"] == {
        "uri": file_to_uri("/proj/a.ts"),
        "languageId": "typescript",
        "version": 1,
        "text": "const a = 1;",
    }


@pytest.mark.unit
async def test_open_twice_raises(sync, transport):
    await sync.open("/proj/a.ts", "typescript", "")

    with pytest.raises(DocumentStateError, match="already open"):
        await sync.open("/proj/a.ts", "typescript", "")
    assert len(sent(transport, "textDocument/didOpen")) == 1


@pytest.mark.unit
async def test_each_change_increments_version(sync, transport):
    await sync.open("/proj/a.ts", "typescript", "v1")

    assert await sync.change("/proj/a.ts", "v2") == 2
    assert await sync.change("/proj/a.ts", "v3") == 3

    versions = [p["textDocument"]["version"] for p in sent(transport, "textDocument/didChange")]
    assert versions == [2, 3]
    assert sent(transport, "textDocument/didChange")[-1]["contentChanges"] == [{"text": "v3"}]


@pytest.mark.unit
async def test_incremental_change(sync, transport):
    await sync.open("/proj/a.ts", "typescript", "const a = 1;")
    edit_range = {"start": {"line": 0, "character": 10}, "end": {"line": 0, "character": 11}}

    await sync.change("/proj/a.ts", "const a = 2;", range=edit_range, new_text="2")

    changes = sent(transport, "textDocument/didChange")[0]["contentChanges"]
    assert changes == [{"range": edit_range, "text": "2"}]


@pytest.mark.unit
async def test_range_without_text_sends_full_content(sync, transport):
    await sync.open("/proj/a.ts", "typescript", "x")
    edit_range = {"start": {"line": 0, "character": 0}, "end": {"line": 0, "character": 1}}

    await sync.change("/proj/a.ts", "y", range=edit_range)

    assert sent(transport, "textDocument/didChange")[0]["contentChanges"] == [{"text": "y"}]


@pytest.mark.unit
async def test_change_unopened_raises_before_sending(sync, transport):
    with pytest.raises(DocumentStateError, match="not open"):
        await sync.change("/proj/a.ts", "x")
    transport.send_notification.assert_not_awaited()


@pytest.mark.unit
async def test_close_removes_entry(sync, transport):
    await sync.open("/proj/a.ts", "typescript", "")
    await sync.close("/proj/a.ts")

    assert not sync.is_open("/proj/a.ts")
    assert sent(transport, "textDocument/didClose") == [
        {"textDocument": {"uri": file_to_uri("/proj/a.ts")}}
    ]
    with pytest.raises(DocumentStateError):
        await sync.close("/proj/a.ts")


@pytest.mark.unit
async def test_reopen_resets_version(sync):
    await sync.open("/proj/a.ts", "typescript", "")
    await sync.change("/proj/a.ts", "x")
    await sync.close("/proj/a.ts")

    await sync.open("/proj/a.ts", "typescript", "x")

    assert sync.version("/proj/a.ts") == 1


@pytest.mark.unit
async def test_failed_send_leaves_state_unchanged(sync, transport):
    await sync.open("/proj/a.ts", "typescript", "")
    transport.send_notification.side_effect = RuntimeError("pipe gone")

    with pytest.raises(RuntimeError):
        await sync.change("/proj/a.ts", "x")
    assert sync.version("/proj/a.ts") == 1


# ------------------------------------------------------------------
# save
# ------------------------------------------------------------------


@pytest.mark.unit
async def test_save_unopened_raises(sync, transport):
    with pytest.raises(DocumentStateError):
        await sync.save("/proj/a.ts")
    transport.send_notification.assert_not_awaited()


@pytest.mark.unit
async def test_save_keeps_version(sync, transport):
    await sync.open("/proj/a.ts", "typescript", "")
    await sync.save("/proj/a.ts", text="saved")

    assert sync.version("/proj/a.ts") == 1
    assert sent(transport, "textDocument/didSave")[0]["text"] == "saved"


# ------------------------------------------------------------------
# eviction
# ------------------------------------------------------------------


@pytest.mark.unit
async def test_evict_disabled_by_default(sync):
    await sync.open("/proj/a.ts", "typescript", "")

    assert await sync.evict(EvictionPolicy(), now=1e12) == []
    assert sync.is_open("/proj/a.ts")


@pytest.mark.unit
async def test_evict_idle_documents(sync):
    for name in ("a", "b"):
        await sync.open(f"/proj/{name}.ts", "typescript", "")
    sync.get("/proj/a.ts").last_access = 100.0
    sync.get("/proj/b.ts").last_access = 190.0

    closed = await sync.evict(EvictionPolicy(idle_timeout=50.0), now=200.0)

    assert closed == ["/proj/a.ts"]
    assert sync.open_paths() == ["/proj/b.ts"]


@pytest.mark.unit
async def test_evict_least_recently_used_over_limit(sync):
    for index, name in enumerate(("a", "b", "c")):
        await sync.open(f"/proj/{name}.ts", "typescript", "")
        sync.get(f"/proj/{name}.ts").last_access = float(index)
    sync.touch("/proj/a.ts")

    closed = await sync.evict(EvictionPolicy(max_open_files=2))

    assert closed == ["/proj/b.ts"]
    assert len(sync) == 2


@pytest.mark.unit
async def test_clear_forgets_without_notifying(sync, transport):
    await sync.open("/proj/a.ts", "typescript", "")
    sync.clear()

    assert len(sync) == 0
    assert sent(transport, "textDocument/didClose") == []


# ------------------------------------------------------------------
# concurrent callers
# ------------------------------------------------------------------


@pytest.fixture
def yielding_transport(transport):
    """A transport whose sends suspend, as a paused pipe's drain() does."""

    async def send(method, params=None):
        await asyncio.sleep(0)

    transport.send_notification.side_effect = send
    transport.closed = False
    return transport


@pytest.mark.unit
async def test_concurrent_changes_get_distinct_versions(yielding_transport):
    sync = DocumentSync(yielding_transport)
    await sync.open("/proj/a.ts", "typescript", "")

    versions = await asyncio.gather(
        sync.change("/proj/a.ts", "one"),
        sync.change("/proj/a.ts", "two"),
    )

    assert sorted(versions) == [2, 3]
    sent_versions = [p["textDocument"]["version"] for p in sent(yielding_transport, "textDocument/didChange")]
    assert sent_versions == [2, 3]
    assert sync.version("/proj/a.ts") == 3


@pytest.mark.unit
async def test_concurrent_opens_send_one_did_open(yielding_transport):
    sync = DocumentSync(yielding_transport)

    results = await asyncio.gather(
        sync.open("/proj/a.ts", "typescript", ""),
        sync.open("/proj/a.ts", "typescript", ""),
        return_exceptions=True,
    )

    assert results[0] is None
    assert isinstance(results[1], DocumentStateError)
    assert len(sent(yielding_transport, "textDocument/didOpen")) == 1
    assert sync.version("/proj/a.ts") == 1


@pytest.mark.unit
async def test_concurrent_closes_send_one_did_close(yielding_transport):
    sync = DocumentSync(yielding_transport)
    await sync.open("/proj/a.ts", "typescript", "")

    results = await asyncio.gather(
        sync.close("/proj/a.ts"),
        sync.close("/proj/a.ts"),
        return_exceptions=True,
    )

    assert results[0] is None
    assert isinstance(results[1], DocumentStateError)
    assert len(sent(yielding_transport, "textDocument/didClose")) == 1


@pytest.mark.unit
async def test_failed_open_is_not_tracked(sync, transport):
    transport.send_notification.side_effect = RuntimeError("pipe gone")

    with pytest.raises(RuntimeError):
        await sync.open("/proj/a.ts", "typescript", "")

    assert not sync.is_open("/proj/a.ts")
