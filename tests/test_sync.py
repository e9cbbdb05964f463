"""Test SyncOrchestrator fan-out and partial-failure aggregation."""
import asyncio

import pytest

from hub.errors import SyncError, UpstreamError
from hub.integrations.models import ProviderIdentity
from hub.integrations.registry import IntegrationRegistry
from hub.integrations.sync import Err, Ok, SubTask, SubTaskOutcome, SyncOrchestrator, settle_all

IDENTITY = ProviderIdentity(provider="ledger", user_id="user-1")


def _ok(processed, skipped=0):
    async def run():
        return SubTaskOutcome(processed=processed, skipped=skipped)
    return run


def _fail(message):
    async def run():
        raise UpstreamError(message, status_code=500)
    return run


@pytest.mark.asyncio
async def test_partial_failure_is_success():
    result = await SyncOrchestrator().sync_all(IDENTITY, [
        SubTask("accounts", _ok(4)),
        SubTask("transactions", _fail("transactions down")),
        SubTask("institution", _ok(1)),
    ])

    assert result.success is True
    assert len(result.errors) == 1
    assert "transactions" in result.errors[0]
    assert result.items_processed == 5
    assert result.metadata["sub_tasks"] == {
        "accounts": "ok",
        "transactions": "failed",
        "institution": "ok",
    }


@pytest.mark.asyncio
async def test_all_failed_raises_sync_error():
    with pytest.raises(SyncError) as exc_info:
        await SyncOrchestrator().sync_all(IDENTITY, [
            SubTask("accounts", _fail("a")),
            SubTask("transactions", _fail("b")),
            SubTask("institution", _fail("c")),
        ])

    error = exc_info.value
    assert error.result is not None
    assert error.result.success is False
    assert len(error.result.errors) == 3
    assert error.result.items_processed == 0
    assert isinstance(error.__cause__, UpstreamError)
    assert error.__cause__.message == "a"
    assert error.provider == "ledger"


@pytest.mark.asyncio
async def test_skipped_counts_are_summed():
    result = await SyncOrchestrator().sync_all(IDENTITY, [
        SubTask("accounts", _ok(3, skipped=1)),
        SubTask("transactions", _ok(10, skipped=2)),
    ])
    assert result.items_processed == 13
    assert result.items_skipped == 3
    assert result.errors == ()


@pytest.mark.asyncio
async def test_sub_tasks_run_concurrently():
    ready = asyncio.Event()

    async def waits_for_sibling():
        await ready.wait()
        return SubTaskOutcome(processed=1)

    async def releases_sibling():
        ready.set()
        return SubTaskOutcome(processed=1)

    result = await asyncio.wait_for(
        SyncOrchestrator().sync_all(IDENTITY, [
            SubTask("first", waits_for_sibling),
            SubTask("second", releases_sibling),
        ]),
        timeout=1,
    )
    assert result.items_processed == 2


@pytest.mark.asyncio
async def test_failure_does_not_cancel_siblings():
    finished = []

    async def slow():
        await asyncio.sleep(0.02)
        finished.append("slow")
        return SubTaskOutcome(processed=7)

    result = await SyncOrchestrator().sync_all(IDENTITY, [
        SubTask("fails_fast", _fail("boom")),
        SubTask("slow", slow),
    ])
    assert finished == ["slow"]
    assert result.items_processed == 7


@pytest.mark.asyncio
async def test_sync_metadata_stamps():
    result = await SyncOrchestrator().sync_all(IDENTITY, [SubTask("accounts", _ok(1))])
    assert result.metadata["provider"] == "ledger"
    assert result.metadata["synced_at"] >= result.metadata["last_sync_time"]


@pytest.mark.asyncio
async def test_no_sub_tasks_is_not_success():
    result = await SyncOrchestrator().sync_all(IDENTITY, [])
    assert result.success is False
    assert result.items_processed == 0
    assert result.errors == ("no sync sub-tasks to run",)
    assert result.metadata["sub_tasks"] == {}


@pytest.mark.asyncio
async def test_cancellation_propagates():
    async def cancelled():
        raise asyncio.CancelledError()

    with pytest.raises(asyncio.CancelledError):
        await settle_all([cancelled()])


@pytest.mark.asyncio
async def test_settle_all_variants():
    async def good():
        return 1

    async def bad():
        raise ValueError("nope")

    settled = await settle_all([good(), bad()])
    assert settled[0] == Ok(1)
    assert settled[0].ok
    assert isinstance(settled[1], Err)
    assert not settled[1].ok
    assert isinstance(settled[1].error, ValueError)


@pytest.mark.asyncio
async def test_sync_user_reports_each_provider(fake_integration):
    registry = IntegrationRegistry()
    registry.register_factory("ledger", fake_integration)
    registry.register_factory(
        "notes", lambda identity: fake_integration(identity, fail_with=UpstreamError("down", status_code=503)),
    )
    registry.create(ProviderIdentity(provider="ledger", user_id="user-1"))
    registry.create(ProviderIdentity(provider="notes", user_id="user-1"))
    registry.create(ProviderIdentity(provider="ledger", user_id="user-2"))

    results = await SyncOrchestrator().sync_user("user-1", registry)

    assert set(results) == {"ledger", "notes"}
    assert isinstance(results["ledger"], Ok)
    assert results["ledger"].value.items_processed == 3
    assert isinstance(results["notes"], Err)
    assert isinstance(results["notes"].error, UpstreamError)
