import logging

import pytest

from orchestrator.post_commit import PostCommitScheduler


@pytest.mark.asyncio
async def test_hooks_run_in_order_and_failures_do_not_stop_the_rest(caplog):
    scheduler = PostCommitScheduler()
    calls = []

    async def first():
        calls.append("first")

    async def broken():
        calls.append("broken")
        raise RuntimeError("audit write failed")

    async def last():
        calls.append("last")

    for hook in (first, broken, last):
        scheduler.schedule(hook)

    with caplog.at_level(logging.ERROR, logger="orchestrator"):
        outcomes = await scheduler.run()

    assert calls == ["first", "broken", "last"]
    assert [o.success for o in outcomes] == [True, False, True]
    assert outcomes[1].error == "audit write failed"
    assert "post-commit hook failed index=1 of=3" in caplog.text
    assert scheduler.pending == 0


@pytest.mark.asyncio
async def test_queue_is_cleared_after_run():
    scheduler = PostCommitScheduler()
    calls = []

    async def hook():
        calls.append(1)

    scheduler.schedule(hook)
    await scheduler.run()
    await scheduler.run()

    assert calls == [1]


@pytest.mark.asyncio
async def test_empty_run_is_a_no_op(caplog):
    scheduler = PostCommitScheduler()

    with caplog.at_level(logging.DEBUG, logger="orchestrator"):
        assert await scheduler.run() == []

    assert [r for r in caplog.records if r.name == "orchestrator"] == []


def test_clear_discards_pending_hooks():
    scheduler = PostCommitScheduler()

    async def hook():
        pass

    scheduler.schedule(hook)
    assert scheduler.pending == 1
    scheduler.clear()
    assert scheduler.pending == 0
