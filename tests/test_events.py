import asyncio

import pytest

from prbuilder.events import DecisionEvent, EventBroadcaster


def _event(outcome="triggered", pr="42"):
    return DecisionEvent(
        repository="proj/repo",
        decision="trigger",
        outcome=outcome,
        pull_request_id=pr,
        commit="aaa",
    )


@pytest.mark.asyncio
async def test_broadcaster_fans_out_to_all_subscribers():
    broadcaster = EventBroadcaster()
    first = await broadcaster.subscribe()
    second = await broadcaster.subscribe()

    await broadcaster.publish(_event())

    for queue in (first, second):
        payload = await asyncio.wait_for(queue.get(), timeout=1.0)
        assert payload["pull_request_id"] == "42"
        assert payload["outcome"] == "triggered"
        assert isinstance(payload["timestamp"], str)


@pytest.mark.asyncio
async def test_unsubscribed_queue_receives_nothing():
    broadcaster = EventBroadcaster()
    queue = await broadcaster.subscribe()
    await broadcaster.unsubscribe(queue)

    await broadcaster.publish(_event())

    assert queue.empty()


@pytest.mark.asyncio
async def test_full_queue_drops_oldest_event():
    broadcaster = EventBroadcaster(queue_size=2)
    queue = await broadcaster.subscribe()

    for pr in ("1", "2", "3"):
        await broadcaster.publish(_event(pr=pr))

    assert queue.qsize() == 2
    assert [queue.get_nowait()["pull_request_id"] for _ in range(2)] == ["2", "3"]


@pytest.mark.asyncio
async def test_rejections_are_logged_as_warnings(caplog):
    broadcaster = EventBroadcaster()

    with caplog.at_level("INFO", logger="prbuilder"):
        await broadcaster.publish(_event(outcome="rejected"))
        await broadcaster.publish(_event(outcome="triggered"))

    levels = [record.levelname for record in caplog.records]
    assert levels == ["WARNING", "INFO"]
