"""
Tests for the in-process change feed used by the event streams
"""

import asyncio
import threading

from app.core.events import ChangeFeed, attempt_topic, change_feed
from conftest import LESSON


def test_subscriber_receives_published_payloads():
    feed = ChangeFeed()

    async def run():
        async with feed.subscribe("attempt:1") as subscription:
            feed.publish("attempt:1", {"type": "attempt.navigated"})
            return await subscription.get(timeout=1)

    assert asyncio.run(run()) == {"type": "attempt.navigated"}


def test_topics_are_isolated():
    feed = ChangeFeed()

    async def run():
        async with feed.subscribe("attempt:1") as first, feed.subscribe("attempt:2") as second:
            feed.publish("attempt:2", "for second")
            got = await second.get(timeout=1)
            await asyncio.sleep(0)
            return got, first.queue.empty()

    assert asyncio.run(run()) == ("for second", True)


def test_leaving_the_block_unsubscribes():
    feed = ChangeFeed()

    async def run():
        async with feed.subscribe("challenge:9"):
            assert feed.subscriber_count("challenge:9") == 1
        return feed.subscriber_count("challenge:9")

    assert asyncio.run(run()) == 0
    # Publishing with nobody listening is a no-op
    feed.publish("challenge:9", {"type": "challenge.completed"})


def test_publish_from_a_worker_thread():
    feed = ChangeFeed()

    async def run():
        async with feed.subscribe("attempt:5") as subscription:
            worker = threading.Thread(target=feed.publish, args=("attempt:5", "from thread"))
            worker.start()
            worker.join()
            return await subscription.get(timeout=1)

    assert asyncio.run(run()) == "from thread"


def test_slow_subscriber_is_dropped():
    feed = ChangeFeed(maxsize=1)

    async def run():
        async with feed.subscribe("attempt:3"):
            feed.publish("attempt:3", 1)
            feed.publish("attempt:3", 2)
            await asyncio.sleep(0)
            return feed.subscriber_count("attempt:3")

    assert asyncio.run(run()) == 0


def test_recorded_answer_is_published(sessions):
    started = asyncio.run(sessions.start(1, LESSON))
    question_id = started.questions[0].question_id

    async def run():
        async with change_feed.subscribe(attempt_topic(started.attempt.id)) as subscription:
            sessions.record_answer(1, started.attempt.id, question_id, 0, current_index=1)
            return await subscription.get(timeout=1)

    event = asyncio.run(run())

    assert event["type"] == "attempt.answer_recorded"
    assert event["question_id"] == question_id
    assert event["current_index"] == 1
