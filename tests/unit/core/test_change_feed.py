"""Tests for the in-process change feed."""

import asyncio

import pytest

from core.change_feed import ChangeEvent, LocalChangeFeed, channel_for


class TestChangeEvent:
    def test_json_round_trip(self):
        event = ChangeEvent(job_id="job-1", status="failed", is_ready=False, error={"message": "boom"})
        assert ChangeEvent.from_json(event.to_json()) == event

    def test_channel_name(self):
        assert channel_for("job-1") == "analyses:job-1"


class TestLocalChangeFeed:
    @pytest.mark.asyncio
    async def test_delivers_only_matching_job(self):
        feed = LocalChangeFeed()
        subscription = await feed.subscribe("job-1")

        await feed.publish(ChangeEvent(job_id="job-2", status="completed", is_ready=True))
        await feed.publish(ChangeEvent(job_id="job-1", status="completed", is_ready=True))

        event = await asyncio.wait_for(subscription.next_event(), timeout=1)
        assert event.job_id == "job-1"
        assert subscription.queue.empty()

    @pytest.mark.asyncio
    async def test_fan_out_to_all_subscribers(self):
        feed = LocalChangeFeed()
        first = await feed.subscribe("job-1")
        second = await feed.subscribe("job-1")

        await feed.publish(ChangeEvent(job_id="job-1", status="processing"))

        assert (await first.next_event()).status == "processing"
        assert (await second.next_event()).status == "processing"

    @pytest.mark.asyncio
    async def test_close_detaches(self):
        feed = LocalChangeFeed()
        subscription = await feed.subscribe("job-1")
        assert feed.subscriber_count("job-1") == 1

        await subscription.close()
        await subscription.close()

        assert feed.subscriber_count("job-1") == 0
        await feed.publish(ChangeEvent(job_id="job-1", status="completed"))
        assert subscription.queue.empty()
