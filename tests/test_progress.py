"""Tests for report_ingest.progress."""

from __future__ import annotations

import pytest

from report_ingest.progress import (
    CATEGORY_BAND_END,
    TRIGGER_BAND_END,
    ProgressChannel,
    category_percent,
)


class TestProgressChannel:
    def test_percent_never_decreases(self):
        channel = ProgressChannel()
        channel.publish("a", 40)
        event = channel.publish("b", 20)
        assert event.percent == 40
        assert channel.last is event

    def test_percent_is_clamped(self):
        channel = ProgressChannel()
        assert channel.publish("over", 250).percent == 100
        assert ProgressChannel().publish("under", -5).percent == 0

    def test_subscriber_sees_events_published_before_iteration(self):
        channel = ProgressChannel()
        subscription = channel.subscribe()
        channel.publish("one", 5)
        channel.publish("two", 10)
        assert [e.message for e in subscription.drain()] == ["one", "two"]

    @pytest.mark.asyncio
    async def test_close_ends_iteration(self):
        channel = ProgressChannel()
        subscription = channel.subscribe()
        channel.publish("one", 5)
        channel.close()
        received = [event.message async for event in subscription]
        assert received == ["one"]

    @pytest.mark.asyncio
    async def test_subscribe_after_close(self):
        channel = ProgressChannel()
        channel.close()
        received = [event async for event in channel.subscribe()]
        assert received == []

    def test_begin_run_resets_percent(self):
        channel = ProgressChannel()
        channel.publish("done", 100)
        channel.begin_run()
        assert channel.last is None
        assert channel.publish("again", 3).percent == 3

    def test_fan_out(self):
        channel = ProgressChannel()
        first, second = channel.subscribe(), channel.subscribe()
        channel.publish("hello", 1)
        assert len(first.drain()) == len(second.drain()) == 1


class TestCategoryPercent:
    def test_band_edges(self):
        assert category_percent(0, 10) == TRIGGER_BAND_END
        assert category_percent(10, 10) == CATEGORY_BAND_END

    def test_midpoint(self):
        assert category_percent(5, 10) == 45

    def test_no_categories(self):
        assert category_percent(0, 0) == CATEGORY_BAND_END
