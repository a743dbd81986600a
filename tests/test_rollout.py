"""Tests for peekguard.runtime.rollout and peekguard.runtime.notifications"""

import asyncio

import pytest

from peekguard.core.errors import ExternalRolloutFailure
from peekguard.runtime.notifications import (
    SUMMARY_UPDATE,
    InMemoryChannel,
    NotificationChannel,
    experiment_completed,
    summary_update,
)
from peekguard.runtime.rollout import (
    RecordingRolloutClient,
    RolloutClient,
    RolloutConfig,
    push_or_raise,
)

CONFIG = RolloutConfig(provider="launchdarkly", flag_key="cta-color")


class HangingClient:
    async def push_flag_value(self, key, value, provider):
        await asyncio.sleep(10)
        return True


class ExplodingClient:
    async def push_flag_value(self, key, value, provider):
        raise ConnectionError("502 Bad Gateway")


class TestPushOrRaise:
    @pytest.mark.asyncio
    async def test_success(self):
        client = RecordingRolloutClient()
        await push_or_raise(client, CONFIG, "Green", timeout=1.0)
        assert client.calls == [("cta-color", "Green", "launchdarkly")]

    @pytest.mark.asyncio
    async def test_rejection(self):
        with pytest.raises(ExternalRolloutFailure, match="rejected"):
            await push_or_raise(RecordingRolloutClient(succeed=False), CONFIG, "Green", 1.0)

    @pytest.mark.asyncio
    async def test_timeout(self):
        with pytest.raises(ExternalRolloutFailure, match="Timed out"):
            await push_or_raise(HangingClient(), CONFIG, "Green", timeout=0.05)

    @pytest.mark.asyncio
    async def test_provider_error_is_wrapped(self):
        with pytest.raises(ExternalRolloutFailure) as exc:
            await push_or_raise(ExplodingClient(), CONFIG, "Green", 1.0)
        assert isinstance(exc.value.__cause__, ConnectionError)

    def test_protocol(self):
        assert isinstance(RecordingRolloutClient(), RolloutClient)


class TestNotifications:
    @pytest.mark.asyncio
    async def test_in_memory_channel(self):
        channel = InMemoryChannel()
        assert isinstance(channel, NotificationChannel)
        await channel.publish(summary_update("e1", {"elapsedDays": 3}))
        await channel.publish(experiment_completed("e1", "Green"))
        assert len(channel.messages) == 2
        assert channel.of_type(SUMMARY_UPDATE) == [
            {"type": "summary_update", "experimentId": "e1", "summary": {"elapsedDays": 3}}
        ]
