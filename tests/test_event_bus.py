from __future__ import annotations

import pytest

from agentweave.services.event_bus import EventBus


@pytest.mark.asyncio
class TestEventBus:
    async def test_subscribe_and_publish(self, event_bus: EventBus) -> None:
        received: list[dict] = []

        async def listener(event: dict) -> None:
            received.append(event)

        event_bus.subscribe("stage_started", listener)
        await event_bus.publish("stage_started", {"stage": "fetch"})

        assert len(received) == 1
        assert received[0]["type"] == "stage_started"
        assert received[0]["stage"] == "fetch"
        assert "timestamp" in received[0]

    async def test_plain_function_listener(self, event_bus: EventBus) -> None:
        received: list[dict] = []
        event_bus.subscribe("stage_completed", received.append)

        await event_bus.publish("stage_completed", {"stage": "merge"})
        assert received[0]["stage"] == "merge"

    async def test_wildcard_subscription(self, event_bus: EventBus) -> None:
        received: list[dict] = []

        async def listener(event: dict) -> None:
            received.append(event)

        event_bus.subscribe("*", listener)

        await event_bus.publish("stage_started", {"stage": "fetch"})
        await event_bus.publish("branch_merged", {"branch": "feature/database/T1"})

        assert [e["type"] for e in received] == ["stage_started", "branch_merged"]

    async def test_unsubscribe(self, event_bus: EventBus) -> None:
        received: list[dict] = []

        async def listener(event: dict) -> None:
            received.append(event)

        event_bus.subscribe("rollback", listener)
        await event_bus.publish("rollback", {"n": 1})
        assert len(received) == 1

        event_bus.unsubscribe("rollback", listener)
        await event_bus.publish("rollback", {"n": 2})
        assert len(received) == 1  # no new events

    async def test_no_listeners(self, event_bus: EventBus) -> None:
        # Should not raise
        await event_bus.publish("unheard_event", {"data": "ignored"})

    async def test_listener_error_does_not_break_others(self, event_bus: EventBus) -> None:
        received: list[dict] = []

        async def bad_listener(event: dict) -> None:
            raise RuntimeError("boom")

        def bad_sync_listener(event: dict) -> None:
            raise ValueError("sync boom")

        async def good_listener(event: dict) -> None:
            received.append(event)

        event_bus.subscribe("stage_failed", bad_listener)
        event_bus.subscribe("stage_failed", bad_sync_listener)
        event_bus.subscribe("stage_failed", good_listener)

        await event_bus.publish("stage_failed", {"stage": "push"})
        assert len(received) == 1
