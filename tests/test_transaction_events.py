"""Tests for the in-process transaction status broker."""

import asyncio

from app.services.transaction_events import (
    TransactionStatusBroker,
    checkout_channel,
    invoice_channel,
    state_key,
)

CHANNEL = checkout_channel("ws_CO_0001")


def state(status, result_code=None):
    return {"checkout_request_id": "ws_CO_0001", "status": status, "result_code": result_code}


async def collect(broker, fetch_current, **kwargs):
    received = []
    async for item in broker.stream(CHANNEL, fetch_current, **kwargs):
        received.append(item)
    return received


async def wait_for_subscriber(broker, channel=CHANNEL):
    while broker.subscriber_count(channel) == 0:
        await asyncio.sleep(0)


class TestChannels:

    def test_channel_names(self):
        assert checkout_channel("ws_CO_1") == "checkout:ws_CO_1"
        assert invoice_channel("abc") == "invoice:abc"

    def test_state_key_ignores_payload_details(self):
        assert state_key({**state("completed", 0), "amount": "1500"}) == state_key(state("completed", 0))
        assert state_key(state("completed", 0)) != state_key(state("failed", 1032))


class TestPublish:

    async def test_no_subscribers(self):
        assert await TransactionStatusBroker().publish(CHANNEL, state("pending")) == 0

    async def test_fan_out_to_every_subscriber(self):
        broker = TransactionStatusBroker()

        async with broker.subscribe(CHANNEL) as first, broker.subscribe(CHANNEL) as second:
            delivered = await broker.publish(CHANNEL, state("completed", 0))
            assert broker.subscriber_count(CHANNEL) == 2
            assert first.get_nowait()["status"] == "completed"
            assert second.get_nowait()["status"] == "completed"

        assert delivered == 2
        assert broker.subscriber_count(CHANNEL) == 0

    async def test_full_queue_drops_instead_of_blocking(self):
        broker = TransactionStatusBroker(queue_size=1)

        async with broker.subscribe(CHANNEL) as queue:
            assert await broker.publish(CHANNEL, state("pending")) == 1
            assert await broker.publish(CHANNEL, state("completed", 0)) == 0
            assert queue.qsize() == 1
            assert queue.get_nowait()["status"] == "pending"


class TestStream:

    async def test_current_state_then_changes_until_terminal(self):
        broker = TransactionStatusBroker()

        async def fetch_current():
            return state("pending")

        consumer = asyncio.create_task(collect(broker, fetch_current, stop_on_terminal=True, idle_timeout=5))
        await wait_for_subscriber(broker)
        await broker.publish(CHANNEL, state("pending"))
        await broker.publish(CHANNEL, state("completed", 0))
        await broker.publish(CHANNEL, state("completed", 0))

        received = await asyncio.wait_for(consumer, timeout=5)

        assert [item["status"] for item in received] == ["pending", "completed"]
        assert broker.subscriber_count(CHANNEL) == 0

    async def test_terminal_current_state_ends_immediately(self):
        broker = TransactionStatusBroker()

        async def fetch_current():
            return state("failed", 1032)

        received = await asyncio.wait_for(collect(broker, fetch_current, stop_on_terminal=True), timeout=5)

        assert received == [state("failed", 1032)]

    async def test_idle_timeout_ends_stream(self):
        broker = TransactionStatusBroker()

        async def fetch_current():
            return None

        received = await asyncio.wait_for(collect(broker, fetch_current, idle_timeout=0.01), timeout=5)

        assert received == []
        assert broker.subscriber_count(CHANNEL) == 0
