# tests/test_consumer.py
import pytest

from notifier.config import Settings
from notifier.consumer import ConsumerConfig, QueueConsumer, RetryPolicy
from notifier.ingestion import IngestionService
from tests.conftest import FakeConnections, RecordingSubscriber, wait_until


def fast_config(**overrides):
    options = dict(
        group_id="test-group",
        max_wait_time_ms=10,
        auto_commit_interval_ms=0,
        retry=RetryPolicy(retries=2, initial_retry_time_ms=1, max_retry_time_ms=5),
    )
    options.update(overrides)
    return ConsumerConfig(**options)


@pytest.fixture
def consumer(streams):
    return QueueConsumer(FakeConnections(streams), consumer_name="worker-1")


@pytest.mark.asyncio
async def test_connect_is_idempotent(consumer):
    await consumer.connect(fast_config())
    client = consumer.client
    await consumer.connect(fast_config(group_id="other"))
    assert consumer.client is client
    assert consumer.config.group_id == "test-group"
    assert consumer.status() == {"connected": True, "running": False}


@pytest.mark.asyncio
@pytest.mark.parametrize("topics", [None, "", [], [""]])
async def test_consume_without_topic_fails_fast(consumer, topics):
    async def on_message(message, heartbeat):
        pass

    with pytest.raises(ValueError):
        await consumer.consume(topics, on_message=on_message)
    assert consumer.connected is False


@pytest.mark.asyncio
async def test_consume_requires_exactly_one_handler(consumer):
    async def handler(*args):
        pass

    with pytest.raises(ValueError):
        await consumer.consume("events")
    with pytest.raises(ValueError):
        await consumer.consume("events", on_message=handler, on_batch=handler)


@pytest.mark.asyncio
async def test_bad_message_does_not_stop_the_stream(consumer, streams, store, hub):
    """A non-JSON message is wrapped as raw; the next one is processed normally."""
    subscriber = RecordingSubscriber()
    hub.subscribe(subscriber)
    settings = Settings(brokers="localhost:6379")
    ingestion = IngestionService(settings, store, hub, consumer)

    streams.add("events", b"\xffnot json at all")
    streams.add("events", '{"event_type": "intrusion", "image_url": "gate.jpg"}')
    await consumer.consume("events", on_message=ingestion.handle_message,
                           config=fast_config(), from_beginning=True)

    await wait_until(lambda: len(subscriber.frames) == 3)
    events = await store.list()
    raw = [e for e in events if e["payload"] and e["payload"].get("type") == "raw"]
    assert len(raw) == 1
    assert raw[0]["payload"]["value"].endswith("not json at all")
    assert any(e["image_url"] == "gate.jpg" for e in events)
    assert consumer.status() == {"connected": True, "running": True}

    await consumer.disconnect()


@pytest.mark.asyncio
async def test_handler_exception_is_isolated(consumer, streams):
    seen = []

    async def on_message(message, heartbeat):
        seen.append(message.value)
        if message.value == b"boom":
            raise RuntimeError("handler broke")

    streams.add("events", "boom")
    streams.add("events", "fine")
    await consumer.consume(["events"], on_message=on_message,
                           config=fast_config(), from_beginning=True)

    await wait_until(lambda: len(seen) == 2)
    await wait_until(lambda: len(streams.acked) == 2)
    assert seen == [b"boom", b"fine"]
    assert consumer.running is True
    await consumer.disconnect()


@pytest.mark.asyncio
async def test_messages_keep_partition_order_and_fields(consumer, streams):
    seen = []

    async def on_message(message, heartbeat):
        seen.append(message)

    for n in range(5):
        streams.add("events", f"m{n}", key="cam-01")
    await consumer.consume("events", on_message=on_message,
                           config=fast_config(max_in_flight_requests=2), from_beginning=True)

    await wait_until(lambda: len(seen) == 5)
    assert [m.value for m in seen] == [b"m0", b"m1", b"m2", b"m3", b"m4"]
    assert seen[0].topic == "events"
    assert seen[0].partition == 0
    assert seen[0].key == b"cam-01"
    await consumer.disconnect()


@pytest.mark.asyncio
async def test_latest_offset_skips_existing_messages(consumer, streams):
    seen = []

    async def on_message(message, heartbeat):
        seen.append(message.value)

    streams.add("events", "old")
    await consumer.consume("events", on_message=on_message, config=fast_config())
    streams.add("events", "new")

    await wait_until(lambda: seen == [b"new"])
    await consumer.disconnect()


@pytest.mark.asyncio
async def test_existing_group_is_reused(consumer, streams):
    await streams.xgroup_create("events", "test-group", id="0", mkstream=True)

    async def on_message(message, heartbeat):
        pass

    await consumer.consume("events", on_message=on_message, config=fast_config())
    assert consumer.running is True
    await consumer.disconnect()


@pytest.mark.asyncio
async def test_subscribes_to_every_partition(consumer, streams):
    seen = []

    async def on_message(message, heartbeat):
        seen.append((message.partition, message.value))

    streams.add("events:0", "a")
    streams.add("events:1", "b")
    await consumer.consume("events", on_message=on_message,
                           config=fast_config(partitions=2), from_beginning=True)

    await wait_until(lambda: len(seen) == 2)
    assert sorted(seen) == [(0, b"a"), (1, b"b")]
    await consumer.disconnect()


@pytest.mark.asyncio
async def test_batch_mode_resolves_and_heartbeats(consumer, streams):
    batches = []

    async def on_batch(batch, resolve_offset, heartbeat, is_running):
        batches.append(batch)
        assert is_running()
        await heartbeat()
        resolve_offset(batch.messages[0].offset)

    for n in range(3):
        streams.add("events", f"m{n}")
    await consumer.consume("events", on_batch=on_batch,
                           config=fast_config(heartbeat_interval_ms=0), from_beginning=True)

    await wait_until(lambda: len(streams.acked) == 3)
    assert [m.value for m in batches[0].messages] == [b"m0", b"m1", b"m2"]
    assert streams.claimed == ["1-0", "2-0", "3-0"]
    await consumer.disconnect()


@pytest.mark.asyncio
async def test_heartbeat_keeps_rest_of_fetch_claimed(consumer, streams):
    """Entries fetched with the current one stay claimed while it is processed."""
    seen = []

    async def on_message(message, heartbeat):
        seen.append(message.value)
        await heartbeat()

    for n in range(3):
        streams.add("events", f"m{n}")
    await consumer.consume("events", on_message=on_message,
                           config=fast_config(heartbeat_interval_ms=0), from_beginning=True)

    await wait_until(lambda: len(seen) == 3)
    # Each heartbeat covers the current entry and every one not yet handled
    assert streams.claimed == ["1-0", "2-0", "3-0", "2-0", "3-0", "3-0"]
    await consumer.disconnect()


@pytest.mark.asyncio
async def test_heartbeat_covers_partitions_waiting_for_a_slot(consumer, streams):
    def fetched(stream):
        return bool(streams.groups[(stream, "test-group")]["pending"])

    async def on_message(message, heartbeat):
        if not streams.claimed:
            await wait_until(lambda: fetched("events:0") and fetched("events:1"))
            await heartbeat()

    streams.add("events:0", "a")
    streams.add("events:1", "b")
    config = fast_config(partitions=2, partitions_consumed_concurrently=1, heartbeat_interval_ms=0)
    await consumer.consume("events", on_message=on_message, config=config, from_beginning=True)

    await wait_until(lambda: len(streams.acked) == 2)
    assert sorted(streams.claimed) == ["1-0", "2-0"]
    await consumer.disconnect()


@pytest.mark.asyncio
async def test_batch_handler_failure_is_isolated(consumer, streams):
    calls = []

    async def on_batch(batch, resolve_offset, heartbeat, is_running):
        calls.append(len(batch.messages))
        raise RuntimeError("batch broke")

    streams.add("events", "m0")
    await consumer.consume("events", on_batch=on_batch, config=fast_config(), from_beginning=True)
    await wait_until(lambda: calls == [1])
    streams.add("events", "m1")
    await wait_until(lambda: calls == [1, 1])
    assert consumer.running is True
    await consumer.disconnect()


@pytest.mark.asyncio
async def test_commit_threshold_without_interval(consumer, streams):
    async def on_message(message, heartbeat):
        pass

    for n in range(3):
        streams.add("events", f"m{n}")
    config = fast_config(auto_commit_interval_ms=60000, auto_commit_threshold=3)
    await consumer.consume("events", on_message=on_message, config=config, from_beginning=True)

    await wait_until(lambda: len(streams.acked) == 3)
    await consumer.disconnect()


@pytest.mark.asyncio
async def test_disconnect_flushes_commits_and_clears_state(consumer, streams):
    seen = []

    async def on_message(message, heartbeat):
        seen.append(message.value)

    streams.add("events", "m0")
    config = fast_config(auto_commit_interval_ms=60000, auto_commit_threshold=100)
    await consumer.consume("events", on_message=on_message, config=config, from_beginning=True)
    await wait_until(lambda: seen == [b"m0"])
    assert streams.acked == []

    await consumer.disconnect()
    assert streams.acked == ["1-0"]
    assert consumer.client is None
    assert consumer.status() == {"connected": False, "running": False}


@pytest.mark.asyncio
async def test_lost_broker_marks_consumer_disconnected(consumer, streams, broker_down):
    async def on_message(message, heartbeat):
        pass

    await consumer.consume("events", on_message=on_message, config=fast_config())
    streams.read_error = broker_down

    await wait_until(lambda: consumer.running is False)
    assert consumer.connected is False
    await consumer.disconnect()


@pytest.mark.asyncio
async def test_crash_marks_consumer_stopped(consumer, streams):
    async def on_message(message, heartbeat):
        pass

    await consumer.consume("events", on_message=on_message, config=fast_config())
    streams.read_error = KeyError("unexpected reply")

    await wait_until(lambda: consumer.status() == {"connected": False, "running": False})
    await consumer.disconnect()


def test_retry_policy_backoff_is_capped():
    policy = RetryPolicy(retries=8, initial_retry_time_ms=100, multiplier=2, max_retry_time_ms=1000)
    assert policy.delay(1) == 0.1
    assert policy.delay(2) == 0.2
    assert policy.delay(8) == 1.0
