# tests/conftest.py
import asyncio

import pytest
import pytest_asyncio
from faker import Faker
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError

from notifier.config import Settings
from notifier.database import init_models, make_engine, make_session_factory
from notifier.hub import BroadcastHub
from notifier.store import EventStore

fake = Faker()


class FakeStreams:
    """In-memory stand-in for the stream commands the consumer/producer use."""

    def __init__(self):
        self.streams = {}
        self.groups = {}
        self.acked = []
        self.claimed = []
        self.waited = None
        self.ping_error = None
        self.read_error = None
        self._seq = 0

    async def ping(self):
        if self.ping_error is not None:
            raise self.ping_error
        return True

    def add(self, stream, value, key=None):
        self._seq += 1
        entry_id = f"{self._seq}-0".encode()
        fields = {b"value": value.encode() if isinstance(value, str) else value}
        if key is not None:
            fields[b"key"] = key.encode()
        self.streams.setdefault(stream, []).append((entry_id, fields))
        return entry_id

    async def xadd(self, name, fields, maxlen=None, approximate=True):
        encoded = {
            k.encode(): v.encode() if isinstance(v, str) else v
            for k, v in fields.items()
        }
        self._seq += 1
        entry_id = f"{self._seq}-0".encode()
        self.streams.setdefault(name, []).append((entry_id, encoded))
        return entry_id

    async def xgroup_create(self, name, groupname, id="$", mkstream=False):
        if name not in self.streams:
            if not mkstream:
                raise ResponseError("ERR The XGROUP subcommand requires the key to exist")
            self.streams[name] = []
        if (name, groupname) in self.groups:
            raise ResponseError("BUSYGROUP Consumer Group name already exists")
        start = 0 if id == "0" else len(self.streams[name])
        self.groups[(name, groupname)] = {"cursor": start, "pending": {}}
        return True

    async def xreadgroup(self, groupname, consumername, streams, count=None, block=None):
        if self.read_error is not None:
            raise self.read_error
        out = []
        for name in streams:
            group = self.groups[(name, groupname)]
            entries = self.streams[name][group["cursor"]:]
            if count:
                entries = entries[:count]
            group["cursor"] += len(entries)
            for entry_id, _ in entries:
                group["pending"][entry_id.decode()] = consumername
            if entries:
                out.append([name.encode(), list(entries)])
        if not out and block:
            await asyncio.sleep(block / 1000)
        return out

    async def xack(self, name, groupname, *ids):
        pending = self.groups[(name, groupname)]["pending"]
        for entry_id in ids:
            pending.pop(entry_id, None)
        self.acked.extend(ids)
        return len(ids)

    async def xautoclaim(self, name, groupname, consumername, min_idle_time, start_id="0-0", count=None):
        return [b"0-0", [], []]

    async def xclaim(self, name, groupname, consumername, min_idle_time, message_ids, justid=False):
        self.claimed.extend(message_ids)
        return message_ids

    async def wait(self, num_replicas, timeout):
        self.waited = (num_replicas, timeout)
        return num_replicas


class FakeConnections:
    def __init__(self, client):
        self.client = client

    def get_connection(self):
        return self.client


class RecordingSubscriber:
    def __init__(self, fail=False):
        self.frames = []
        self.fail = fail
        self.closed = False

    def write(self, frame):
        if self.fail:
            raise BrokenPipeError("client went away")
        self.frames.append(frame)

    def close(self):
        self.closed = True


async def wait_until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def settings(tmp_path):
    return Settings(database_url=f"sqlite+aiosqlite:///{tmp_path / 'events.db'}", brokers="")


@pytest_asyncio.fixture
async def engine(settings):
    engine = make_engine(settings.database_url)
    await init_models(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def store(engine):
    return EventStore(make_session_factory(engine))


@pytest_asyncio.fixture
async def hub():
    hub = BroadcastHub(heartbeat_interval=30)
    yield hub
    hub.close()


@pytest.fixture
def streams():
    return FakeStreams()


@pytest.fixture
def event_data():
    """A valid detection payload."""
    return {
        "event_type": "intrusion",
        "image_url": f"https://{fake.domain_name()}/{fake.uuid4()}.jpg",
        "audio_url": f"https://{fake.domain_name()}/{fake.uuid4()}.wav",
        "camera_id": "cam-01",
    }


@pytest.fixture
def broker_down():
    return RedisConnectionError("Error connecting to broker:6379")
