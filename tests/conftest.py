"""
Shared pytest fixtures for chatledger tests.

Provides a SQLite record store on tmp_path, a controllable clock and a
scripted completion provider, so no test touches the network.
"""

import asyncio
from unittest.mock import MagicMock, patch

import pytest

from chatledger.cache import SessionCache
from chatledger.config import StoreConfig
from chatledger.errors import StorageUnavailable
from chatledger.identity import StaticIdentity
from chatledger.protocol import Identity
from chatledger.record_store import LocalRecordStore
from chatledger.resolver import VersionResolver
from chatledger.types import AGENT, CHAT
from chatledger.versioning import EntityWriter

USER = "0xuser0000000000000000000000000000000000aa"
OTHER_USER = "0xuser0000000000000000000000000000000000bb"
OWNER = "0xwriter00000000000000000000000000000000ff"


class FakeClock:
    """Epoch-seconds clock that only moves when told to."""

    def __init__(self, start: float = 1_768_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeCompletion:
    """
    Scripted completion provider.

    Each call consumes the next scripted reply. A reply is a string (one
    chunk), a list of chunks, or an exception. Exceptions inside a chunk
    list are raised at that point of the stream.
    """

    def __init__(self, replies=None):
        self.replies = list(replies or [])
        self.calls: list[list[dict]] = []

    async def stream_complete(self, messages, model=None):
        self.calls.append(messages)
        reply = self.replies.pop(0) if self.replies else "OK"
        chunks = reply if isinstance(reply, list) else [reply]
        for chunk in chunks:
            if isinstance(chunk, BaseException):
                raise chunk
            if chunk:
                yield chunk


class StallingCompletion:
    """Yields one chunk, then waits until cancelled."""

    def __init__(self, first_chunk: str = "Hel"):
        self.first_chunk = first_chunk

    async def stream_complete(self, messages, model=None):
        yield self.first_chunk
        await asyncio.Event().wait()


class RecordingWriter(EntityWriter):
    """EntityWriter that remembers every successful write."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.writes = []

    async def write(self, kind, logical_id, user_address, snapshot, **kwargs):
        result = await super().write(kind, logical_id, user_address, snapshot, **kwargs)
        self.writes.append(result)
        return result


class FlakyWriter(RecordingWriter):
    """Fails every write while ``fail`` is set."""

    fail = False

    async def write(self, *args, **kwargs):
        if self.fail:
            raise StorageUnavailable("store unreachable")
        return await super().write(*args, **kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(tmp_path, clock):
    """Local record store, also used as the index."""
    s = LocalRecordStore(tmp_path / "records.db", identity=Identity(OWNER), clock=clock)
    yield s
    s.close_sync()


@pytest.fixture
def lagging_store(tmp_path, clock):
    """Local record store whose index shows writes only after 5 seconds."""
    s = LocalRecordStore(
        tmp_path / "lagging.db", identity=Identity(OWNER), index_delay=5.0, clock=clock
    )
    yield s
    s.close_sync()


@pytest.fixture
def identity():
    return StaticIdentity(OWNER)


@pytest.fixture
def writer(store, identity):
    return RecordingWriter(store, store, identity)


@pytest.fixture
def resolver(store, identity):
    return VersionResolver(store, store, identity)


@pytest.fixture
def chats(writer, resolver):
    return SessionCache(CHAT, writer, resolver)


@pytest.fixture
def agents(writer, resolver):
    return SessionCache(AGENT, writer, resolver)


@pytest.fixture
def config(tmp_path):
    """In-memory config rooted at tmp_path (local backend)."""
    return StoreConfig(path=tmp_path, user_address=USER)


@pytest.fixture
def mock_registry():
    """Patch the provider registry used by ChatLedger."""
    completion = FakeCompletion()
    mock_reg = MagicMock()
    mock_reg.create_completion.return_value = completion
    with patch("chatledger.api.get_registry", return_value=mock_reg):
        yield {"completion": completion, "registry": mock_reg}
