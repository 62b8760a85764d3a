"""
Shared fixtures: a fake content host, a scripted sound loader, a manual
reference clock and a recording presentation listener.
"""

import asyncio
import io
import wave

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from melodyhub.errors import SourceLoadError
from melodyhub.playback_controller import PlaybackEvents
from melodyhub.sound_sources.base import SoundSource


# ── Reference clock ─────────────────────────────────────────────────────────

class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


# ── Sound sources ───────────────────────────────────────────────────────────

class FakeSource(SoundSource):
    """Records backend hook calls instead of making sound."""

    def __init__(self, duration: float = 180.0, clock=None, location: str = ""):
        super().__init__(duration, clock)
        self.location = location
        self.calls: list[tuple] = []
        self.released = False
        self.begin_error: Exception | None = None

    def _begin(self, at_seconds):
        if self.begin_error is not None:
            raise self.begin_error
        self.calls.append(("begin", at_seconds))

    def _halt(self):
        self.calls.append(("halt",))

    def _apply_gain(self, gain):
        self.calls.append(("gain", gain))

    def _release(self):
        self.released = True

    def end_now(self):
        self._finish()


class FakeLoader:
    """Maps locations to FakeSources or exceptions; unknown locations fail."""

    def __init__(self, clock=None):
        self.clock = clock
        self.outcomes: dict[str, object] = {}
        self.loaded: list[str] = []
        self.gate: asyncio.Event | None = None

    def succeed(self, location: str, duration: float = 180.0) -> FakeSource:
        source = FakeSource(duration, self.clock, location)
        self.outcomes[location] = source
        return source

    def fail(self, location: str, error: Exception | None = None):
        self.outcomes[location] = error or SourceLoadError(f"Not found: {location}")

    async def load(self, location: str) -> SoundSource:
        self.loaded.append(location)
        if self.gate is not None:
            await self.gate.wait()
        outcome = self.outcomes.get(location)
        if outcome is None:
            raise SourceLoadError(f"Not found: {location}")
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class RecordingEvents(PlaybackEvents):

    def __init__(self):
        self.events: list[tuple] = []

    def named(self, name: str) -> list[tuple]:
        return [e[1:] for e in self.events if e[0] == name]

    def on_duration_known(self, seconds):
        self.events.append(("duration", seconds))

    def on_progress(self, seconds):
        self.events.append(("progress", seconds))

    def on_play_state_changed(self, is_playing):
        self.events.append(("play_state", is_playing))

    def on_volume_changed(self, volume, muted):
        self.events.append(("volume", volume, muted))

    def on_track_changed(self, track):
        self.events.append(("track", track))

    def on_error(self, message):
        self.events.append(("error", message))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def loader(clock):
    return FakeLoader(clock)


@pytest.fixture
def events():
    return RecordingEvents()


# ── Content host ────────────────────────────────────────────────────────────

class FakeContentHost:
    """GitHub-contents-shaped listing server.

    Each path has a queue of scripted replies; the last one repeats.
    A reply is ("json", payload), ("status", code) or ("hang", seconds).
    """

    def __init__(self):
        self.replies: dict[str, list[tuple]] = {}
        self.hits: dict[str, int] = {}
        self.url = ""
        self.app = web.Application()
        self.app.router.add_get("/contents/", self._handle_root)
        self.app.router.add_get("/contents/{album}", self._handle_album)

    def script(self, path: str, *replies: tuple):
        self.replies[path] = list(replies)

    async def _handle_root(self, request):
        return await self._reply("/")

    async def _handle_album(self, request):
        return await self._reply(request.match_info["album"])

    async def _reply(self, path: str):
        self.hits[path] = self.hits.get(path, 0) + 1
        queue = self.replies.get(path) or [("status", 404)]
        kind, value = queue.pop(0) if len(queue) > 1 else queue[0]
        if kind == "hang":
            await asyncio.sleep(value)
            return web.json_response([])
        if kind == "status":
            return web.json_response({"message": "error"}, status=value)
        return web.json_response(value)


@pytest.fixture
async def content_host():
    host = FakeContentHost()
    server = TestServer(host.app)
    await server.start_server()
    host.url = str(server.make_url("/contents"))
    yield host
    await server.close()


def listing(*entries: tuple[str, str]) -> list[dict]:
    """listing(("jazz", "dir"), ("a.mp3", "file")) -> contents API entries."""
    return [
        {"name": name, "path": name, "type": kind, "size": 0 if kind == "dir" else 1024}
        for name, kind in entries
    ]


# ── Audio ───────────────────────────────────────────────────────────────────

def make_wav(seconds: float = 1.0, rate: int = 8000) -> bytes:
    buf = io.BytesIO()
    with wave.open(buf, "wb") as w:
        w.setnchannels(1)
        w.setsampwidth(2)
        w.setframerate(rate)
        w.writeframes(b"\x00\x00" * int(seconds * rate))
    return buf.getvalue()


@pytest.fixture
def wav_bytes():
    return make_wav()
