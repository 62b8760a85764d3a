"""Sound sources and the loader, with mpv replaced by fakes."""

import asyncio
import json
import os
import subprocess
import time
import tempfile
import uuid

import aiohttp
import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from conftest import FakeClock, FakeSource, make_wav
from melodyhub.errors import DecodeError, SourceLoadError
from melodyhub.sound_sources import BufferSource, SoundLoader, StreamSource, buffer, mpv


class FakeProcess:
    def __init__(self):
        self.returncode = None
        self.terminated = False

    def poll(self):
        return self.returncode

    def terminate(self):
        self.terminated = True
        self.returncode = -15

    def wait(self, timeout=None):
        return self.returncode

    def kill(self):
        self.returncode = -9


@pytest.fixture
def spawned(monkeypatch):
    """Replace mpv launches; yields the list of (target, kwargs, process)."""
    launches = []

    def fake_spawn(target, ipc_socket, **kwargs):
        process = FakeProcess()
        launches.append((target, kwargs, process))
        return process

    monkeypatch.setattr(mpv, "spawn", fake_spawn)
    return launches


@pytest.fixture
async def session():
    async with aiohttp.ClientSession() as s:
        yield s


class TestBufferSource:

    async def test_decode_probes_duration(self, wav_bytes):
        source = await BufferSource.decode(wav_bytes, "tone.wav")
        try:
            assert source.duration == pytest.approx(1.0, abs=0.01)
            assert os.path.exists(source.path)
            assert source.path.endswith(".wav")
        finally:
            source.close()
        assert not os.path.exists(source.path)

    async def test_decode_failure_leaves_no_spool(self, monkeypatch):
        spooled = []
        real_spool = buffer._spool

        def recording_spool(data, suffix):
            path = real_spool(data, suffix)
            spooled.append(path)
            return path

        monkeypatch.setattr(buffer, "_spool", recording_spool)
        with pytest.raises(DecodeError):
            await BufferSource.decode(b"definitely not audio" * 50, "broken.wav")
        assert spooled and not os.path.exists(spooled[0])

    async def test_empty_data_is_a_decode_error(self):
        with pytest.raises(DecodeError):
            await BufferSource.decode(b"", "a.mp3")

    async def test_each_start_launches_mpv_at_offset(self, spawned, wav_bytes):
        clock = FakeClock()
        source = await BufferSource.decode(make_wav(seconds=2.0), "tone.wav", clock=clock)
        try:
            source.set_gain(0.5)
            source.start(0.0)
            clock.advance(0.75)
            source.stop()
            assert source.elapsed_seconds() == pytest.approx(0.75)
            source.start(source.elapsed_seconds())

            assert [(t, kw["start"], kw["gain"]) for t, kw, _ in spawned] == [
                (source.path, 0.0, 0.5),
                (source.path, pytest.approx(0.75), 0.5),
            ]
            assert spawned[0][2].terminated
            assert not spawned[1][2].terminated
        finally:
            source.close()
        assert spawned[1][2].terminated

    async def test_elapsed_is_clamped_to_duration(self, spawned, wav_bytes):
        clock = FakeClock()
        source = await BufferSource.decode(wav_bytes, "tone.wav", clock=clock)
        try:
            source.start(0.0)
            clock.advance(10)
            assert source.elapsed_seconds() == pytest.approx(source.duration)
        finally:
            source.close()

    async def test_natural_end_fires_once(self, spawned):
        source = await BufferSource.decode(make_wav(seconds=0.05), "blip.wav")
        ended = []
        source.on_ended = lambda: ended.append(True)
        try:
            source.start(0.0)
            await asyncio.sleep(0.2)
            assert ended == [True]
            assert not source.playing
            assert spawned[0][2].terminated
        finally:
            source.close()

    async def test_closed_source_cannot_start(self, spawned, wav_bytes):
        source = await BufferSource.decode(wav_bytes, "tone.wav")
        source.close()
        with pytest.raises(RuntimeError):
            source.start(0.0)


class FakeMpv:
    """Unix-socket server speaking enough of mpv's JSON IPC."""

    def __init__(self, duration=None):
        self.duration = duration
        self.path = os.path.join(tempfile.gettempdir(), f"mh-{uuid.uuid4().hex[:8]}.sock")
        self.commands: list[list] = []
        self._server = None
        self._writers = []

    async def start(self):
        self._server = await asyncio.start_unix_server(self._handle, path=self.path)

    async def _handle(self, reader, writer):
        self._writers.append(writer)
        while True:
            line = await reader.readline()
            if not line:
                break
            msg = json.loads(line)
            self.commands.append(msg["command"])
            if "request_id" not in msg:
                continue
            if self.duration is None:
                reply = {"request_id": msg["request_id"], "error": "property unavailable"}
            else:
                reply = {"request_id": msg["request_id"], "error": "success", "data": self.duration}
            writer.write(json.dumps(reply).encode() + b"\n")
            await writer.drain()

    def hang_up(self):
        for writer in self._writers:
            writer.close()

    async def close(self):
        self.hang_up()
        self._server.close()
        await self._server.wait_closed()
        try:
            os.unlink(self.path)
        except FileNotFoundError:
            pass


@pytest.fixture
async def fake_mpv(monkeypatch, spawned):
    server = FakeMpv(duration=42.5)
    await server.start()
    monkeypatch.setattr(mpv, "ipc_socket_path", lambda: server.path)
    yield server
    await server.close()


class TestStreamSource:

    async def test_open_waits_for_duration(self, fake_mpv, spawned):
        source = await StreamSource.open("https://mirror.test/jazz/a.mp3")
        try:
            assert source.duration == 42.5
            target, kwargs, _ = spawned[0]
            assert target == "https://mirror.test/jazz/a.mp3"
            assert kwargs["paused"] is True
            assert kwargs["keep_open"] is True
        finally:
            source.close()

    async def test_transport_maps_to_ipc_commands(self, fake_mpv):
        source = await StreamSource.open("/music/jazz/a.mp3")
        try:
            source.set_gain(0.25)
            source.start(10.0)
            source.stop()
            await asyncio.sleep(0.05)
            assert fake_mpv.commands[-5:] == [
                ["set_property", "volume", 25],
                ["set_property", "volume", 25],
                ["seek", 10.0, "absolute"],
                ["set_property", "pause", False],
                ["set_property", "pause", True],
            ]
        finally:
            source.close()

    async def test_mpv_exit_during_playback_ends_track(self, fake_mpv):
        source = await StreamSource.open("/music/jazz/a.mp3")
        ended = []
        source.on_ended = lambda: ended.append(True)
        try:
            source.start(0.0)
            fake_mpv.hang_up()
            await asyncio.sleep(0.1)
            assert ended == [True]
        finally:
            source.close()

    async def test_unknown_duration_times_out(self, monkeypatch, spawned):
        server = FakeMpv(duration=None)
        await server.start()
        monkeypatch.setattr(mpv, "ipc_socket_path", lambda: server.path)
        try:
            with pytest.raises(DecodeError):
                await StreamSource.open("/music/jazz/a.mp3", timeout=0.3)
            assert spawned[0][2].terminated
        finally:
            await server.close()


@pytest.fixture
async def audio_host():
    app = web.Application()

    async def track(request):
        if request.match_info["name"] == "tone.wav":
            return web.Response(body=make_wav(), content_type="audio/wav")
        raise web.HTTPNotFound()

    app.router.add_get("/jazz/{name}", track)
    server = TestServer(app)
    await server.start_server()
    yield server
    await server.close()


class TestSoundLoader:

    async def test_missing_local_file(self, session, tmp_path):
        loader = SoundLoader(session)
        with pytest.raises(SourceLoadError):
            await loader.load(str(tmp_path / "jazz" / "a.mp3"))

    async def test_local_file_is_decoded(self, session, tmp_path):
        path = tmp_path / "tone.wav"
        path.write_bytes(make_wav())
        source = await SoundLoader(session).load(str(path))
        try:
            assert isinstance(source, BufferSource)
            assert source.duration == pytest.approx(1.0, abs=0.01)
        finally:
            source.close()

    async def test_http_not_found(self, session, audio_host):
        loader = SoundLoader(session)
        with pytest.raises(SourceLoadError) as exc:
            await loader.load(str(audio_host.make_url("/jazz/missing.mp3")))
        assert "404" in str(exc.value)

    async def test_http_audio_is_decoded(self, session, audio_host):
        source = await SoundLoader(session).load(str(audio_host.make_url("/jazz/tone.wav")))
        try:
            assert isinstance(source, BufferSource)
            assert source.duration == pytest.approx(1.0, abs=0.01)
        finally:
            source.close()

    async def test_unreachable_host(self, session):
        loader = SoundLoader(session, timeout=1.0)
        with pytest.raises(SourceLoadError):
            await loader.load("http://127.0.0.1:9/jazz/a.mp3")

    async def test_stream_strategy_checks_local_path(self, session, tmp_path, spawned):
        loader = SoundLoader(session, "stream")
        with pytest.raises(SourceLoadError):
            await loader.load(str(tmp_path / "nope.mp3"))
        assert spawned == []

    async def test_decode_error_is_a_load_error(self, session, tmp_path):
        path = tmp_path / "broken.mp3"
        path.write_bytes(b"\x00" * 64)
        with pytest.raises(SourceLoadError):
            await SoundLoader(session).load(str(path))


class SlowExitProcess(FakeProcess):
    """Takes exit_after seconds to act on SIGTERM, like a wedged audio sink."""

    pid = 4242

    def __init__(self, exit_after: float):
        super().__init__()
        self.exit_after = exit_after

    def terminate(self):
        self.terminated = True

    def wait(self, timeout=None):
        if self.returncode is not None:
            return self.returncode
        if timeout is not None and timeout < self.exit_after:
            time.sleep(timeout)
            raise subprocess.TimeoutExpired("mpv", timeout)
        time.sleep(self.exit_after)
        self.returncode = -15
        return self.returncode


class TestMpvProcessControl:

    async def test_stop_does_not_block_the_loop(self, monkeypatch, wav_bytes):
        process = SlowExitProcess(exit_after=0.5)
        monkeypatch.setattr(mpv, "spawn", lambda *args, **kwargs: process)
        source = await BufferSource.decode(wav_bytes, "tone.wav")
        loop = asyncio.get_running_loop()
        try:
            source.start(0.0)
            began = loop.time()
            source.stop()
            assert loop.time() - began < 0.2
            assert process.terminated
            assert process.returncode is None

            await asyncio.sleep(0.8)
            assert process.returncode == -15
        finally:
            source.close()

    async def test_reap_kills_mpv_that_ignores_sigterm(self):
        process = SlowExitProcess(exit_after=5)
        process.terminate()
        await mpv.reap(process, timeout=0.1)
        assert process.returncode == -9

    async def test_gain_change_waits_for_mpv_socket(self, monkeypatch, spawned, wav_bytes):
        server = FakeMpv()
        monkeypatch.setattr(mpv, "ipc_socket_path", lambda: server.path)
        source = await BufferSource.decode(wav_bytes, "tone.wav")
        try:
            source.start(0.0)
            source.set_gain(0.3)
            await asyncio.sleep(0.25)
            await server.start()
            for _ in range(20):
                if server.commands:
                    break
                await asyncio.sleep(0.05)
            assert server.commands == [["set_property", "volume", 30]]
        finally:
            source.close()
            await server.close()

    def test_failed_start_leaves_source_stopped(self):
        clock = FakeClock()
        source = FakeSource(duration=60, clock=clock)
        source.begin_error = OSError("mpv: not found")

        with pytest.raises(OSError):
            source.start(12.0)

        assert not source.playing
        clock.advance(5)
        assert source.elapsed_seconds() == 12.0

        source.begin_error = None
        source.start(12.0)
        assert source.playing
        source.close()
