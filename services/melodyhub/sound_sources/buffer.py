# MelodyHub
# Copyright (C) 2024-2026 MelodyHub contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""
BufferSource — decoded-buffer playback.

The whole track is fetched up front, spooled to a temp file and probed with
mutagen before it counts as loaded.  Each start() launches a one-shot mpv at
the requested offset and stop() throws it away, so repositioning is always
stop + start.
"""

import asyncio
import logging
import os
import tempfile

import mutagen

from ..errors import DecodeError
from . import mpv
from .base import SoundSource

log = logging.getLogger(__name__)


def probe_duration(path: str) -> float:
    """Return the track length in seconds or raise DecodeError."""
    try:
        audio = mutagen.File(path)
    except mutagen.MutagenError as e:
        raise DecodeError(f"Cannot decode {os.path.basename(path)}: {e}") from e
    if audio is None or audio.info is None:
        raise DecodeError(f"Unrecognised audio format: {os.path.basename(path)}")
    length = getattr(audio.info, "length", 0) or 0
    if length <= 0:
        raise DecodeError(f"Audio has no duration: {os.path.basename(path)}")
    return float(length)


def _spool(data: bytes, suffix: str) -> str:
    with tempfile.NamedTemporaryFile(prefix="melodyhub-", suffix=suffix, delete=False) as f:
        f.write(data)
        return f.name


def _discard(path: str):
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass


class BufferSource(SoundSource):

    def __init__(self, path: str, duration: float, *, audio_output: str = "pulse", clock=None):
        super().__init__(duration, clock)
        self.path = path
        self.audio_output = audio_output
        self._ipc_socket = mpv.ipc_socket_path()
        self._process = None
        self._gain_task: asyncio.Task | None = None

    @classmethod
    async def decode(cls, data: bytes, name: str, *, audio_output: str = "pulse",
                     clock=None) -> "BufferSource":
        if not data:
            raise DecodeError(f"Empty audio data: {name}")
        suffix = os.path.splitext(name)[1].lower()
        loop = asyncio.get_running_loop()
        path = await loop.run_in_executor(None, _spool, data, suffix)
        try:
            duration = await loop.run_in_executor(None, probe_duration, path)
        except BaseException:
            _discard(path)
            raise
        log.info("Decoded %s (%.1fs, %d bytes)", name, duration, len(data))
        return cls(path, duration, audio_output=audio_output, clock=clock)

    def _begin(self, at_seconds: float):
        self._process = mpv.spawn(self.path, self._ipc_socket, start=at_seconds,
                                  gain=self._gain, audio_output=self.audio_output)

    def _halt(self):
        self._cancel_gain()
        mpv.terminate(self._process)
        self._process = None

    def _apply_gain(self, gain: float):
        if self._process is None or self._process.poll() is not None:
            return  # picked up by the next spawn
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            log.debug("No running loop, gain applies from the next start")
            return
        self._cancel_gain()
        self._gain_task = loop.create_task(
            mpv.command(self._ipc_socket, 'set_property', 'volume', round(gain * 100)))

    def _cancel_gain(self):
        if self._gain_task:
            self._gain_task.cancel()
            self._gain_task = None

    def _release(self):
        _discard(self.path)
