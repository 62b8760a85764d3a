# MelodyHub
# Copyright (C) 2024-2026 MelodyHub contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""
StreamSource — element-style streaming playback.

mpv opens the location itself (file path or URL), paused, and stays alive
for the life of the source.  The track only counts as loaded once mpv
reports a positive ``duration``.  start() seeks and unpauses, stop() pauses.
"""

import asyncio
import logging

from ..errors import DecodeError
from . import mpv
from .base import SoundSource

log = logging.getLogger(__name__)

PROBE_INTERVAL = 0.1


class StreamSource(SoundSource):

    def __init__(self, process, ipc: mpv.MpvIpc, duration: float, *, clock=None):
        super().__init__(duration, clock)
        self._process = process
        self._ipc = ipc
        self._ipc.on_disconnect = self._on_mpv_gone

    @classmethod
    async def open(cls, location: str, *, audio_output: str = "pulse",
                   timeout: float = 30.0, clock=None) -> "StreamSource":
        ipc_socket = mpv.ipc_socket_path()
        process = mpv.spawn(location, ipc_socket, paused=True, keep_open=True,
                            audio_output=audio_output)
        ipc = mpv.MpvIpc(ipc_socket)
        try:
            await ipc.connect(process)
            duration = await asyncio.wait_for(cls._probe_duration(ipc), timeout)
        except BaseException as e:
            ipc.close()
            mpv.terminate(process)
            if isinstance(e, asyncio.TimeoutError):
                raise DecodeError(f"Timed out opening {location}") from e
            if isinstance(e, mpv.MpvError):
                raise DecodeError(f"Cannot open {location}: {e}") from e
            raise
        log.info("Opened stream %s (%.1fs)", location, duration)
        return cls(process, ipc, duration, clock=clock)

    @staticmethod
    async def _probe_duration(ipc: mpv.MpvIpc) -> float:
        # "property unavailable" until mpv has parsed the headers
        while True:
            if not ipc.connected:
                raise mpv.MpvError("mpv exited while loading")
            try:
                duration = await ipc.request('get_property', 'duration')
            except mpv.MpvError as e:
                if not ipc.connected:
                    raise
                log.debug("Duration not ready yet: %s", e)
            else:
                if isinstance(duration, (int, float)) and duration > 0:
                    return float(duration)
            await asyncio.sleep(PROBE_INTERVAL)

    def _begin(self, at_seconds: float):
        self._ipc.send('set_property', 'volume', round(self._gain * 100))
        self._ipc.send('seek', at_seconds, 'absolute')
        self._ipc.send('set_property', 'pause', False)

    def _halt(self):
        self._ipc.send('set_property', 'pause', True)

    def _apply_gain(self, gain: float):
        self._ipc.send('set_property', 'volume', round(gain * 100))

    def _release(self):
        self._ipc.close()
        mpv.terminate(self._process)
        self._process = None

    def _on_mpv_gone(self):
        if self.playing:
            log.warning("mpv exited during playback — treating as end of track")
            self._finish()
