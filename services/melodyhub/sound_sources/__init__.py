# MelodyHub
# Copyright (C) 2024-2026 MelodyHub contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""
Pluggable sound sources for MelodyHub playback.

Each backend turns a location (local path or http(s) URL) into a
``SoundSource`` with the same start/stop/elapsed/gain contract.  The factory
function ``create_sound_loader`` reads config.json and returns a loader for
the configured strategy.

Supported strategies:
  - ``buffer``  – fetch the whole file, decode/probe it, play from a spool (default)
  - ``stream``  – let mpv open the location directly and stream it
"""

import asyncio
import logging
import os

import aiohttp

from ..config import cfg
from ..errors import SourceLoadError
from .base import SoundSource
from .buffer import BufferSource
from .stream import StreamSource

log = logging.getLogger(__name__)

__all__ = [
    "SoundSource",
    "BufferSource",
    "StreamSource",
    "SoundLoader",
    "create_sound_loader",
]


def is_url(location: str) -> bool:
    return location.startswith(("http://", "https://"))


class SoundLoader:
    """Loads one location with the configured strategy."""

    def __init__(self, session: aiohttp.ClientSession, strategy: str = "buffer", *,
                 audio_output: str = "pulse", timeout: float = 30.0, clock=None):
        self._session = session
        self.strategy = strategy
        self.audio_output = audio_output
        self.timeout = timeout
        self._clock = clock

    async def load(self, location: str) -> SoundSource:
        log.info("Loading %s (%s)", location, self.strategy)
        if self.strategy == "stream":
            if not is_url(location) and not os.path.isfile(location):
                raise SourceLoadError(f"Not found: {location}")
            try:
                return await StreamSource.open(location, audio_output=self.audio_output,
                                               timeout=self.timeout, clock=self._clock)
            except OSError as e:
                raise SourceLoadError(f"Cannot start mpv for {location}: {e}") from e

        data = await self._read(location)
        return await BufferSource.decode(data, location, audio_output=self.audio_output,
                                         clock=self._clock)

    async def _read(self, location: str) -> bytes:
        if is_url(location):
            try:
                async with self._session.get(
                    location, timeout=aiohttp.ClientTimeout(total=self.timeout)
                ) as resp:
                    if not 200 <= resp.status < 300:
                        raise SourceLoadError(f"HTTP {resp.status} for {location}")
                    return await resp.read()
            except asyncio.TimeoutError as e:
                raise SourceLoadError(f"Timed out fetching {location}") from e
            except aiohttp.ClientError as e:
                raise SourceLoadError(f"Fetch failed for {location}: {e}") from e

        loop = asyncio.get_running_loop()
        try:
            with open(location, "rb") as f:
                return await loop.run_in_executor(None, f.read)
        except OSError as e:
            raise SourceLoadError(f"Cannot read {location}: {e.strerror or e}") from e


def create_sound_loader(session: aiohttp.ClientSession) -> SoundLoader:
    """Create the right loader based on config.json.

    Reads from config.json "player" section:
      strategy      – "buffer" (default) or "stream"
      audio_output  – mpv --ao driver (default "pulse")
      load_timeout  – seconds allowed per location (default 30)
    """
    strategy = str(cfg("player", "strategy", default="buffer")).lower()
    if strategy not in ("buffer", "stream"):
        log.warning("Unknown player.strategy '%s' — using buffer", strategy)
        strategy = "buffer"
    audio_output = cfg("player", "audio_output", default="pulse")
    timeout = float(cfg("player", "load_timeout", default=30.0))
    log.info("Sound loader: %s strategy via mpv --ao=%s (timeout %.0fs)",
             strategy, audio_output, timeout)
    return SoundLoader(session, strategy, audio_output=audio_output, timeout=timeout)
