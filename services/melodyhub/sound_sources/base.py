# MelodyHub
# Copyright (C) 2024-2026 MelodyHub contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""
Abstract base class for MelodyHub sound sources.

A sound source is one loaded track that can be started at an offset,
stopped, and have its gain changed.  Elapsed time is accounted here, on a
monotonic reference clock, so every backend reports time the same way:

    playing:  elapsed = clock() - start_reference
    stopped:  elapsed = offset captured by the last stop()

Backends only implement the hooks that actually make (or silence) sound.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod

from ..names import clamp

log = logging.getLogger(__name__)


class SoundSource(ABC):
    """Interface every playback backend must implement."""

    def __init__(self, duration: float, clock=None):
        self.duration = float(duration)
        self.on_ended = None  # called once on natural completion
        self._clock = clock or time.monotonic
        self._start_ref: float | None = None
        self._offset = 0.0
        self._gain = 1.0
        self._end_timer: asyncio.TimerHandle | None = None
        self._closed = False

    # ── Backend hooks ──

    @abstractmethod
    def _begin(self, at_seconds: float) -> None: ...

    @abstractmethod
    def _halt(self) -> None: ...

    @abstractmethod
    def _apply_gain(self, gain: float) -> None: ...

    def _release(self) -> None:
        pass  # nothing to free by default

    # ── Transport ──

    @property
    def playing(self) -> bool:
        return self._start_ref is not None

    @property
    def gain(self) -> float:
        return self._gain

    def start(self, at_seconds: float = 0.0):
        if self._closed:
            raise RuntimeError("sound source is closed")
        if self.playing:
            self._cancel_end_timer()
            self._start_ref = None
            self._halt()
        at = clamp(at_seconds, 0.0, self.duration)
        self._offset = at
        # stays stopped at the offset if the backend fails to start
        self._begin(at)
        self._start_ref = self._clock() - at
        self._arm_end_timer(self.duration - at)

    def stop(self):
        if not self.playing:
            return
        self._offset = self.elapsed_seconds()
        self._start_ref = None
        self._cancel_end_timer()
        self._halt()

    def elapsed_seconds(self) -> float:
        if self._start_ref is None:
            return self._offset
        return clamp(self._clock() - self._start_ref, 0.0, self.duration)

    def set_gain(self, gain: float):
        self._gain = clamp(gain)
        if not self._closed:
            self._apply_gain(self._gain)

    def close(self):
        if self._closed:
            return
        self.on_ended = None
        self.stop()
        self._closed = True
        self._release()

    # ── Natural end ──

    def _arm_end_timer(self, remaining: float):
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            log.debug("No running loop — natural end will not be signalled")
            return
        self._end_timer = loop.call_later(max(remaining, 0.0), self._finish)

    def _cancel_end_timer(self):
        if self._end_timer:
            self._end_timer.cancel()
            self._end_timer = None

    def _finish(self):
        """Playback reached the end on its own (timer or backend signal)."""
        if not self.playing:
            return
        self._cancel_end_timer()
        self._start_ref = None
        self._offset = self.duration
        self._halt()
        if self.on_ended:
            self.on_ended()
