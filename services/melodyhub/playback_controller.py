# MelodyHub
# Copyright (C) 2024-2026 MelodyHub contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""
PlaybackController — transport state machine for one playing track.

    IDLE --play--> LOADING --ok--> PLAYING --pause--> PAUSED --resume--> PLAYING
    LOADING --both locations fail--> IDLE (PlaybackError, on_error)
    PLAYING --seek--> PLAYING        PAUSED --seek--> PAUSED
    PLAYING --natural end--> ENDED
    PLAYING/PAUSED/ENDED --play(new)--> LOADING (session reset first)

The LOADING state is the one concurrency guard: play() checks and sets it
before its first await, and a second play() while loading returns False.
Every other command is synchronous against in-memory state.

Commands that make no sense in the current state (seek before anything is
loaded, pause while paused, ...) raise TransportError internally and are
dropped with a debug log; they are ordinary UI races, not faults.

A loaded source that refuses to restart (resume, toggle after the end, seek
while playing) parks the session in PAUSED, reports on_error and raises
PlaybackError.

Presentation hears about everything through a PlaybackEvents listener:

    on_duration_known(seconds)      on_progress(seconds)
    on_play_state_changed(playing)  on_volume_changed(volume, muted)
    on_track_changed(track)         on_error(message)
"""

import asyncio
import functools
import logging
import math
import os
from dataclasses import dataclass
from enum import Enum
from urllib.parse import quote

from .config import cfg
from .content_resolver import DEFAULT_OWNER, DEFAULT_REPO
from .errors import (
    PlaybackError,
    PlaybackReason,
    SourceLoadError,
    TransportError,
)
from .names import clamp, format_time, validate_album, validate_track
from .now_playing import NowPlayingLabel
from .sound_sources import SoundLoader, SoundSource, is_url

log = logging.getLogger(__name__)


class TransportState(Enum):
    IDLE = "idle"
    LOADING = "loading"
    PLAYING = "playing"
    PAUSED = "paused"
    ENDED = "ended"


@dataclass(frozen=True)
class Track:
    album: str
    track: str


@dataclass
class PlaybackSession:
    current_track: Track | None = None
    state: TransportState = TransportState.IDLE
    position: float = 0.0
    duration: float = 0.0
    volume: float = 0.7
    muted: bool = False

    @property
    def effective_volume(self) -> float:
        return 0.0 if self.muted else self.volume


class PlaybackEvents:
    """Presentation callbacks.  Override what you need; the rest are no-ops."""

    def on_duration_known(self, seconds: float): pass

    def on_progress(self, seconds: float): pass

    def on_play_state_changed(self, is_playing: bool): pass

    def on_volume_changed(self, volume: float, muted: bool): pass

    def on_track_changed(self, track: str): pass

    def on_error(self, message: str): pass


def default_mirror_base() -> str:
    owner = cfg("content", "owner", default=DEFAULT_OWNER)
    repo = cfg("content", "repo", default=DEFAULT_REPO)
    branch = cfg("content", "branch", default="main")
    return f"https://raw.githubusercontent.com/{owner}/{repo}/{branch}"


def _transport_command(method):
    """Drop commands that raise TransportError (invalid for the current state)."""
    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        try:
            return method(self, *args, **kwargs)
        except TransportError as e:
            log.debug("Ignoring %s: %s", method.__name__, e)
            return None
    return wrapper


class PlaybackController:

    def __init__(self, loader: SoundLoader, events: PlaybackEvents | None = None,
                 label: NowPlayingLabel | None = None, *, origin: str | None = None,
                 mirror: str | None = None, tick_interval: float | None = None,
                 volume: float | None = None):
        self._loader = loader
        self.events = events or PlaybackEvents()
        self.label = label or NowPlayingLabel(baseline=cfg("player", "title", default="MelodyHub"))
        self.origin = origin if origin is not None else cfg("content", "origin", default=".")
        self.mirror = (mirror or cfg("content", "mirror") or default_mirror_base()).rstrip("/")
        self.tick_interval = float(tick_interval if tick_interval is not None
                                   else cfg("player", "tick_interval", default=1 / 60))
        if volume is None:
            volume = cfg("player", "volume", default=0.7)
        self.session = PlaybackSession(volume=clamp(float(volume)))
        self._source: SoundSource | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._tick_handle: asyncio.TimerHandle | None = None

    # ── Source resolution ──

    def source_locations(self, album: str, track: str) -> list[tuple[str, str]]:
        """(kind, location) pairs in the order they are tried."""
        if is_url(self.origin):
            local = f"{self.origin.rstrip('/')}/{quote(album, safe='')}/{quote(track, safe='')}"
        else:
            local = os.path.join(self.origin, album, track)
        remote = f"{self.mirror}/{quote(album, safe='')}/{quote(track, safe='')}"
        return [("co-located", local), ("mirrored", remote)]

    async def _load(self, album: str, track: str) -> SoundSource:
        last_error: SourceLoadError | None = None
        for kind, location in self.source_locations(album, track):
            try:
                source = await self._loader.load(location)
            except SourceLoadError as e:
                log.warning("%s source failed for %s/%s: %s", kind, album, track, e)
                last_error = e
                continue
            log.info("Loaded %s/%s from %s source (%.1fs)", album, track, kind, source.duration)
            return source
        raise PlaybackError(
            PlaybackReason.SOURCE_UNAVAILABLE,
            f"Could not play {album}/{track}: {last_error}",
            cause=last_error,
        ) from last_error

    # ── play ──

    async def play(self, album: str, track: str) -> bool:
        """Load and start a track.  Returns False if another load is in flight."""
        validate_album(album)
        validate_track(track)

        session = self.session
        if session.state is TransportState.LOADING:
            log.info("Load in progress — ignoring play(%s, %s)", album, track)
            return False
        was_playing = session.state is TransportState.PLAYING
        session.state = TransportState.LOADING
        self._loop = asyncio.get_running_loop()

        try:
            self._reset(was_playing)
            session.current_track = Track(album, track)
            self._emit("on_track_changed", track)

            source = await self._load(album, track)
            self._install(source)
            self._start(0.0)
        except BaseException as e:
            self._abort_load(e)
            raise

        self._emit("on_duration_known", session.duration)
        return True

    def _install(self, source: SoundSource):
        self._source = source
        source.on_ended = lambda: self._on_source_ended(source)
        self.session.duration = source.duration
        self.session.position = 0.0

    def _abort_load(self, error: BaseException):
        if self._source is not None:
            self._source.close()
            self._source = None
        session = self.session
        session.state = TransportState.IDLE
        session.current_track = None
        session.position = 0.0
        session.duration = 0.0
        if isinstance(error, asyncio.CancelledError):
            log.info("Load cancelled")
            return
        log.error("Playback failed: %s", error)
        self._emit("on_error", str(error))

    def _reset(self, was_playing: bool):
        self._cancel_tick()
        if self._source is not None:
            self._source.close()
            self._source = None
        self.session.current_track = None
        self.session.position = 0.0
        self.session.duration = 0.0
        self.label.restore()
        if was_playing:
            self._emit("on_play_state_changed", False)

    def _start(self, at_seconds: float):
        source = self._source
        source.set_gain(self.session.effective_volume)
        self._start_source(source, at_seconds)
        self.session.position = at_seconds
        self.session.state = TransportState.PLAYING
        self.label.show(self.session.current_track.track)
        self._emit("on_play_state_changed", True)
        self._schedule_tick()

    def _start_source(self, source: SoundSource, at_seconds: float):
        try:
            source.start(at_seconds)
        except OSError as e:
            current = self.session.current_track
            raise PlaybackError(
                PlaybackReason.SOURCE_UNAVAILABLE,
                f"Could not start {current.album}/{current.track}: {e}",
                cause=e,
            ) from e

    def _restart_failed(self, error: PlaybackError, position: float):
        """A loaded source would not (re)start: park in PAUSED at position."""
        was_playing = self.session.state is TransportState.PLAYING
        self._cancel_tick()
        self.session.position = position
        self.session.state = TransportState.PAUSED
        self.label.restore()
        log.error("Playback failed: %s", error)
        self._emit("on_error", str(error))
        if was_playing:
            self._emit("on_play_state_changed", False)

    # ── Transport ──

    @_transport_command
    def pause(self):
        if self.session.state is not TransportState.PLAYING:
            raise TransportError(f"pause while {self.session.state.value}")
        self._cancel_tick()
        self._source.stop()
        self.session.position = self._source.elapsed_seconds()
        self.session.state = TransportState.PAUSED
        self.label.restore()
        log.info("Paused at %s", format_time(self.session.position))
        self._emit("on_play_state_changed", False)

    @_transport_command
    def resume(self):
        if self.session.state is not TransportState.PAUSED or self._source is None:
            raise TransportError(f"resume while {self.session.state.value}")
        log.info("Resuming at %s", format_time(self.session.position))
        try:
            self._start(self.session.position)
        except PlaybackError as e:
            self._restart_failed(e, self.session.position)
            raise

    @_transport_command
    def toggle_play_pause(self):
        state = self.session.state
        if state is TransportState.PLAYING:
            self.pause()
        elif state is TransportState.PAUSED:
            self.resume()
        elif state is TransportState.ENDED and self._source is not None:
            try:
                self._start(0.0)
            except PlaybackError as e:
                self._restart_failed(e, 0.0)
                raise
        else:
            raise TransportError(f"toggle while {state.value}")

    @_transport_command
    def stop(self):
        if self.session.state is TransportState.LOADING:
            raise TransportError("stop while loading")
        self._reset(self.session.state is TransportState.PLAYING)
        self.session.state = TransportState.IDLE

    @_transport_command
    def seek(self, fraction: float):
        source = self._source
        if source is None or self.session.duration <= 0:
            raise TransportError("seek with no duration")
        fraction = float(fraction)
        if math.isnan(fraction):
            raise TransportError("seek to NaN")
        target = clamp(fraction) * self.session.duration

        if self.session.state is TransportState.PLAYING:
            self._cancel_tick()
            source.stop()
            try:
                self._start_source(source, target)
            except PlaybackError as e:
                self._restart_failed(e, target)
                raise
            self.session.position = target
            self._schedule_tick()
        else:
            self.session.position = target
            if self.session.state is TransportState.ENDED:
                self.session.state = TransportState.PAUSED
        log.debug("Seek to %s", format_time(target))
        self._emit("on_progress", target)

    def set_volume(self, volume: float):
        volume = float(volume)
        if math.isnan(volume):
            log.debug("Ignoring set_volume(NaN)")
            return
        self.session.volume = clamp(volume)
        self.session.muted = False
        self._apply_gain()
        self._emit("on_volume_changed", self.session.volume, self.session.muted)

    def toggle_mute(self):
        self.session.muted = not self.session.muted
        self._apply_gain()
        self._emit("on_volume_changed", self.session.volume, self.session.muted)

    def _apply_gain(self):
        if self._source is not None:
            self._source.set_gain(self.session.effective_volume)

    # ── Reads ──

    def get_current_time(self) -> float:
        if self.session.state is TransportState.PLAYING and self._source is not None:
            return self._source.elapsed_seconds()
        return self.session.position

    def get_duration(self) -> float:
        return self.session.duration

    def get_status(self) -> dict:
        session = self.session
        position = self.get_current_time()
        current = session.current_track
        return {
            'state': session.state.value,
            'album': current.album if current else None,
            'track': current.track if current else None,
            'position': position,
            'duration': session.duration,
            'position_text': format_time(position),
            'duration_text': format_time(session.duration),
            'volume': session.volume,
            'muted': session.muted,
        }

    # ── Progress ticks ──

    def _schedule_tick(self):
        self._cancel_tick()
        loop = self._loop or asyncio.get_running_loop()
        self._tick_handle = loop.call_later(self.tick_interval, self._tick)

    def _cancel_tick(self):
        if self._tick_handle:
            self._tick_handle.cancel()
            self._tick_handle = None

    def _tick(self):
        self._tick_handle = None
        if self.session.state is not TransportState.PLAYING or self._source is None:
            return
        self.session.position = self._source.elapsed_seconds()
        self._emit("on_progress", self.session.position)
        if self.session.state is TransportState.PLAYING:
            self._schedule_tick()

    # ── Natural end ──

    def _on_source_ended(self, source: SoundSource):
        if source is not self._source or self.session.state is not TransportState.PLAYING:
            log.debug("Ignoring end signal from a stale source")
            return
        self._cancel_tick()
        self.session.state = TransportState.ENDED
        self.session.position = 0.0
        self.label.restore()
        log.info("Finished %s/%s", self.session.current_track.album, self.session.current_track.track)
        self._emit("on_play_state_changed", False)

    # ── Shutdown ──

    def close(self):
        """Release the current source regardless of state (service shutdown)."""
        self._cancel_tick()
        if self._source is not None:
            self._source.close()
            self._source = None
        if self.session.state is not TransportState.LOADING:
            self.session.state = TransportState.IDLE
        self.label.restore()

    # ── Callbacks ──

    def _emit(self, name: str, *args):
        try:
            getattr(self.events, name)(*args)
        except Exception as e:
            log.error("Presentation callback %s failed: %s", name, e)
