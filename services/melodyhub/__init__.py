"""
MelodyHub — album/track browsing and playback transport.

  content_resolver     — album/track listings from the content host (cached)
  playback_controller  — transport state machine + source resolution
  sound_sources        — buffer and stream playback backends (mpv)
  now_playing          — "now playing" label side channel
  player_service       — HTTP + WebSocket surface for a presentation layer
"""

from .content_resolver import ContentResolver
from .errors import (
    DecodeError,
    MelodyHubError,
    PlaybackError,
    ResolutionError,
    SourceLoadError,
    TransportError,
    ValidationError,
)
from .playback_controller import PlaybackController, PlaybackEvents, TransportState

__all__ = [
    "ContentResolver",
    "PlaybackController",
    "PlaybackEvents",
    "TransportState",
    "MelodyHubError",
    "ValidationError",
    "ResolutionError",
    "PlaybackError",
    "TransportError",
    "SourceLoadError",
    "DecodeError",
]

__version__ = "1.0.0"
