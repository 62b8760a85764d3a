# MelodyHub
# Copyright (C) 2024-2026 MelodyHub contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Album/track name validation and time formatting shared by the core."""

import math

from .errors import ValidationError

AUDIO_EXTENSIONS = ('.mp3', '.wav', '.ogg', '.m4a', '.aac')
RESERVED_FOLDERS = frozenset({'css', 'js'})

_ILLEGAL_CHARS = ('/', '\\', '\0')


def is_audio_file(filename: str) -> bool:
    return filename.lower().endswith(AUDIO_EXTENSIONS)


def is_legal_name(name) -> bool:
    """True for a single non-empty path segment that cannot climb out of its parent."""
    if not isinstance(name, str) or not name.strip():
        return False
    if name in ('.', '..'):
        return False
    return not any(ch in name for ch in _ILLEGAL_CHARS)


def validate_album(album) -> str:
    if not is_legal_name(album):
        raise ValidationError(f"Invalid album name: {album!r}")
    return album


def validate_track(track) -> str:
    if not is_legal_name(track):
        raise ValidationError(f"Invalid track name: {track!r}")
    if not is_audio_file(track):
        raise ValidationError(
            f"Unsupported track {track!r} (expected one of {', '.join(AUDIO_EXTENSIONS)})")
    return track


def display_name(track: str) -> str:
    """'01 Intro.mp3' -> '01 Intro'"""
    lower = track.lower()
    for ext in AUDIO_EXTENSIONS:
        if lower.endswith(ext):
            return track[:-len(ext)]
    return track


def format_time(seconds) -> str:
    """Format seconds as M:SS.  Unknown or negative times render as 0:00."""
    if seconds is None:
        return '0:00'
    try:
        seconds = float(seconds)
    except (TypeError, ValueError):
        return '0:00'
    if math.isnan(seconds) or math.isinf(seconds) or seconds < 0:
        return '0:00'
    minutes, secs = divmod(int(seconds), 60)
    return f"{minutes}:{secs:02d}"


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))
