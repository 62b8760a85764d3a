# MelodyHub
# Copyright (C) 2024-2026 MelodyHub contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""
Exception taxonomy for MelodyHub.

  ValidationError   bad album/track name, raised before any I/O
  ResolutionError   content host unreachable or listing empty after retries
  PlaybackError     neither the co-located nor the mirrored source would load
  TransportError    command not valid in the current transport state; the
                    controller swallows these (they are normal UI races)
  SourceLoadError   a single location failed to fetch/open (carried as the
                    cause of PlaybackError)
  DecodeError       bytes arrived but are not playable audio
"""

from enum import Enum


class MelodyHubError(Exception):
    """Base class for every error the core raises."""


class ValidationError(MelodyHubError, ValueError):
    pass


class ResolutionReason(Enum):
    NO_ALBUMS_FOUND = "no_albums_found"
    NO_TRACKS_FOUND = "no_tracks_found"
    HOST_UNAVAILABLE = "host_unavailable"


class ResolutionError(MelodyHubError):
    def __init__(self, reason: ResolutionReason, message: str, cause: BaseException | None = None):
        super().__init__(message)
        self.reason = reason
        self.cause = cause


class PlaybackReason(Enum):
    SOURCE_UNAVAILABLE = "source_unavailable"


class PlaybackError(MelodyHubError):
    def __init__(self, reason: PlaybackReason, message: str, cause: BaseException | None = None):
        super().__init__(message)
        self.reason = reason
        self.cause = cause


class TransportError(MelodyHubError):
    pass


class SourceLoadError(MelodyHubError):
    pass


class DecodeError(SourceLoadError):
    pass
