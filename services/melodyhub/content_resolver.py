# MelodyHub
# Copyright (C) 2024-2026 MelodyHub contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""
ContentResolver — album and track listings from the remote content host.

The host answers ``GET {host}/`` (albums) and ``GET {host}/{album}``
(tracks) with a JSON array of ``{"name": ..., "type": "file" | "dir"}``
entries — the shape of the GitHub contents API, which is the default host.

Every listing goes through the same protocol:

  * up to ``attempts`` tries, each bounded by ``timeout`` seconds
  * linear backoff (``attempt * backoff``) between tries, none after the last
  * an empty (filtered) listing counts as a failed try
  * only non-empty results are cached, and the cache never expires

Usage:
    async with aiohttp.ClientSession() as session:
        resolver = ContentResolver(session)
        albums = await resolver.fetch_album_list()
        tracks = await resolver.fetch_track_list(albums[0])
"""

import asyncio
import logging
from urllib.parse import quote

import aiohttp

from .config import cfg
from .errors import ResolutionError, ResolutionReason
from .names import RESERVED_FOLDERS, is_audio_file, is_legal_name, validate_album

log = logging.getLogger(__name__)

DEFAULT_OWNER = "toyfer"
DEFAULT_REPO = "MelodyHub"

DIR_TYPES = ("dir", "directory")


def default_host() -> str:
    owner = cfg("content", "owner", default=DEFAULT_OWNER)
    repo = cfg("content", "repo", default=DEFAULT_REPO)
    return f"https://api.github.com/repos/{owner}/{repo}/contents"


class ListingCache:
    """Album list plus per-album track lists.  No eviction, no expiry."""

    def __init__(self):
        self.albums: list[str] | None = None
        self._tracks: dict[str, list[str]] = {}

    def tracks(self, album: str) -> list[str] | None:
        return self._tracks.get(album)

    def put_tracks(self, album: str, tracks: list[str]):
        if tracks:
            self._tracks[album] = tracks

    def put_albums(self, albums: list[str]):
        if albums:
            self.albums = albums

    def clear(self):
        self.albums = None
        self._tracks.clear()

    def __contains__(self, album: str):
        return album in self._tracks

    def __len__(self):
        return len(self._tracks)


class ContentResolver:

    def __init__(self, session: aiohttp.ClientSession, host: str | None = None, *,
                 attempts: int | None = None, timeout: float | None = None,
                 backoff: float | None = None, sleep=asyncio.sleep):
        self._session = session
        self.host = (host or cfg("content", "host") or default_host()).rstrip("/")
        self.attempts = int(attempts if attempts is not None
                            else cfg("content", "attempts", default=3))
        self.timeout = float(timeout if timeout is not None
                             else cfg("content", "timeout", default=10.0))
        self.backoff = float(backoff if backoff is not None
                             else cfg("content", "backoff", default=1.0))
        self._sleep = sleep
        self.cache = ListingCache()

    # ── public API ──

    async def fetch_album_list(self) -> list[str]:
        if self.cache.albums is not None:
            log.debug("Album list cache hit (%d albums)", len(self.cache.albums))
            return self.cache.albums

        albums = await self._fetch_listing(
            f"{self.host}/", self._album_names,
            what="albums", empty_reason=ResolutionReason.NO_ALBUMS_FOUND)
        self.cache.put_albums(albums)
        log.info("Fetched %d albums from %s", len(albums), self.host)
        return albums

    async def fetch_track_list(self, album: str) -> list[str]:
        validate_album(album)

        cached = self.cache.tracks(album)
        if cached is not None:
            log.debug("Track list cache hit for %s (%d tracks)", album, len(cached))
            return cached

        tracks = await self._fetch_listing(
            f"{self.host}/{quote(album, safe='')}", self._track_names,
            what=f"tracks in {album}", empty_reason=ResolutionReason.NO_TRACKS_FOUND)
        self.cache.put_tracks(album, tracks)
        log.info("Fetched %d tracks for %s", len(tracks), album)
        return tracks

    # ── filters ──

    @staticmethod
    def _album_names(entries: list) -> list[str]:
        return [
            e["name"] for e in entries
            if e.get("type") in DIR_TYPES
            and e.get("name") not in RESERVED_FOLDERS
            and is_legal_name(e.get("name"))
        ]

    @staticmethod
    def _track_names(entries: list) -> list[str]:
        return [
            e["name"] for e in entries
            if e.get("type") == "file"
            and is_legal_name(e.get("name"))
            and is_audio_file(e["name"])
        ]

    # ── retry protocol ──

    async def _fetch_listing(self, url: str, select, *, what: str,
                             empty_reason: ResolutionReason) -> list[str]:
        reason = ResolutionReason.HOST_UNAVAILABLE
        last_error: BaseException | None = None

        for attempt in range(1, self.attempts + 1):
            try:
                entries = await self._get_entries(url)
            except asyncio.TimeoutError as e:
                log.warning("Fetching %s timed out after %.1fs (attempt %d/%d)",
                            what, self.timeout, attempt, self.attempts)
                reason, last_error = ResolutionReason.HOST_UNAVAILABLE, e
            except (aiohttp.ClientError, ValueError) as e:
                log.warning("Fetching %s failed (attempt %d/%d): %s",
                            what, attempt, self.attempts, e)
                reason, last_error = ResolutionReason.HOST_UNAVAILABLE, e
            else:
                names = select(entries)
                if names:
                    return names
                log.warning("No %s found (attempt %d/%d)", what, attempt, self.attempts)
                reason, last_error = empty_reason, None

            if attempt < self.attempts:
                delay = self.backoff * attempt
                if delay > 0:
                    await self._sleep(delay)

        if reason is ResolutionReason.HOST_UNAVAILABLE:
            message = f"Content host unavailable while fetching {what}"
            if last_error is not None:
                message += f": {str(last_error) or type(last_error).__name__}"
        else:
            message = f"No {what} found"
        raise ResolutionError(reason, message, cause=last_error) from last_error

    async def _get_entries(self, url: str) -> list[dict]:
        async with self._session.get(
            url,
            timeout=aiohttp.ClientTimeout(total=self.timeout),
            headers={"Accept": "application/json"},
        ) as resp:
            if not 200 <= resp.status < 300:
                raise aiohttp.ClientResponseError(
                    resp.request_info, resp.history,
                    status=resp.status, message=f"host returned HTTP {resp.status}")
            data = await resp.json(content_type=None)

        if not isinstance(data, list):
            raise ValueError(f"unexpected listing payload ({type(data).__name__})")
        return [e for e in data if isinstance(e, dict)]
