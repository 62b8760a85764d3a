# MelodyHub
# Copyright (C) 2024-2026 MelodyHub contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""
PlayerService — HTTP + WebSocket surface for the MelodyHub core.

The presentation layer (a browser page, a TUI, anything that speaks HTTP)
issues commands over HTTP and listens for playback callbacks on a WebSocket.
The service holds no state of its own; every route forwards to the
ContentResolver or the PlaybackController.

  GET  /albums               — album names
  GET  /albums/{album}       — track names in one album
  POST /player/play          — {"album": ..., "track": ...}
  POST /player/pause         — pause playback
  POST /player/resume        — resume playback
  POST /player/toggle        — play/pause toggle
  POST /player/stop          — stop and unload
  POST /player/seek          — {"fraction": 0..1}
  POST /player/volume        — {"volume": 0..1}
  POST /player/mute          — toggle mute
  GET  /player/state         — session snapshot
  GET  /ws                   — callback feed: {"type": ..., "data": ...}

Run:
    python -m melodyhub.player_service
"""

import asyncio
import json
import logging
import signal

import aiohttp
from aiohttp import web

from .config import cfg
from .content_resolver import ContentResolver
from .errors import PlaybackError, ResolutionError, ValidationError
from .now_playing import NowPlayingLabel
from .playback_controller import PlaybackController, PlaybackEvents
from .sound_sources import SoundLoader, create_sound_loader

log = logging.getLogger(__name__)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}


class PresentationFeed(PlaybackEvents):
    """Relays controller callbacks to every connected WebSocket client.

    Progress is throttled to one message per ``progress_interval`` seconds;
    the controller ticks far faster than any UI needs over the wire.
    """

    def __init__(self, progress_interval: float = 0.25):
        self.progress_interval = progress_interval
        self._ws_clients: set[web.WebSocketResponse] = set()
        self._tasks: set[asyncio.Task] = set()
        self._last_progress: float | None = None

    @property
    def clients(self) -> int:
        return len(self._ws_clients)

    def add(self, ws: web.WebSocketResponse):
        self._ws_clients.add(ws)

    def discard(self, ws: web.WebSocketResponse):
        self._ws_clients.discard(ws)

    async def broadcast(self, event_type: str, data):
        """Push one event to all connected WebSocket clients."""
        if not self._ws_clients:
            return
        message = json.dumps({"type": event_type, "data": data})

        disconnected = set()
        for ws in list(self._ws_clients):
            try:
                await ws.send_str(message)
            except Exception:
                disconnected.add(ws)
        self._ws_clients -= disconnected

        if event_type != "progress":
            log.debug("Broadcast %s to %d clients", event_type, len(self._ws_clients))

    def _post(self, event_type: str, data):
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(self.broadcast(event_type, data))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def close(self):
        for ws in list(self._ws_clients):
            await ws.close()
        self._ws_clients.clear()
        for task in list(self._tasks):
            task.cancel()

    # ── PlaybackEvents ──

    def on_duration_known(self, seconds):
        self._post("duration", {"seconds": seconds})

    def on_progress(self, seconds):
        now = asyncio.get_running_loop().time()
        if (self._last_progress is not None
                and now - self._last_progress < self.progress_interval):
            return
        self._last_progress = now
        self._post("progress", {"seconds": seconds})

    def on_play_state_changed(self, is_playing):
        self._last_progress = None
        self._post("play_state", {"playing": is_playing})

    def on_volume_changed(self, volume, muted):
        self._post("volume", {"volume": volume, "muted": muted})

    def on_track_changed(self, track):
        self._post("track", {"track": track})

    def on_error(self, message):
        self._post("error", {"message": message})

    def set_title(self, title: str):
        self._post("title", {"title": title})


@web.middleware
async def error_middleware(request: web.Request, handler):
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except ValidationError as e:
        status = 400
        message = str(e)
    except (ResolutionError, PlaybackError) as e:
        status = 502
        message = str(e)
    return web.json_response(
        {"status": "error", "message": message}, status=status, headers=CORS_HEADERS)


class PlayerService:

    def __init__(self, *, port: int | None = None, resolver: ContentResolver | None = None,
                 loader: SoundLoader | None = None, origin: str | None = None,
                 mirror: str | None = None, tick_interval: float | None = None):
        self.port = int(port or cfg("server", "port", default=8780))
        self.feed = PresentationFeed(
            progress_interval=float(cfg("server", "progress_interval", default=0.25)))
        self.label = NowPlayingLabel(self.feed.set_title,
                                     baseline=cfg("player", "title", default="MelodyHub"))
        self.resolver = resolver
        self.controller: PlaybackController | None = None
        self._loader = loader
        self._controller_options = {
            "origin": origin, "mirror": mirror, "tick_interval": tick_interval,
        }
        self.running = False
        self._http_session: aiohttp.ClientSession | None = None
        self._runner: web.AppRunner | None = None

    # ── App wiring ──

    def create_app(self, session: aiohttp.ClientSession | None = None) -> web.Application:
        """Build the core (where not injected) and the aiohttp application."""
        if self.resolver is None:
            self.resolver = ContentResolver(session)
        if self._loader is None:
            self._loader = create_sound_loader(session)
        if self.controller is None:
            self.controller = PlaybackController(
                self._loader, self.feed, self.label, **self._controller_options)

        app = web.Application(middlewares=[error_middleware])
        app.router.add_get("/ws", self._handle_ws)
        app.router.add_get("/albums", self._handle_albums)
        app.router.add_get("/albums/{album}", self._handle_tracks)
        app.router.add_post("/player/play", self._handle_play)
        app.router.add_post("/player/pause", self._handle_pause)
        app.router.add_post("/player/resume", self._handle_resume)
        app.router.add_post("/player/toggle", self._handle_toggle)
        app.router.add_post("/player/stop", self._handle_stop)
        app.router.add_post("/player/seek", self._handle_seek)
        app.router.add_post("/player/volume", self._handle_volume)
        app.router.add_post("/player/mute", self._handle_mute)
        app.router.add_get("/player/state", self._handle_state)
        app.router.add_route("OPTIONS", "/{tail:.*}", self._handle_cors)
        app.on_shutdown.append(self._on_app_shutdown)
        return app

    # ── Lifecycle ──

    async def start(self):
        self.running = True
        self._http_session = aiohttp.ClientSession(
            headers={"User-Agent": "MelodyHub/1.0"})
        app = self.create_app(self._http_session)

        self._runner = web.AppRunner(app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, "0.0.0.0", self.port)
        await site.start()
        log.info("MelodyHub: HTTP + WebSocket on port %d", self.port)

    async def run(self):
        """Convenience entry-point: start + wait for signal + stop."""
        await self.start()
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, stop_event.set)
        try:
            await stop_event.wait()
        finally:
            await self.shutdown()

    async def shutdown(self):
        """Clean up resources."""
        self.running = False
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
        if self._http_session:
            await self._http_session.close()
            self._http_session = None

    async def _on_app_shutdown(self, app: web.Application):
        if self.controller:
            self.controller.close()
        await self.feed.close()

    # ── WebSocket handler ──

    async def _handle_ws(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse()
        await ws.prepare(request)

        self.feed.add(ws)
        log.info("WebSocket client connected (%d total)", self.feed.clients)

        try:
            await ws.send_json({"type": "state", "data": self.controller.get_status()})
            # Push-only: client messages are ignored
            async for msg in ws:
                pass
        finally:
            self.feed.discard(ws)
            log.info("WebSocket client disconnected (%d remaining)", self.feed.clients)

        return ws

    # ── HTTP route handlers ──

    def _ok(self, **extra) -> web.Response:
        body = {"status": "ok", **extra}
        return web.json_response(body, headers=CORS_HEADERS)

    async def _json_body(self, request: web.Request) -> dict:
        try:
            data = await request.json()
        except json.JSONDecodeError as e:
            raise ValidationError(f"Malformed JSON body: {e}") from e
        if not isinstance(data, dict):
            raise ValidationError("JSON body must be an object")
        return data

    @staticmethod
    def _number(data: dict, key: str) -> float:
        try:
            return float(data[key])
        except KeyError:
            raise ValidationError(f"Missing '{key}'") from None
        except (TypeError, ValueError):
            raise ValidationError(f"'{key}' must be a number") from None

    async def _handle_cors(self, request: web.Request) -> web.Response:
        return web.Response(headers=CORS_HEADERS)

    async def _handle_albums(self, request: web.Request) -> web.Response:
        try:
            albums = await self.resolver.fetch_album_list()
        except ResolutionError as e:
            self.feed.on_error(str(e))
            raise
        return self._ok(albums=albums)

    async def _handle_tracks(self, request: web.Request) -> web.Response:
        album = request.match_info["album"]
        try:
            tracks = await self.resolver.fetch_track_list(album)
        except ResolutionError as e:
            self.feed.on_error(str(e))
            raise
        return self._ok(album=album, tracks=tracks)

    async def _handle_play(self, request: web.Request) -> web.Response:
        data = await self._json_body(request)
        started = await self.controller.play(data.get("album", ""), data.get("track", ""))
        if not started:
            return web.json_response(
                {"status": "busy", "message": "Another track is still loading"},
                headers=CORS_HEADERS)
        return self._ok(playback=self.controller.get_status())

    async def _handle_pause(self, request: web.Request) -> web.Response:
        self.controller.pause()
        return self._ok(playback=self.controller.get_status())

    async def _handle_resume(self, request: web.Request) -> web.Response:
        self.controller.resume()
        return self._ok(playback=self.controller.get_status())

    async def _handle_toggle(self, request: web.Request) -> web.Response:
        self.controller.toggle_play_pause()
        return self._ok(playback=self.controller.get_status())

    async def _handle_stop(self, request: web.Request) -> web.Response:
        self.controller.stop()
        return self._ok(playback=self.controller.get_status())

    async def _handle_seek(self, request: web.Request) -> web.Response:
        data = await self._json_body(request)
        self.controller.seek(self._number(data, "fraction"))
        return self._ok(playback=self.controller.get_status())

    async def _handle_volume(self, request: web.Request) -> web.Response:
        data = await self._json_body(request)
        self.controller.set_volume(self._number(data, "volume"))
        return self._ok(playback=self.controller.get_status())

    async def _handle_mute(self, request: web.Request) -> web.Response:
        self.controller.toggle_mute()
        return self._ok(playback=self.controller.get_status())

    async def _handle_state(self, request: web.Request) -> web.Response:
        return web.json_response(
            {**self.controller.get_status(), "ws_clients": self.feed.clients},
            headers=CORS_HEADERS)


def main():
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    asyncio.run(PlayerService().run())


if __name__ == "__main__":
    main()
