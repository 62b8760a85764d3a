# MelodyHub
# Copyright (C) 2024-2026 MelodyHub contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""
mpv process helpers shared by the playback backends.

Both backends render audio through an mpv child process controlled over its
JSON IPC socket (``--input-ipc-server``):

  spawn()          launch mpv on a file or URL
  terminate()      stop it; the wait for exit runs in the executor
  command()        send a command from the event loop, waiting for the socket
  MpvIpc           persistent connection with request/response matching
"""

import asyncio
import itertools
import json
import logging
import os
import socket
import subprocess
import tempfile

log = logging.getLogger(__name__)

_socket_ids = itertools.count(1)
_background: set[asyncio.Task] = set()


class MpvError(Exception):
    pass


def ipc_socket_path() -> str:
    return os.path.join(tempfile.gettempdir(),
                        f"melodyhub-mpv-{os.getpid()}-{next(_socket_ids)}.sock")


def spawn(target: str, ipc_socket: str, *, start: float = 0.0, gain: float = 1.0,
          paused: bool = False, keep_open: bool = False,
          audio_output: str = "pulse") -> subprocess.Popen:
    try:
        os.unlink(ipc_socket)
    except FileNotFoundError:
        pass

    env = os.environ.copy()
    if hasattr(os, "getuid"):
        env.setdefault('XDG_RUNTIME_DIR', f'/run/user/{os.getuid()}')
    cmd = [
        'mpv', f'--ao={audio_output}',
        '--no-video', '--no-terminal', '--idle=no',
        f'--keep-open={"yes" if keep_open else "no"}',
        f'--input-ipc-server={ipc_socket}',
        f'--start={start:.3f}',
        f'--volume={round(gain * 100)}',
    ]
    if paused:
        cmd.append('--pause')
    cmd += ['--', target]
    return subprocess.Popen(cmd, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL, env=env)


def terminate(process: subprocess.Popen | None, timeout: float = 2.0):
    """Send SIGTERM now; reap in the executor when called on the event loop."""
    if process is None or process.poll() is not None:
        return
    process.terminate()
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        try:
            process.wait(timeout)
        except subprocess.TimeoutExpired:
            process.kill()
        return
    _track(loop.create_task(reap(process, timeout)))


async def reap(process: subprocess.Popen, timeout: float = 2.0):
    loop = asyncio.get_running_loop()
    try:
        await loop.run_in_executor(None, process.wait, timeout)
    except subprocess.TimeoutExpired:
        log.warning("mpv ignored SIGTERM, killing pid %s", process.pid)
        process.kill()
        await loop.run_in_executor(None, process.wait)


def _track(task: asyncio.Task):
    _background.add(task)
    task.add_done_callback(_background.discard)


def _send(ipc_socket: str, *args):
    s = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    try:
        s.connect(ipc_socket)
        s.sendall(json.dumps({'command': list(args)}).encode() + b'\n')
    finally:
        s.close()


async def command(ipc_socket: str, *args, attempts: int = 30,
                  interval: float = 0.1) -> bool:
    """Fire-and-forget command on a fresh socket connection.

    A freshly spawned mpv needs a moment before its socket accepts
    connections, so the send is retried until it does.
    """
    loop = asyncio.get_running_loop()
    for attempt in range(1, attempts + 1):
        try:
            await loop.run_in_executor(None, _send, ipc_socket, *args)
            return True
        except OSError as e:
            if attempt == attempts:
                log.error("mpv IPC error: %s", e)
                return False
        await asyncio.sleep(interval)
    return False


class MpvIpc:
    """Persistent JSON IPC connection to one running mpv."""

    def __init__(self, ipc_socket: str):
        self.ipc_socket = ipc_socket
        self.on_disconnect = None
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._reader_task: asyncio.Task | None = None
        self._pending: dict[int, asyncio.Future] = {}
        self._request_ids = itertools.count(1)

    @property
    def connected(self) -> bool:
        return self._writer is not None

    async def connect(self, process: subprocess.Popen, timeout: float = 5.0):
        """Wait for mpv to create its socket, then connect."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while loop.time() < deadline:
            await asyncio.sleep(0.1)
            if process.poll() is not None:
                raise MpvError(f"mpv exited immediately (code {process.returncode})")
            if os.path.exists(self.ipc_socket):
                try:
                    self._reader, self._writer = \
                        await asyncio.open_unix_connection(self.ipc_socket)
                    break
                except (ConnectionRefusedError, FileNotFoundError):
                    continue
        else:
            raise MpvError("Could not connect to mpv IPC")
        self._reader_task = asyncio.create_task(self._read_replies())

    def send(self, *args):
        if not self._writer:
            log.warning("mpv IPC not connected, dropping %s", args[0] if args else "")
            return
        try:
            self._writer.write(json.dumps({'command': list(args)}).encode() + b'\n')
        except Exception as e:
            log.error("mpv IPC send error: %s", e)

    async def request(self, *args, timeout: float = 2.0):
        """Send a command and wait for its reply's ``data``."""
        if not self._writer:
            raise MpvError("mpv IPC not connected")
        request_id = next(self._request_ids)
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            self._writer.write(json.dumps(
                {'command': list(args), 'request_id': request_id}).encode() + b'\n')
            return await asyncio.wait_for(future, timeout)
        finally:
            self._pending.pop(request_id, None)

    async def _read_replies(self):
        try:
            while self._reader:
                line = await self._reader.readline()
                if not line:
                    break  # EOF, mpv closed
                try:
                    msg = json.loads(line)
                except json.JSONDecodeError:
                    continue
                future = self._pending.get(msg.get('request_id'))
                if future is None or future.done():
                    continue
                if msg.get('error', 'success') == 'success':
                    future.set_result(msg.get('data'))
                else:
                    future.set_exception(MpvError(msg['error']))
        except asyncio.CancelledError:
            return
        except Exception as e:
            log.debug("IPC reader ended: %s", e)

        for future in self._pending.values():
            if not future.done():
                future.set_exception(MpvError("mpv IPC closed"))
        self._reader = None
        self._writer = None
        if self.on_disconnect:
            self.on_disconnect()

    def close(self):
        self.on_disconnect = None
        if self._reader_task:
            self._reader_task.cancel()
            self._reader_task = None
        if self._writer:
            try:
                self._writer.close()
            except Exception:
                pass
        self._reader = None
        self._writer = None
