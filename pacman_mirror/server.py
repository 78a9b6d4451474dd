"""Control channel: live state over a websocket, start/stop commands."""

import asyncio
import json
from typing import Any, Dict, Optional

from aiohttp import WSMsgType, web

from .sync import MirrorSync

SYNC_KEY = web.AppKey("sync", MirrorSync)
COMMANDS = ("start", "stop")


class Connection:
    """One websocket observer.

    Only the most recent snapshot is kept for sending, so a slow client
    skips intermediate states instead of building up a backlog.
    """

    def __init__(self, ws: web.WebSocketResponse):
        self.ws = ws
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=1)

    def push(self, snapshot: Dict[str, Any]):
        if self.queue.full():
            self.queue.get_nowait()
        self.queue.put_nowait(snapshot)

    async def sender(self):
        while not self.ws.closed:
            snapshot = await self.queue.get()
            await self.ws.send_json(snapshot)


def parse_command(data: str) -> Optional[str]:
    """Return the command named by a text frame, or None if unknown.

    Accepts a bare ``start``/``stop`` or ``{"command": "start"}``.
    """
    data = data.strip()
    if data.startswith("{"):
        try:
            data = json.loads(data).get("command", "")
        except (ValueError, AttributeError):
            return None
    if not isinstance(data, str):
        return None
    data = data.strip().lower()
    return data if data in COMMANDS else None


async def websocket_handler(request: web.Request) -> web.WebSocketResponse:
    sync = request.app[SYNC_KEY]
    ws = web.WebSocketResponse(heartbeat=30)
    await ws.prepare(request)

    connection = Connection(ws)
    connection.push(sync.state.snapshot())
    unsubscribe = sync.state.subscribe(connection.push)
    sender = asyncio.create_task(connection.sender())
    try:
        async for msg in ws:
            if msg.type != WSMsgType.TEXT:
                continue
            command = parse_command(msg.data)
            if command == "start":
                sync.start()
            elif command == "stop":
                sync.stop()
            else:
                await ws.send_json({"error": f"Unknown command: {msg.data}"})
    finally:
        unsubscribe()
        sender.cancel()
        await asyncio.gather(sender, return_exceptions=True)
    return ws


async def state_handler(request: web.Request) -> web.Response:
    return web.json_response(request.app[SYNC_KEY].state.snapshot())


def create_app(sync: MirrorSync) -> web.Application:
    """Build the control application for ``sync``."""
    app = web.Application()
    app[SYNC_KEY] = sync
    app.router.add_get("/ws", websocket_handler)
    app.router.add_get("/state", state_handler)
    return app


async def serve(sync: MirrorSync, host: str, port: int, autostart: bool = True):
    """Run the control server until cancelled.

    :param sync: Initialized orchestrator
    :type sync: MirrorSync
    :param host: Address to listen on
    :type host: str
    :param port: Port to listen on
    :type port: int
    :param autostart: Start a pass as soon as the server is up
    :type autostart: bool
    """
    runner = web.AppRunner(create_app(sync))
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    sync.state.log(f"Control channel: ws://{host}:{port}/ws")
    try:
        if autostart:
            sync.start()
        await asyncio.Event().wait()
    finally:
        await runner.cleanup()
