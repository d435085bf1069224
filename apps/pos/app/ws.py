import asyncio
import json
import logging
from typing import Any, Dict, Optional

from fastapi import WebSocket

_log = logging.getLogger("tableside.pos.ws")

# Connected station screens in this process: socket -> (station, tenant).
active_sockets: Dict[WebSocket, tuple] = {}
queue: Optional[asyncio.Queue] = None
_loop: Optional[asyncio.AbstractEventLoop] = None


def bind_loop(loop: asyncio.AbstractEventLoop) -> asyncio.Queue:
    """Attach the broadcaster to the running server loop; a fresh queue per loop."""
    global _loop, queue
    _loop = loop
    queue = asyncio.Queue()
    return queue


def unbind_loop() -> None:
    global _loop, queue
    _loop = None
    queue = None


def _wants(station: str, tenant: Optional[str], msg: Dict[str, Any]) -> bool:
    targets = msg.get("targets") or []
    if targets and station not in targets:
        return False
    return (msg.get("tenant_id") or None) == (tenant or None)


async def broadcast(msg: Dict[str, Any]) -> None:
    text = json.dumps(msg)
    for ws, (station, tenant) in list(active_sockets.items()):
        if not _wants(station, tenant, msg):
            continue
        try:
            await ws.send_text(text)
        except Exception:
            active_sockets.pop(ws, None)


def queue_broadcast(msg: Dict[str, Any]) -> None:
    """Hand ``msg`` to the event loop; callable from sync route handlers running in the threadpool."""
    if _loop is None or queue is None or _loop.is_closed():
        return
    try:
        _loop.call_soon_threadsafe(queue.put_nowait, msg)
    except RuntimeError as e:
        _log.debug("ws queue unavailable: %s", e)


async def drain_queue_forever(q: asyncio.Queue):
    while True:
        msg = await q.get()
        await broadcast(msg)
