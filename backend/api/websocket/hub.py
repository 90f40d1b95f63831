"""
WebSocket Hub for live stock updates.

Clients subscribe to a set of symbols (rooms). Each connection gets a
bounded message buffer with drop-oldest backpressure and heartbeat pings.
"""

import asyncio
import json
import logging
from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set

from fastapi import WebSocket

from api.utils.metrics import increment_counter, increment_metric

logger = logging.getLogger(__name__)

ALL_SYMBOLS = "*"


class ConnectionInfo:
    """Track individual WebSocket connection state."""

    def __init__(self, websocket: WebSocket, symbols: Set[str], buffer_size: int = 500):
        self.websocket = websocket
        self.symbols = symbols
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=buffer_size)
        self.heartbeat_task: Optional[asyncio.Task] = None
        self.send_task: Optional[asyncio.Task] = None
        self.connected_at = datetime.utcnow()

    async def cancel_tasks(self):
        """Cancel background tasks for this connection."""
        for task in (self.heartbeat_task, self.send_task):
            if task:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass


def parse_symbols(raw: Optional[str]) -> Set[str]:
    """
    Split a ``symbols`` query value into upper-case symbols.

    An empty value subscribes to every symbol.

    Examples:
        >>> sorted(parse_symbols("reliance, tcs,,INFY"))
        ['INFY', 'RELIANCE', 'TCS']
        >>> parse_symbols("")
        {'*'}
    """
    symbols = {part.strip().upper() for part in (raw or "").split(",") if part.strip()}
    return symbols or {ALL_SYMBOLS}


class WebSocketHub:
    """
    Central hub for managing WebSocket connections.

    Features:
    - Per-symbol rooms (``*`` receives everything)
    - Message buffering with backpressure (drop oldest when full)
    - Heartbeat every 15s
    - Prometheus metrics
    """

    HEARTBEAT_INTERVAL = 15  # seconds
    MESSAGE_BUFFER_SIZE = 500
    MAX_CONNECTIONS = 5000

    def __init__(self):
        self._connections: Dict[str, ConnectionInfo] = {}  # connection_id -> ConnectionInfo
        self._rooms: Dict[str, Set[str]] = defaultdict(set)  # symbol -> Set[connection_id]
        self._lock = asyncio.Lock()
        self._connection_counter = 0
        logger.info("WebSocketHub initialized")

    async def connect(self, websocket: WebSocket, symbols: Iterable[str]) -> Optional[str]:
        """
        Accept a connection subscribed to ``symbols``.

        Returns:
            connection_id if accepted, None if rejected
        """
        try:
            async with self._lock:
                if len(self._connections) >= self.MAX_CONNECTIONS:
                    logger.warning(f"WebSocket connection rejected: hub full ({self.MAX_CONNECTIONS})")
                    await websocket.close(code=1013, reason="Too many connections")
                    return None

                self._connection_counter += 1
                connection_id = f"ws_{self._connection_counter}"

                await websocket.accept()

                conn_info = ConnectionInfo(websocket, set(symbols), self.MESSAGE_BUFFER_SIZE)
                self._connections[connection_id] = conn_info
                for symbol in conn_info.symbols:
                    self._rooms[symbol].add(connection_id)

                conn_info.heartbeat_task = asyncio.create_task(self._heartbeat_loop(connection_id))
                conn_info.send_task = asyncio.create_task(self._send_loop(connection_id))

                increment_metric("ws_connections", 1)
                logger.info(f"WebSocket connected: {connection_id} (symbols={sorted(conn_info.symbols)})")
                return connection_id

        except Exception as e:
            logger.error(f"Error accepting WebSocket connection: {e}", exc_info=True)
            try:
                await websocket.close(code=1011, reason="Internal server error")
            except Exception:
                pass
            return None

    async def disconnect(self, connection_id: str):
        """Disconnect a connection and leave all of its rooms."""
        async with self._lock:
            conn_info = self._connections.pop(connection_id, None)
            if not conn_info:
                return

            for symbol in conn_info.symbols:
                room = self._rooms.get(symbol)
                if room is not None:
                    room.discard(connection_id)
                    if not room:
                        del self._rooms[symbol]

        await conn_info.cancel_tasks()

        increment_metric("ws_connections", -1)
        increment_metric("ws_disconnects_total", 1)
        logger.info(f"WebSocket disconnected: {connection_id}")

    async def subscribe(self, connection_id: str, symbols: Iterable[str]):
        """Add rooms to an existing connection."""
        async with self._lock:
            conn_info = self._connections.get(connection_id)
            if not conn_info:
                return
            for symbol in symbols:
                conn_info.symbols.add(symbol)
                self._rooms[symbol].add(connection_id)

    async def broadcast_stock_update(self, payload: Dict[str, Any]) -> int:
        """
        Send a ``stock.update`` to everyone in the symbol's room and to
        wildcard subscribers. Returns how many connections it was queued for.
        """
        symbol = str(payload.get("symbol", "")).upper()
        message = {"type": "stock.update", "data": payload}
        return await self._broadcast(message, symbol, message_type="stock.update")

    async def broadcast_stock_updates(self, payloads: List[Dict[str, Any]]) -> int:
        queued = 0
        for payload in payloads:
            queued += await self.broadcast_stock_update(payload)
        return queued

    async def _broadcast(self, message: Dict[str, Any], symbol: str, message_type: str) -> int:
        json_message = json.dumps(message, default=str) + "\n"

        async with self._lock:
            connection_ids = self._rooms.get(symbol, set()) | self._rooms.get(ALL_SYMBOLS, set())
            targets = [self._connections[cid] for cid in connection_ids if cid in self._connections]

        queued_count = 0
        dropped_count = 0

        for conn_info in targets:
            try:
                conn_info.queue.put_nowait(json_message)
                queued_count += 1
            except asyncio.QueueFull:
                # Backpressure: drop oldest message
                try:
                    conn_info.queue.get_nowait()
                    conn_info.queue.put_nowait(json_message)
                    queued_count += 1
                    dropped_count += 1
                except (asyncio.QueueEmpty, asyncio.QueueFull):
                    pass

        if queued_count > 0:
            increment_counter("ws_messages_sent_total", labels={"type": message_type}, value=queued_count)

        if dropped_count > 0:
            logger.warning(f"Dropped {dropped_count} messages due to backpressure (type={message_type})")

        return queued_count

    async def _heartbeat_loop(self, connection_id: str):
        try:
            while True:
                await asyncio.sleep(self.HEARTBEAT_INTERVAL)

                conn_info = self._connections.get(connection_id)
                if not conn_info:
                    break

                message = {"type": "heartbeat", "ts": datetime.utcnow().isoformat()}
                try:
                    conn_info.queue.put_nowait(json.dumps(message) + "\n")
                    increment_counter("ws_messages_sent_total", labels={"type": "heartbeat"}, value=1)
                except asyncio.QueueFull:
                    pass  # Skip heartbeat if queue full

        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error(f"Error in heartbeat loop for {connection_id}: {e}")

    async def _send_loop(self, connection_id: str):
        try:
            conn_info = self._connections.get(connection_id)
            if not conn_info:
                return

            while True:
                message = await conn_info.queue.get()
                try:
                    await conn_info.websocket.send_text(message)
                except Exception as e:
                    logger.warning(f"Failed to send message to {connection_id}: {e}")
                    break

        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error(f"Error in send loop for {connection_id}: {e}")

    def get_stats(self) -> Dict[str, Any]:
        """Get current connection statistics."""
        return {
            "total_connections": len(self._connections),
            "total_rooms": len(self._rooms),
            "connections_by_symbol": {
                symbol: len(conn_ids) for symbol, conn_ids in sorted(self._rooms.items())
            },
        }


# Global singleton instance
_hub: Optional[WebSocketHub] = None


def get_hub() -> WebSocketHub:
    """Get the global WebSocketHub instance."""
    global _hub
    if _hub is None:
        _hub = WebSocketHub()
    return _hub
