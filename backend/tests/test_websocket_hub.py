"""
Tests for the live stock update hub: symbol rooms, wildcard subscribers
and drop-oldest backpressure.
"""

import asyncio
import json
import os
import sys

# Add backend to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from api.websocket.hub import ALL_SYMBOLS, WebSocketHub, parse_symbols


class FakeWebSocket:
    def __init__(self):
        self.accepted = False
        self.closed = None
        self.sent = []

    async def accept(self):
        self.accepted = True

    async def close(self, code=1000, reason=None):
        self.closed = code

    async def send_text(self, message):
        self.sent.append(json.loads(message))


class TestParseSymbols:
    def test_parse(self):
        assert parse_symbols("tcs, infy,,") == {"TCS", "INFY"}
        assert parse_symbols(None) == {ALL_SYMBOLS}


class TestWebSocketHub:
    def test_rooms_and_wildcard(self):
        async def scenario():
            hub = WebSocketHub()
            tcs_ws, infy_ws, all_ws = FakeWebSocket(), FakeWebSocket(), FakeWebSocket()
            ids = [
                await hub.connect(tcs_ws, {"TCS"}),
                await hub.connect(infy_ws, {"INFY"}),
                await hub.connect(all_ws, {ALL_SYMBOLS}),
            ]
            queued = await hub.broadcast_stock_update({"symbol": "TCS", "price": 101.0})
            await asyncio.sleep(0.05)
            stats = hub.get_stats()
            for connection_id in ids:
                await hub.disconnect(connection_id)
            return queued, tcs_ws, infy_ws, all_ws, stats, hub.get_stats()

        queued, tcs_ws, infy_ws, all_ws, stats, after = asyncio.run(scenario())

        assert queued == 2
        assert tcs_ws.accepted
        assert tcs_ws.sent == [{"type": "stock.update", "data": {"symbol": "TCS", "price": 101.0}}]
        assert infy_ws.sent == []
        assert len(all_ws.sent) == 1, "Wildcard subscribers get every symbol"
        assert stats["total_connections"] == 3
        assert stats["connections_by_symbol"] == {"*": 1, "INFY": 1, "TCS": 1}
        assert after["total_connections"] == 0
        assert after["total_rooms"] == 0

    def test_subscribe_adds_rooms(self):
        async def scenario():
            hub = WebSocketHub()
            ws = FakeWebSocket()
            connection_id = await hub.connect(ws, {"TCS"})
            await hub.subscribe(connection_id, ["INFY"])
            queued = await hub.broadcast_stock_updates([{"symbol": "INFY"}, {"symbol": "WIPRO"}])
            await hub.disconnect(connection_id)
            return queued

        assert asyncio.run(scenario()) == 1

    def test_backpressure_drops_oldest(self):
        async def scenario():
            hub = WebSocketHub()
            hub.MESSAGE_BUFFER_SIZE = 2
            ws = FakeWebSocket()
            connection_id = await hub.connect(ws, {"TCS"})

            # Stall the consumer so the buffer fills up
            conn = hub._connections[connection_id]
            conn.send_task.cancel()
            await asyncio.sleep(0)

            for price in (1.0, 2.0, 3.0):
                await hub.broadcast_stock_update({"symbol": "TCS", "price": price})

            buffered = []
            while not conn.queue.empty():
                buffered.append(json.loads(conn.queue.get_nowait())["data"]["price"])
            await hub.disconnect(connection_id)
            return buffered

        assert asyncio.run(scenario()) == [2.0, 3.0]

    def test_full_hub_rejects(self):
        async def scenario():
            hub = WebSocketHub()
            hub.MAX_CONNECTIONS = 1
            first, second = FakeWebSocket(), FakeWebSocket()
            first_id = await hub.connect(first, {"TCS"})
            second_id = await hub.connect(second, {"TCS"})
            await hub.disconnect(first_id)
            return second_id, second

        second_id, second = asyncio.run(scenario())
        assert second_id is None
        assert second.closed == 1013
