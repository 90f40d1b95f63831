"""
WebSocket router for live stock updates.

Provides WS /ws/stocks for per-symbol streaming and GET /ws/stats.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect, status
from fastapi.responses import JSONResponse

from api.websocket.hub import get_hub, parse_symbols
from stockleague.feature_flags import feature_flags

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ws", tags=["websocket"])


@router.websocket("/stocks")
async def websocket_stocks(
    websocket: WebSocket,
    symbols: Optional[str] = Query(None, description="Comma separated symbols; empty for all"),
):
    """
    WebSocket endpoint for live stock updates.

    Message Types (JSON lines):
    - {"type":"stock.update", "data":{symbol, price, change, percentChange, volume,
       dailyBuyPoints, dailySellPoints, dailyMilestonesHit}}
    - {"type":"heartbeat", "ts":...}

    Clients may send ``{"subscribe": ["TCS", ...]}`` to join more rooms.
    """
    if not feature_flags.ENABLE_LIVE_WS:
        await websocket.close(code=status.WS_1003_UNSUPPORTED_DATA, reason="Live stock WebSocket is disabled")
        return

    hub = get_hub()
    connection_id = await hub.connect(websocket, parse_symbols(symbols))

    if not connection_id:
        # Connection rejected (hub already closed the WebSocket)
        return

    try:
        while True:
            try:
                data = await websocket.receive_json()
            except WebSocketDisconnect:
                break
            except ValueError:
                logger.debug(f"Ignoring non-JSON client message on {connection_id}")
                continue

            extra = data.get("subscribe") if isinstance(data, dict) else None
            if isinstance(extra, list) and extra:
                await hub.subscribe(connection_id, parse_symbols(",".join(str(s) for s in extra)))

    except Exception as e:
        logger.error(f"WebSocket error for {connection_id}: {e}", exc_info=True)
    finally:
        await hub.disconnect(connection_id)


@router.get("/stats")
async def websocket_stats():
    """Get current WebSocket connection statistics (for monitoring/debugging)."""
    return JSONResponse(content=get_hub().get_stats())
