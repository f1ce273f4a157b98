import asyncio
import logging
from datetime import datetime, timezone
from typing import List, Optional

import uvicorn
from fastapi import FastAPI, Query, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from api.dashboard import AppContext
from config import config


logger = logging.getLogger(__name__)


class KillRequest(BaseModel):
    reason: str = 'Manual kill (dashboard)'
    liquidate: bool = False


class AutoRequest(BaseModel):
    on: bool


class ConnectionManager:
    def __init__(self):
        self.active_connections: List[WebSocket] = []

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.active_connections.append(websocket)

    def disconnect(self, websocket: WebSocket):
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def create_app(context: AppContext, kill_switch=None, audit=None) -> FastAPI:
    """Build the dashboard API over an application context.

    Reads go straight to ``context``; the control endpoints route to the kill
    switch and the auto-trading flag.
    """
    app = FastAPI(title="BTC Spot Bot API", version="1.0.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(config.api.get('cors_origins', [])),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    manager = ConnectionManager()

    @app.get("/health")
    async def health():
        return {"status": "healthy", "mode": context.mode, "timestamp": _now_iso()}

    @app.get("/api/state")
    async def get_state():
        return context.state()

    @app.get("/api/candles")
    async def get_candles():
        return [c.to_dict() for c in context.candles]

    @app.get("/api/position")
    async def get_position():
        pos = context.position
        if pos is None:
            return {
                "status": "FLAT",
                "qty": 0,
                "entry_price": 0,
                "stop_loss": 0,
                "unrealized_pnl": 0,
                "unrealized_pnl_pct": 0,
                "stop_armed": False,
                "equity": context.equity,
            }
        last = context.last_price
        pnl = (last - pos.entry_price) * pos.qty if last > 0 else 0.0
        pnl_pct = (last - pos.entry_price) / pos.entry_price * 100 if last > 0 and pos.entry_price > 0 else 0.0
        data = pos.to_dict()
        data.update({"unrealized_pnl": pnl, "unrealized_pnl_pct": pnl_pct, "stop_armed": pos.stop_loss > 0})
        return data

    @app.get("/api/events")
    async def get_events(limit: int = Query(200, ge=1, le=500)):
        return [e.to_dict() for e in context.events[-limit:]]

    @app.get("/api/trades")
    async def get_trades():
        return context.trades

    @app.get("/api/audit")
    async def get_audit(limit: int = Query(50, ge=1, le=1000)):
        if audit is None:
            return []
        return [r.to_dict() for r in audit.recent(limit)]

    @app.post("/api/kill")
    async def trigger_kill(request: Optional[KillRequest] = None):
        request = request or KillRequest()
        if kill_switch is None:
            return {"error": "Kill switch not available"}
        logger.warning("Kill switch requested via API: %s", request.reason)
        await kill_switch.activate(request.reason, liquidate=request.liquidate)
        return {"ok": True, "kill": kill_switch.is_activated(), "reason": kill_switch.reason}

    @app.post("/api/reset")
    async def reset_kill():
        if kill_switch is None:
            return {"error": "Kill switch not available"}
        kill_switch.deactivate()
        return {"ok": True, "kill": kill_switch.is_activated()}

    @app.post("/api/auto")
    async def set_auto(request: AutoRequest):
        context.set_auto(request.on)
        if audit is not None:
            audit.info('api', 'AUTO', f"auto={request.on}", context.mode)
        return {"ok": True, "auto": context.get_auto()}

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        await manager.connect(websocket)
        try:
            while True:
                await websocket.send_json({"type": "update", "timestamp": _now_iso(), "state": context.state()})
                await asyncio.sleep(1)
        except WebSocketDisconnect:
            manager.disconnect(websocket)

    return app


async def serve_api(app: FastAPI, host: Optional[str] = None, port: Optional[int] = None) -> None:
    server = uvicorn.Server(uvicorn.Config(
        app,
        host=host or config.api.get('host', '127.0.0.1'),
        port=int(port or config.api.get('port', 4000)),
        log_level="info",
    ))
    await server.serve()
