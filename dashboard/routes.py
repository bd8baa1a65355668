from typing import Optional

from fastapi import APIRouter, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, Gauge, generate_latest

from streamwatch.history import HistoryDeriver, group_successive

router = APIRouter()

OPEN_SESSIONS = Gauge("streamwatch_open_sessions", "Open playback sessions")
HISTORY_ENTRIES = Gauge("streamwatch_history_entries", "History rows recorded")
MONITOR_CYCLES = Gauge("streamwatch_monitor_cycles", "Reconciliation cycles completed")
LIVE_CONNECTED = Gauge(
    "streamwatch_live_events_connected", "Push event connection is open", ["server"]
)
ADAPTER_FAILING = Gauge(
    "streamwatch_adapter_failing", "Last poll of the server failed", ["server"]
)


def _monitor_status(request: Request) -> dict:
    monitor = request.app.state.monitor
    if monitor is None:
        return {"running": False, "cycles": 0, "last_cycle_at": None, "adapter_errors": {}, "live_events": {}}
    return monitor.status()


@router.get("/health")
async def health(request: Request):
    """Basic health check."""
    try:
        _ = request.app.state.db.conn
        db_connected = True
    except RuntimeError:
        db_connected = False
    jobs = request.app.state.jobs
    return {
        "status": "ok",
        "db_connected": db_connected,
        "monitor": _monitor_status(request),
        "jobs": jobs.status() if jobs else [],
    }


@router.get("/metrics")
async def metrics(request: Request):
    """Prometheus metrics endpoint."""
    db = request.app.state.db
    status = _monitor_status(request)

    OPEN_SESSIONS.set(len(await db.get_open_sessions()))
    HISTORY_ENTRIES.set(await db.count_history())
    MONITOR_CYCLES.set(status["cycles"])
    for server, live in status["live_events"].items():
        LIVE_CONNECTED.labels(server=server).set(1 if live.get("connected") else 0)
    monitor = request.app.state.monitor
    if monitor is not None:
        for adapter in monitor.registry:
            ADAPTER_FAILING.labels(server=adapter.name).set(
                1 if adapter.name in status["adapter_errors"] else 0
            )

    return PlainTextResponse(generate_latest(), media_type=CONTENT_TYPE_LATEST)


@router.get("/api/activity")
async def activity(request: Request):
    """Sessions that are currently open."""
    sessions = await request.app.state.db.get_open_sessions()
    return [session.model_dump(mode="json") for session in sessions]


@router.get("/api/history")
async def history(request: Request, limit: int = 50, user_id: Optional[str] = None):
    db = request.app.state.db
    limit = max(1, min(limit, 500))
    records = await db.get_history(limit=limit, user_id=user_id)
    filters = await HistoryDeriver(db).load_filters()
    if filters.group_successive:
        records = group_successive(records)
    return [record.model_dump(mode="json") for record in records]


@router.delete("/api/history/{history_id}")
async def delete_history(request: Request, history_id: int):
    if not await request.app.state.db.delete_history_entry(history_id):
        raise HTTPException(status_code=404, detail="History entry not found")
    return {"deleted": history_id}


@router.websocket("/ws")
async def activity_ws(ws: WebSocket):
    """Stream the open-session list after every reconciliation cycle."""
    broadcaster = ws.app.state.broadcaster
    await broadcaster.connect(ws)
    try:
        while True:
            await ws.receive_text()
    except WebSocketDisconnect:
        broadcaster.remove(ws)
