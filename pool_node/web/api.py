"""FastAPI status endpoints for a coordinator process"""

import json
import logging

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from pydantic import BaseModel

logger = logging.getLogger("WebAPI")

app = FastAPI(title="Pool Node Sync")

# Service references (set on startup)
services = None


class SubmitRequest(BaseModel):
    hex: str


def set_services(process_services):
    """Set the global services reference"""
    global services
    services = process_services


def _unavailable(detail: str):
    return JSONResponse({"error": detail}, status_code=503)


@app.get("/api/mining-state")
async def get_mining_state():
    """Latest published mining state"""
    if not services:
        return _unavailable("not started")
    state = services.cache.new_state.latest
    if state is None:
        return _unavailable("no mining state yet")
    return JSONResponse(state.as_dict())


@app.get("/api/health")
async def get_health():
    if not services:
        return _unavailable("not started")
    cache = services.cache
    body = {
        "mode": services.notifier.mode,
        "height": cache.height,
        "stale": cache.is_stale,
        "consecutive_failures": cache.consecutive_failures,
        "process_id": services.coordinator.process_id,
        "template_fetch_attempts": services.coordinator.fetch_attempts,
    }
    return JSONResponse(body, status_code=503 if cache.is_stale else 200)


@app.get("/api/templates/{height}")
async def get_template_status(height: int):
    """Persisted record status for a height. Never triggers a node fetch."""
    if not services:
        return _unavailable("not started")
    record = await services.store.get_record(height)
    if record is None:
        return JSONResponse({"height": height, "status": "missing"}, status_code=404)
    body = {
        "height": height,
        "status": "ready" if record.is_ready else "locked",
        "owner": record.owner,
        "acquired_at": record.acquired_at,
    }
    if record.is_ready:
        try:
            body["tx_count"] = len(json.loads(record.payload).get("transactions", []))
        except (ValueError, AttributeError):
            body["status"] = "corrupt"
    return JSONResponse(body)


@app.post("/api/submit")
async def submit_block(req: SubmitRequest):
    if not services:
        return _unavailable("not started")
    result = await services.gateway.submit(req.hex)
    return JSONResponse({"accepted": result.accepted, "outcome": result.outcome})
