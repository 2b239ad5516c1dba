# services/memory_timeline/main.py
from __future__ import annotations
import asyncio
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import FastAPI, Query
from fastapi.responses import JSONResponse

from common.bus import EventBus
from common.config import Settings, load_settings
from common.errors import PipelineError
from common.logging import get_logger, set_level
from services.memory_uploader.main import MemoryUploader, uploader_from_settings

log = get_logger("memory_timeline")


def create_app(uploader: MemoryUploader, bus: Optional[EventBus] = None,
               status_stream: str = "memories.status", default_limit: int = 50) -> FastAPI:
    """Read-only timeline of memories (newest first) plus recent pipeline stage events."""
    app = FastAPI(title="Memory Timeline")

    @app.get("/healthz")
    async def healthz():
        return {"ok": True}

    @app.get("/api/memories/{user_id}")
    async def memories(user_id: str, limit: int = Query(default_limit, ge=1, le=500)):
        try:
            rows = await uploader.list_memories(user_id, limit)
        except PipelineError as e:
            log.error(f"[timeline] user={user_id} {e}")
            return JSONResponse(e.to_dict(), status_code=502)
        return {
            "user_id": user_id,
            "count": len(rows),
            "memories": [m.model_dump(mode="json") for m in rows],
        }

    @app.get("/api/status")
    async def status(count: int = Query(20, ge=1, le=500)):
        if bus is None:
            return JSONResponse({"error": "status stream not configured"}, status_code=503)
        try:
            events: List[Dict[str, Any]] = await bus.recent(status_stream, count)
        except Exception as e:
            log.error(f"[status] read failed stream={status_stream}: {e}")
            return JSONResponse({"error": str(e)}, status_code=502)
        return {"stream": status_stream, "events": events}

    return app


def build_app(settings: Settings, bus: Optional[EventBus] = None) -> FastAPI:
    return create_app(uploader_from_settings(settings), bus, settings.runtime.stream_status, settings.timeline.default_limit)


async def main(config_path: Optional[str] = None):
    log.info("memory_timeline starting…")
    settings = load_settings(config_path)
    set_level(settings.runtime.log_level)
    bus = None
    if settings.runtime.redis_url:
        bus = await EventBus(settings.runtime.redis_url).connect()
    app = build_app(settings, bus)
    server = uvicorn.Server(uvicorn.Config(
        app, host=settings.timeline.host, port=settings.timeline.port,
        log_level=settings.runtime.log_level.lower(),
    ))
    log.info(f"Serving timeline on {settings.timeline.host}:{settings.timeline.port}")
    try:
        await server.serve()
    finally:
        if bus is not None:
            await bus.close()


if __name__ == "__main__":
    asyncio.run(main())
