"""
FastAPI Application — job submission, inspection and live progress.

Provides:
- Job submission with credit gating for paid queues
- Queue and job inspection for dashboards and polling clients
- Resume token verification for the wizard front end
- WebSocket endpoint streaming job progress for a brand or a job

With the in-memory broker the workers run inside this process; with Redis
they run in scripts/run_workers.py and progress arrives through the relay.
"""
from __future__ import annotations

import json
from contextlib import asynccontextmanager
from typing import Any, Optional

import structlog

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from abandonment.tokens import ExpiredResumeTokenError, InvalidResumeTokenError
from config.settings import get_settings
from core.orchestrator import JobSystem
from job_queue.errors import CreditExhaustedError, UnknownQueueError, ValidationError
from models.schemas import utcnow
from progress.bridge import brand_room, job_room

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Request Models
# ──────────────────────────────────────────────────────────────

class DispatchRequest(BaseModel):
    payload: dict[str, Any]
    priority: Optional[int] = Field(default=None, ge=0)
    delay: Optional[float] = Field(default=None, ge=0)
    job_id: Optional[str] = None


class ResumeTokenRequest(BaseModel):
    token: str
    user_id: Optional[str] = None


def _rooms_from(data: dict[str, Any]) -> list[str]:
    rooms = []
    if data.get("brand_id"):
        rooms.append(brand_room(data["brand_id"]))
    if data.get("job_id"):
        rooms.append(job_room(data["job_id"]))
    return rooms


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

def create_app(system: JobSystem = None) -> FastAPI:
    system = system or JobSystem()
    in_process_workers = system.settings.queue.backend == "memory"

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await system.start(run_workers=in_process_workers, schedule=in_process_workers)
        logger.info("api_started",
                    app=system.settings.app_name,
                    in_process_workers=in_process_workers)
        yield
        await system.stop()
        logger.info("api_stopped")

    app = FastAPI(
        title=f"{system.settings.app_name} API",
        description="Asynchronous job orchestration for the brand wizard",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.system = system

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ── Error mapping ─────────────────────────────────────────

    @app.exception_handler(UnknownQueueError)
    async def unknown_queue(request: Request, exc: UnknownQueueError):
        return JSONResponse(status_code=404, content={"error": str(exc), "available": exc.available})

    @app.exception_handler(ValidationError)
    async def invalid_payload(request: Request, exc: ValidationError):
        return JSONResponse(status_code=422, content=exc.to_dict())

    @app.exception_handler(CreditExhaustedError)
    async def credits_exhausted(request: Request, exc: CreditExhaustedError):
        return JSONResponse(status_code=402, content={
            "error": exc.reason, "credit_type": exc.credit_type, "remaining": exc.remaining,
        })

    # ══════════════════════════════════════════════════════════
    #  HEALTH
    # ══════════════════════════════════════════════════════════

    @app.get("/health")
    async def health():
        return {
            "status": "healthy",
            "timestamp": utcnow().isoformat(),
            "broker": system.settings.queue.backend,
            "queues": len(system.registry),
            "workers": len(system.workers.pools) if system.workers else 0,
            "progress_subscribers": system.bridge.subscriber_count,
        }

    # ══════════════════════════════════════════════════════════
    #  QUEUES & JOBS
    # ══════════════════════════════════════════════════════════

    @app.get("/api/v1/queues")
    async def list_queues():
        return {name: await system.broker.counts(name) for name in system.registry.list_names()}

    @app.post("/api/v1/queues/{queue}/jobs", status_code=202)
    async def submit_job(queue: str, req: DispatchRequest):
        result = await system.dispatch_paid(
            queue, req.payload, priority=req.priority, delay=req.delay, job_id=req.job_id,
        )
        return {"job_id": result.job_id, "queue": result.queue_name, "deduplicated": result.deduplicated}

    @app.get("/api/v1/queues/{queue}/jobs/{job_id}")
    async def get_job(queue: str, job_id: str):
        system.registry.lookup(queue)
        job = await system.broker.get_job(queue, job_id)
        if job is None:
            raise HTTPException(404, f"Job {job_id} not found in {queue}")
        return job.model_dump(mode="json")

    @app.get("/api/v1/jobs/{job_id}/record")
    async def get_job_record(job_id: str):
        record = await system.store.get_job_record(job_id)
        if record is None:
            raise HTTPException(404, f"No record for job {job_id}")
        return record.model_dump(mode="json")

    # ══════════════════════════════════════════════════════════
    #  RESUME TOKENS
    # ══════════════════════════════════════════════════════════

    @app.post("/api/v1/resume-tokens/verify")
    async def verify_resume_token(req: ResumeTokenRequest):
        try:
            payload = system.signer.verify(req.token, user_id=req.user_id)
        except ExpiredResumeTokenError:
            raise HTTPException(401, "Resume token expired")
        except InvalidResumeTokenError:
            raise HTTPException(401, "Invalid resume token")
        return payload.model_dump(by_alias=True)

    # ══════════════════════════════════════════════════════════
    #  PROGRESS WEBSOCKET
    # ══════════════════════════════════════════════════════════

    @app.websocket("/ws/progress")
    async def websocket_progress(
        websocket: WebSocket,
        brand_id: Optional[str] = Query(default=None),
        job_id: Optional[str] = Query(default=None),
    ):
        """
        Streams {"event": "job:progress" | "job:complete" | "job:failed", "data": {...}}.

        Client may change its rooms:
          {"type": "join", "brand_id": "..."}   {"type": "join", "job_id": "..."}
          {"type": "leave", "brand_id": "..."}  {"type": "leave", "job_id": "..."}
        """
        await websocket.accept()
        subscriber = system.bridge.attach_websocket(
            websocket, _rooms_from({"brand_id": brand_id, "job_id": job_id}),
        )
        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    message = json.loads(raw)
                except json.JSONDecodeError:
                    message = None
                if not isinstance(message, dict):
                    await websocket.send_text(json.dumps({"event": "error", "data": {"error": "invalid json"}}))
                    continue

                kind = message.get("type")
                rooms = _rooms_from(message)
                if kind == "join":
                    for room in rooms:
                        system.bridge.join(subscriber, room)
                elif kind == "leave":
                    for room in rooms:
                        system.bridge.leave(subscriber, room)
                elif kind == "ping":
                    await websocket.send_text(json.dumps({"event": "pong", "data": {}}))
                    continue
                else:
                    continue
                await websocket.send_text(json.dumps({
                    "event": f"room:{kind}", "data": {"rooms": sorted(subscriber.rooms)},
                }))
        except WebSocketDisconnect:
            pass
        except Exception as e:
            logger.error("progress_ws_error", subscriber=subscriber.id, error=str(e))
        finally:
            system.bridge.detach(subscriber)

    return app


app = create_app()


# ══════════════════════════════════════════════════════════════
#  Entry Point
# ══════════════════════════════════════════════════════════════

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
