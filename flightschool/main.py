from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse

from .config import load_settings
from .logging_config import configure_logging
from .schemas import ChatStreamRequest, CreateJobRequest, ThreadUpsertRequest
from .services import Services, build_services
from .streams import SSE_HEADERS, ChatStreamRelay, active_stream_events, activity_events
from .threads import Thread

logger = logging.getLogger(__name__)


def create_app(services: Services | None = None) -> FastAPI:
    owns_services = services is None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        svc: Services = app.state.services
        configure_logging(svc.settings.log_level, svc.settings.log_json)
        await svc.startup()
        try:
            yield
        finally:
            if owns_services:
                await svc.aclose()
            else:
                await svc.runner.shutdown()

    if services is None:
        services = build_services(load_settings())

    app = FastAPI(title="Flight School Jobs", version="1.0.0", lifespan=lifespan)
    app.state.services = services
    svc = services

    @app.exception_handler(RequestValidationError)
    async def invalid_body(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    @app.post("/jobs", status_code=202)
    async def create_job(body: CreateJobRequest) -> JSONResponse:
        job_id = body.id or str(uuid4())
        try:
            record = await svc.ledger.create(job_id, body.type, input=body.input, target_id=body.target_id)
        except ValueError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc

        # Runs on the next loop iteration, after this response has been returned.
        svc.runner.submit(record)
        return JSONResponse(
            status_code=202,
            content={
                "id": record.id,
                "type": record.type,
                "status": record.status,
                "createdAt": record.created_at.isoformat(),
            },
        )

    @app.get("/jobs")
    async def list_jobs(type: str | None = None, status: str | None = None) -> JSONResponse:
        svc.ledger.invalidate_cache()
        jobs = await svc.ledger.get_by_type(type) if type else await svc.ledger.get_all()
        if status:
            jobs = [job for job in jobs if job.status == status]
        return JSONResponse({"jobs": [job.to_dict() for job in jobs]})

    @app.get("/jobs/{job_id}")
    async def get_job(job_id: str) -> JSONResponse:
        svc.ledger.invalidate_cache()
        record = await svc.ledger.get(job_id)
        if not record:
            raise HTTPException(status_code=404, detail="Job not found")
        return JSONResponse(record.to_dict())

    @app.delete("/jobs/{job_id}")
    async def delete_job(job_id: str) -> JSONResponse:
        cancelled = await svc.registry.cancel(job_id)
        # A freshly cancelled job stays readable so pollers observe "cancelled".
        deleted = False if cancelled else await svc.ledger.delete(job_id)
        if not cancelled and not deleted:
            raise HTTPException(status_code=404, detail="Job not found")
        logger.info("[Job %s] Delete requested (cancelled=%s, deleted=%s)", job_id, cancelled, deleted)
        return JSONResponse({"success": True, "cancelled": cancelled, "deletedFromStorage": deleted})

    @app.get("/jobs/{job_id}/stream")
    async def stream_job(job_id: str, request: Request) -> StreamingResponse:
        return StreamingResponse(
            active_stream_events(request, svc.active_streams, job_id, svc.settings.heartbeat_seconds),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )

    @app.get("/ai-activity/stream")
    async def stream_activity(request: Request) -> StreamingResponse:
        return StreamingResponse(
            activity_events(request, svc.activity, svc.settings.heartbeat_seconds),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )

    @app.post("/copilot/stream")
    async def stream_chat(body: ChatStreamRequest, request: Request) -> StreamingResponse:
        relay = ChatStreamRelay(
            request,
            body,
            svc.provider,
            svc.threads,
            save_interval=svc.settings.chat_save_interval_seconds,
        )
        try:
            await relay.open()
        except Exception as exc:
            logger.error("Failed to start chat stream: %s", exc)
            raise HTTPException(status_code=500, detail=str(exc) or "Failed to start stream") from exc
        return StreamingResponse(relay.events(), media_type="text/event-stream", headers=SSE_HEADERS)

    @app.get("/threads/{thread_id}")
    async def get_thread(thread_id: str) -> JSONResponse:
        thread = await svc.threads.get_thread_by_id(thread_id)
        if thread is None:
            raise HTTPException(status_code=404, detail="Thread not found")
        return JSONResponse(thread.to_dict())

    @app.put("/threads/{thread_id}")
    async def put_thread(thread_id: str, body: ThreadUpsertRequest) -> JSONResponse:
        payload = body.model_dump(by_alias=True)
        payload["id"] = thread_id
        existing = await svc.threads.get_thread_by_id(thread_id)
        if existing is not None:
            payload["createdAt"] = existing.created_at
        try:
            thread = Thread.from_dict(payload)
        except (KeyError, TypeError) as exc:
            raise HTTPException(status_code=400, detail=f"Invalid thread: {exc}") from exc
        stored = await svc.threads.update_thread(thread)
        return JSONResponse(stored.to_dict())

    @app.get("/evaluations/{challenge_id}")
    async def get_evaluation(challenge_id: str) -> JSONResponse:
        return JSONResponse(await svc.evaluations.get_progress(challenge_id))

    @app.delete("/evaluations/{challenge_id}")
    async def clear_evaluation(challenge_id: str) -> JSONResponse:
        await svc.evaluations.clear_progress(challenge_id)
        return JSONResponse({"success": True})

    @app.get("/focus")
    async def get_focus() -> JSONResponse:
        return JSONResponse({"history": await svc.focus.get_history()})

    return app
