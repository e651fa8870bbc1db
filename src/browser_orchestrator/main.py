"""FastAPI entrypoint: task routes, live log WebSocket, metrics and traces."""
from __future__ import annotations

from typing import List, Optional

import structlog
from fastapi import Depends, FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse, Response

from . import errors
from .broadcast import LogBroadcaster
from .config import get_settings, settings_dict
from .models import CancelResponse, LogEntry, Task, TaskRequest
from .observability import metrics
from .observability.json_logger import configure_logging
from .observability.tracing import get_trace_writer
from .service import TaskService
from .storage import create_store

_logger = structlog.get_logger(__name__)


def create_app(service: Optional[TaskService] = None) -> FastAPI:
    app = FastAPI(title="Browser Automation Orchestrator")
    if service is not None:
        app.state.service = service

    @app.on_event("startup")
    async def on_startup() -> None:
        if getattr(app.state, "service", None) is not None:
            return
        settings = get_settings()
        configure_logging(settings.log_level)
        app.state.service = TaskService(
            create_store("memory"),
            settings,
            get_trace_writer(),
            broadcaster=LogBroadcaster(),
        )
        _logger.info("gateway.started", settings=settings_dict())

    @app.on_event("shutdown")
    async def on_shutdown() -> None:
        current: TaskService | None = getattr(app.state, "service", None)
        if current is not None:
            await current.shutdown()
        _logger.info("gateway.stopped")

    @app.exception_handler(errors.ValidationError)
    async def validation_error(_: Request, exc: errors.ValidationError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"message": str(exc)})

    @app.exception_handler(errors.TaskNotFoundError)
    async def not_found(_: Request, exc: errors.TaskNotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"message": str(exc)})

    def get_service(request: Request) -> TaskService:
        return request.app.state.service

    @app.get("/api/tasks", response_model=List[Task])
    async def list_tasks(service: TaskService = Depends(get_service)) -> List[Task]:
        return await service.store.all_tasks()

    @app.get("/api/tasks/current", response_model=Optional[Task])
    async def current_task(service: TaskService = Depends(get_service)) -> Optional[Task]:
        return await service.store.current_task()

    @app.post("/api/tasks/execute", response_model=Task)
    async def execute_task(request: TaskRequest, service: TaskService = Depends(get_service)) -> Task:
        handle = await service.submit(request.prompt)
        return handle.task

    @app.post("/api/tasks/cancel", response_model=CancelResponse)
    async def cancel_task(task_id: Optional[str] = None, service: TaskService = Depends(get_service)) -> CancelResponse:
        task = await service.cancel(task_id)
        return CancelResponse(success=True, task_id=task.id if task else None)

    @app.get("/api/tasks/{task_id}", response_model=Task)
    async def get_task(task_id: str, service: TaskService = Depends(get_service)) -> Task:
        task = await service.store.get(task_id)
        if task is None:
            raise HTTPException(status_code=404, detail="Task not found")
        return task

    @app.get("/api/tasks/{task_id}/logs", response_model=List[LogEntry])
    async def task_logs(task_id: str, service: TaskService = Depends(get_service)) -> List[LogEntry]:
        return await service.store.task_logs(task_id)

    @app.post("/api/tasks/{task_id}/replay", response_model=Task)
    async def replay_task(task_id: str, service: TaskService = Depends(get_service)) -> Task:
        handle = await service.replay(task_id)
        return handle.task

    @app.websocket("/ws")
    async def log_stream(websocket: WebSocket) -> None:
        service: TaskService = websocket.app.state.service
        await websocket.accept()
        if service.broadcaster is None:
            await websocket.close()
            return
        queue = service.broadcaster.subscribe()
        try:
            while True:
                message = await queue.get()
                await websocket.send_json(message)
        except WebSocketDisconnect:
            _logger.info("ws.disconnected")
        finally:
            service.broadcaster.unsubscribe(queue)

    @app.get("/metrics")
    async def metrics_endpoint() -> Response:
        return Response(metrics.export(), media_type="text/plain; version=0.0.4")

    @app.get("/traces")
    async def traces(limit: int = 100, service: TaskService = Depends(get_service)) -> JSONResponse:
        return JSONResponse(service.trace_writer.tail(limit))

    return app


app = create_app()
