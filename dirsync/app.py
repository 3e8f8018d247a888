"""
FastAPI application for the directory sync engine.

Wires the intermediate store, lock and queue backends, event manager and
task manager explicitly, and translates sync errors into JSON responses.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from dirsync.api.sync_tasks import router as sync_tasks_router
from dirsync.config.settings import Settings, settings as default_settings
from dirsync.database.connection import DatabaseManager
from dirsync.sync.errors import SyncError
from dirsync.sync.orchestrator.event_manager import EventManager
from dirsync.sync.orchestrator.task_manager import TaskManager
from dirsync.sync.scheduler.lock import DatabaseLockManager, LockManager, MemoryLockManager, RedisLockManager
from dirsync.sync.scheduler.queue import MemoryWorkQueue, RedisWorkQueue, WorkQueue
from dirsync.sync.store import IntermediateStore
from dirsync.system.logging_config import setup_logging
from dirsync.utils.retry import RetryConfig

logger = logging.getLogger(__name__)


def build_lock_manager(config: Settings, db: DatabaseManager) -> LockManager:
    retry_config = RetryConfig(max_attempts=config.sync.lock_acquire_attempts, base_delay=0.5, max_delay=5.0)
    backend = config.sync.lock_backend
    if backend == "redis":
        return RedisLockManager(
            redis_url=config.redis.redis_url,
            key_prefix=config.redis.key_prefix,
            retry_config=retry_config,
        )
    if backend == "memory":
        return MemoryLockManager(retry_config=retry_config)
    return DatabaseLockManager(db, retry_config=retry_config)


def build_work_queue(config: Settings) -> WorkQueue:
    if config.sync.queue_backend == "redis":
        return RedisWorkQueue(redis_url=config.redis.redis_url, key_prefix=config.redis.key_prefix)
    return MemoryWorkQueue()


def build_task_manager(config: Optional[Settings] = None, db: Optional[DatabaseManager] = None) -> TaskManager:
    """Assemble a TaskManager from settings."""
    config = config or default_settings
    db = db or DatabaseManager(config.database.database_url)
    return TaskManager(
        IntermediateStore(db),
        lock_manager=build_lock_manager(config, db),
        event_manager=EventManager(),
        work_queue=build_work_queue(config),
        sync_settings=config.sync,
    )


def _error_body(message: str, code: str) -> dict:
    return {"success": False, "message": message, "code": code}


def create_app(task_manager: Optional[TaskManager] = None, recover_on_startup: bool = True) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        task_manager: Pre-built task manager (built from settings when omitted)
        recover_on_startup: Resume or pause tasks left running by a previous process

    Returns:
        FastAPI application
    """
    manager = task_manager or build_task_manager()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Starting {default_settings.app.app_name} v{default_settings.app.app_version}")
        manager.store.db.create_tables()
        await manager.event_manager.start()
        if recover_on_startup:
            outcome = await manager.recover_interrupted_tasks()
            logger.info(f"Startup recovery finished: {outcome}")
        try:
            yield
        finally:
            logger.info("Shutting down application")
            await manager.shutdown()
            await manager.event_manager.stop()
            await manager.work_queue.close()
            close_locks = getattr(manager.lock_manager, "close", None)
            if close_locks is not None:
                await close_locks()

    app = FastAPI(
        title=default_settings.app.app_name,
        description="Directory reconciliation and sync engine",
        version=default_settings.app.app_version,
        debug=default_settings.app.debug,
        lifespan=lifespan,
    )
    app.state.task_manager = manager

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(SyncError)
    async def sync_error_handler(request: Request, exc: SyncError):
        if exc.http_status >= 500:
            logger.error(f"{request.method} {request.url.path} failed: [{exc.code}] {exc.message}")
        content = _error_body(exc.message, exc.code)
        if exc.context:
            content["context"] = exc.context
        return JSONResponse(status_code=exc.http_status, content=content)

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_body(str(exc.detail), f"HTTP_{exc.status_code}"),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        message = "; ".join(
            f"{'.'.join(str(part) for part in error.get('loc', ()))}: {error.get('msg')}" for error in errors
        )
        return JSONResponse(
            status_code=422,
            content=_error_body(message or "Invalid request", "VALIDATION_ERROR"),
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled exception on {request.method} {request.url.path}: {exc}")
        message = str(exc) if default_settings.app.debug else "An error occurred"
        return JSONResponse(status_code=500, content=_error_body(message, "INTERNAL_ERROR"))

    @app.get("/health")
    async def health_check():
        healthy = manager.store.db.test_connection()
        return JSONResponse(
            status_code=200 if healthy else 503,
            content={"status": "healthy" if healthy else "unhealthy", "database": healthy},
        )

    app.include_router(sync_tasks_router)
    return app


def main() -> None:
    """Run the API server with uvicorn."""
    import uvicorn

    setup_logging()
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)


if __name__ == "__main__":
    main()
