from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from runtime_utils.config import settings
from runtime_utils.jobs.registry import JobRegistry
from runtime_utils.routers import jobs


class StructuredFormatter(logging.Formatter):
    """Renders ``extra`` fields as ``key=value`` pairs after the message.

        2025-12-15 03:19:33 INFO runtime_utils.jobs.registry Started JitDiffJob job_id=...
    """

    BUILTIN_ATTRS = {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "message",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "thread",
        "threadName",
        "exc_info",
        "exc_text",
        "stack_info",
        "taskName",
    }

    def format(self, record):
        parts = [
            self.formatTime(record, "%Y-%m-%d %H:%M:%S"),
            record.levelname,
            record.name,
            record.getMessage(),
        ]

        extra_fields = []
        for key, value in record.__dict__.items():
            if key not in self.BUILTIN_ATTRS and not key.startswith("_"):
                value_str = str(value)
                if len(value_str) > 50:
                    value_str = value_str[:47] + "..."
                extra_fields.append(f"{key}={value_str}")

        if extra_fields:
            parts.append(" ".join(extra_fields))

        line = " ".join(parts)
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def configure_logging(level: str) -> None:
    root = logging.getLogger()
    root.setLevel(level.upper())

    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(StructuredFormatter())
    root.addHandler(handler)

    # HTTP client and scheduler debug output drowns out job logs
    for noisy in ("httpx", "httpcore", "botocore", "boto3", "apscheduler", "sse_starlette", "uvicorn.access"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


configure_logging(settings.log_level)
logger = logging.getLogger(__name__)


def create_app(job_registry: JobRegistry | None = None) -> FastAPI:
    """Build the app. Tests pass their own registry; production wires one from settings."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        registry = job_registry
        if registry is None:
            from runtime_utils.db import Base
            from runtime_utils.db import engine

            Base.metadata.create_all(bind=engine)
            registry = JobRegistry.from_settings(settings)

        app.state.job_registry = registry
        await registry.start()
        logger.info("runtime-utils started")
        try:
            yield
        finally:
            await registry.stop()
            logger.info("runtime-utils stopped")

    app = FastAPI(title="runtime-utils", version="0.1.0", lifespan=lifespan)
    if job_registry is not None:
        app.state.job_registry = job_registry

    @app.get("/health")
    def health():
        return {"status": "ok"}

    app.include_router(jobs.router)
    return app


app = create_app()
