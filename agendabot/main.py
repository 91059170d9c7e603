import asyncio
import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from agendabot import runtime
from agendabot.config import settings
from agendabot.logging_config import get_logger, setup_logging
from agendabot.routers import alerts, followup, queue, webhook

setup_logging(settings.log_level, settings.log_format)

app = FastAPI(
    title="Agendabot API",
    description="Booking assistant: inbound message queue and follow-up engine",
    version="0.1.0",
)

cors_env = os.environ.get("CORS_ALLOW_ORIGINS", "*")
cors_origins = [origin.strip() for origin in cors_env.split(",") if origin.strip()]
if not cors_origins:
    cors_origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(webhook.router)
app.include_router(followup.router)
app.include_router(queue.router)
app.include_router(alerts.router)

worker_logger = get_logger("queue_worker")
followup_logger = get_logger("followup_worker")
_dispatcher_task: asyncio.Task | None = None
_followup_task: asyncio.Task | None = None


def _is_env_enabled(value: str | None, default: bool = True) -> bool:
    if value is None:
        return default
    return value.strip().lower() not in {"0", "false", "no", "off"}


def _is_worker_enabled(env_name: str, configured: bool) -> bool:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return False
    return _is_env_enabled(os.environ.get(env_name), default=configured)


async def _followup_loop() -> None:
    interval_seconds = max(settings.followup_interval_seconds, 1.0)
    while True:
        try:
            await asyncio.sleep(interval_seconds)
            results = await runtime.run_follow_up_sweep()
            if results.get("sent") or results.get("failed") or results.get("errors"):
                followup_logger.info(
                    "Follow-up tick processed",
                    extra={"context": {k: v for k, v in results.items() if k != "results"}},
                )
        except asyncio.CancelledError:
            break
        except Exception as exc:
            followup_logger.error(
                "Follow-up loop failed",
                extra={"context": {"error": str(exc)}},
            )


async def _stop(task: asyncio.Task | None) -> None:
    if task is None:
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass


@app.on_event("startup")
async def start_workers() -> None:
    global _dispatcher_task, _followup_task
    if _is_worker_enabled("QUEUE_WORKER_ENABLED", settings.queue_worker_enabled):
        if _dispatcher_task is None or _dispatcher_task.done():
            _dispatcher_task = asyncio.create_task(runtime.get_runtime().dispatcher.run_forever())
            worker_logger.info("Queue worker started")
    if _is_worker_enabled("FOLLOWUP_ENABLED", settings.followup_enabled):
        if _followup_task is None or _followup_task.done():
            _followup_task = asyncio.create_task(_followup_loop())
            followup_logger.info("Follow-up worker started")


@app.on_event("shutdown")
async def stop_workers() -> None:
    global _dispatcher_task, _followup_task
    await _stop(_dispatcher_task)
    _dispatcher_task = None
    await _stop(_followup_task)
    _followup_task = None


@app.get("/health")
async def health():
    return {"status": "ok"}
