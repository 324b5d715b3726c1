import asyncio
import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.concurrency import run_in_threadpool

from wabot.config import settings
from wabot.logging_config import get_logger, setup_logging
from wabot.routers import admin, webhook
from wabot.services import registry

setup_logging(settings.log_level)

app = FastAPI(
    title="wabot",
    description="WhatsApp business automation router",
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
app.include_router(admin.router)

sweeper_logger = get_logger("cache_sweeper")
_cache_sweeper_task: asyncio.Task | None = None


def _is_env_enabled(value: str | None, default: bool = True) -> bool:
    if value is None:
        return default
    return value.strip().lower() not in {"0", "false", "no", "off"}


def _is_cache_sweeper_enabled() -> bool:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return False
    return _is_env_enabled(os.environ.get("CACHE_SWEEPER_ENABLED"), default=True)


def sweep_caches() -> list[dict]:
    return [cache.sweep() for cache in registry.get_caches()]


async def _cache_sweeper_loop() -> None:
    interval_seconds = max(settings.cache_sweep_interval_seconds, 1.0)
    while True:
        try:
            await asyncio.sleep(interval_seconds)
            await run_in_threadpool(sweep_caches)
        except asyncio.CancelledError:
            break
        except Exception as exc:
            sweeper_logger.error(
                "Cache sweeper loop failed",
                extra={"context": {"error": str(exc)}},
            )


@app.on_event("startup")
async def start_cache_sweeper() -> None:
    global _cache_sweeper_task
    if not _is_cache_sweeper_enabled():
        return
    if _cache_sweeper_task is None or _cache_sweeper_task.done():
        _cache_sweeper_task = asyncio.create_task(_cache_sweeper_loop())
        sweeper_logger.info("Cache sweeper started")


@app.on_event("shutdown")
async def stop_cache_sweeper() -> None:
    global _cache_sweeper_task
    if _cache_sweeper_task is not None:
        _cache_sweeper_task.cancel()
        try:
            await _cache_sweeper_task
        except asyncio.CancelledError:
            pass
        _cache_sweeper_task = None
    registry.reset()


@app.get("/health")
async def health():
    return {"status": "ok"}
